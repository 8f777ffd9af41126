import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schema import Country, RefreshStatus, name_key

logger = logging.getLogger(__name__)

# "never refreshed" is reported with this timestamp rather than an error
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

COUNTRY_FIELDS = (
    "name",
    "capital",
    "region",
    "population",
    "currency_code",
    "exchange_rate",
    "estimated_gdp",
    "flag_url",
)


class StoreError(Exception):
    """A persistence operation failed."""


class UpsertError(StoreError):
    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"failed to {step}: {cause}")


class CountryNotFoundError(StoreError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"country {name!r} not found")


@dataclass
class StatusSnapshot:
    total_countries: int
    last_refreshed_at: datetime


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def upsert_countries(db: Session, records: List[dict], refreshed_at: datetime) -> Tuple[int, datetime]:
    """Insert or update every record and the status row in one transaction.

    Each record is a dict with the keys in COUNTRY_FIELDS. Existing rows are
    matched on the lowercase name and keep their id. On any failure the whole
    batch is rolled back and UpsertError names the failing step.
    """
    # rows written earlier in this batch, so repeated names update instead of colliding
    written = {}
    step = "begin transaction"
    try:
        for record in records:
            key = name_key(record["name"])
            step = f"look up country {record['name']}"
            existing = written.get(key)
            if existing is None:
                existing = db.query(Country).filter(Country.name_key == key).one_or_none()

            if existing is None:
                step = f"insert country {record['name']}"
                row = Country(name_key=key, last_refreshed_at=refreshed_at, **record)
                db.add(row)
            else:
                step = f"update country {record['name']}"
                row = existing
                for field in COUNTRY_FIELDS:
                    setattr(row, field, record.get(field))
                row.name_key = key
                row.last_refreshed_at = refreshed_at
            db.flush()
            written[key] = row

        step = "update refresh status"
        status = db.query(RefreshStatus).one_or_none()
        if status is None:
            status = RefreshStatus(singleton=1)
            db.add(status)
        status.total_countries = len(records)
        status.last_refreshed_at = refreshed_at
        db.flush()

        step = "commit"
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Refresh rolled back, failed to %s: %s", step, e)
        raise UpsertError(step, e) from e

    logger.info("Upserted %d countries at %s", len(records), refreshed_at.isoformat())
    return len(records), refreshed_at


SORT_KEYS = {
    "name_asc": lambda: [Country.name.asc()],
    "name_desc": lambda: [Country.name.desc()],
    "gdp_asc": lambda: [Country.estimated_gdp.is_(None), Country.estimated_gdp.asc(), Country.name.asc()],
    "gdp_desc": lambda: [Country.estimated_gdp.is_(None), Country.estimated_gdp.desc(), Country.name.asc()],
    "population_asc": lambda: [Country.population.asc(), Country.name.asc()],
    "population_desc": lambda: [Country.population.desc(), Country.name.asc()],
}
DEFAULT_SORT = "name_asc"


def list_countries(
    db: Session,
    region: Optional[str] = None,
    currency: Optional[str] = None,
    sort: Optional[str] = None,
) -> List[Country]:
    q = db.query(Country)
    if region:
        q = q.filter(func.lower(Country.region) == region.lower())
    if currency:
        q = q.filter(func.lower(Country.currency_code) == currency.lower())

    # unknown sort keys silently use the default
    order = SORT_KEYS.get(sort or DEFAULT_SORT, SORT_KEYS[DEFAULT_SORT])
    return q.order_by(*order()).all()


def get_country(db: Session, name: str) -> Optional[Country]:
    return db.query(Country).filter(Country.name_key == name_key(name)).one_or_none()


def delete_country(db: Session, name: str) -> None:
    deleted = db.query(Country).filter(Country.name_key == name_key(name)).delete(synchronize_session=False)
    if deleted == 0:
        db.rollback()
        raise CountryNotFoundError(name)
    db.commit()
    logger.info("Deleted country %s", name)


def top_by_gdp(db: Session, n: int) -> List[Country]:
    """The n countries with the highest estimated GDP, countries without one last."""
    return (
        db.query(Country)
        .order_by(Country.estimated_gdp.is_(None), Country.estimated_gdp.desc(), Country.name.asc())
        .limit(n)
        .all()
    )


def get_status(db: Session) -> StatusSnapshot:
    status = db.query(RefreshStatus).one_or_none()
    if status is None:
        return StatusSnapshot(total_countries=0, last_refreshed_at=ZERO_TIME)
    return StatusSnapshot(
        total_countries=status.total_countries,
        last_refreshed_at=as_utc(status.last_refreshed_at),
    )

