from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    BigInteger,
    String,
    Float,
    DateTime,
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def name_key(name: str) -> str:
    """Lookup key for case-insensitive country names."""
    return name.strip().lower()


class Country(Base):
    __tablename__ = "countries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    # lowercase shadow of `name`; uniqueness and lookups go through this column
    name_key = Column(String(255), nullable=False, unique=True, index=True)
    capital = Column(String(255), nullable=True)
    region = Column(String(255), nullable=True)
    population = Column(BigInteger, nullable=False)
    currency_code = Column(String(16), nullable=True)
    exchange_rate = Column(Float, nullable=True)
    estimated_gdp = Column(Float, nullable=True)
    flag_url = Column(String(1024), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)


class RefreshStatus(Base):
    """Summary of the most recent refresh.

    The table holds at most one row: `singleton` is the primary key and the
    check constraint only admits the value 1.
    """

    __tablename__ = "refresh_status"
    __table_args__ = (CheckConstraint("singleton = 1", name="ck_refresh_status_single_row"),)

    singleton = Column(Integer, primary_key=True, default=1)
    total_countries = Column(Integer, nullable=False, default=0)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=False)
