from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

import store
from schema import Country, RefreshStatus
from store import CountryNotFoundError, UpsertError

T1 = datetime(2025, 10, 20, 8, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2025, 10, 21, 9, 15, 0, tzinfo=timezone.utc)


def record(name, population=1000, region="Europe", currency_code="EUR", exchange_rate=0.9, estimated_gdp=1.0e6, **extra):
    r = {
        "name": name,
        "capital": f"{name} City",
        "region": region,
        "population": population,
        "currency_code": currency_code,
        "exchange_rate": exchange_rate,
        "estimated_gdp": estimated_gdp,
        "flag_url": f"https://flags.example/{name.lower()}.svg",
    }
    r.update(extra)
    return r


def table_state(db):
    db.expire_all()
    return sorted(
        (c.id,) + tuple(getattr(c, f) for f in store.COUNTRY_FIELDS) for c in db.query(Country).all()
    )


def seed(db):
    store.upsert_countries(
        db,
        [
            record("France", population=67000000, estimated_gdp=9.0e10),
            record("Nigeria", population=206000000, region="Africa", currency_code="NGN", estimated_gdp=2.0e10),
            record("Ghana", population=31000000, region="Africa", currency_code="GHS", estimated_gdp=3.0e9),
            record("Zimbabwe", population=15000000, region="Africa", currency_code="ZWL", exchange_rate=None, estimated_gdp=None),
            record("Antarctica", population=1000, region="Polar", currency_code=None, exchange_rate=None, estimated_gdp=0.0),
        ],
        T1,
    )


def names(countries):
    return [c.name for c in countries]


# --- upsert engine ---


def test_upsert_inserts_and_sets_status(db):
    total, refreshed_at = store.upsert_countries(db, [record("France"), record("Spain")], T1)

    assert (total, refreshed_at) == (2, T1)
    assert len(db.query(Country).all()) == 2
    status = store.get_status(db)
    assert status.total_countries == 2
    assert status.last_refreshed_at == T1
    assert store.as_utc(store.get_country(db, "spain").last_refreshed_at) == T1


def test_upsert_updates_case_insensitively_and_keeps_id(db):
    store.upsert_countries(db, [record("France", population=1)], T1)
    original_id = store.get_country(db, "France").id

    store.upsert_countries(db, [record("FRANCE", population=2, capital="Paris")], T2)

    rows = db.query(Country).all()
    assert len(rows) == 1
    assert rows[0].id == original_id
    assert rows[0].population == 2
    assert rows[0].capital == "Paris"
    assert store.as_utc(rows[0].last_refreshed_at) == T2


def test_upsert_repeated_name_in_one_batch(db):
    total, _ = store.upsert_countries(db, [record("Congo", population=1), record("congo", population=2)], T1)

    assert total == 2
    rows = db.query(Country).all()
    assert len(rows) == 1
    assert rows[0].population == 2


def test_upsert_failure_rolls_back_everything(db):
    seed(db)
    before = table_state(db)
    status_before = store.get_status(db)

    batch = [
        record("France", population=1),
        record("Portugal"),
        record("Broken", population=None),
        record("Spain"),
    ]
    with pytest.raises(UpsertError) as excinfo:
        store.upsert_countries(db, batch, T2)

    assert excinfo.value.step == "insert country Broken"
    assert table_state(db) == before
    assert store.get_country(db, "Portugal") is None
    assert store.get_status(db) == status_before


def test_status_table_holds_one_row(db):
    store.upsert_countries(db, [record("France")], T1)
    store.upsert_countries(db, [record("France"), record("Spain")], T2)

    assert db.query(RefreshStatus).count() == 1
    assert store.get_status(db).total_countries == 2
    assert store.get_status(db).last_refreshed_at == T2

    db.add(RefreshStatus(singleton=2, total_countries=0, last_refreshed_at=T1))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


# --- status reporter ---


def test_status_before_any_refresh_is_zero(db):
    status = store.get_status(db)
    assert status.total_countries == 0
    assert status.last_refreshed_at == store.ZERO_TIME


# --- query service ---


def test_list_defaults_to_name_ascending(db):
    seed(db)
    assert names(store.list_countries(db)) == ["Antarctica", "France", "Ghana", "Nigeria", "Zimbabwe"]


def test_list_unknown_sort_matches_name_asc(db):
    seed(db)
    assert names(store.list_countries(db, sort="bogus")) == names(store.list_countries(db, sort="name_asc"))


@pytest.mark.parametrize(
    "sort,expected",
    [
        ("name_desc", ["Zimbabwe", "Nigeria", "Ghana", "France", "Antarctica"]),
        ("gdp_desc", ["France", "Nigeria", "Ghana", "Antarctica", "Zimbabwe"]),
        ("gdp_asc", ["Antarctica", "Ghana", "Nigeria", "France", "Zimbabwe"]),
        ("population_desc", ["Nigeria", "France", "Ghana", "Zimbabwe", "Antarctica"]),
        ("population_asc", ["Antarctica", "Zimbabwe", "Ghana", "France", "Nigeria"]),
    ],
)
def test_list_sort_keys(db, sort, expected):
    seed(db)
    assert names(store.list_countries(db, sort=sort)) == expected


def test_list_filters_are_case_insensitive(db):
    seed(db)
    assert names(store.list_countries(db, region="africa")) == ["Ghana", "Nigeria", "Zimbabwe"]
    assert names(store.list_countries(db, currency="ngn")) == ["Nigeria"]
    assert names(store.list_countries(db, region="AFRICA", currency="GHS")) == ["Ghana"]
    assert store.list_countries(db, region="Oceania") == []


def test_get_country_case_insensitive(db):
    seed(db)
    assert store.get_country(db, "FRANCE").name == "France"
    assert store.get_country(db, "france").name == "France"
    assert store.get_country(db, "Atlantis") is None


def test_delete_country(db):
    seed(db)
    store.delete_country(db, "FRANCE")

    assert store.get_country(db, "France") is None
    with pytest.raises(CountryNotFoundError):
        store.delete_country(db, "france")


def test_top_by_gdp_puts_nulls_last(db):
    seed(db)
    assert names(store.top_by_gdp(db, 2)) == ["France", "Nigeria"]
    assert names(store.top_by_gdp(db, 10))[-1] == "Zimbabwe"
