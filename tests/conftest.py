import pytest
from fastapi.testclient import TestClient

from config import Settings
from db import build_engine, make_session_factory, init_db
from main import create_app
from schema import Base
from service import ExternalFetchError, RestCountry, COUNTRIES_SOURCE, RATES_SOURCE


COUNTRIES = [
    {
        "name": "Nigeria",
        "capital": "Abuja",
        "region": "Africa",
        "population": 206139589,
        "flag": "https://flagcdn.com/ng.svg",
        "currencies": [{"code": "NGN"}],
    },
    {
        "name": "Ghana",
        "capital": "Accra",
        "region": "Africa",
        "population": 31072940,
        "flag": "https://flagcdn.com/gh.svg",
        "currencies": [{"code": "GHS"}],
    },
    {
        "name": "United States of America",
        "capital": "Washington, D.C.",
        "region": "Americas",
        "population": 329484123,
        "flag": "https://flagcdn.com/us.svg",
        "currencies": [{"code": "USD"}],
    },
    {
        "name": "Zimbabwe",
        "capital": "Harare",
        "region": "Africa",
        "population": 14862927,
        "flag": "https://flagcdn.com/zw.svg",
        "currencies": [{"code": "ZWL"}],
    },
    {
        "name": "Antarctica",
        "region": "Polar",
        "population": 1000,
        "flag": "https://flagcdn.com/aq.svg",
    },
]

RATES = {"NGN": 1600.0, "GHS": 15.0, "USD": 1.0}


class FixedRandom:
    """Stands in for random.Random; always returns the same multiplier."""

    def __init__(self, value):
        self.value = value

    def randint(self, a, b):
        return self.value


class FakeFetcher:
    def __init__(self, countries=None, rates=None, fail=None):
        self.countries = COUNTRIES if countries is None else countries
        self.rates = RATES if rates is None else rates
        self.fail = fail

    def fetch_countries(self):
        if self.fail == COUNTRIES_SOURCE:
            raise ExternalFetchError(COUNTRIES_SOURCE, "connection refused")
        return [RestCountry(**c) for c in self.countries]

    def fetch_exchange_rates(self):
        if self.fail == RATES_SOURCE:
            raise ExternalFetchError(RATES_SOURCE, "status 500: oops")
        return dict(self.rates)


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url="sqlite://", cache_dir=str(tmp_path / "cache"))


@pytest.fixture
def db():
    engine = build_engine(Settings(database_url="sqlite://"))
    init_db(Base, engine)
    session = make_session_factory(engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def app(settings, fetcher):
    return create_app(settings, fetcher=fetcher, rng=FixedRandom(1500))


@pytest.fixture
def client(app):
    return TestClient(app)
