import logging
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests
from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from config import COUNTRIES_API, EXCHANGE_RATE_API
import store
from summary_image import generate_summary_image

logger = logging.getLogger(__name__)

COUNTRIES_SOURCE = "restcountries.com"
RATES_SOURCE = "open.er-api.com"

GDP_MULTIPLIER_RANGE = (1000, 2000)
TOP_N_IMAGE = 5


class ExternalFetchError(Exception):
    """An upstream API was unreachable, answered non-2xx, or sent an undecodable body."""

    def __init__(self, source: str, cause):
        self.source = source
        self.cause = cause
        super().__init__(f"{source} API failed: {cause}")


class Currency(BaseModel):
    code: Optional[str] = None


class RestCountry(BaseModel):
    name: Optional[str] = None
    capital: Optional[str] = None
    region: Optional[str] = None
    population: Optional[int] = None
    flag: Optional[str] = None
    currencies: Optional[List[Currency]] = None


class ExchangeRates(BaseModel):
    rates: Dict[str, float]


_countries_adapter = TypeAdapter(List[RestCountry])


class CountryFetcher:
    """Fetches the two upstream datasets. A single failure is final, there is no retry."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        countries_url: str = COUNTRIES_API,
        rates_url: str = EXCHANGE_RATE_API,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.countries_url = countries_url
        self.rates_url = rates_url

    def get_json(self, url: str, source: str):
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalFetchError(source, e) from e

        if not 200 <= r.status_code < 300:
            raise ExternalFetchError(source, f"status {r.status_code}: {r.text}")

        try:
            return r.json()
        except ValueError as e:
            raise ExternalFetchError(source, f"invalid JSON: {e}") from e

    def fetch_countries(self) -> List[RestCountry]:
        data = self.get_json(self.countries_url, COUNTRIES_SOURCE)
        try:
            countries = _countries_adapter.validate_python(data)
        except ValidationError as e:
            raise ExternalFetchError(COUNTRIES_SOURCE, f"unexpected payload: {e}") from e
        logger.info("Fetched %d countries from %s", len(countries), COUNTRIES_SOURCE)
        return countries

    def fetch_exchange_rates(self) -> Dict[str, float]:
        data = self.get_json(self.rates_url, RATES_SOURCE)
        try:
            rates = ExchangeRates.model_validate(data).rates
        except ValidationError as e:
            raise ExternalFetchError(RATES_SOURCE, f"unexpected payload: {e}") from e
        logger.info("Fetched %d exchange rates from %s", len(rates), RATES_SOURCE)
        return rates


def estimate_gdp(
    population: int,
    currency_code: Optional[str],
    rates: Dict[str, float],
    rng=random,
) -> Tuple[Optional[str], Optional[float], Optional[float]]:
    """Return (currency_code, exchange_rate, estimated_gdp) for one country.

    The GDP is population * randint(1000, 2000) / rate, drawn from `rng` on
    every call, so it is only reproducible with a seeded or stubbed source.
    A known currency without a rate gives (code, None, None); no currency at
    all gives (None, None, 0.0).
    """
    if not currency_code:
        return None, None, 0.0

    rate = rates.get(currency_code)
    if rate is None or rate <= 0:
        return currency_code, None, None

    multiplier = rng.randint(*GDP_MULTIPLIER_RANGE)
    return currency_code, rate, population * multiplier / rate


def process_countries(countries: List[RestCountry], rates: Dict[str, float], rng=random) -> List[dict]:
    """Join upstream countries with exchange rates into upsert records."""
    records = []
    for c in countries:
        if not c.name:
            logger.warning("Skipping country without a name: %s", c)
            continue

        population = c.population or 0
        # only the first listed currency counts
        code = c.currencies[0].code if c.currencies else None
        currency_code, exchange_rate, estimated_gdp = estimate_gdp(population, code, rates, rng)
        if currency_code is None:
            logger.debug("No currency for %s, estimated_gdp set to 0", c.name)
        elif exchange_rate is None:
            logger.debug("No exchange rate for %s (%s)", c.name, currency_code)

        records.append(
            {
                "name": c.name,
                "capital": c.capital,
                "region": c.region,
                "population": population,
                "currency_code": currency_code,
                "exchange_rate": exchange_rate,
                "estimated_gdp": estimated_gdp,
                "flag_url": c.flag,
            }
        )
    return records


def run_refresh(
    db: Session,
    fetcher: CountryFetcher,
    image_path: Path,
    rng=random,
    now: Optional[datetime] = None,
) -> Tuple[int, datetime]:
    """Fetch, join, upsert, then redraw the summary image.

    Returns (total_countries, refreshed_at). ExternalFetchError and
    store.UpsertError propagate; image failures are only logged.
    """
    countries = fetcher.fetch_countries()
    rates = fetcher.fetch_exchange_rates()

    # one timestamp for every row and the status record
    refreshed_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    records = process_countries(countries, rates, rng)
    total, refreshed_at = store.upsert_countries(db, records, refreshed_at)

    try:
        top = store.top_by_gdp(db, TOP_N_IMAGE)
        generate_summary_image(total, top, refreshed_at, image_path)
    except Exception:
        logger.warning("Summary image generation failed", exc_info=True)

    return total, refreshed_at
