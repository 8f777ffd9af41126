import logging
import random
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, FileResponse
from pydantic import BaseModel, field_serializer
from sqlalchemy.orm import Session

from config import Settings
from db import build_engine, make_session_factory, init_db
from logger import setup_logging
from schema import Base
from service import CountryFetcher, ExternalFetchError, run_refresh
import store
from store import CountryNotFoundError, StoreError

logger = logging.getLogger(__name__)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """YYYY-MM-DDTHH:MM:SSZ in UTC."""
    value = store.as_utc(value)
    if value is None:
        return None
    # isoformat keeps the four-digit year for the zero timestamp, strftime does not
    return value.replace(tzinfo=None, microsecond=0).isoformat() + "Z"


class CountryOut(BaseModel):
    id: int
    name: str
    capital: Optional[str]
    region: Optional[str]
    population: int
    currency_code: Optional[str]
    exchange_rate: Optional[float]
    estimated_gdp: Optional[float]
    flag_url: Optional[str]
    last_refreshed_at: Optional[datetime]

    class Config:
        from_attributes = True

    @field_serializer("last_refreshed_at")
    def serialize_last_refreshed_at(self, value: Optional[datetime]):
        return format_timestamp(value)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_fetcher(request: Request) -> CountryFetcher:
    return request.app.state.fetcher


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rng(request: Request):
    return request.app.state.rng


def error_response(status_code: int, error: str, details=None) -> JSONResponse:
    content = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Build a simple field -> message map from validation errors
        details = {}
        for err in exc.errors():
            loc = err.get("loc", [])
            # prefer the last location token as the field name
            field = loc[-1] if loc else "body"
            details[str(field)] = err.get("msg")
        return error_response(400, "Validation failed", details)

    @app.exception_handler(ExternalFetchError)
    async def external_fetch_exception_handler(request: Request, exc: ExternalFetchError):
        logger.error("External data source failed: %s", exc)
        return error_response(503, "External data source unavailable", f"Could not fetch data from {exc.source}")

    @app.exception_handler(CountryNotFoundError)
    async def not_found_exception_handler(request: Request, exc: CountryNotFoundError):
        return error_response(404, "Country not found")

    @app.exception_handler(StoreError)
    async def store_exception_handler(request: Request, exc: StoreError):
        logger.error("Persistence error on %s %s: %s", request.method, request.url.path, exc)
        return error_response(500, "Internal server error")

    @app.exception_handler(Exception)
    async def internal_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, "Internal server error")


def register_routes(app: FastAPI):
    @app.get("/")
    def root():
        return {"message": "Country Currency & Exchange API"}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/countries/refresh")
    def refresh_countries(
        db: Session = Depends(get_db),
        fetcher: CountryFetcher = Depends(get_fetcher),
        settings: Settings = Depends(get_settings),
        rng=Depends(get_rng),
    ):
        total, refreshed_at = run_refresh(db, fetcher, settings.image_path, rng=rng)
        return {
            "message": "Countries refreshed successfully",
            "total_countries": total,
            "last_refreshed_at": format_timestamp(refreshed_at),
        }

    @app.get("/countries", response_model=List[CountryOut])
    def list_countries(
        region: Optional[str] = Query(None),
        currency: Optional[str] = Query(None),
        sort: Optional[str] = Query(None),
        db: Session = Depends(get_db),
    ):
        return store.list_countries(db, region=region, currency=currency, sort=sort)

    # registered before /countries/{name} so "image" is not taken for a country name
    @app.get("/countries/image")
    def get_image(settings: Settings = Depends(get_settings)):
        path = settings.image_path
        if not path.exists():
            return error_response(404, "Summary image not found")
        return FileResponse(str(path), media_type="image/png")

    @app.get("/countries/{name}", response_model=CountryOut)
    def get_country(name: str, db: Session = Depends(get_db)):
        c = store.get_country(db, name)
        if c is None:
            raise CountryNotFoundError(name)
        return c

    @app.delete("/countries/{name}")
    def delete_country(name: str, db: Session = Depends(get_db)):
        store.delete_country(db, name)
        return {"message": "Country deleted successfully"}

    @app.get("/status")
    def status(db: Session = Depends(get_db)):
        snapshot = store.get_status(db)
        return {
            "total_countries": snapshot.total_countries,
            "last_refreshed_at": format_timestamp(snapshot.last_refreshed_at),
        }


def create_app(
    settings: Optional[Settings] = None,
    fetcher: Optional[CountryFetcher] = None,
    rng=None,
) -> FastAPI:
    """Build the application with its collaborators.

    Anything not passed in is built from `settings` (by default read from the
    environment): the database engine and sessions, the upstream fetcher and
    the random source for GDP multipliers.
    """
    settings = settings or Settings.from_env()

    engine = build_engine(settings)
    # create tables if missing
    init_db(Base, engine)

    app = FastAPI(title="Country Currency & Exchange API")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.fetcher = fetcher or CountryFetcher(
        timeout=settings.http_timeout,
        countries_url=settings.countries_api_url,
        rates_url=settings.exchange_rate_api_url,
    )
    app.state.rng = rng or random.Random()

    register_exception_handlers(app)
    register_routes(app)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    setup_logging(settings.log_level)
    logger.info("Server listening on port %d", settings.port)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_config=None)
