import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

COUNTRIES_API = "https://restcountries.com/v2/all?fields=name,capital,region,population,flag,currencies"
EXCHANGE_RATE_API = "https://open.er-api.com/v6/latest/USD"


class Settings(BaseModel):
    """Runtime configuration, read from the environment (and .env)."""

    database_url: str = "sqlite:///./local.db"
    port: int = 8080
    cache_dir: str = "cache"
    countries_api_url: str = COUNTRIES_API
    exchange_rate_api_url: str = EXCHANGE_RATE_API
    http_timeout: float = 30
    db_pool_size: int = 10
    db_max_overflow: int = 90
    db_pool_recycle: int = 3600
    log_level: str = "INFO"

    @property
    def image_path(self) -> Path:
        return Path(self.cache_dir) / "summary.png"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        # only pass values that are actually set so the defaults above apply
        env = {
            "database_url": os.getenv("DATABASE_URL"),
            "port": os.getenv("PORT"),
            "cache_dir": os.getenv("CACHE_DIR"),
            "countries_api_url": os.getenv("COUNTRIES_API_URL"),
            "exchange_rate_api_url": os.getenv("EXCHANGE_RATE_API_URL"),
            "http_timeout": os.getenv("HTTP_TIMEOUT"),
            "db_pool_size": os.getenv("DB_POOL_SIZE"),
            "db_max_overflow": os.getenv("DB_MAX_OVERFLOW"),
            "db_pool_recycle": os.getenv("DB_POOL_RECYCLE"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in env.items() if v})
