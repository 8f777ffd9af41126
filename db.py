import logging
from urllib.parse import urlsplit, parse_qs, urlunsplit

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str):
    """Return (url, connect_args) ready for create_engine.

    The generic mysql:// scheme is pointed at the pure-Python pymysql driver,
    and postgres:// (as handed out by some hosts) is renamed to postgresql://.
    """
    if url.startswith("mysql://"):
        url = url.replace("mysql://", "mysql+pymysql://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    # Some provider URLs (e.g. Aiven) append query parameters like `ssl-mode=REQUIRED`.
    # SQLAlchemy would forward these to the DBAPI connect function, where names such
    # as `ssl-mode` are not valid keyword arguments. Strip the query string and
    # translate known params into connect_args instead.
    connect_args = {}
    parts = urlsplit(url)
    if parts.query and not url.startswith("sqlite"):
        qs = parse_qs(parts.query)
        ssl_mode = qs.get("ssl-mode") or qs.get("ssl_mode") or qs.get("sslmode")
        if ssl_mode:
            if url.startswith("postgresql"):
                connect_args["sslmode"] = ssl_mode[0].lower()
            else:
                # an empty dict asks pymysql for TLS with default verification
                connect_args["ssl"] = {}
        url = urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))

    return url, connect_args


def build_engine(settings: Settings) -> Engine:
    url, connect_args = normalize_database_url(settings.database_url)

    if url.startswith("sqlite"):
        # requests are served from a threadpool
        connect_args["check_same_thread"] = False
        kwargs = {}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, connect_args=connect_args, **kwargs)

    logger.info(
        "Database pool: size=%d overflow=%d recycle=%ds",
        settings.db_pool_size,
        settings.db_max_overflow,
        settings.db_pool_recycle,
    )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        connect_args=connect_args,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(Base, engine: Engine):
    """Create tables. Call with schema.Base."""
    Base.metadata.create_all(bind=engine)
