from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from station_reconciler.db.models import Base


def _connect_args(database_url: str, timeout_sec: float) -> dict:
    if database_url.startswith("sqlite"):
        return {"timeout": timeout_sec}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": max(1, int(timeout_sec)),
            "options": f"-c statement_timeout={int(timeout_sec * 1000)}",
        }
    return {}


def get_engine(database_url: str, timeout_sec: float = 5.0) -> Engine:
    kwargs = {}
    if not database_url.startswith("sqlite"):
        kwargs["pool_timeout"] = timeout_sec
    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=_connect_args(database_url, timeout_sec),
        future=True,
        **kwargs,
    )


def get_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def ensure_schema(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Ledger schema ensured (stations, rentals, station_snapshots)")
