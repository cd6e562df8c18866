"""
Persistent store bootstrap
SQLAlchemy 2.x, PostgreSQL in production, SQLite for local runs and tests

The store handle is created through a ConnectionManager (singleflight) and
injected into the services that need it; nothing here is a module-level
connection.
"""
import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import parse_db_scheme, redact_database_url
from services.singleflight import ConnectionManager

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


@dataclass
class StoreHandle:
    """Ready-to-use store: engine plus session factory"""

    engine: Engine
    session_factory: sessionmaker

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Context manager for a session that commits on success and rolls back on error"""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def build_engine(url: str) -> Engine:
    if parse_db_scheme(url) == "sqlite":
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})
    engine_kwargs = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": 5,
        "max_overflow": 10,
    }
    return create_engine(url, **engine_kwargs)


def init_database(engine: Engine) -> None:
    """Create tables if they do not exist (idempotent)"""
    # models must be registered before create_all
    import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def open_store(url: str) -> StoreHandle:
    """Blocking store setup: engine, connectivity probe, schema"""
    engine = build_engine(url)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    init_database(engine)
    logger.info(f"✅ Store ready: {redact_database_url(url)}")
    return StoreHandle(engine=engine, session_factory=sessionmaker(autocommit=False, autoflush=False, bind=engine))


def create_store_manager(url: str, timeout: float = 30.0) -> "ConnectionManager[StoreHandle]":
    async def _factory() -> StoreHandle:
        return await asyncio.to_thread(open_store, url)

    async def _closer(handle: StoreHandle) -> None:
        await asyncio.to_thread(handle.engine.dispose)

    return ConnectionManager("store", _factory, closer=_closer, timeout=timeout)
