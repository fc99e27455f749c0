"""Async engine and session factory for the incident database."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import IncidentDeskConfig
from .models.base import Base
from .utils.logging import get_logger

logger = get_logger("database")

_engine = None
_session_factory = None


def _is_sqlite_file(url: str) -> bool:
    return url.startswith("sqlite") and ":memory:" not in url


def _apply_sqlite_pragmas(engine, busy_timeout_seconds: int, wal: bool) -> None:
    """Per-connection PRAGMAs so live-query reads don't queue behind writers."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_seconds * 1000}")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def get_engine(config: IncidentDeskConfig):
    global _engine
    if _engine is None:
        url = config.database_url
        _engine = create_async_engine(url, pool_pre_ping=True)
        if url.startswith("sqlite"):
            _apply_sqlite_pragmas(_engine, config.db_busy_timeout, wal=_is_sqlite_file(url))
    return _engine


def get_session_factory(config: IncidentDeskConfig) -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(config), expire_on_commit=False)
    return _session_factory


async def create_tables(config: IncidentDeskConfig) -> None:
    async with get_engine(config).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_ensured", tables=sorted(Base.metadata.tables))


async def close_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
