from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from config import settings


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"timeout": settings.sqlite_busy_timeout, "check_same_thread": False}

    engine = create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        connect_args=connect_args,
    )
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    return engine


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Enforce foreign keys, fold case like Python and let SQLAlchemy own BEGIN.

    pysqlite defers BEGIN until the first write, which leaves the reads of a
    unit outside of it; emitting BEGIN ourselves keeps the whole unit atomic.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        # SQLite's own lower() only folds ASCII
        dbapi_connection.create_function("lower", 1, _unicode_lower)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.database_url, echo=settings.echo_sql)
SessionLocal = make_sessionmaker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def init_models(target: AsyncEngine | None = None):
    from models import Base

    async with (engine if target is None else target).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
