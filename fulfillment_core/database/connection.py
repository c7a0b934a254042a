"""Database connection and session management."""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.database.models import Base

# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_write_locking(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is deferred, so two readers that later both write
    deadlock instead of queueing. Emitting BEGIN IMMEDIATE serializes writers
    behind the busy timeout, which is what the conditional updates rely on.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async engine configured for the given store.

    Args:
        database_url: SQLAlchemy URL (postgresql+asyncpg:// or sqlite+aiosqlite://)
        settings: Settings to read pool and timeout options from

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    settings = settings or get_settings()

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=settings.database_echo,
            connect_args={"timeout": settings.sqlite_busy_timeout_seconds},
        )
        _enable_sqlite_write_locking(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options every service expects."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, settings)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine | None = None) -> None:
    """
    Close database connections and dispose of the engine.

    Without an engine the global one is closed; disposing the global engine
    explicitly also forgets it.
    """
    global _engine, _async_session_factory
    if engine is not None and engine is not _engine:
        await engine.dispose()
        return
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
