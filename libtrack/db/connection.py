import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from libtrack.core.config import settings
from libtrack.db.schema_definitions import SCHEMA_DEFINITIONS

logger = logging.getLogger(__name__)

LIBRARY_DB = "library"

# Engines by configured name; only the library database is required
async_db_engines: Dict[str, AsyncEngine] = {}

library_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

# Declarative base for the tables this service owns
Base = declarative_base()


def _asyncpg_url(db_url: str) -> str:
    if db_url.startswith("postgresql+asyncpg://"):
        return db_url
    return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _create_async_engine(db_url: str) -> AsyncEngine:
    async_url = _asyncpg_url(db_url)
    host = async_url.split("@", 1)[1] if "@" in async_url else "?"
    logger.info(
        f"[DB] Engine for {host}: pool_size={settings.DB_POOL_SIZE}, "
        f"max_overflow={settings.DB_MAX_OVERFLOW}, pool_timeout={settings.DB_POOL_TIMEOUT}s"
    )
    return create_async_engine(
        async_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


async def _ping(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        value = (await conn.execute(text("SELECT 1"))).scalar()
    if value != 1:
        raise ValueError(f"Unexpected ping result {value!r}")


async def create_db_engines() -> None:
    """Connect every configured database and build the library session factory.

    A failure on the library database aborts startup; other entries are logged and skipped.
    """
    global library_session_factory

    configured: List[str] = []
    for db_config in settings.POSTGRES_SERVERS:
        db_name = db_config["name"]
        configured.append(db_name)
        engine = _create_async_engine(db_config["url"])
        try:
            await _ping(engine)
        except Exception as e:
            await engine.dispose()
            if db_name == LIBRARY_DB:
                logger.critical(f"[DB] Cannot reach the library database: {e}")
                raise RuntimeError("Failed to connect to the library database") from e
            logger.warning(f"[DB] Skipping database '{db_name}': {e}")
            continue
        async_db_engines[db_name] = engine
        logger.info(f"[DB] Connected to '{db_name}'.")

    library_engine = async_db_engines.get(LIBRARY_DB)
    if library_engine is None:
        logger.critical(
            f"[DB] No '{LIBRARY_DB}' entry in DATABASE_URLS (configured: {configured or 'none'}). "
            "Routes and the scheduler will report the database as unavailable."
        )
        return
    library_session_factory = async_sessionmaker(bind=library_engine, expire_on_commit=False, class_=AsyncSession)


async def create_service_tables() -> None:
    """Create scheduler_runs and reminder_log if missing. Library tables are never touched."""
    engine = async_db_engines.get(LIBRARY_DB)
    if engine is None:
        return
    from libtrack.models import scheduling  # noqa: F401  registers the models on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Scheduler tables ensured.")


def _missing_schema(sync_conn, expected_tables: Dict[str, dict]) -> Dict[str, List[str]]:
    """Map each expected table to its missing columns; a missing table maps to ['*']."""
    inspector = inspect(sync_conn)
    present = set(inspector.get_table_names())
    missing: Dict[str, List[str]] = {}
    for table_name, table_info in expected_tables.items():
        if table_name not in present:
            missing[table_name] = ["*"]
            continue
        columns = {col["name"] for col in inspector.get_columns(table_name)}
        absent = [col for col in table_info["columns"] if col not in columns]
        if absent:
            missing[table_name] = absent
    return missing


async def validate_schema_definitions() -> None:
    """Log tables and columns the library database lacks compared with SCHEMA_DEFINITIONS."""
    engine = async_db_engines.get(LIBRARY_DB)
    if engine is None:
        return
    expected = SCHEMA_DEFINITIONS[LIBRARY_DB]["tables"]
    try:
        async with engine.connect() as conn:
            missing = await conn.run_sync(_missing_schema, expected)
    except Exception as e:
        logger.error(f"[DB] Schema validation failed: {e}")
        return

    if not missing:
        logger.info(f"[DB] Schema matches the {len(expected)} expected tables.")
        return
    for table_name, columns in missing.items():
        if columns == ["*"]:
            logger.warning(f"[DB] Table '{table_name}' is missing.")
        else:
            logger.warning(f"[DB] Table '{table_name}' is missing columns: {', '.join(columns)}")


@asynccontextmanager
async def get_async_db_connection(db_name: str = LIBRARY_DB):
    engine = async_db_engines.get(db_name)
    if engine is None:
        raise ValueError(f"No async database engine found for '{db_name}'")
    async with engine.connect() as conn:
        yield conn


@asynccontextmanager
async def library_session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Session for work outside a request, such as the scheduler and chatbot tools."""
    if library_session_factory is None:
        raise RuntimeError("Library database is not initialized.")
    async with library_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def dispose_engines() -> None:
    global library_session_factory
    for db_name, engine in list(async_db_engines.items()):
        await engine.dispose()
        logger.info(f"[DB] Disposed engine for '{db_name}'.")
    async_db_engines.clear()
    library_session_factory = None


# --- FastAPI dependency --- #
async def get_library_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session. Services commit their own units of work."""
    if library_session_factory is None:
        logger.error("[DB] Session requested before the library database was initialized.")
        raise HTTPException(status_code=503, detail="Library database is not available.")

    async with library_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
