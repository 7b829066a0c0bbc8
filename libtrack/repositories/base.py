import logging
from typing import Any, Dict, List, Optional

import sqlalchemy.exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# --- Custom Exceptions ---
class RepositoryError(Exception):
    """Base class for repository exceptions."""
    pass

class RecordNotFound(RepositoryError):
    """Indicates a requested record was not found."""
    pass

class DuplicateRecordError(RepositoryError):
    """Indicates an insert/update conflicted with an existing record."""
    pass
# --- End Custom Exceptions ---


async def fetch_all(db: AsyncSession, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Run a read query and return rows as plain dicts."""
    try:
        result = await db.execute(text(sql), params or {})
        return [dict(row) for row in result.mappings().all()]
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.error(f"Query failed: {e}", exc_info=True)
        raise RepositoryError(str(e)) from e


async def fetch_one(db: AsyncSession, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Run a read query and return the first row as a dict, or None."""
    try:
        result = await db.execute(text(sql), params or {})
        row = result.mappings().first()
        return dict(row) if row is not None else None
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.error(f"Query failed: {e}", exc_info=True)
        raise RepositoryError(str(e)) from e


async def execute(db: AsyncSession, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
    """Run a write statement and return the affected row count."""
    try:
        result = await db.execute(text(sql), params or {})
        return result.rowcount or 0
    except sqlalchemy.exc.IntegrityError as e:
        logger.warning(f"Integrity error: {e}")
        raise DuplicateRecordError(str(e.orig) if e.orig else str(e)) from e
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.error(f"Statement failed: {e}", exc_info=True)
        raise RepositoryError(str(e)) from e


async def insert_returning(db: AsyncSession, sql: str, params: Optional[Dict[str, Any]] = None) -> Any:
    """Run an INSERT ... RETURNING <id> and return the id."""
    try:
        result = await db.execute(text(sql), params or {})
        return result.scalar_one()
    except sqlalchemy.exc.IntegrityError as e:
        logger.warning(f"Integrity error: {e}")
        raise DuplicateRecordError(str(e.orig) if e.orig else str(e)) from e
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.error(f"Insert failed: {e}", exc_info=True)
        raise RepositoryError(str(e)) from e
