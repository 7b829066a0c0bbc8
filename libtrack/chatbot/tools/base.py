import logging
from typing import Any, Dict

from langchain.tools import BaseTool
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import library_session_scope

logger = logging.getLogger(__name__)


class LibraryTool(BaseTool):
    """Read-only catalog tool. Each call runs on its own session.

    Subclasses implement `_query(db, **kwargs)` and return `{success, count, <payload>}`.
    Exceptions propagate so the executor can retry transient failures.
    """

    def _run(self, *args: Any, **kwargs: Any) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.name} only supports async execution.")

    async def _arun(self, **kwargs: Any) -> Dict[str, Any]:
        logger.debug(f"[{self.name}] Executing with args: {kwargs}")
        async with library_session_scope() as db:
            result = await self._query(db, **kwargs)
        logger.info(f"[{self.name}] Completed. count={result.get('count')} success={result.get('success')}")
        return result

    async def _query(self, db: AsyncSession, **kwargs: Any) -> Dict[str, Any]:
        raise NotImplementedError
