from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.chatbot.tools.base import LibraryTool
from libtrack.chatbot.tools.book_tools import NoInput
from libtrack.repositories import catalog_repo


class FaqsInput(BaseModel):
    category: Optional[str] = Field(default="all", description="Optional category to filter FAQs")


class FaqsTool(LibraryTool):
    name: str = "get_faqs"
    description: str = (
        "Retrieve frequently asked questions about the library system. Useful for answering common "
        "queries about policies, services, and procedures."
    )
    args_schema: Type[BaseModel] = FaqsInput

    async def _query(self, db: AsyncSession, category: Optional[str] = "all", **kwargs: Any) -> Dict[str, Any]:
        faqs = await catalog_repo.active_faqs(db, category)
        return {"success": True, "count": len(faqs), "faqs": faqs}


class LibraryRulesTool(LibraryTool):
    name: str = "get_library_rules"
    description: str = "Get library rules and regulations including borrowing limits, loan periods, and penalties."
    args_schema: Type[BaseModel] = NoInput

    async def _query(self, db: AsyncSession, **kwargs: Any) -> Dict[str, Any]:
        rules = await catalog_repo.library_rules(db)
        return {"success": True, "count": len(rules), "rules": rules}
