import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.chatbot.tools.base import LibraryTool
from libtrack.repositories import catalog_repo

logger = logging.getLogger(__name__)


class SearchResearchPapersInput(BaseModel):
    query: str = Field(description="Search query (paper title, author, or keywords)")
    limit: int = Field(default=10, description="Maximum number of results to return (default: 10)")


class RecommendResearchPapersInput(BaseModel):
    user_id: Optional[int] = Field(default=None, description="The user ID for personalized recommendations")
    limit: int = Field(default=5, description="Number of recommendations (default: 5)")


class SearchResearchPapersTool(LibraryTool):
    name: str = "search_research_papers"
    description: str = "Search for research papers in the library repository by title, author, or keywords."
    args_schema: Type[BaseModel] = SearchResearchPapersInput

    async def _query(self, db: AsyncSession, query: str = "", limit: int = 10, **kwargs: Any) -> Dict[str, Any]:
        papers = await catalog_repo.search_research_papers(db, (query or "").strip(), limit)
        return {"success": True, "count": len(papers), "papers": papers}


class RecommendResearchPapersTool(LibraryTool):
    """Papers from the user's department first, otherwise the newest available papers."""
    name: str = "recommend_research_papers"
    description: str = "Get personalized research paper recommendations based on user department and preferences."
    args_schema: Type[BaseModel] = RecommendResearchPapersInput

    async def _query(self, db: AsyncSession, user_id: Optional[int] = None, limit: int = 5, **kwargs: Any) -> Dict[str, Any]:
        papers = []
        if user_id:
            department = await catalog_repo.user_department(db, user_id)
            if department:
                logger.info(f"[{self.name}] Recommending research papers for department: {department}")
                papers = await catalog_repo.recommend_papers(db, department, limit)
        if not papers:
            papers = await catalog_repo.recommend_papers(db, None, limit)
        return {
            "success": True,
            "count": len(papers),
            "papers": papers,
            "source": "personalized" if user_id else "general",
        }
