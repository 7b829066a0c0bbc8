import logging
import re
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Type

from pydantic import BaseModel, Field
from rapidfuzz import fuzz, process as rapidfuzz_process
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.chatbot.tools.base import LibraryTool
from libtrack.repositories import catalog_repo

logger = logging.getLogger(__name__)

_QUERY_PUNCTUATION = re.compile(r"[.,;:/()\[\]\"']")
_DOTTED_INITIAL = re.compile(r"\b([A-Za-z])\.(?=\s|$)")


def tokenize_search_query(query: str, stopwords: FrozenSet[str]) -> List[str]:
    """Lowercased search tokens without stopwords or one-letter noise.

    Initials written with a dot ("H. Lee") are kept so author names stored as
    "Lee, H." still match.
    """
    original = query or ""
    initials = {m.lower() for m in _DOTTED_INITIAL.findall(original)}
    tokens = []
    for token in _QUERY_PUNCTUATION.sub(" ", original).split():
        token = token.lower()
        if token in initials:
            tokens.append(token)
        elif token in stopwords or len(token) < 2:
            continue
        else:
            tokens.append(token)
    return tokens


# --- Input Schemas ---
class SearchBooksInput(BaseModel):
    query: str = Field(description="Search query (book title, author name, ISBN, or keywords)")
    limit: int = Field(default=10, description="Maximum number of results to return (default: 10)")


class BookAvailabilityInput(BaseModel):
    book_id: int = Field(description="The unique ID of the book")


class PopularBooksInput(BaseModel):
    type: Literal["most_borrowed", "highest_rated", "recently_added"] = Field(
        default="most_borrowed", description="Type of popularity metric"
    )
    limit: int = Field(default=10, description="Number of books to return (default: 10)")


class RecommendBooksInput(BaseModel):
    user_id: Optional[int] = Field(default=None, description="The user ID for personalized recommendations")
    category: Optional[str] = Field(default=None, description="Optional book category to focus recommendations")
    limit: int = Field(default=5, description="Number of recommendations (default: 5)")


class NoInput(BaseModel):
    pass


# --- Tool Implementations ---
class SearchBooksTool(LibraryTool):
    """Catalog search: author-focused pass first, then a broad pass, then fuzzy title matching."""
    name: str = "search_books"
    description: str = (
        "Search for books in the library catalog by title, author, ISBN, or keywords. "
        "Returns book details including availability status."
    )
    args_schema: Type[BaseModel] = SearchBooksInput
    fuzzy_score_threshold: int = 80
    fuzzy_max_titles: int = 5

    STOPWORDS: ClassVar[FrozenSet[str]] = frozenset({
        "a", "an", "the", "by", "of", "for", "can", "could", "would", "should", "you", "please", "find",
        "book", "books", "is", "are", "in", "on", "at", "to", "from", "with", "and", "or", "that", "this",
        "these", "those",
    })

    async def _query(self, db: AsyncSession, query: str = "", limit: int = 10, **kwargs: Any) -> Dict[str, Any]:
        query = (query or "").strip()
        tokens = tokenize_search_query(query, self.STOPWORDS)

        # Surname-looking last token: narrow to author matches before the broad search
        surname = tokens[-1] if tokens else None
        if surname and len(surname) >= 3:
            try:
                author_books = await catalog_repo.search_books_by_author(db, surname, limit)
                if author_books:
                    return {"success": True, "count": len(author_books), "books": author_books}
            except Exception as e:
                logger.warning(f"[{self.name}] Author-focused query failed, falling back to broad search: {e}")
                await db.rollback()

        books = await catalog_repo.search_books_broad(db, query, tokens, limit)
        if not books and query:
            books = await self._fuzzy_title_matches(db, query, limit)
        if not books:
            logger.info(f"[{self.name}] No books matched query '{query}' (tokens: {tokens}).")
        return {"success": True, "count": len(books), "books": books}

    async def _fuzzy_title_matches(self, db: AsyncSession, query: str, limit: int) -> List[Dict[str, Any]]:
        titles = await catalog_repo.list_book_titles(db)
        if not titles:
            return []
        matches = rapidfuzz_process.extract(
            query, titles, scorer=fuzz.WRatio, limit=self.fuzzy_max_titles, score_cutoff=self.fuzzy_score_threshold
        )
        matched_titles = [title for title, score, _ in matches]
        if matched_titles:
            logger.debug(f"[{self.name}] Fuzzy title matches for '{query}': {matched_titles}")
        return await catalog_repo.books_by_titles(db, matched_titles, limit)


class BookAvailabilityTool(LibraryTool):
    name: str = "get_book_availability"
    description: str = "Check the availability and detailed information of a specific book by its ID."
    args_schema: Type[BaseModel] = BookAvailabilityInput

    async def _query(self, db: AsyncSession, book_id: int = 0, **kwargs: Any) -> Dict[str, Any]:
        book = await catalog_repo.get_book_availability(db, book_id)
        if book is None:
            return {"success": False, "error": "Book not found"}
        return {"success": True, "book": book}


class PopularBooksTool(LibraryTool):
    name: str = "get_popular_books"
    description: str = "Get the most borrowed, highest-rated or most recently added books in the library."
    args_schema: Type[BaseModel] = PopularBooksInput

    async def _query(self, db: AsyncSession, type: str = "most_borrowed", limit: int = 10, **kwargs: Any) -> Dict[str, Any]:
        books = await catalog_repo.popular_books(db, type, limit)
        return {"success": True, "type": type, "count": len(books), "books": books}


class RecommendBooksTool(LibraryTool):
    """Borrowing history, then the user's department, then overall popularity."""
    name: str = "recommend_books"
    description: str = "Get personalized book recommendations based on user reading history and preferences."
    args_schema: Type[BaseModel] = RecommendBooksInput

    async def _query(
        self,
        db: AsyncSession,
        user_id: Optional[int] = None,
        category: Optional[str] = None,
        limit: int = 5,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        recommendations: List[Dict[str, Any]] = []

        categories = [category] if category else []
        if not categories and user_id:
            categories = await catalog_repo.preferred_categories(db, user_id)
            if categories:
                logger.info(f"[{self.name}] Preferred categories for user {user_id}: {categories}")
        if categories:
            recommendations = await catalog_repo.recommend_by_categories(db, user_id, categories, limit)

        if not recommendations and user_id:
            department = await catalog_repo.user_department(db, user_id)
            if department:
                recommendations = await catalog_repo.recommend_by_department(db, department, limit)

        if not recommendations:
            recommendations = await catalog_repo.recommend_general(db, limit)

        if recommendations:
            source = "personalized" if user_id else "general"
        else:
            source = "none"
        return {"success": True, "count": len(recommendations), "recommendations": recommendations, "source": source}


class BookCategoriesTool(LibraryTool):
    name: str = "get_book_categories"
    description: str = "Get all available book categories in the library."
    args_schema: Type[BaseModel] = NoInput

    async def _query(self, db: AsyncSession, **kwargs: Any) -> Dict[str, Any]:
        categories = await catalog_repo.book_categories(db)
        return {"success": True, "count": len(categories), "categories": categories}
