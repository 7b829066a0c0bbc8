from typing import Any, Dict, Type

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.chatbot.tools.base import LibraryTool
from libtrack.repositories import catalog_repo


class UserBorrowedBooksInput(BaseModel):
    user_id: int = Field(description="The user ID")


class UserTransactionHistoryInput(BaseModel):
    user_id: int = Field(description="The user ID")
    limit: int = Field(default=20, description="Maximum number of transactions to return (default: 20)")


class UserBorrowedBooksTool(LibraryTool):
    name: str = "get_user_borrowed_books"
    description: str = "Get the list of books currently borrowed by a user."
    args_schema: Type[BaseModel] = UserBorrowedBooksInput

    async def _query(self, db: AsyncSession, user_id: int = 0, **kwargs: Any) -> Dict[str, Any]:
        borrowed = await catalog_repo.user_borrowed_books(db, user_id)
        return {"success": True, "count": len(borrowed), "borrowed_books": borrowed}


class UserTransactionHistoryTool(LibraryTool):
    name: str = "get_user_transaction_history"
    description: str = "Get transaction history for a user including borrowing and return records."
    args_schema: Type[BaseModel] = UserTransactionHistoryInput

    async def _query(self, db: AsyncSession, user_id: int = 0, limit: int = 20, **kwargs: Any) -> Dict[str, Any]:
        transactions = await catalog_repo.user_transaction_history(db, user_id, limit)
        return {"success": True, "count": len(transactions), "transactions": transactions}
