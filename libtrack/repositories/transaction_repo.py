import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute

logger = logging.getLogger(__name__)


async def get_transactions_for_return(
    db: AsyncSession,
    transaction_id: Optional[int] = None,
    reference_number: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """All transactions under one transaction id or one reference number, locked for the return."""
    if transaction_id is not None:
        where, params = "t.transaction_id = :transaction_id", {"transaction_id": transaction_id}
    else:
        where, params = "t.reference_number = :reference_number", {"reference_number": reference_number}
    return await fetch_all(
        db,
        f"""
        SELECT t.transaction_id, t.reference_number, t.user_id, t.book_id, t.research_paper_id,
               t.status, t.receipt_image
        FROM transactions t
        WHERE {where}
        ORDER BY t.transaction_id
        FOR UPDATE
        """,
        params,
    )


async def get_latest_penalty(db: AsyncSession, transaction_id: int, user_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        """
        SELECT penalty_id, fine, status
        FROM penalties
        WHERE transaction_id = :transaction_id AND user_id = :user_id
        ORDER BY updated_at DESC NULLS LAST, penalty_id DESC
        LIMIT 1
        """,
        {"transaction_id": transaction_id, "user_id": user_id},
    )


async def get_borrower(db: AsyncSession, user_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        "SELECT user_id, restriction, first_name, last_name, email, position FROM users WHERE user_id = :user_id",
        {"user_id": user_id},
    )


async def mark_returned(db: AsyncSession, transaction_id: int, return_date: datetime, receipt_image: Optional[str] = None) -> int:
    if receipt_image:
        return await execute(
            db,
            """
            UPDATE transactions SET status = 'Returned', return_date = :return_date, receipt_image = :receipt_image
            WHERE transaction_id = :transaction_id
            """,
            {"transaction_id": transaction_id, "return_date": return_date, "receipt_image": receipt_image},
        )
    return await execute(
        db,
        "UPDATE transactions SET status = 'Returned', return_date = :return_date WHERE transaction_id = :transaction_id",
        {"transaction_id": transaction_id, "return_date": return_date},
    )


# --- Item status ---

async def set_book_status(db: AsyncSession, book_id: int, status: str) -> Optional[str]:
    """Set a book copy's status and return its title, or None if the copy does not exist."""
    row = await fetch_one(
        db,
        "UPDATE books SET status = :status WHERE book_id = :book_id RETURNING book_title",
        {"book_id": book_id, "status": status},
    )
    return row["book_title"] if row else None


async def set_research_status(db: AsyncSession, research_paper_id: int, status: str) -> Optional[str]:
    row = await fetch_one(
        db,
        """
        UPDATE research_papers SET status = :status
        WHERE research_paper_id = :research_paper_id
        RETURNING research_title
        """,
        {"research_paper_id": research_paper_id, "status": status},
    )
    return row["research_title"] if row else None
