import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning
from libtrack.repositories.book_repo import classification_sql

logger = logging.getLogger(__name__)

RESERVATION_STATUSES = ("Pending", "Approved", "Rejected")


def _reservation_select() -> str:
    classification = classification_sql()
    return f"""
        SELECT
            r.reservation_id, r.book_id, r.research_paper_id, r.user_id, r.status, r.reason, r.updated_at,
            u.first_name, u.last_name, u.email,
            CASE
                WHEN r.book_id IS NOT NULL THEN 'book'
                WHEN r.research_paper_id IS NOT NULL THEN 'research_paper'
                ELSE 'unknown'
            END AS reservation_type,
            b.book_title, b.batch_registration_key, b.book_cover, b.book_number, b.book_qr,
            ba.book_author,
            {classification['columns']},
            rp.research_title, rp.year_publication, rp.research_paper_qr,
            (SELECT STRING_AGG(ra.author_name, ', ' ORDER BY ra.research_author_id)
               FROM research_author ra WHERE ra.research_paper_id = rp.research_paper_id) AS research_authors,
            dept.department_name AS research_department
        FROM reservations r
        LEFT JOIN users u ON r.user_id = u.user_id
        LEFT JOIN books b ON r.book_id = b.book_id
        {classification['joins']}
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        LEFT JOIN research_papers rp ON r.research_paper_id = rp.research_paper_id
        LEFT JOIN departments dept ON rp.department_id = dept.department_id
    """


async def list_reservations(
    db: AsyncSession, user_id: Optional[int] = None, status: Optional[str] = None
) -> List[Dict[str, Any]]:
    clauses, params = [], {}
    if user_id:
        clauses.append("r.user_id = :user_id")
        params["user_id"] = user_id
    if status:
        clauses.append("r.status = :status")
        params["status"] = status
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return await fetch_all(db, f"{_reservation_select()} {where} ORDER BY r.updated_at DESC", params)


async def get_reservation(db: AsyncSession, reservation_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db, f"{_reservation_select()} WHERE r.reservation_id = :reservation_id", {"reservation_id": reservation_id}
    )


async def lock_reservation(db: AsyncSession, reservation_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        """
        SELECT reservation_id, status, book_id, research_paper_id, user_id
        FROM reservations WHERE reservation_id = :reservation_id
        FOR UPDATE
        """,
        {"reservation_id": reservation_id},
    )


async def user_exists(db: AsyncSession, user_id: int) -> bool:
    row = await fetch_one(db, "SELECT user_id FROM users WHERE user_id = :user_id", {"user_id": user_id})
    return row is not None


async def get_book_status(db: AsyncSession, book_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(db, "SELECT book_id, status FROM books WHERE book_id = :book_id", {"book_id": book_id})


async def get_paper_status(db: AsyncSession, research_paper_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        "SELECT research_paper_id, status FROM research_papers WHERE research_paper_id = :rp",
        {"rp": research_paper_id},
    )


async def has_pending(db: AsyncSession, user_id: int, book_id: Optional[int], research_paper_id: Optional[int]) -> bool:
    column, value = ("book_id", book_id) if book_id else ("research_paper_id", research_paper_id)
    row = await fetch_one(
        db,
        f"""
        SELECT reservation_id FROM reservations
        WHERE user_id = :user_id AND {column} = :item_id AND status = 'Pending'
        LIMIT 1
        """,
        {"user_id": user_id, "item_id": value},
    )
    return row is not None


async def insert_reservation(
    db: AsyncSession, user_id: int, book_id: Optional[int], research_paper_id: Optional[int], reason: Optional[str]
) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO reservations (book_id, research_paper_id, user_id, status, reason, created_at, updated_at)
        VALUES (:book_id, :research_paper_id, :user_id, 'Pending', :reason, NOW(), NOW())
        RETURNING reservation_id
        """,
        {"book_id": book_id, "research_paper_id": research_paper_id, "user_id": user_id, "reason": reason},
    )


async def update_reservation(db: AsyncSession, reservation_id: int, values: Dict[str, Any]) -> int:
    updates = {k: v for k, v in values.items() if k in ("status", "reason")}
    assignments = "".join(f"{column} = :{column}, " for column in updates)
    return await execute(
        db,
        f"UPDATE reservations SET {assignments}updated_at = NOW() WHERE reservation_id = :reservation_id",
        {**updates, "reservation_id": reservation_id},
    )


async def delete_reservation(db: AsyncSession, reservation_id: int) -> int:
    return await execute(
        db, "DELETE FROM reservations WHERE reservation_id = :reservation_id", {"reservation_id": reservation_id}
    )


async def set_item_status(db: AsyncSession, book_id: Optional[int], research_paper_id: Optional[int], status: str) -> int:
    if book_id:
        return await execute(
            db, "UPDATE books SET status = :status, updated_at = NOW() WHERE book_id = :item_id",
            {"status": status, "item_id": book_id},
        )
    return await execute(
        db, "UPDATE research_papers SET status = :status, updated_at = NOW() WHERE research_paper_id = :item_id",
        {"status": status, "item_id": research_paper_id},
    )
