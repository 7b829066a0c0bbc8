import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import reservation_repo
from libtrack.repositories.book_repo import present_book
from libtrack.repositories.reservation_repo import RESERVATION_STATUSES
from libtrack.services.notifications import event_hub
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)

# Item status applied when a reservation moves to the given status
ITEM_STATUS_ON = {"Approved": "Reserved", "Rejected": "Available"}


class ReservationError(ServiceError):
    pass


def present_reservation(row: Dict[str, Any], include_user: bool = True) -> Dict[str, Any]:
    """Flatten a joined reservation row into its book or research-paper shape."""
    data = {
        "reservation_id": row["reservation_id"],
        "status": row.get("status"),
        "reason": row.get("reason"),
        "updated_at": row.get("updated_at"),
        "reservation_type": row.get("reservation_type"),
    }
    if include_user:
        data.update({
            "user_id": row.get("user_id"),
            "user_name": f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip(),
            "email": row.get("email"),
        })
    if row.get("reservation_type") == "book":
        book = present_book(row)
        data.update({
            "book_id": row.get("book_id"),
            "book_title": row.get("book_title"),
            "batch_registration_key": row.get("batch_registration_key"),
            "book_cover": book.get("book_cover"),
            "book_number": row.get("book_number"),
            "book_qr": row.get("book_qr"),
            "author": row.get("book_author"),
            "genre": row.get("genre"),
        })
    elif row.get("reservation_type") == "research_paper":
        data.update({
            "research_paper_id": row.get("research_paper_id"),
            "research_title": row.get("research_title"),
            "year_publication": row.get("year_publication"),
            "research_paper_qr": row.get("research_paper_qr"),
            "authors": row.get("research_authors"),
            "department": row.get("research_department"),
        })
    return data


async def list_reservations(db: AsyncSession, user_id: Optional[int] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    rows = await reservation_repo.list_reservations(db, user_id=user_id, status=status)
    return [present_reservation(r) for r in rows]


async def list_user_reservations(db: AsyncSession, user_id: int, status: Optional[str] = None) -> List[Dict[str, Any]]:
    rows = await reservation_repo.list_reservations(db, user_id=user_id, status=status)
    return [present_reservation(r, include_user=False) for r in rows]


async def get_reservation(db: AsyncSession, reservation_id: int) -> Dict[str, Any]:
    row = await reservation_repo.get_reservation(db, reservation_id)
    if row is None:
        raise ReservationError(404, "Reservation not found")
    return present_reservation(row)


async def create_reservation(
    db: AsyncSession,
    user_id: Optional[int],
    book_id: Optional[int] = None,
    research_paper_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    if not user_id:
        raise ReservationError(400, "User ID is required")
    if bool(book_id) == bool(research_paper_id):
        raise ReservationError(400, "Must specify either book_id or research_paper_id, but not both")
    if not await reservation_repo.user_exists(db, user_id):
        raise ReservationError(404, "User not found")

    if book_id:
        book = await reservation_repo.get_book_status(db, book_id)
        if book is None:
            raise ReservationError(404, "Book not found")
        if book.get("status") != "Available":
            raise ReservationError(400, f"Book is currently {book.get('status')} and cannot be reserved")
        if await reservation_repo.has_pending(db, user_id, book_id, None):
            raise ReservationError(400, "You already have a pending reservation for this book")
    else:
        paper = await reservation_repo.get_paper_status(db, research_paper_id)
        if paper is None:
            raise ReservationError(404, "Research paper not found")
        if await reservation_repo.has_pending(db, user_id, None, research_paper_id):
            raise ReservationError(400, "You already have a pending reservation for this research paper")

    reservation_id = await reservation_repo.insert_reservation(db, user_id, book_id or None, research_paper_id or None, reason)
    await db.commit()
    logger.info(f"[Reservations] Created reservation {reservation_id} for user {user_id}.")
    return {
        "reservation_id": reservation_id,
        "book_id": book_id or None,
        "research_paper_id": research_paper_id or None,
        "user_id": user_id,
        "status": "Pending",
        "reason": reason,
    }


async def update_reservation(
    db: AsyncSession, reservation_id: int, status: Optional[str] = None, reason: Optional[str] = None
) -> Dict[str, Any]:
    """Change status and/or reason. Approval reserves the item, rejection frees it."""
    if status is not None and status not in RESERVATION_STATUSES:
        raise ReservationError(400, f"Invalid status. Must be one of: {', '.join(RESERVATION_STATUSES)}")

    reservation = await reservation_repo.lock_reservation(db, reservation_id)
    if reservation is None:
        await db.rollback()
        raise ReservationError(404, "Reservation not found")

    values = {}
    if status is not None:
        values["status"] = status
    if reason is not None:
        values["reason"] = reason
    await reservation_repo.update_reservation(db, reservation_id, values)

    item_status = ITEM_STATUS_ON.get(status)
    if item_status and (reservation.get("book_id") or reservation.get("research_paper_id")):
        await reservation_repo.set_item_status(
            db, reservation.get("book_id"), reservation.get("research_paper_id"), item_status
        )
    await db.commit()

    if status:
        event_hub.broadcast("RESERVATION_UPDATED", {
            "reservation_id": reservation_id,
            "user_id": reservation.get("user_id"),
            "status": status,
        })
    return {
        "reservation_id": reservation_id,
        "status": status or reservation.get("status"),
        "reason": reason,
        "book_id": reservation.get("book_id"),
        "research_paper_id": reservation.get("research_paper_id"),
    }


async def delete_reservation(db: AsyncSession, reservation_id: int) -> Dict[str, Any]:
    deleted = await reservation_repo.delete_reservation(db, reservation_id)
    if not deleted:
        await db.rollback()
        raise ReservationError(404, "Reservation not found")
    await db.commit()
    return {"reservation_id": reservation_id}
