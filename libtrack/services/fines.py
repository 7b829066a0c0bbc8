import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories import penalty_repo, settings_repo
from libtrack.repositories.base import RepositoryError
from libtrack.repositories.settings_repo import FINE_SETTING_COLUMNS
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str, None]

USER_TYPES = ("student", "faculty")


class FineError(ServiceError):
    pass


class FineSettings(BaseModel):
    """Per-role fine configuration, read once per operation."""
    student_daily_fine: float = Field(default_factory=lambda: settings.DEFAULT_STUDENT_DAILY_FINE)
    faculty_daily_fine: float = Field(default_factory=lambda: settings.DEFAULT_FACULTY_DAILY_FINE)
    student_borrow_days: int = Field(default_factory=lambda: settings.DEFAULT_STUDENT_BORROW_DAYS)
    faculty_borrow_days: int = Field(default_factory=lambda: settings.DEFAULT_FACULTY_BORROW_DAYS)

    def daily_rate(self, position: Optional[str]) -> float:
        return self.student_daily_fine if is_student(position) else self.faculty_daily_fine

    def allowed_days(self, position: Optional[str]) -> int:
        return self.student_borrow_days if is_student(position) else self.faculty_borrow_days


async def load_fine_settings(db: AsyncSession) -> FineSettings:
    """Fetch fine settings, falling back to the configured defaults when the row is missing or unreadable.

    The read runs in a savepoint so a failed SELECT leaves the caller's transaction usable.
    """
    try:
        async with db.begin_nested():
            row = await settings_repo.get_system_settings(db)
    except RepositoryError as e:
        logger.error(f"[Fines] Could not read system_settings, using defaults: {e}")
        return FineSettings()
    if not row:
        logger.info("[Fines] No system_settings row found, using defaults.")
        return FineSettings()
    return FineSettings(**{k: _to_number(v) for k, v in row.items() if v is not None})


def is_student(position: Optional[str]) -> bool:
    """Borrowers without a recorded role count as students."""
    return not position or position == "Student"


def as_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text_value = str(value).strip()
    try:
        return datetime.fromisoformat(text_value.replace("Z", "+00:00")).date()
    except ValueError:
        return date.fromisoformat(text_value[:10])


def elapsed_days(start: DateLike, today: Optional[date] = None) -> int:
    start_date = as_date(start)
    if start_date is None:
        return 0
    return ((today or date.today()) - start_date).days


def compute_overdue_fine(elapsed: int, allowed_days: int, daily_rate: float) -> float:
    """max(0, elapsed - allowed) * rate, to 2 decimals."""
    overdue_days = max(0, elapsed - allowed_days)
    return round(overdue_days * float(daily_rate), 2)


def lost_item_fee(overdue_fine: float, replacement_price: Any) -> float:
    return round(float(overdue_fine or 0) + float(_to_number(replacement_price) or 0), 2)


def returned_on_time(transaction: Dict[str, Any]) -> bool:
    """True when the transaction is Returned with a return date on or before its due date."""
    if (transaction.get("status") or "").strip().lower() != "returned":
        return False
    returned = as_date(transaction.get("return_date"))
    due = as_date(transaction.get("due_date"))
    return returned is not None and due is not None and returned <= due


def fine_for_transaction(
    transaction: Dict[str, Any],
    fine_settings: FineSettings,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Fine breakdown for one transaction row (needs transaction_date and position)."""
    position = transaction.get("position")
    user_type = "student" if is_student(position) else "faculty"
    daily_fine = fine_settings.daily_rate(position)
    allowed = fine_settings.allowed_days(position)

    if as_date(transaction.get("transaction_date")) is None:
        return {
            "fine": 0,
            "days_overdue": 0,
            "daily_fine": daily_fine,
            "user_type": user_type,
            "status": "no_due_date",
            "message": "No borrow date set for this transaction",
        }

    elapsed = elapsed_days(transaction.get("transaction_date"), today)
    days_overdue = max(0, elapsed - allowed)
    fine = compute_overdue_fine(elapsed, allowed, daily_fine)

    if days_overdue == 0:
        return {
            "fine": 0,
            "days_overdue": 0,
            "daily_fine": daily_fine,
            "user_type": user_type,
            "status": "on_time",
            "message": "Item not overdue",
        }

    return {
        "fine": fine,
        "days_overdue": days_overdue,
        "daily_fine": daily_fine,
        "user_type": user_type,
        "status": "overdue",
        "message": f"{days_overdue} day{'s' if days_overdue > 1 else ''} overdue at ₱{daily_fine:g}/day",
    }


def _to_number(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


# --- Reports ---

async def overdue_report(
    db: AsyncSession,
    department: Optional[str] = None,
    user_type: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Current fines for every non-returned borrow, plus per-borrower totals."""
    if user_type and user_type not in USER_TYPES:
        raise FineError(400, f"Invalid user_type. Must be one of: {', '.join(USER_TYPES)}")

    fine_settings = await load_fine_settings(db)
    rows = await penalty_repo.get_active_borrows(db, department=department, user_type=user_type)

    items = []
    per_user: Dict[Any, Dict[str, Any]] = {}
    for row in rows:
        breakdown = fine_for_transaction(row, fine_settings, today)
        if breakdown["fine"] <= 0:
            continue
        user_name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
        items.append({
            "transaction_id": row["transaction_id"],
            "reference_number": row.get("reference_number"),
            "user_id": row["user_id"],
            "user_name": user_name,
            "email": row.get("email"),
            "department": row.get("department_name"),
            "item_title": row.get("item_title"),
            "transaction_date": row.get("transaction_date"),
            "due_date": row.get("due_date"),
            **breakdown,
        })
        summary = per_user.setdefault(row["user_id"], {
            "user_id": row["user_id"],
            "user_name": user_name,
            "user_type": breakdown["user_type"],
            "department": row.get("department_name"),
            "overdue_items": 0,
            "total_fine": 0.0,
        })
        summary["overdue_items"] += 1
        summary["total_fine"] = round(summary["total_fine"] + breakdown["fine"], 2)

    return {
        "overdue_transactions": items,
        "user_summaries": sorted(per_user.values(), key=lambda s: s["total_fine"], reverse=True),
        "total_overdue": len(items),
        "total_fines": round(sum(i["fine"] for i in items), 2),
        "settings": fine_settings.model_dump(),
    }


async def transaction_fine(db: AsyncSession, transaction_id: int, today: Optional[date] = None) -> Dict[str, Any]:
    row = await penalty_repo.get_transaction_for_fine(db, transaction_id)
    if row is None:
        raise FineError(404, "Transaction not found")
    fine_settings = await load_fine_settings(db)
    return {
        "transaction_id": transaction_id,
        "user_id": row.get("user_id"),
        "reference_number": row.get("reference_number"),
        "item_title": row.get("item_title"),
        "transaction_date": row.get("transaction_date"),
        "due_date": row.get("due_date"),
        **fine_for_transaction(row, fine_settings, today),
    }


async def user_fines(db: AsyncSession, user_id: int, today: Optional[date] = None) -> Dict[str, Any]:
    """Fine breakdown for every item the borrower still has out, with totals."""
    fine_settings = await load_fine_settings(db)
    rows = await penalty_repo.get_active_borrows(db, user_id=user_id)

    transactions = []
    for row in rows:
        transactions.append({
            "transaction_id": row["transaction_id"],
            "reference_number": row.get("reference_number"),
            "item_title": row.get("item_title"),
            "transaction_date": row.get("transaction_date"),
            "due_date": row.get("due_date"),
            **fine_for_transaction(row, fine_settings, today),
        })

    first = rows[0] if rows else {}
    user_name = f"{first.get('first_name') or ''} {first.get('last_name') or ''}".strip()
    return {
        "user_id": user_id,
        "user_name": user_name or None,
        "user_type": transactions[0]["user_type"] if transactions else None,
        "department": first.get("department_acronym"),
        "total_fine": round(sum(t["fine"] for t in transactions), 2),
        "total_overdue_items": sum(1 for t in transactions if t["status"] == "overdue"),
        "total_borrowed_items": len(transactions),
        "transactions": transactions,
        "settings": fine_settings.model_dump(),
    }


async def update_fine_settings(db: AsyncSession, values: Dict[str, Any]) -> FineSettings:
    changes = {k: v for k, v in values.items() if k in FINE_SETTING_COLUMNS and v is not None}
    if not changes:
        raise FineError(400, f"At least one of {', '.join(FINE_SETTING_COLUMNS)} is required")
    if any(float(v) < 0 for v in changes.values()):
        raise FineError(400, "Fine settings cannot be negative")
    await settings_repo.update_fine_settings(db, changes)
    await db.commit()
    logger.info(f"[Fines] Updated fine settings: {changes}")
    return await load_fine_settings(db)
