"""Penalty lifecycle: the locked upsert, the overdue sweep, waive/pay transitions,
lost-item marking and the maintenance cleanup.

Every write to a (transaction, borrower) pair happens while the transaction row is held
with ``SELECT ... FOR UPDATE``, so at most one unpaid penalty row exists per pair and
settled (Paid/Waived) rows are never touched by automated recomputation.
"""
import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories import penalty_repo, transaction_repo
from libtrack.repositories.base import RecordNotFound
from libtrack.services.fines import (
    fine_for_transaction,
    load_fine_settings,
    lost_item_fee,
    returned_on_time,
)
from libtrack.services.errors import ServiceError
from libtrack.services.notifications import event_hub, push_user_notification, record_activity

logger = logging.getLogger(__name__)

SETTLED_STATUSES = ("Paid", "Waived")


# --- Domain Exceptions ---
class PenaltyValidationError(ServiceError):
    """Request is missing a required value."""
    def __init__(self, message: str):
        super().__init__(400, message)

class PenaltyStateError(ServiceError):
    """Transition not allowed from the penalty's current state."""
    def __init__(self, message: str):
        super().__init__(400, message)
# --- End Domain Exceptions ---


def is_settled(status: Optional[str]) -> bool:
    return status in SETTLED_STATUSES


def _user_name(row: Dict[str, Any]) -> str:
    name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
    return name or "Unknown User"


def _money(value: Any) -> float:
    return round(float(value or 0), 2)


# --- Upsert ---

async def _upsert_locked(
    db: AsyncSession,
    transaction: Dict[str, Any],
    user_id: int,
    fine_amount: float,
    penalty_type: str = "overdue",
    book_price: float = 0,
) -> Dict[str, Any]:
    """Upsert for a pair whose transaction row is already locked by the caller."""
    transaction_id = transaction["transaction_id"]

    if returned_on_time(transaction):
        deleted = await penalty_repo.delete_unpaid_for_pair(db, transaction_id, user_id)
        if deleted:
            logger.info(f"[PenaltyEngine] Removed {deleted} unpaid penalty row(s) for on-time return of transaction {transaction_id}.")
        return {
            "created": False,
            "updated": False,
            "skipped": True,
            "penalty_id": None,
            "message": "Book returned on time, no penalty needed",
        }

    rows = await penalty_repo.lock_pair_penalties(db, transaction_id, user_id)
    latest = rows[0] if rows else None

    if latest and is_settled(latest.get("status")):
        return {
            "created": False,
            "updated": False,
            "skipped": True,
            "penalty_id": latest["penalty_id"],
            "message": f"Penalty already {latest['status'].lower()}",
        }

    if latest and penalty_type == "overdue" and latest.get("penalty_type") == "lost_damaged":
        # The lost-item fee already includes the overdue fine up to the day it was marked
        return {
            "created": False,
            "updated": False,
            "skipped": True,
            "penalty_id": latest["penalty_id"],
            "message": "Lost-item penalty already applied",
        }

    if latest:
        penalty_id = latest["penalty_id"]
        await penalty_repo.update_penalty_fine(db, penalty_id, fine_amount, penalty_type, book_price)
        removed = await penalty_repo.delete_unpaid_for_pair(db, transaction_id, user_id, keep_penalty_id=penalty_id)
        if removed:
            logger.warning(f"[PenaltyEngine] Purged {removed} duplicate unpaid row(s) for transaction {transaction_id}, user {user_id}.")
        return {
            "created": False,
            "updated": True,
            "skipped": False,
            "penalty_id": penalty_id,
            "message": f"Penalty updated to ₱{fine_amount:.2f}",
        }

    await penalty_repo.delete_unpaid_for_pair(db, transaction_id, user_id)
    penalty_id = await penalty_repo.insert_penalty(db, transaction_id, user_id, fine_amount, penalty_type, book_price)
    return {
        "created": True,
        "updated": False,
        "skipped": False,
        "penalty_id": penalty_id,
        "message": f"Penalty created for ₱{fine_amount:.2f}",
    }


async def create_or_update_penalty(
    db: AsyncSession,
    transaction_id: int,
    user_id: int,
    fine_amount: float,
    penalty_type: str = "overdue",
    book_price: float = 0,
    commit: bool = True,
) -> Dict[str, Any]:
    """Create or update the single unpaid penalty for (transaction, borrower).

    Returns a tagged result ``{created, updated, skipped, penalty_id, message}``.
    Raises RecordNotFound when the transaction does not exist.
    """
    transaction = await penalty_repo.lock_transaction(db, transaction_id)
    if transaction is None:
        raise RecordNotFound(f"Transaction {transaction_id} not found")

    result = await _upsert_locked(db, transaction, user_id, _money(fine_amount), penalty_type, book_price)
    if commit:
        await db.commit()
    return result


# --- Overdue sweep ---

async def run_overdue_sweep(db: AsyncSession, today: Optional[date] = None) -> Dict[str, Any]:
    """Scan non-returned borrow transactions past their allowed period and upsert their fines.

    Each candidate commits on its own so a failing row neither rolls back nor blocks the others.
    """
    start_time = time.perf_counter()
    fine_settings = await load_fine_settings(db)
    candidates = await penalty_repo.get_overdue_candidates(
        db, fine_settings.student_borrow_days, fine_settings.faculty_borrow_days
    )
    logger.info(f"[PenaltyEngine] Overdue sweep found {len(candidates)} candidate transaction(s).")

    created = updated = skipped = 0
    errors: List[Dict[str, Any]] = []
    for row in candidates:
        transaction_id = row["transaction_id"]
        try:
            breakdown = fine_for_transaction(row, fine_settings, today)
            if breakdown["fine"] <= 0:
                skipped += 1
                continue
            result = await create_or_update_penalty(db, transaction_id, row["user_id"], breakdown["fine"])
        except Exception as e:
            await db.rollback()
            logger.error(f"[PenaltyEngine] Sweep failed for transaction {transaction_id}: {e}")
            errors.append({"transaction_id": transaction_id, "error": str(e)})
            continue

        if result["created"]:
            created += 1
        elif result["updated"]:
            updated += 1
        else:
            skipped += 1

    duration = time.perf_counter() - start_time
    logger.info(
        f"[PenaltyEngine] Sweep done in {duration:.2f}s: created={created} updated={updated} "
        f"skipped={skipped} errors={len(errors)}"
    )
    return {
        "total_processed": len(candidates),
        "penalties_created": created,
        "penalties_updated": updated,
        "penalties_skipped": skipped,
        "errors": len(errors),
        "error_details": errors,
        "settings": fine_settings.model_dump(),
    }


# --- State transitions ---

async def waive_penalty(
    db: AsyncSession,
    penalty_id: int,
    reason: Optional[str],
    waived_by: Optional[str] = None,
    admin_id: Optional[int] = None,
) -> Dict[str, Any]:
    if not reason or not reason.strip():
        raise PenaltyValidationError("Waive reason is required")
    reason = reason.strip()

    penalty = await penalty_repo.lock_penalty(db, penalty_id)
    if penalty is None:
        raise RecordNotFound(f"Penalty {penalty_id} not found")
    if is_settled(penalty.get("status")):
        await db.rollback()
        raise PenaltyStateError(f"Penalty is already {penalty['status'].lower()}")

    await penalty_repo.mark_waived(db, penalty_id, reason, waived_by)
    await db.commit()
    logger.info(f"[PenaltyEngine] Penalty {penalty_id} waived by {waived_by or 'admin'}.")

    user_id = penalty["user_id"]
    fine = _money(penalty.get("fine"))
    await push_user_notification(
        db,
        user_id,
        "penalty_waived",
        "Penalty Waived",
        f"Your penalty of ₱{fine:.2f} for '{penalty.get('item_title')}' has been waived. Reason: {reason}",
        priority="medium",
        related_transaction_id=penalty.get("transaction_id"),
    )
    event_hub.broadcast("PENALTY_WAIVED", {
        "penalty_id": penalty_id,
        "user_id": user_id,
        "user_name": _user_name(penalty),
        "fine_amount": fine,
        "waive_reason": reason,
        "waived_by": waived_by,
    })
    await record_activity(
        db,
        user_id,
        "PENALTY_WAIVED",
        f"Penalty #{penalty_id} of ₱{fine:.2f} waived. Reason: {reason}",
        admin_id=admin_id,
        admin_name=waived_by,
    )
    await db.commit()

    return {
        "penalty_id": penalty_id,
        "user_id": user_id,
        "status": "Waived",
        "fine": fine,
        "waive_reason": reason,
        "waived_by": waived_by,
    }


async def pay_penalty(
    db: AsyncSession,
    penalty_id: int,
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
    admin_id: Optional[int] = None,
    admin_name: Optional[str] = None,
    semantics: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark a penalty Paid, keeping its fine for audit.

    With ``strict`` semantics paying an already Paid penalty is rejected; with ``idempotent``
    it is a no-op that reports ``already_paid``. A Waived penalty can never be paid.
    """
    semantics = semantics or settings.PAY_SEMANTICS
    payment_method = payment_method or "cash"

    penalty = await penalty_repo.lock_penalty(db, penalty_id)
    if penalty is None:
        raise RecordNotFound(f"Penalty {penalty_id} not found")

    status = penalty.get("status")
    fine = _money(penalty.get("fine"))
    if status == "Waived":
        await db.rollback()
        raise PenaltyStateError("Penalty has been waived and cannot be paid")
    if status == "Paid":
        await db.rollback()
        if semantics == "strict":
            raise PenaltyStateError("Penalty is already paid")
        logger.info(f"[PenaltyEngine] Penalty {penalty_id} already paid; nothing to do.")
        return {
            "penalty_id": penalty_id,
            "user_id": penalty["user_id"],
            "status": "Paid",
            "fine_amount": fine,
            "already_paid": True,
        }

    await penalty_repo.mark_paid(db, penalty_id)
    await db.commit()
    paid_at = datetime.now().isoformat()
    logger.info(f"[PenaltyEngine] Penalty {penalty_id} paid (₱{fine:.2f}) via {payment_method}.")

    user_id = penalty["user_id"]
    user_name = _user_name(penalty)
    await push_user_notification(
        db,
        user_id,
        "penalty_paid",
        "Penalty Paid",
        f"Your payment of ₱{fine:.2f} for '{penalty.get('item_title')}' has been received.",
        priority="low",
        related_transaction_id=penalty.get("transaction_id"),
    )
    event_hub.broadcast("PENALTY_PAID", {
        "penalty_id": penalty_id,
        "user_id": user_id,
        "user_name": user_name,
        "fine_amount": fine,
        "payment_method": payment_method,
        "reference_number": penalty.get("reference_number"),
        "paid_at": paid_at,
    })
    details = f"Penalty #{penalty_id} paid: ₱{fine:.2f} via {payment_method}"
    if notes:
        details += f". Notes: {notes}"
    await record_activity(db, user_id, "PENALTY_PAID", details, admin_id=admin_id, admin_name=admin_name)
    await db.commit()

    return {
        "penalty_id": penalty_id,
        "user_id": user_id,
        "user_name": user_name,
        "status": "Paid",
        "fine_amount": fine,
        "payment_method": payment_method,
        "notes": notes,
        "paid_at": paid_at,
        "already_paid": False,
    }


async def mark_as_lost(
    db: AsyncSession,
    transaction_ids: List[int],
    admin_id: Optional[int] = None,
    admin_name: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Mark borrowed items lost: fee = overdue fine + replacement price, item status -> Lost."""
    if not transaction_ids:
        raise PenaltyValidationError("transaction_ids must be a non-empty list")

    fine_settings = await load_fine_settings(db)
    items: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for transaction_id in transaction_ids:
        try:
            transaction = await penalty_repo.lock_transaction(db, transaction_id)
            if transaction is None:
                raise RecordNotFound(f"Transaction {transaction_id} not found")
            if (transaction.get("status") or "").strip().lower() == "returned":
                raise PenaltyStateError(f"Transaction {transaction_id} was already returned")

            details = await penalty_repo.get_transaction_for_fine(db, transaction_id)
            breakdown = fine_for_transaction(details, fine_settings, today)
            price = _money(details.get("item_price"))
            overdue_charged = _money(breakdown["fine"])
            fee = lost_item_fee(overdue_charged, price)

            rows = await penalty_repo.lock_pair_penalties(db, transaction_id, transaction["user_id"])
            settled = rows[0] if rows and is_settled(rows[0].get("status")) else None
            if settled and settled.get("penalty_type") == "lost_damaged":
                raise PenaltyStateError(f"Transaction {transaction_id} already has a {settled['status'].lower()} lost-item penalty")

            if transaction.get("book_id"):
                await transaction_repo.set_book_status(db, transaction["book_id"], "Lost")
            if transaction.get("research_paper_id"):
                await transaction_repo.set_research_status(db, transaction["research_paper_id"], "Lost")

            if settled:
                # The settled overdue row stays as is; the replacement is a separate charge
                overdue_charged = max(0.0, overdue_charged - _money(settled.get("fine")))
                fee = lost_item_fee(overdue_charged, price)
                await penalty_repo.delete_unpaid_for_pair(db, transaction_id, transaction["user_id"])
                penalty_id = await penalty_repo.insert_penalty(
                    db, transaction_id, transaction["user_id"], fee, "lost_damaged", price
                )
                upsert = {"penalty_id": penalty_id, "message": f"Lost-item penalty created for ₱{fee:.2f}"}
            else:
                upsert = await _upsert_locked(db, transaction, transaction["user_id"], fee, "lost_damaged", price)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"[PenaltyEngine] Mark-as-lost failed for transaction {transaction_id}: {e}")
            errors.append({"transaction_id": transaction_id, "error": str(e)})
            continue

        await push_user_notification(
            db,
            transaction["user_id"],
            "item_lost",
            "Item Marked as Lost",
            f"'{details.get('item_title')}' has been marked as lost. A fee of ₱{fee:.2f} "
            f"(overdue fine ₱{overdue_charged:.2f} + replacement ₱{price:.2f}) has been applied.",
            priority="high",
            related_transaction_id=transaction_id,
        )
        await record_activity(
            db,
            transaction["user_id"],
            "ITEM_MARKED_LOST",
            f"Transaction #{transaction_id} ({details.get('item_title')}) marked lost, fee ₱{fee:.2f}",
            admin_id=admin_id,
            admin_name=admin_name,
        )
        await db.commit()

        items.append({
            "transaction_id": transaction_id,
            "user_id": transaction["user_id"],
            "item_title": details.get("item_title"),
            "overdue_fine": overdue_charged,
            "book_price": price,
            "total_fee": fee,
            "penalty_id": upsert["penalty_id"],
            "result": upsert["message"],
        })

    return {
        "total_processed": len(transaction_ids),
        "marked_lost": len(items),
        "errors": len(errors),
        "error_details": errors,
        "items": items,
    }


# --- Maintenance and reporting ---

async def cleanup_penalties(db: AsyncSession) -> Dict[str, Any]:
    """Idempotent consistency pass: drop on-time-return rows, then duplicate unpaid rows."""
    on_time = await penalty_repo.delete_on_time_unpaid(db)
    duplicates = await penalty_repo.delete_duplicate_unpaid(db)
    await db.commit()
    logger.info(f"[PenaltyEngine] Cleanup removed {on_time} on-time and {duplicates} duplicate unpaid row(s).")
    return {
        "records_deleted": on_time + duplicates,
        "on_time_deleted": on_time,
        "duplicates_deleted": duplicates,
    }


async def delete_penalty(db: AsyncSession, penalty_id: int, admin_id: Optional[int] = None, admin_name: Optional[str] = None) -> Dict[str, Any]:
    penalty = await penalty_repo.lock_penalty(db, penalty_id)
    if penalty is None:
        raise RecordNotFound(f"Penalty {penalty_id} not found")
    await penalty_repo.delete_penalty(db, penalty_id)
    await db.commit()
    await record_activity(
        db,
        penalty["user_id"],
        "PENALTY_DELETED",
        f"Penalty #{penalty_id} (₱{_money(penalty.get('fine')):.2f}, {penalty.get('status') or 'Pending Payment'}) deleted",
        admin_id=admin_id,
        admin_name=admin_name,
    )
    await db.commit()
    return {"penalty_id": penalty_id, "deleted": True}


async def get_summary(db: AsyncSession) -> Dict[str, Any]:
    fine_settings = await load_fine_settings(db)
    row = await penalty_repo.get_summary(
        db,
        fine_settings.student_borrow_days,
        fine_settings.faculty_borrow_days,
        settings.PENALTY_RECENT_DAYS,
    )
    summary = {key: (_money(value) if key.endswith("fines") else int(value or 0)) for key, value in row.items()}
    summary["recent_days"] = settings.PENALTY_RECENT_DAYS
    return summary


async def get_user_penalties(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    rows = await penalty_repo.get_user_penalties(db, user_id)
    unpaid_total = sum(_money(r.get("fine")) for r in rows if not is_settled(r.get("status")))
    return {
        "user_id": user_id,
        "total_count": len(rows),
        "total_fines": round(unpaid_total, 2),
        "penalties": rows,
    }


async def list_penalties(
    db: AsyncSession,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    """Latest unpaid row per pair plus every settled row, newest first."""
    page = max(1, page)
    limit = min(max(1, limit), 200)
    result = await penalty_repo.list_penalties(
        db, status=status, user_id=user_id, search=search, limit=limit, offset=(page - 1) * limit
    )
    total = result["total"]
    return {
        "penalties": result["rows"],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }
