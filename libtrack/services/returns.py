import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import transaction_repo
from libtrack.services.errors import ServiceError
from libtrack.services.notifications import event_hub, record_activity
from libtrack.utils import save_upload, upload_url

logger = logging.getLogger(__name__)

RECEIPT_SUBDIR = "receipts"


class ReturnRejected(ServiceError):
    """A return request that fails a precondition."""


def parse_id_list(value: Union[None, int, str, List[Any]]) -> List[int]:
    """Accept a list, a JSON array string, a comma list or a single id. Falsy ids are dropped."""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        items = value
    elif isinstance(value, int):
        items = [value]
    else:
        text_value = str(value).strip()
        try:
            parsed = json.loads(text_value)
            items = parsed if isinstance(parsed, list) else [parsed]
        except ValueError:
            items = text_value.split(",")
    ids = []
    for item in items:
        try:
            number = int(str(item).strip())
        except ValueError:
            continue
        if number:
            ids.append(number)
    return ids


def _items(book_ids: List[int], research_ids: List[int]) -> List[Dict[str, Any]]:
    return [{"type": "book", "id": i} for i in book_ids] + [{"type": "research_paper", "id": i} for i in research_ids]


def check_return_completeness(
    active_book_ids: List[int],
    active_research_ids: List[int],
    book_ids: List[int],
    research_ids: List[int],
):
    """Reject unless the provided ids are exactly the active ids (no subset, superset or disjoint set)."""
    expected = _items(active_book_ids, active_research_ids)
    if not book_ids and not research_ids:
        raise ReturnRejected(
            400,
            "You must specify all borrowed item IDs (book_id and/or research_paper_id) under this reference before returning.",
            expected_items=expected,
            provided_items=[],
        )
    if set(book_ids) != set(active_book_ids) or set(research_ids) != set(active_research_ids):
        raise ReturnRejected(
            400,
            "Incomplete items for return. You must include all borrowed item IDs under this reference.",
            expected_items=expected,
            provided_items=_items(book_ids, research_ids),
        )


async def save_receipt(content: bytes, filename: Optional[str], reference: str) -> str:
    """Write a receipt under UPLOAD_DIR and return its public path (e.g. /receipts/REF-ab12.jpg)."""
    return await save_upload(content, filename, RECEIPT_SUBDIR, str(reference))


async def return_items(
    db: AsyncSession,
    transaction_id: Optional[int] = None,
    reference_number: Optional[str] = None,
    user_id: Optional[int] = None,
    book_ids: Any = None,
    research_paper_ids: Any = None,
    return_date: Optional[datetime] = None,
    receipt: Optional[bytes] = None,
    receipt_filename: Optional[str] = None,
) -> Dict[str, Any]:
    if not transaction_id and not reference_number:
        raise ReturnRejected(400, "Missing required fields", error="Either transaction_id or reference_number is required")
    if reference_number and not user_id:
        raise ReturnRejected(400, "Missing required fields", error="user_id is required when returning by reference_number")

    requested_books = parse_id_list(book_ids)
    requested_research = parse_id_list(research_paper_ids)

    transactions = await transaction_repo.get_transactions_for_return(
        db, transaction_id=transaction_id or None, reference_number=None if transaction_id else reference_number
    )
    if not transactions:
        raise ReturnRejected(404, "No transactions found with the provided identifier")

    owner_id = transactions[0]["user_id"]
    if any(t["user_id"] != owner_id for t in transactions):
        raise ReturnRejected(400, "Transactions belong to multiple users")
    if user_id and int(user_id) != owner_id:
        raise ReturnRejected(403, "User ID does not match transaction owner")

    reference = transactions[0].get("reference_number")
    active = [t for t in transactions if (t.get("status") or "").strip().lower() != "returned"]
    if not active:
        raise ReturnRejected(
            400,
            f"All transactions under reference {reference} are already returned.",
            statuses=[{"transaction_id": t["transaction_id"], "status": t.get("status")} for t in transactions],
        )

    active_books = [int(t["book_id"]) for t in active if t.get("book_id")]
    active_research = [int(t["research_paper_id"]) for t in active if t.get("research_paper_id")]
    check_return_completeness(active_books, active_research, requested_books, requested_research)

    penalty_checks = []
    for t in active:
        penalty = await transaction_repo.get_latest_penalty(db, t["transaction_id"], owner_id)
        if penalty:
            fine = float(penalty.get("fine") or 0)
            penalty_checks.append({
                "transaction_id": t["transaction_id"],
                "penalty_id": penalty["penalty_id"],
                "fine": fine,
                "status": penalty.get("status"),
                "has_unpaid_fine": fine > 0 and penalty.get("status") not in ("Paid", "Waived"),
            })
    unpaid = [p for p in penalty_checks if p["has_unpaid_fine"]]
    if unpaid:
        raise ReturnRejected(402, "Cannot return items with unpaid penalties", unpaid_penalties=unpaid)

    borrower = await transaction_repo.get_borrower(db, owner_id)
    if borrower is None:
        raise ReturnRejected(404, "User not found")
    if borrower.get("restriction") in (1, True):
        raise ReturnRejected(403, "User is restricted and cannot return items")

    receipt_path = next((t["receipt_image"] for t in transactions if t.get("receipt_image")), None)
    if receipt:
        try:
            receipt_path = await save_receipt(receipt, receipt_filename, reference or owner_id)
        except OSError as e:
            logger.error(f"[Returns] Could not store receipt for reference {reference}: {e}")

    returned_at = return_date or datetime.now()
    returned_items = []
    for t in active:
        await transaction_repo.mark_returned(db, t["transaction_id"], returned_at, receipt_path if receipt else None)
        if t.get("book_id"):
            title = await transaction_repo.set_book_status(db, t["book_id"], "Available")
            returned_items.append({
                "transaction_id": t["transaction_id"],
                "item_type": "book",
                "item_id": t["book_id"],
                "item_title": title or "Unknown Book",
            })
        if t.get("research_paper_id"):
            title = await transaction_repo.set_research_status(db, t["research_paper_id"], "Available")
            returned_items.append({
                "transaction_id": t["transaction_id"],
                "item_type": "research_paper",
                "item_id": t["research_paper_id"],
                "item_title": title or "Unknown Research Paper",
            })
    await db.commit()

    user_name = f"{borrower.get('first_name') or ''} {borrower.get('last_name') or ''}".strip()
    event_hub.broadcast("BOOK_RETURNED", {
        "user_id": owner_id,
        "user_name": user_name,
        "reference_number": reference,
        "total_returned": len(returned_items),
        "returned_items": [
            {"type": i["item_type"], "id": i["item_id"], "title": i["item_title"]} for i in returned_items
        ],
        "return_date": returned_at.isoformat(),
        "has_penalties": bool(penalty_checks),
    })
    item_details = ", ".join(
        f"{'Book' if i['item_type'] == 'book' else 'Research Paper'}: {i['item_title']}" for i in returned_items
    )
    await record_activity(
        db,
        owner_id,
        "BOOK_RETURNED",
        f"Returned {len(returned_items)} item(s) - Reference: {reference} - Items: {item_details}",
    )
    await db.commit()
    logger.info(f"[Returns] {len(returned_items)} item(s) returned under reference {reference} by user {owner_id}.")

    return {
        "returned_items": returned_items,
        "reference_number": reference,
        "user_id": owner_id,
        "user_name": user_name,
        "total_returned": len(returned_items),
        "total_active_before_return": len(active),
        "penalty_checks": penalty_checks,
        "has_receipt": bool(receipt_path),
        "receipt_url": upload_url(receipt_path),
    }
