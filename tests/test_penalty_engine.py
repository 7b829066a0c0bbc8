from datetime import date

import pytest

from libtrack.repositories import penalty_repo
from libtrack.repositories.base import RecordNotFound
from libtrack.services import penalty_engine
from libtrack.services.fines import returned_on_time
from libtrack.services.notifications import event_hub
from libtrack.services.penalty_engine import PenaltyStateError, PenaltyValidationError

TODAY = date(2024, 5, 6)


# --- create_or_update_penalty ---

async def test_first_upsert_creates_single_unpaid_row(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)

    result = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 10)

    assert result["created"] is True
    assert result["updated"] is False
    assert [p["fine"] for p in penalty_store.pair(1, 1)] == [10.0]
    assert fake_db.commits == 1


async def test_second_upsert_updates_the_same_row(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)
    first = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 10)

    second = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 15)

    assert second["updated"] is True
    assert second["penalty_id"] == first["penalty_id"]
    assert [p["fine"] for p in penalty_store.pair(1, 1)] == [15.0]


async def test_upsert_collapses_duplicate_unpaid_rows(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)
    penalty_store.add_penalty(1, 1, 5)
    newest = penalty_store.add_penalty(1, 1, 5)

    result = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 20)

    rows = penalty_store.pair(1, 1)
    assert result["penalty_id"] == newest
    assert [(p["penalty_id"], p["fine"]) for p in rows] == [(newest, 20.0)]


async def test_settled_penalty_is_never_recomputed(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)
    paid = penalty_store.add_penalty(1, 1, 10, status="Paid")

    result = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 25)

    assert result["skipped"] is True
    assert result["penalty_id"] == paid
    assert result["message"] == "Penalty already paid"
    assert penalty_store.get(paid)["fine"] == 10


async def test_on_time_return_removes_unpaid_rows(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1, status="Returned", return_date=date(2024, 5, 3))
    penalty_store.add_penalty(1, 1, 5)

    result = await penalty_engine.create_or_update_penalty(fake_db, 1, 1, 5)

    assert result["skipped"] is True
    assert result["penalty_id"] is None
    assert penalty_store.pair(1, 1) == []


async def test_upsert_for_missing_transaction(penalty_store, fake_db):
    with pytest.raises(RecordNotFound):
        await penalty_engine.create_or_update_penalty(fake_db, 99, 1, 5)


# --- Overdue sweep ---

async def test_sweep_counts_created_and_skipped(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)
    penalty_store.transactions[2] = borrow(2, user_id=2, transaction_date=date(2024, 5, 5))
    penalty_store.transactions[3] = borrow(3, user_id=3)
    penalty_store.add_penalty(3, 3, 10, status="Paid")

    result = await penalty_engine.run_overdue_sweep(fake_db, today=TODAY)

    assert result["total_processed"] == 3
    assert result["penalties_created"] == 1
    assert result["penalties_updated"] == 0
    assert result["penalties_skipped"] == 2
    assert result["errors"] == 0
    assert [p["fine"] for p in penalty_store.pair(1, 1)] == [10.0]


async def test_repeated_sweep_updates_instead_of_duplicating(penalty_store, fake_db, borrow):
    penalty_store.transactions[1] = borrow(1)
    await penalty_engine.run_overdue_sweep(fake_db, today=TODAY)

    result = await penalty_engine.run_overdue_sweep(fake_db, today=date(2024, 5, 7))

    assert result["penalties_created"] == 0
    assert result["penalties_updated"] == 1
    assert [p["fine"] for p in penalty_store.pair(1, 1)] == [15.0]


async def test_sweep_isolates_failing_rows(penalty_store, fake_db, borrow, monkeypatch):
    penalty_store.transactions[1] = borrow(1)
    penalty_store.transactions[4] = borrow(4, user_id=2)
    insert = penalty_store.insert_penalty

    async def flaky_insert(db, transaction_id, user_id, fine, penalty_type="overdue", book_price=0):
        if transaction_id == 4:
            raise RuntimeError("boom")
        return await insert(db, transaction_id, user_id, fine, penalty_type, book_price)

    monkeypatch.setattr(penalty_repo, "insert_penalty", flaky_insert)

    result = await penalty_engine.run_overdue_sweep(fake_db, today=TODAY)

    assert result["penalties_created"] == 1
    assert result["errors"] == 1
    assert result["error_details"] == [{"transaction_id": 4, "error": "boom"}]
    assert fake_db.rollbacks == 1


# --- Waive / pay ---

async def test_waive_requires_reason_and_changes_nothing(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10)

    with pytest.raises(PenaltyValidationError) as exc_info:
        await penalty_engine.waive_penalty(fake_db, penalty_id, "   ")

    assert exc_info.value.status_code == 400
    assert penalty_store.get(penalty_id)["status"] == "Pending Payment"
    assert fake_db.commits == 0


async def test_waive_marks_penalty_and_broadcasts(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10)

    async with event_hub.subscribe() as queue:
        result = await penalty_engine.waive_penalty(fake_db, penalty_id, " Medical leave ", waived_by="Librarian")
        event = queue.get_nowait()

    assert result["status"] == "Waived"
    assert result["waive_reason"] == "Medical leave"
    assert penalty_store.get(penalty_id)["status"] == "Waived"
    assert event["type"] == "PENALTY_WAIVED"
    assert event["data"]["penalty_id"] == penalty_id


async def test_waive_settled_penalty_is_rejected(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10, status="Paid")

    with pytest.raises(PenaltyStateError):
        await penalty_engine.waive_penalty(fake_db, penalty_id, "Late enrollment")


async def test_pay_is_idempotent_by_default(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10)

    first = await penalty_engine.pay_penalty(fake_db, penalty_id, semantics="idempotent")
    second = await penalty_engine.pay_penalty(fake_db, penalty_id, semantics="idempotent")

    assert first["already_paid"] is False
    assert first["payment_method"] == "cash"
    assert second["already_paid"] is True
    assert second["fine_amount"] == 10.0
    assert penalty_store.get(penalty_id)["fine"] == 10


async def test_strict_pay_rejects_second_payment(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10)
    await penalty_engine.pay_penalty(fake_db, penalty_id, semantics="strict")

    with pytest.raises(PenaltyStateError):
        await penalty_engine.pay_penalty(fake_db, penalty_id, semantics="strict")


async def test_waived_penalty_cannot_be_paid(penalty_store, fake_db):
    penalty_id = penalty_store.add_penalty(1, 1, 10, status="Waived")

    with pytest.raises(PenaltyStateError):
        await penalty_engine.pay_penalty(fake_db, penalty_id, semantics="idempotent")
    assert penalty_store.get(penalty_id)["status"] == "Waived"


async def test_pay_missing_penalty(penalty_store, fake_db):
    with pytest.raises(RecordNotFound):
        await penalty_engine.pay_penalty(fake_db, 404)


# --- Lost items ---

async def test_mark_as_lost_charges_fine_plus_price(penalty_store, fake_db, borrow, monkeypatch):
    transaction = borrow(1)
    penalty_store.transactions[1] = transaction
    statuses = {}

    async def details(db, transaction_id):
        return {**transaction, "item_title": "Noli Me Tangere", "item_price": 350}

    async def set_book_status(db, book_id, status):
        statuses[book_id] = status
        return "Noli Me Tangere"

    monkeypatch.setattr(penalty_repo, "get_transaction_for_fine", details)
    monkeypatch.setattr(penalty_engine.transaction_repo, "set_book_status", set_book_status)

    result = await penalty_engine.mark_as_lost(fake_db, [1, 2], today=TODAY)

    assert result["marked_lost"] == 1
    assert result["items"][0]["total_fee"] == 360.0
    assert result["error_details"] == [{"transaction_id": 2, "error": "Transaction 2 not found"}]
    assert statuses == {10: "Lost"}
    assert penalty_store.pair(1, 1)[0]["penalty_type"] == "lost_damaged"


async def test_mark_as_lost_requires_ids(penalty_store, fake_db):
    with pytest.raises(PenaltyValidationError):
        await penalty_engine.mark_as_lost(fake_db, [])


@pytest.fixture
def lost_item(penalty_store, borrow, monkeypatch):
    """Transaction 1 for a ₱350 book, with item status changes recorded."""
    transaction = borrow(1)
    penalty_store.transactions[1] = transaction
    statuses = {}

    async def details(db, transaction_id):
        return {**transaction, "item_title": "Noli Me Tangere", "item_price": 350}

    async def set_book_status(db, book_id, status):
        statuses[book_id] = status
        return "Noli Me Tangere"

    monkeypatch.setattr(penalty_repo, "get_transaction_for_fine", details)
    monkeypatch.setattr(penalty_engine.transaction_repo, "set_book_status", set_book_status)
    return statuses


async def test_lost_item_after_paid_overdue_fine_is_billed_separately(penalty_store, fake_db, lost_item):
    paid_id = penalty_store.add_penalty(1, 1, 10, status="Paid")

    result = await penalty_engine.mark_as_lost(fake_db, [1], today=TODAY)

    item = result["items"][0]
    assert item["total_fee"] == 350.0
    assert item["overdue_fine"] == 0
    assert lost_item == {10: "Lost"}
    unpaid = [p for p in penalty_store.pair(1, 1) if p["status"] == "Pending Payment"]
    assert len(unpaid) == 1
    assert unpaid[0]["penalty_type"] == "lost_damaged"
    assert unpaid[0]["fine"] == 350.0
    assert penalty_store.get(paid_id)["status"] == "Paid"


async def test_settled_lost_charge_is_not_marked_again(penalty_store, fake_db, lost_item):
    penalty_store.add_penalty(1, 1, 360, status="Waived", penalty_type="lost_damaged")

    result = await penalty_engine.mark_as_lost(fake_db, [1], today=TODAY)

    assert result["marked_lost"] == 0
    assert result["error_details"] == [
        {"transaction_id": 1, "error": "Transaction 1 already has a waived lost-item penalty"},
    ]
    assert lost_item == {}
    assert len(penalty_store.pair(1, 1)) == 1


# --- Cleanup ---

async def test_cleanup_leaves_one_unpaid_row_per_pair(penalty_store, fake_db, borrow, monkeypatch):
    penalty_store.transactions[1] = borrow(1)
    penalty_store.transactions[2] = borrow(2, status="Returned", return_date=date(2024, 5, 3))
    penalty_store.add_penalty(1, 1, 5)
    penalty_store.add_penalty(1, 1, 10)
    newest = penalty_store.add_penalty(1, 1, 15)
    paid = penalty_store.add_penalty(1, 1, 5, status="Paid")
    penalty_store.add_penalty(2, 1, 5)

    async def delete_on_time_unpaid(db):
        doomed = [
            p for p in penalty_store.penalties
            if returned_on_time(penalty_store.transactions[p["transaction_id"]]) and p["status"] not in ("Paid", "Waived")
        ]
        for p in doomed:
            penalty_store.penalties.remove(p)
        return len(doomed)

    async def delete_duplicate_unpaid(db):
        removed = 0
        for p in list(penalty_store.penalties):
            unpaid = [q for q in penalty_store.pair(p["transaction_id"], p["user_id"]) if q["status"] not in ("Paid", "Waived")]
            if p in unpaid and p["penalty_id"] < max(q["penalty_id"] for q in unpaid):
                penalty_store.penalties.remove(p)
                removed += 1
        return removed

    monkeypatch.setattr(penalty_repo, "delete_on_time_unpaid", delete_on_time_unpaid)
    monkeypatch.setattr(penalty_repo, "delete_duplicate_unpaid", delete_duplicate_unpaid)

    result = await penalty_engine.cleanup_penalties(fake_db)
    again = await penalty_engine.cleanup_penalties(fake_db)

    assert result == {"records_deleted": 3, "on_time_deleted": 1, "duplicates_deleted": 2}
    assert again == {"records_deleted": 0, "on_time_deleted": 0, "duplicates_deleted": 0}
    assert {p["penalty_id"] for p in penalty_store.penalties} == {newest, paid}
    assert penalty_store.pair(2, 1) == []
    assert fake_db.commits == 2


async def test_sweep_keeps_unpaid_lost_item_fee(penalty_store, fake_db, lost_item):
    await penalty_engine.mark_as_lost(fake_db, [1], today=TODAY)

    result = await penalty_engine.run_overdue_sweep(fake_db, today=date(2024, 5, 9))

    assert result["penalties_skipped"] == 1
    [penalty] = penalty_store.pair(1, 1)
    assert (penalty["penalty_type"], penalty["fine"]) == ("lost_damaged", 360.0)
