from datetime import date, datetime
from decimal import Decimal

import pytest

from libtrack.repositories import penalty_repo, settings_repo
from libtrack.repositories.base import RepositoryError
from libtrack.services import fines
from libtrack.services.fines import (
    FineError,
    as_date,
    compute_overdue_fine,
    fine_for_transaction,
    lost_item_fee,
    returned_on_time,
)

TODAY = date(2024, 5, 6)


def test_student_fine_after_allowed_days():
    # 5 days elapsed, 3 allowed, 5/day
    assert compute_overdue_fine(5, 3, 5) == 10.0


def test_no_fine_within_allowed_days():
    assert compute_overdue_fine(3, 3, 5) == 0
    assert compute_overdue_fine(1, 3, 5) == 0


def test_fine_breakdown_for_overdue_student(fine_settings):
    row = {"transaction_date": date(2024, 5, 1), "position": "Student"}

    breakdown = fine_for_transaction(row, fine_settings, TODAY)

    assert breakdown["fine"] == 10.0
    assert breakdown["days_overdue"] == 2
    assert breakdown["status"] == "overdue"
    assert breakdown["user_type"] == "student"
    assert breakdown["message"] == "2 days overdue at ₱5/day"


def test_borrower_without_role_is_a_student(fine_settings):
    breakdown = fine_for_transaction({"transaction_date": date(2024, 5, 1)}, fine_settings, TODAY)
    assert breakdown["daily_fine"] == 5


def test_faculty_uses_faculty_period(fine_settings):
    row = {"transaction_date": date(2024, 5, 1), "position": "Faculty"}

    breakdown = fine_for_transaction(row, fine_settings, TODAY)

    assert breakdown["status"] == "on_time"
    assert breakdown["fine"] == 0
    assert breakdown["daily_fine"] == 11


def test_missing_borrow_date(fine_settings):
    breakdown = fine_for_transaction({"transaction_date": None, "position": "Student"}, fine_settings, TODAY)
    assert breakdown["status"] == "no_due_date"
    assert breakdown["fine"] == 0


@pytest.mark.parametrize(
    "transaction, expected",
    [
        ({"status": "Returned", "return_date": date(2024, 5, 4), "due_date": date(2024, 5, 4)}, True),
        ({"status": "returned", "return_date": "2024-05-03T10:00:00Z", "due_date": "2024-05-04"}, True),
        ({"status": "Returned", "return_date": date(2024, 5, 5), "due_date": date(2024, 5, 4)}, False),
        ({"status": "Borrowed", "return_date": None, "due_date": date(2024, 5, 4)}, False),
        ({"status": "Returned", "return_date": date(2024, 5, 1), "due_date": None}, False),
    ],
)
def test_returned_on_time(transaction, expected):
    assert returned_on_time(transaction) is expected


def test_lost_item_fee_adds_replacement_price():
    assert lost_item_fee(10, Decimal("350.50")) == 360.5
    assert lost_item_fee(0, None) == 0


def test_as_date_accepts_strings_and_datetimes():
    assert as_date("2024-05-01T23:15:00Z") == date(2024, 5, 1)
    assert as_date(datetime(2024, 5, 1, 8, 30)) == date(2024, 5, 1)
    assert as_date("") is None


async def test_overdue_report_groups_by_borrower(fake_db, fine_settings, monkeypatch):
    async def settings_stub(db):
        return fine_settings

    async def active_borrows(db, department=None, user_type=None):
        return [
            {"transaction_id": 1, "user_id": 7, "first_name": "Ana", "last_name": "Reyes",
             "transaction_date": date(2024, 5, 1), "position": "Student", "item_title": "A"},
            {"transaction_id": 2, "user_id": 7, "first_name": "Ana", "last_name": "Reyes",
             "transaction_date": date(2024, 4, 30), "position": "Student", "item_title": "B"},
            {"transaction_id": 3, "user_id": 8, "first_name": "Ben", "last_name": "Cruz",
             "transaction_date": date(2024, 5, 5), "position": "Student", "item_title": "C"},
        ]

    monkeypatch.setattr(fines, "load_fine_settings", settings_stub)
    monkeypatch.setattr(penalty_repo, "get_active_borrows", active_borrows)

    report = await fines.overdue_report(fake_db, today=TODAY)

    assert report["total_overdue"] == 2
    assert report["total_fines"] == 25.0
    assert report["user_summaries"] == [{
        "user_id": 7,
        "user_name": "Ana Reyes",
        "user_type": "student",
        "department": None,
        "overdue_items": 2,
        "total_fine": 25.0,
    }]


async def test_overdue_report_rejects_unknown_user_type(fake_db):
    with pytest.raises(FineError) as exc_info:
        await fines.overdue_report(fake_db, user_type="alumni")
    assert exc_info.value.status_code == 400


async def test_update_fine_settings_validation(fake_db):
    with pytest.raises(FineError):
        await fines.update_fine_settings(fake_db, {"unknown": 1})
    with pytest.raises(FineError):
        await fines.update_fine_settings(fake_db, {"student_daily_fine": -1})
    assert fake_db.commits == 0


async def test_unreadable_settings_fall_back_inside_a_savepoint(fake_db, monkeypatch):
    async def broken(db):
        raise RepositoryError('relation "system_settings" does not exist')

    monkeypatch.setattr(settings_repo, "get_system_settings", broken)

    loaded = await fines.load_fine_settings(fake_db)

    assert (loaded.student_daily_fine, loaded.student_borrow_days) == (5, 3)
    assert fake_db.savepoints == 1
    assert fake_db.savepoint_rollbacks == 1
    assert fake_db.rollbacks == 0


async def test_user_fines_totals_outstanding_items(fake_db, fine_settings, monkeypatch):
    async def settings_stub(db):
        return fine_settings

    async def active_borrows(db, department=None, user_type=None, user_id=None):
        assert user_id == 7
        return [
            {"transaction_id": 1, "user_id": 7, "first_name": "Ana", "last_name": "Reyes",
             "department_acronym": "CCS", "transaction_date": date(2024, 5, 1), "position": "Student",
             "item_title": "A"},
            {"transaction_id": 3, "user_id": 7, "first_name": "Ana", "last_name": "Reyes",
             "department_acronym": "CCS", "transaction_date": date(2024, 5, 5), "position": "Student",
             "item_title": "C"},
        ]

    monkeypatch.setattr(fines, "load_fine_settings", settings_stub)
    monkeypatch.setattr(penalty_repo, "get_active_borrows", active_borrows)

    report = await fines.user_fines(fake_db, 7, today=TODAY)

    assert report["user_name"] == "Ana Reyes"
    assert report["department"] == "CCS"
    assert report["total_fine"] == 10.0
    assert report["total_overdue_items"] == 1
    assert report["total_borrowed_items"] == 2
    assert [t["status"] for t in report["transactions"]] == ["overdue", "on_time"]


async def test_user_fines_without_borrows(fake_db, fine_settings, monkeypatch):
    async def settings_stub(db):
        return fine_settings

    async def active_borrows(db, department=None, user_type=None, user_id=None):
        return []

    monkeypatch.setattr(fines, "load_fine_settings", settings_stub)
    monkeypatch.setattr(penalty_repo, "get_active_borrows", active_borrows)

    report = await fines.user_fines(fake_db, 9, today=TODAY)

    assert report["total_fine"] == 0
    assert report["transactions"] == []
    assert report["user_type"] is None
