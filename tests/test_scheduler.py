from contextlib import asynccontextmanager
from datetime import date, datetime
from types import SimpleNamespace

import pytest

from libtrack.repositories import penalty_repo, scheduler_repo
from libtrack.services import scheduler
from libtrack.services.notifications import EmailSender
from libtrack.services.scheduler import DailyScheduler, most_recent_slot, next_slot, slot_missed


def test_most_recent_slot():
    assert most_recent_slot(datetime(2024, 5, 10, 8, 0), 9) == datetime(2024, 5, 9, 9, 0)
    assert most_recent_slot(datetime(2024, 5, 10, 10, 30), 9) == datetime(2024, 5, 10, 9, 0)


def test_next_slot():
    assert next_slot(datetime(2024, 5, 10, 8, 59), 9) == datetime(2024, 5, 10, 9, 0)
    assert next_slot(datetime(2024, 5, 10, 9, 0), 9) == datetime(2024, 5, 11, 9, 0)


def test_slot_missed():
    now = datetime(2024, 5, 10, 12, 0)
    assert slot_missed(None, now, 9) is True
    assert slot_missed(datetime(2024, 5, 10, 9, 0, 5), now, 9) is False
    assert slot_missed(datetime(2024, 5, 9, 9, 0, 5), now, 9) is True


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, to_addr, subject, html_body, text_body=None):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((to_addr, subject))
        return True


@pytest.fixture
def reminder_env(monkeypatch):
    """One item due tomorrow, no overdue penalties, in-memory reminder log."""
    claims = set()
    runs = []

    async def start_run(db, job_name, trigger):
        run = SimpleNamespace(run_id=len(runs) + 1, job_name=job_name, trigger=trigger)
        runs.append(run)
        return run

    async def finish_run(db, run, status, due_tomorrow_count=0, overdue_count=0, error=None):
        run.status = status

    async def claim_reminder(db, kind, transaction_id, user_id, reference_date):
        key = (kind, transaction_id, user_id, reference_date)
        if key in claims:
            return False
        claims.add(key)
        return True

    async def release_reminder(db, kind, transaction_id, user_id, reference_date):
        claims.discard((kind, transaction_id, user_id, reference_date))

    async def due_tomorrow(db):
        return [{
            "transaction_id": 1, "user_id": 2, "email": "ana@wmsu.edu.ph", "first_name": "Ana",
            "last_name": "Reyes", "item_title": "Noli Me Tangere", "reference_number": "REF-1",
            "due_date": date(2024, 5, 11),
        }]

    async def overdue(db):
        return []

    async def push(*args, **kwargs):
        return None

    monkeypatch.setattr(scheduler_repo, "start_run", start_run)
    monkeypatch.setattr(scheduler_repo, "finish_run", finish_run)
    monkeypatch.setattr(scheduler_repo, "claim_reminder", claim_reminder)
    monkeypatch.setattr(scheduler_repo, "release_reminder", release_reminder)
    monkeypatch.setattr(penalty_repo, "get_due_tomorrow", due_tomorrow)
    monkeypatch.setattr(penalty_repo, "get_overdue_unpaid_for_reminders", overdue)
    monkeypatch.setattr(scheduler, "push_user_notification", push)
    return SimpleNamespace(claims=claims, runs=runs)


async def test_reminders_are_sent_once_per_day(fake_db, reminder_env, monkeypatch):
    sender = RecordingSender()
    monkeypatch.setattr(scheduler, "email_sender", sender)

    first = await scheduler.run_daily_penalty_checks(fake_db, "manual")
    second = await scheduler.run_daily_penalty_checks(fake_db, "daily")

    assert first["due_tomorrow_count"] == 1
    assert first["reminders_sent"] == 1
    assert second["reminders_sent"] == 0
    assert sender.sent == [("ana@wmsu.edu.ph", "⚠️ Item Due Tomorrow - Lib-Track Reminder")]
    assert [run.status for run in reminder_env.runs] == ["completed", "completed"]


async def test_failed_delivery_is_retried_next_pass(fake_db, reminder_env, monkeypatch):
    monkeypatch.setattr(scheduler, "email_sender", RecordingSender(fail=True))
    failed = await scheduler.run_daily_penalty_checks(fake_db, "manual")

    sender = RecordingSender()
    monkeypatch.setattr(scheduler, "email_sender", sender)
    retried = await scheduler.run_daily_penalty_checks(fake_db, "manual")

    assert failed["reminders_sent"] == 0
    assert retried["reminders_sent"] == 1
    assert len(sender.sent) == 1


def _scope():
    @asynccontextmanager
    async def session_scope():
        yield object()
    return session_scope


async def test_run_pass_returns_result(monkeypatch):
    async def checks(db, trigger):
        return {"trigger": trigger}

    monkeypatch.setattr(scheduler, "run_daily_penalty_checks", checks)
    daily = DailyScheduler(session_scope=_scope(), run_hour=9, initial_delay=0)

    assert await daily.run_pass("startup") == {"trigger": "startup"}
    assert daily.running is False


async def test_run_pass_swallows_failures(monkeypatch):
    async def checks(db, trigger):
        raise RuntimeError("database gone")

    monkeypatch.setattr(scheduler, "run_daily_penalty_checks", checks)
    daily = DailyScheduler(session_scope=_scope(), run_hour=9, initial_delay=0)

    assert await daily.run_pass("daily") is None


async def test_startup_catches_up_missed_slot(monkeypatch):
    async def last_run(db, job_name):
        return None

    monkeypatch.setattr(scheduler_repo, "get_last_completed_run", last_run)
    daily = DailyScheduler(session_scope=_scope(), run_hour=9, initial_delay=0, run_on_startup=False)

    assert await daily._startup_trigger() == "catch_up"


async def test_startup_without_missed_slot(monkeypatch):
    async def last_run(db, job_name):
        return SimpleNamespace(started_at=datetime.now())

    monkeypatch.setattr(scheduler_repo, "get_last_completed_run", last_run)
    daily = DailyScheduler(session_scope=_scope(), run_hour=9, initial_delay=0, run_on_startup=False)

    assert await daily._startup_trigger() is None


async def test_start_and_stop(monkeypatch):
    daily = DailyScheduler(session_scope=_scope(), run_hour=9, initial_delay=3600)

    daily.start()
    assert daily.running is True
    await daily.stop()
    assert daily.running is False


async def test_unconfigured_smtp_keeps_reminder_pending(fake_db, reminder_env, monkeypatch):
    monkeypatch.setattr(scheduler, "email_sender", EmailSender(host="", sender=""))

    result = await scheduler.run_daily_penalty_checks(fake_db, "manual")

    assert result["reminders_sent"] == 0
    assert reminder_env.claims == set()
