from datetime import date
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from libtrack.chatbot.agent import get_tool_router
from libtrack.db.connection import get_library_db_session
from libtrack.main import app
from libtrack.repositories import penalty_repo
from libtrack.services import penalty_engine
from libtrack.services.fines import FineSettings


class _NestedTransaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session.savepoints += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.session.savepoint_rollbacks += 1
        return False


class FakeSession:
    """Stands in for AsyncSession; services only commit, roll back and open savepoints."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0
        self.savepoints = 0
        self.savepoint_rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    def begin_nested(self):
        return _NestedTransaction(self)


class InMemoryPenalties:
    """Penalty repository over plain dicts, keyed the same way as the SQL version."""

    def __init__(self, transactions: Optional[List[Dict[str, Any]]] = None):
        self.transactions = {t["transaction_id"]: t for t in transactions or []}
        self.penalties: List[Dict[str, Any]] = []
        self._next_id = 1

    def add_penalty(self, transaction_id: int, user_id: int, fine: float, status: str = "Pending Payment", **extra) -> int:
        penalty_id = self._next_id
        self._next_id += 1
        self.penalties.append({
            "penalty_id": penalty_id,
            "transaction_id": transaction_id,
            "user_id": user_id,
            "fine": fine,
            "status": status,
            "penalty_type": "overdue",
            "book_price": 0,
            "first_name": "Ana",
            "last_name": "Reyes",
            "item_title": "Noli Me Tangere",
            "reference_number": "REF-1",
            **extra,
        })
        return penalty_id

    def pair(self, transaction_id: int, user_id: int) -> List[Dict[str, Any]]:
        return [p for p in self.penalties if p["transaction_id"] == transaction_id and p["user_id"] == user_id]

    def get(self, penalty_id: int) -> Optional[Dict[str, Any]]:
        return next((p for p in self.penalties if p["penalty_id"] == penalty_id), None)

    # --- repository surface ---
    async def lock_transaction(self, db, transaction_id):
        return self.transactions.get(transaction_id)

    async def lock_pair_penalties(self, db, transaction_id, user_id):
        return sorted(self.pair(transaction_id, user_id), key=lambda p: p["penalty_id"], reverse=True)

    async def lock_penalty(self, db, penalty_id):
        penalty = self.get(penalty_id)
        return dict(penalty) if penalty else None

    async def delete_unpaid_for_pair(self, db, transaction_id, user_id, keep_penalty_id=None):
        doomed = [
            p for p in self.pair(transaction_id, user_id)
            if p["status"] not in ("Paid", "Waived") and p["penalty_id"] != keep_penalty_id
        ]
        for p in doomed:
            self.penalties.remove(p)
        return len(doomed)

    async def update_penalty_fine(self, db, penalty_id, fine, penalty_type="overdue", book_price=0):
        self.get(penalty_id).update(fine=fine, penalty_type=penalty_type, book_price=book_price)
        return 1

    async def insert_penalty(self, db, transaction_id, user_id, fine, penalty_type="overdue", book_price=0):
        return self.add_penalty(transaction_id, user_id, fine, penalty_type=penalty_type, book_price=book_price)

    async def mark_paid(self, db, penalty_id):
        self.get(penalty_id)["status"] = "Paid"
        return 1

    async def mark_waived(self, db, penalty_id, reason, waived_by):
        self.get(penalty_id).update(status="Waived", waive_reason=reason, waived_by=waived_by)
        return 1

    async def get_overdue_candidates(self, db, student_days, faculty_days):
        return [t for t in self.transactions.values() if (t.get("status") or "") != "Returned"]


@pytest.fixture
def fake_db() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fine_settings() -> FineSettings:
    return FineSettings(student_daily_fine=5, faculty_daily_fine=11, student_borrow_days=3, faculty_borrow_days=90)


@pytest.fixture
def penalty_store(monkeypatch, fine_settings) -> InMemoryPenalties:
    """Swap the penalty repository and side effects for in-memory fakes."""
    store = InMemoryPenalties()
    for name in (
        "lock_transaction", "lock_pair_penalties", "lock_penalty", "delete_unpaid_for_pair",
        "update_penalty_fine", "insert_penalty", "mark_paid", "mark_waived", "get_overdue_candidates",
    ):
        monkeypatch.setattr(penalty_repo, name, getattr(store, name))

    async def _settings(db):
        return fine_settings

    async def _noop(*args, **kwargs):
        return None

    monkeypatch.setattr(penalty_engine, "load_fine_settings", _settings)
    monkeypatch.setattr(penalty_engine, "record_activity", _noop)
    monkeypatch.setattr(penalty_engine, "push_user_notification", _noop)
    return store


def _borrow(transaction_id: int, user_id: int = 1, **overrides) -> Dict[str, Any]:
    row = {
        "transaction_id": transaction_id,
        "user_id": user_id,
        "transaction_type": "borrow",
        "transaction_date": date(2024, 5, 1),
        "due_date": date(2024, 5, 4),
        "return_date": None,
        "status": "Borrowed",
        "position": "Student",
        "book_id": 10,
        "research_paper_id": None,
        "reference_number": "REF-1",
    }
    row.update(overrides)
    return row


@pytest.fixture
def borrow():
    """Factory for a Borrowed student transaction dated 2024-05-01."""
    return _borrow


class FakeRouter:
    """Minimal ToolRouter double for the HTTP layer."""

    def __init__(self, reply: Optional[Dict[str, Any]] = None):
        self.reply = reply or {"success": True, "message": "Hi there!", "toolCallsExecuted": 0, "iterations": 0}
        self.calls: List[SimpleNamespace] = []
        self.history: Dict[str, List[Dict[str, Any]]] = {}

    async def process_message(self, message, session_id=None, context=None):
        self.calls.append(SimpleNamespace(message=message, session_id=session_id, context=context))
        return self.reply

    async def stream_message(self, message, session_id=None, context=None):
        yield {"type": "content", "content": "Hello"}
        yield {"type": "complete", "toolCallsExecuted": 0}

    def get_history(self, session_id):
        return self.history.get(session_id, [])

    def clear_history(self, session_id):
        return self.history.pop(session_id, None) is not None

    def status(self):
        return {"status": "online", "mode": "rule_based", "tools": []}


@pytest.fixture
def fake_router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def client(fake_db, fake_router):
    async def _db():
        yield fake_db

    app.dependency_overrides[get_library_db_session] = _db
    app.dependency_overrides[get_tool_router] = lambda: fake_router
    # Not entered as a context manager, so the lifespan (database, scheduler) never starts
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
