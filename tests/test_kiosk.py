import pytest

from libtrack.repositories import book_repo, research_repo, transaction_repo
from libtrack.services import qr, returns
from libtrack.services.returns import ReturnRejected, check_return_completeness, parse_id_list
from libtrack.utils import encode_book_qr, parse_book_qr, parse_research_qr


# --- QR payloads ---

def test_book_qr_payload():
    assert encode_book_qr(42, 3) == "BookID:42-No:3"
    assert parse_book_qr(" BookID:42-No:3 ") == {"book_id": 42, "copy": 3}
    assert parse_book_qr("BookID:42") is None
    assert parse_book_qr(None) is None


def test_research_qr_payload():
    assert parse_research_qr("ResearchPaperID:7") == 7
    assert parse_research_qr("ResearchPaperID:x") is None


async def test_scan_resolves_book_copy(fake_db, monkeypatch):
    async def find_by_qr(db, book_id, copy_number):
        return {"book_id": 101, "book_title": "Florante at Laura", "book_number": copy_number}

    monkeypatch.setattr(book_repo, "find_by_qr", find_by_qr)

    result = await qr.scan(fake_db, "BookID:42-No:3")

    assert result["type"] == "book"
    assert result["data"]["book"]["book_number"] == 3
    assert result["data"]["qrInfo"]["bookId"] == 42


async def test_scan_unknown_research_paper(fake_db, monkeypatch):
    async def get_paper(db, research_paper_id):
        return None

    monkeypatch.setattr(research_repo, "get_paper", get_paper)

    with pytest.raises(qr.QrScanError) as exc_info:
        await qr.scan(fake_db, "ResearchPaperID:9")
    assert exc_info.value.status_code == 404


async def test_scan_rejects_unknown_format(fake_db):
    with pytest.raises(qr.QrScanError) as exc_info:
        await qr.scan(fake_db, "ISBN:978-971")
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Invalid QR code format"


# --- Return validation ---

@pytest.mark.parametrize(
    "value, expected",
    [
        ("[1, 2]", [1, 2]),
        ("3,4", [3, 4]),
        (5, [5]),
        (None, []),
        ("0, x, 7", [7]),
        ([1, "2"], [1, 2]),
    ],
)
def test_parse_id_list(value, expected):
    assert parse_id_list(value) == expected


def test_exact_id_set_is_accepted():
    check_return_completeness([1, 2], [9], [2, 1], [9])


@pytest.mark.parametrize(
    "books, papers",
    [
        ([1], [9]),          # subset
        ([1, 2, 3], [9]),    # superset
        ([5], [8]),          # disjoint
    ],
)
def test_partial_returns_are_rejected(books, papers):
    with pytest.raises(ReturnRejected) as exc_info:
        check_return_completeness([1, 2], [9], books, papers)

    error = exc_info.value
    assert error.status_code == 400
    assert error.extras["expected_items"] == [
        {"type": "book", "id": 1},
        {"type": "book", "id": 2},
        {"type": "research_paper", "id": 9},
    ]


def test_empty_id_set_is_rejected():
    with pytest.raises(ReturnRejected) as exc_info:
        check_return_completeness([1], [], [], [])
    assert exc_info.value.extras["provided_items"] == []


@pytest.fixture
def borrowed_reference(monkeypatch):
    """One active book borrow under REF-9 owned by user 5, with no penalty."""
    state = {"penalty": None, "returned": [], "statuses": {}}

    async def get_transactions_for_return(db, transaction_id=None, reference_number=None):
        return [{
            "transaction_id": 1, "user_id": 5, "reference_number": "REF-9", "status": "Borrowed",
            "book_id": 10, "research_paper_id": None, "receipt_image": None,
        }]

    async def get_latest_penalty(db, transaction_id, user_id):
        return state["penalty"]

    async def get_borrower(db, user_id):
        return {"user_id": user_id, "first_name": "Ana", "last_name": "Reyes", "restriction": 0}

    async def mark_returned(db, transaction_id, return_date, receipt_image=None):
        state["returned"].append(transaction_id)
        return 1

    async def set_book_status(db, book_id, status):
        state["statuses"][book_id] = status
        return "Noli Me Tangere"

    async def record_activity(*args, **kwargs):
        return None

    monkeypatch.setattr(transaction_repo, "get_transactions_for_return", get_transactions_for_return)
    monkeypatch.setattr(transaction_repo, "get_latest_penalty", get_latest_penalty)
    monkeypatch.setattr(transaction_repo, "get_borrower", get_borrower)
    monkeypatch.setattr(transaction_repo, "mark_returned", mark_returned)
    monkeypatch.setattr(transaction_repo, "set_book_status", set_book_status)
    monkeypatch.setattr(returns, "record_activity", record_activity)
    return state


async def test_return_by_reference(fake_db, borrowed_reference):
    result = await returns.return_items(fake_db, reference_number="REF-9", user_id=5, book_ids="[10]")

    assert result["total_returned"] == 1
    assert result["returned_items"][0]["item_title"] == "Noli Me Tangere"
    assert result["has_receipt"] is False
    assert borrowed_reference["returned"] == [1]
    assert borrowed_reference["statuses"] == {10: "Available"}


async def test_return_blocked_by_unpaid_penalty(fake_db, borrowed_reference):
    borrowed_reference["penalty"] = {"penalty_id": 3, "fine": 15, "status": "Pending Payment"}

    with pytest.raises(ReturnRejected) as exc_info:
        await returns.return_items(fake_db, reference_number="REF-9", user_id=5, book_ids=[10])

    assert exc_info.value.status_code == 402
    assert exc_info.value.extras["unpaid_penalties"][0]["penalty_id"] == 3
    assert borrowed_reference["returned"] == []


async def test_return_by_another_user_is_forbidden(fake_db, borrowed_reference):
    with pytest.raises(ReturnRejected) as exc_info:
        await returns.return_items(fake_db, reference_number="REF-9", user_id=6, book_ids=[10])
    assert exc_info.value.status_code == 403


async def test_return_requires_an_identifier(fake_db):
    with pytest.raises(ReturnRejected) as exc_info:
        await returns.return_items(fake_db)
    assert exc_info.value.status_code == 400
