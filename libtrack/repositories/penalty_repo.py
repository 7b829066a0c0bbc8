import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning

logger = logging.getLogger(__name__)

# A penalty is unpaid unless it has been settled
UNPAID_CONDITION = "({alias}.status IS NULL OR {alias}.status NOT IN ('Paid', 'Waived'))"

# Latest unpaid row per (transaction, borrower)
LATEST_UNPAID_IDS = f"""
    SELECT MAX(p2.penalty_id)
    FROM penalties p2
    WHERE {UNPAID_CONDITION.format(alias='p2')}
    GROUP BY p2.transaction_id, p2.user_id
"""

PENALTY_COLUMNS = """
    p.penalty_id, p.transaction_id, p.user_id, p.fine, p.status, p.penalty_type,
    p.book_price, p.waive_reason, p.waived_by, p.updated_at,
    u.first_name, u.last_name, u.email, u.position,
    t.reference_number, t.transaction_date, t.due_date, t.return_date, t.status AS transaction_status,
    t.book_id, t.research_paper_id,
    COALESCE(b.book_title, rp.research_title, 'Unknown Item') AS item_title
"""

PENALTY_JOINS = """
    FROM penalties p
    LEFT JOIN users u ON p.user_id = u.user_id
    LEFT JOIN transactions t ON p.transaction_id = t.transaction_id
    LEFT JOIN books b ON t.book_id = b.book_id
    LEFT JOIN research_papers rp ON t.research_paper_id = rp.research_paper_id
"""


# --- Locked reads used by the upsert and the state transitions ---

async def lock_transaction(db: AsyncSession, transaction_id: int) -> Optional[Dict[str, Any]]:
    """Fetch a transaction row and hold a row lock on it for the rest of the DB transaction.

    All penalty writes for a transaction go through this lock, which serializes concurrent
    sweeps and admin actions on the same (transaction, borrower) pair.
    """
    return await fetch_one(
        db,
        """
        SELECT t.transaction_id, t.user_id, t.transaction_type, t.transaction_date, t.due_date,
               t.return_date, t.status, t.book_id, t.research_paper_id, t.reference_number
        FROM transactions t
        WHERE t.transaction_id = :transaction_id
        FOR UPDATE
        """,
        {"transaction_id": transaction_id},
    )


async def lock_pair_penalties(db: AsyncSession, transaction_id: int, user_id: int) -> List[Dict[str, Any]]:
    """All penalty rows for the pair, most recently updated first, locked."""
    return await fetch_all(
        db,
        """
        SELECT penalty_id, transaction_id, user_id, fine, status, penalty_type, book_price, updated_at
        FROM penalties
        WHERE transaction_id = :transaction_id AND user_id = :user_id
        ORDER BY updated_at DESC NULLS LAST, penalty_id DESC
        FOR UPDATE
        """,
        {"transaction_id": transaction_id, "user_id": user_id},
    )


async def lock_penalty(db: AsyncSession, penalty_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        f"""
        SELECT {PENALTY_COLUMNS}
        {PENALTY_JOINS}
        WHERE p.penalty_id = :penalty_id
        FOR UPDATE OF p
        """,
        {"penalty_id": penalty_id},
    )


# --- Writes ---

async def delete_unpaid_for_pair(
    db: AsyncSession,
    transaction_id: int,
    user_id: int,
    keep_penalty_id: Optional[int] = None,
) -> int:
    """Delete unpaid rows of the pair, except keep_penalty_id when given."""
    sql = f"""
        DELETE FROM penalties p
        WHERE p.transaction_id = :transaction_id AND p.user_id = :user_id
          AND {UNPAID_CONDITION.format(alias='p')}
    """
    params: Dict[str, Any] = {"transaction_id": transaction_id, "user_id": user_id}
    if keep_penalty_id is not None:
        sql += " AND p.penalty_id <> :keep_penalty_id"
        params["keep_penalty_id"] = keep_penalty_id
    return await execute(db, sql, params)


async def update_penalty_fine(
    db: AsyncSession,
    penalty_id: int,
    fine: float,
    penalty_type: str = "overdue",
    book_price: float = 0,
) -> int:
    return await execute(
        db,
        """
        UPDATE penalties
        SET fine = :fine, penalty_type = :penalty_type, book_price = :book_price, updated_at = NOW()
        WHERE penalty_id = :penalty_id
        """,
        {"penalty_id": penalty_id, "fine": fine, "penalty_type": penalty_type, "book_price": book_price},
    )


async def insert_penalty(
    db: AsyncSession,
    transaction_id: int,
    user_id: int,
    fine: float,
    penalty_type: str = "overdue",
    book_price: float = 0,
) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO penalties (transaction_id, user_id, fine, status, penalty_type, book_price, updated_at)
        VALUES (:transaction_id, :user_id, :fine, 'Pending Payment', :penalty_type, :book_price, NOW())
        RETURNING penalty_id
        """,
        {
            "transaction_id": transaction_id,
            "user_id": user_id,
            "fine": fine,
            "penalty_type": penalty_type,
            "book_price": book_price,
        },
    )


async def mark_paid(db: AsyncSession, penalty_id: int) -> int:
    return await execute(
        db,
        "UPDATE penalties SET status = 'Paid', updated_at = NOW() WHERE penalty_id = :penalty_id",
        {"penalty_id": penalty_id},
    )


async def mark_waived(db: AsyncSession, penalty_id: int, reason: str, waived_by: Optional[str]) -> int:
    return await execute(
        db,
        """
        UPDATE penalties
        SET status = 'Waived', waive_reason = :reason, waived_by = :waived_by, updated_at = NOW()
        WHERE penalty_id = :penalty_id
        """,
        {"penalty_id": penalty_id, "reason": reason, "waived_by": waived_by},
    )


async def delete_penalty(db: AsyncSession, penalty_id: int) -> int:
    return await execute(db, "DELETE FROM penalties WHERE penalty_id = :penalty_id", {"penalty_id": penalty_id})


# --- Sweep inputs ---

async def get_overdue_candidates(db: AsyncSession, student_days: int, faculty_days: int) -> List[Dict[str, Any]]:
    """Non-returned borrow transactions whose elapsed days exceed the borrower's allowed period."""
    return await fetch_all(
        db,
        """
        SELECT t.transaction_id, t.user_id, t.transaction_date, t.due_date, t.return_date, t.status,
               u.position
        FROM transactions t
        JOIN users u ON t.user_id = u.user_id
        WHERE t.transaction_type = 'borrow'
          AND (t.status IS NULL OR t.status <> 'Returned')
          AND t.transaction_date IS NOT NULL
          AND (CURRENT_DATE - CAST(t.transaction_date AS DATE)) > CASE
                WHEN u.position IS NULL OR u.position = 'Student' THEN :student_days
                ELSE :faculty_days
              END
        ORDER BY t.transaction_id
        """,
        {"student_days": student_days, "faculty_days": faculty_days},
    )


async def get_transaction_for_fine(db: AsyncSession, transaction_id: int) -> Optional[Dict[str, Any]]:
    """Transaction with borrower role and item replacement price."""
    return await fetch_one(
        db,
        """
        SELECT t.transaction_id, t.user_id, t.transaction_type, t.transaction_date, t.due_date,
               t.return_date, t.status, t.book_id, t.research_paper_id, t.reference_number,
               u.position, u.first_name, u.last_name, u.email,
               COALESCE(b.book_title, rp.research_title, 'Unknown Item') AS item_title,
               COALESCE(b.book_price, rp.research_paper_price, 0) AS item_price
        FROM transactions t
        LEFT JOIN users u ON t.user_id = u.user_id
        LEFT JOIN books b ON t.book_id = b.book_id
        LEFT JOIN research_papers rp ON t.research_paper_id = rp.research_paper_id
        WHERE t.transaction_id = :transaction_id
        """,
        {"transaction_id": transaction_id},
    )


# --- Maintenance ---

async def delete_on_time_unpaid(db: AsyncSession) -> int:
    """Remove unpaid penalties whose transaction came back on or before its due date."""
    return await execute(
        db,
        f"""
        DELETE FROM penalties p
        USING transactions t
        WHERE p.transaction_id = t.transaction_id
          AND t.status = 'Returned'
          AND t.return_date IS NOT NULL AND t.due_date IS NOT NULL
          AND CAST(t.return_date AS DATE) <= CAST(t.due_date AS DATE)
          AND {UNPAID_CONDITION.format(alias='p')}
        """,
    )


async def delete_duplicate_unpaid(db: AsyncSession) -> int:
    """Keep only the highest-id unpaid row per (transaction, borrower)."""
    return await execute(
        db,
        f"""
        DELETE FROM penalties p
        WHERE {UNPAID_CONDITION.format(alias='p')}
          AND p.penalty_id NOT IN ({LATEST_UNPAID_IDS})
        """,
    )


# --- Reporting ---

def _list_filters(status: Optional[str], user_id: Optional[int], search: Optional[str]) -> tuple:
    clauses = [f"(p.status IN ('Paid', 'Waived') OR p.penalty_id IN ({LATEST_UNPAID_IDS}))"]
    params: Dict[str, Any] = {}
    if status:
        if status.lower() in ("unpaid", "pending", "pending payment"):
            clauses.append(UNPAID_CONDITION.format(alias='p'))
        else:
            clauses.append("p.status = :status")
            params["status"] = status
    if user_id is not None:
        clauses.append("p.user_id = :user_id")
        params["user_id"] = user_id
    if search:
        clauses.append(
            "(CONCAT(u.first_name, ' ', u.last_name) ILIKE :search "
            "OR b.book_title ILIKE :search OR rp.research_title ILIKE :search "
            "OR t.reference_number ILIKE :search)"
        )
        params["search"] = f"%{search}%"
    return " AND ".join(clauses), params


async def list_penalties(
    db: AsyncSession,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    where, params = _list_filters(status, user_id, search)
    rows = await fetch_all(
        db,
        f"""
        SELECT {PENALTY_COLUMNS}
        {PENALTY_JOINS}
        WHERE {where}
        ORDER BY p.updated_at DESC NULLS LAST, p.penalty_id DESC
        LIMIT :limit OFFSET :offset
        """,
        {**params, "limit": limit, "offset": offset},
    )
    total = await fetch_one(db, f"SELECT COUNT(*) AS total {PENALTY_JOINS} WHERE {where}", params)
    return {"rows": rows, "total": int(total["total"]) if total else 0}


async def get_user_penalties(db: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
    where, params = _list_filters(None, user_id, None)
    return await fetch_all(
        db,
        f"""
        SELECT {PENALTY_COLUMNS}
        {PENALTY_JOINS}
        WHERE {where}
        ORDER BY p.updated_at DESC NULLS LAST
        """,
        params,
    )


async def get_summary(db: AsyncSession, student_days: int, faculty_days: int, recent_days: int) -> Dict[str, Any]:
    row = await fetch_one(
        db,
        f"""
        SELECT
            COUNT(*) FILTER (WHERE {UNPAID_CONDITION.format(alias='p')}) AS total_penalties,
            COALESCE(SUM(p.fine) FILTER (WHERE {UNPAID_CONDITION.format(alias='p')}), 0) AS total_fines,
            COUNT(*) FILTER (
                WHERE {UNPAID_CONDITION.format(alias='p')}
                  AND (t.status IS NULL OR t.status <> 'Returned')
                  AND (CURRENT_DATE - CAST(t.transaction_date AS DATE)) > CASE
                        WHEN u.position IS NULL OR u.position = 'Student' THEN :student_days
                        ELSE :faculty_days END
            ) AS overdue_count,
            COALESCE(SUM(p.fine) FILTER (
                WHERE {UNPAID_CONDITION.format(alias='p')}
                  AND (t.status IS NULL OR t.status <> 'Returned')
                  AND (CURRENT_DATE - CAST(t.transaction_date AS DATE)) > CASE
                        WHEN u.position IS NULL OR u.position = 'Student' THEN :student_days
                        ELSE :faculty_days END
            ), 0) AS overdue_fines,
            COUNT(*) FILTER (WHERE p.status = 'Paid') AS paid_count,
            COALESCE(SUM(p.fine) FILTER (WHERE p.status = 'Paid'), 0) AS paid_fines,
            COUNT(*) FILTER (WHERE p.status = 'Waived') AS waived_count,
            COUNT(*) FILTER (WHERE p.updated_at >= NOW() - make_interval(days => :recent_days)) AS recent_count,
            COALESCE(SUM(p.fine) FILTER (WHERE p.updated_at >= NOW() - make_interval(days => :recent_days)), 0) AS recent_fines
        FROM penalties p
        LEFT JOIN transactions t ON p.transaction_id = t.transaction_id
        LEFT JOIN users u ON p.user_id = u.user_id
        WHERE (p.status IN ('Paid', 'Waived') OR p.penalty_id IN ({LATEST_UNPAID_IDS}))
        """,
        {"student_days": student_days, "faculty_days": faculty_days, "recent_days": recent_days},
    )
    return row or {}


# --- Scheduler queries ---

async def get_due_tomorrow(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT t.transaction_id, t.reference_number, t.user_id, t.due_date,
               u.first_name, u.last_name, u.email,
               COALESCE(b.book_title, rp.research_title, 'Item') AS item_title
        FROM transactions t
        JOIN users u ON t.user_id = u.user_id
        LEFT JOIN books b ON t.book_id = b.book_id
        LEFT JOIN research_papers rp ON t.research_paper_id = rp.research_paper_id
        WHERE t.status = 'Borrowed'
          AND CAST(t.due_date AS DATE) = CURRENT_DATE + 1
          AND u.email IS NOT NULL AND u.email <> ''
        ORDER BY t.transaction_id
        """,
    )


async def get_overdue_unpaid_for_reminders(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        f"""
        SELECT p.penalty_id, p.fine, p.transaction_id, p.user_id,
               t.reference_number, t.due_date,
               (CURRENT_DATE - CAST(t.due_date AS DATE)) AS days_overdue,
               u.first_name, u.last_name, u.email,
               COALESCE(b.book_title, rp.research_title, 'Item') AS item_title
        FROM penalties p
        JOIN transactions t ON p.transaction_id = t.transaction_id
        JOIN users u ON p.user_id = u.user_id
        LEFT JOIN books b ON t.book_id = b.book_id
        LEFT JOIN research_papers rp ON t.research_paper_id = rp.research_paper_id
        WHERE {UNPAID_CONDITION.format(alias='p')}
          AND t.status = 'Borrowed'
          AND CAST(t.due_date AS DATE) < CURRENT_DATE
          AND p.penalty_id IN ({LATEST_UNPAID_IDS})
          AND u.email IS NOT NULL AND u.email <> ''
        ORDER BY p.penalty_id
        """,
    )


async def get_active_borrows(
    db: AsyncSession,
    department: Optional[str] = None,
    user_type: Optional[str] = None,
    user_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Non-returned borrow transactions with borrower, department and item, for the fine reports."""
    clauses = [
        "t.transaction_type = 'borrow'",
        "(t.status IS NULL OR t.status <> 'Returned')",
    ]
    params: Dict[str, Any] = {}
    if department:
        clauses.append("d.department_name = :department")
        params["department"] = department
    if user_id is not None:
        clauses.append("t.user_id = :user_id")
        params["user_id"] = user_id
    if user_type == "student":
        clauses.append("(u.position IS NULL OR u.position = 'Student')")
    elif user_type == "faculty":
        clauses.append("(u.position IS NOT NULL AND u.position <> 'Student')")
    return await fetch_all(
        db,
        f"""
        SELECT t.transaction_id, t.user_id, t.reference_number, t.transaction_date, t.due_date,
               t.status, t.book_id, t.research_paper_id,
               u.first_name, u.last_name, u.email, u.position,
               d.department_name, d.department_acronym,
               COALESCE(b.book_title, rp.research_title, 'Unknown Item') AS item_title
        FROM transactions t
        JOIN users u ON t.user_id = u.user_id
        LEFT JOIN departments d ON u.department_id = d.department_id
        LEFT JOIN books b ON t.book_id = b.book_id
        LEFT JOIN research_papers rp ON t.research_paper_id = rp.research_paper_id
        WHERE {' AND '.join(clauses)}
        ORDER BY t.transaction_date ASC
        """,
        params,
    )
