"""Read-only catalog queries behind the chatbot tools.

Every function returns plain dict rows; the tool layer wraps them into
``{success, count, <payload>}`` results.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories.base import fetch_all, fetch_one

logger = logging.getLogger(__name__)

AVAILABLE_FIRST = "CASE WHEN b.status = 'Available' THEN 0 ELSE 1 END"


def _category() -> Dict[str, str]:
    """Category expression and joins for the configured book classification."""
    if settings.BOOK_CLASSIFICATION == "genre_or_department":
        return {
            "expr": "CASE WHEN b.is_using_department THEN d.department_name ELSE bg.book_genre END",
            "joins": """
                LEFT JOIN book_genre bg ON b.book_genre_id = bg.book_genre_id AND NOT b.is_using_department
                LEFT JOIN departments d ON b.book_genre_id = d.department_id AND b.is_using_department
            """,
        }
    return {
        "expr": "bg.book_genre",
        "joins": """
            LEFT JOIN book_genre bg ON b.book_genre_id = bg.book_genre_id
            LEFT JOIN departments d ON FALSE
        """,
    }


def _search_select() -> str:
    category = _category()
    return f"""
        SELECT
            b.book_id,
            b.book_title AS title,
            b.book_title,
            COALESCE(ba.book_author, '') AS author,
            b.book_number,
            COALESCE(bp.publisher, '') AS publisher,
            b.book_year AS publication_year,
            {category['expr']} AS category,
            b.book_edition,
            b.batch_registration_key,
            b.status,
            CASE WHEN b.status = 'Available' THEN 'Available' ELSE 'Not Available' END AS availability_status,
            CASE WHEN bs.book_shelf_loc_id IS NULL THEN NULL
                 ELSE CONCAT('Shelf ', bs.shelf_number, ' ', bs.shelf_column, bs.shelf_row) END AS shelf_location
        FROM books b
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        LEFT JOIN book_publisher bp ON b.book_publisher_id = bp.book_publisher_id
        LEFT JOIN book_shelf_location bs ON b.book_shelf_loc_id = bs.book_shelf_loc_id
        {category['joins']}
    """


NOT_REMOVED = "(b.status IS NULL OR b.status <> 'Removed')"


# --- Books ---

async def search_books_by_author(db: AsyncSession, token: str, limit: int) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        f"""
        {_search_select()}
        WHERE LOWER(COALESCE(ba.book_author, '')) LIKE :pattern AND {NOT_REMOVED}
        ORDER BY {AVAILABLE_FIRST}, b.book_title
        LIMIT :limit
        """,
        {"pattern": f"%{token.lower()}%", "limit": limit},
    )


async def search_books_broad(db: AsyncSession, query: str, tokens: List[str], limit: int) -> List[Dict[str, Any]]:
    """Title, author tokens (all or any), copy number, batch key, genre or department."""
    params: Dict[str, Any] = {"pattern": f"%{query}%", "limit": limit}
    if tokens:
        token_conditions = []
        for i, token in enumerate(tokens):
            params[f"token_{i}"] = f"%{token}%"
            token_conditions.append(f"LOWER(COALESCE(ba.book_author, '')) LIKE :token_{i}")
        author_clause = f"(({' AND '.join(token_conditions)}) OR ({' OR '.join(token_conditions)}))"
    else:
        author_clause = "LOWER(COALESCE(ba.book_author, '')) LIKE LOWER(:pattern)"

    return await fetch_all(
        db,
        f"""
        {_search_select()}
        WHERE {NOT_REMOVED} AND (
            b.book_title ILIKE :pattern
            OR {author_clause}
            OR CAST(b.book_number AS TEXT) ILIKE :pattern
            OR b.batch_registration_key ILIKE :pattern
            OR bg.book_genre ILIKE :pattern
            OR d.department_name ILIKE :pattern
        )
        ORDER BY {AVAILABLE_FIRST}, b.book_title
        LIMIT :limit
        """,
        params,
    )


async def list_book_titles(db: AsyncSession) -> List[str]:
    rows = await fetch_all(db, f"SELECT DISTINCT b.book_title FROM books b WHERE {NOT_REMOVED} AND b.book_title IS NOT NULL")
    return [r["book_title"] for r in rows]


async def books_by_titles(db: AsyncSession, titles: List[str], limit: int) -> List[Dict[str, Any]]:
    if not titles:
        return []
    params: Dict[str, Any] = {"limit": limit}
    placeholders = []
    for i, title in enumerate(titles):
        params[f"title_{i}"] = title
        placeholders.append(f":title_{i}")
    return await fetch_all(
        db,
        f"""
        {_search_select()}
        WHERE {NOT_REMOVED} AND b.book_title IN ({', '.join(placeholders)})
        ORDER BY {AVAILABLE_FIRST}, b.book_title
        LIMIT :limit
        """,
        params,
    )


async def get_book_availability(db: AsyncSession, book_id: int) -> Optional[Dict[str, Any]]:
    category = _category()
    return await fetch_one(
        db,
        f"""
        SELECT
            b.book_id, b.book_title, b.book_number, b.batch_registration_key, b.status,
            ba.book_author AS author, bp.publisher, b.book_year, b.book_edition,
            {category['expr']} AS category,
            CASE WHEN b.status = 'Available' THEN 'Available' ELSE 'Not Available' END AS availability_status,
            (SELECT AVG(star_rating) FROM ratings WHERE book_id = b.book_id) AS average_rating,
            (SELECT COUNT(*) FROM ratings WHERE book_id = b.book_id) AS rating_count
        FROM books b
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        LEFT JOIN book_publisher bp ON b.book_publisher_id = bp.book_publisher_id
        {category['joins']}
        WHERE b.book_id = :book_id
        """,
        {"book_id": book_id},
    )


async def popular_books(db: AsyncSession, kind: str, limit: int) -> List[Dict[str, Any]]:
    category = _category()
    base_columns = f"b.book_id, b.book_title, ba.book_author AS author, {category['expr']} AS category, b.status"
    base_joins = f"LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id {category['joins']}"
    group_by = f"b.book_id, b.book_title, ba.book_author, {category['expr']}, b.status"

    if kind == "most_borrowed":
        sql = f"""
            SELECT {base_columns}, COUNT(t.transaction_id) AS borrow_count
            FROM books b
            {base_joins}
            JOIN transactions t ON b.book_id = t.book_id AND t.transaction_type = 'borrow'
            GROUP BY {group_by}
            ORDER BY borrow_count DESC
            LIMIT :limit
        """
    elif kind == "highest_rated":
        sql = f"""
            SELECT {base_columns}, AVG(r.star_rating) AS average_rating, COUNT(r.rating_id) AS rating_count
            FROM books b
            {base_joins}
            JOIN ratings r ON b.book_id = r.book_id
            GROUP BY {group_by}
            HAVING COUNT(r.rating_id) >= 3
            ORDER BY average_rating DESC, rating_count DESC
            LIMIT :limit
        """
    elif kind == "recently_added":
        sql = f"""
            SELECT {base_columns}, b.created_at AS date_added
            FROM books b
            {base_joins}
            WHERE {NOT_REMOVED}
            ORDER BY b.created_at DESC
            LIMIT :limit
        """
    else:
        raise ValueError(f"Unknown popularity type: {kind}")
    return await fetch_all(db, sql, {"limit": limit})


async def book_categories(db: AsyncSession) -> List[Dict[str, Any]]:
    category = _category()
    return await fetch_all(
        db,
        f"""
        SELECT {category['expr']} AS category, COUNT(*) AS book_count
        FROM books b
        {category['joins']}
        GROUP BY {category['expr']}
        HAVING {category['expr']} IS NOT NULL
        ORDER BY category
        """,
    )


# --- Recommendations ---

def _recommendation_select() -> str:
    category = _category()
    return f"""
        SELECT
            b.book_title AS title,
            ba.book_author AS author,
            {category['expr']} AS category,
            COUNT(DISTINCT b.book_id) AS total_copies,
            COUNT(DISTINCT b.book_id) FILTER (WHERE b.status = 'Available') AS available_copies,
            CASE WHEN COUNT(DISTINCT b.book_id) FILTER (WHERE b.status = 'Available') > 0
                 THEN 'Available' ELSE 'Not Available' END AS status,
            COALESCE(AVG(r.star_rating), 0) AS average_rating,
            COUNT(DISTINCT r.rating_id) AS rating_count,
            COUNT(DISTINCT t.transaction_id) AS borrow_count
        FROM books b
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        {category['joins']}
        LEFT JOIN ratings r ON b.book_id = r.book_id
        LEFT JOIN transactions t ON b.book_id = t.book_id AND t.transaction_type = 'borrow'
    """


def _recommendation_tail(category_expr: str, extra_having: str = "") -> str:
    return f"""
        GROUP BY b.book_title, ba.book_author, {category_expr}
        HAVING COUNT(DISTINCT b.book_id) FILTER (WHERE b.status = 'Available') > 0 {extra_having}
        ORDER BY average_rating DESC, borrow_count DESC, rating_count DESC
        LIMIT :limit
    """


async def preferred_categories(db: AsyncSession, user_id: int, top: int = 2) -> List[str]:
    category = _category()
    rows = await fetch_all(
        db,
        f"""
        SELECT {category['expr']} AS category, COUNT(*) AS borrow_count
        FROM transactions t
        JOIN books b ON t.book_id = b.book_id
        {category['joins']}
        WHERE t.user_id = :user_id AND t.transaction_type = 'borrow'
        GROUP BY {category['expr']}
        ORDER BY borrow_count DESC
        LIMIT :top
        """,
        {"user_id": user_id, "top": top},
    )
    return [r["category"] for r in rows if r.get("category")]


async def recommend_by_categories(db: AsyncSession, user_id: Optional[int], categories: List[str], limit: int) -> List[Dict[str, Any]]:
    """Available titles in the given categories, minus anything the user already borrowed."""
    category = _category()
    params: Dict[str, Any] = {"limit": limit}
    exclude_borrowed = ""
    if user_id:
        params["user_id"] = user_id
        exclude_borrowed = """
          AND b.book_title NOT IN (
              SELECT DISTINCT bk.book_title FROM books bk
              JOIN transactions tr ON bk.book_id = tr.book_id
              WHERE tr.user_id = :user_id AND tr.transaction_type = 'borrow'
          )"""
    placeholders = []
    for i, name in enumerate(categories):
        params[f"category_{i}"] = name
        placeholders.append(f":category_{i}")
    return await fetch_all(
        db,
        f"""
        {_recommendation_select()}
        WHERE {category['expr']} IN ({', '.join(placeholders)}){exclude_borrowed}
        {_recommendation_tail(category['expr'])}
        """,
        params,
    )


async def user_department(db: AsyncSession, user_id: int) -> Optional[str]:
    row = await fetch_one(
        db,
        """
        SELECT d.department_name
        FROM users u
        LEFT JOIN departments d ON u.department_id = d.department_id
        WHERE u.user_id = :user_id
        """,
        {"user_id": user_id},
    )
    return row.get("department_name") if row else None


async def recommend_by_department(db: AsyncSession, department: str, limit: int) -> List[Dict[str, Any]]:
    category = _category()
    return await fetch_all(
        db,
        f"""
        {_recommendation_select()}
        WHERE d.department_name = :department
        {_recommendation_tail(category['expr'])}
        """,
        {"department": department, "limit": limit},
    )


async def recommend_general(db: AsyncSession, limit: int) -> List[Dict[str, Any]]:
    category = _category()
    return await fetch_all(
        db,
        f"""
        {_recommendation_select()}
        {_recommendation_tail(category['expr'], "AND (COUNT(DISTINCT r.rating_id) >= 1 OR COUNT(DISTINCT t.transaction_id) >= 1)")}
        """,
        {"limit": limit},
    )


# --- Research papers ---

PAPER_SEARCH_SELECT = """
    SELECT
        rp.research_paper_id,
        rp.research_title AS title,
        STRING_AGG(DISTINCT ra.author_name, ', ') AS author,
        rp.research_abstract,
        rp.year_publication AS publication_year,
        d.department_name AS category,
        rp.status,
        CASE WHEN rp.status = 'Available' THEN 'Available' ELSE 'Not Available' END AS availability_status
    FROM research_papers rp
    LEFT JOIN research_author ra ON rp.research_paper_id = ra.research_paper_id
    LEFT JOIN departments d ON rp.department_id = d.department_id
"""

PAPER_SEARCH_GROUP_BY = """
    GROUP BY rp.research_paper_id, rp.research_title, rp.research_abstract, rp.year_publication,
             d.department_name, rp.status
"""


async def search_research_papers(db: AsyncSession, query: str, limit: int) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        f"""
        {PAPER_SEARCH_SELECT}
        WHERE rp.research_paper_id IN (
            SELECT p.research_paper_id
            FROM research_papers p
            LEFT JOIN research_author a ON p.research_paper_id = a.research_paper_id
            LEFT JOIN departments dd ON p.department_id = dd.department_id
            WHERE p.research_title ILIKE :pattern OR a.author_name ILIKE :pattern
               OR dd.department_name ILIKE :pattern OR p.research_abstract ILIKE :pattern
        )
        {PAPER_SEARCH_GROUP_BY}
        ORDER BY CASE WHEN rp.status = 'Available' THEN 0 ELSE 1 END, rp.year_publication DESC
        LIMIT :limit
        """,
        {"pattern": f"%{query}%", "limit": limit},
    )


async def recommend_papers(db: AsyncSession, department: Optional[str], limit: int) -> List[Dict[str, Any]]:
    """Available papers, newest first, optionally limited to one department."""
    params: Dict[str, Any] = {"limit": limit}
    department_clause = ""
    if department:
        department_clause = "AND d.department_name = :department"
        params["department"] = department
    return await fetch_all(
        db,
        f"""
        {PAPER_SEARCH_SELECT}
        WHERE rp.status = 'Available' {department_clause}
        {PAPER_SEARCH_GROUP_BY}
        ORDER BY rp.year_publication DESC
        LIMIT :limit
        """,
        params,
    )


# --- FAQs and rules ---

async def active_faqs(db: AsyncSession, category: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT id, question, answer, category, is_active FROM faqs WHERE is_active = TRUE"
    params: Dict[str, Any] = {}
    if category and category != "all":
        sql += " AND category = :category"
        params["category"] = category
    return await fetch_all(db, sql + " ORDER BY sort_order, id", params)


async def library_rules(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT r.id AS rule_id, r.title AS rule_title, r.description AS rule_description, rh.title AS category
        FROM rules r
        JOIN rule_headers rh ON r.header_id = rh.id
        ORDER BY rh.id, r.sort_order, r.id
        """,
    )


# --- Borrower account ---

async def user_borrowed_books(db: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT
            t.transaction_id, t.transaction_date AS borrow_date, t.due_date, t.status,
            b.book_id, b.book_title AS title, b.book_title, ba.book_author AS author, b.book_number,
            (t.due_date::date - CURRENT_DATE) AS days_until_due,
            GREATEST(CURRENT_DATE - t.due_date::date, 0) AS days_overdue
        FROM transactions t
        JOIN books b ON t.book_id = b.book_id
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        WHERE t.user_id = :user_id AND LOWER(t.status) = 'borrowed'
        ORDER BY t.due_date ASC
        """,
        {"user_id": user_id},
    )


async def user_transaction_history(db: AsyncSession, user_id: int, limit: int) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT
            t.transaction_id, t.transaction_type, t.transaction_date AS borrow_date, t.return_date,
            t.due_date, t.status, b.book_title, ba.book_author AS author,
            CASE WHEN t.return_date > t.due_date THEN t.return_date::date - t.due_date::date ELSE 0 END AS days_late
        FROM transactions t
        JOIN books b ON t.book_id = b.book_id
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        WHERE t.user_id = :user_id
        ORDER BY t.transaction_date DESC
        LIMIT :limit
        """,
        {"user_id": user_id, "limit": limit},
    )
