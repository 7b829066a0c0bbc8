import base64
import logging
import secrets
import string
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning
from libtrack.utils import encode_book_qr, upload_url

logger = logging.getLogger(__name__)

BOOK_STATUSES = ("Available", "Borrowed", "Reserved", "Lost", "Removed")


# --- Schema variant ---

def classification_sql() -> Dict[str, str]:
    """Columns and joins for the configured book classification."""
    if settings.BOOK_CLASSIFICATION == "genre_or_department":
        return {
            "columns": """
                CASE WHEN b.is_using_department THEN d.department_id ELSE bg.book_genre_id END AS genre_id,
                CASE WHEN b.is_using_department THEN d.department_name ELSE bg.book_genre END AS genre,
                b.is_using_department
            """,
            "joins": """
                LEFT JOIN book_genre bg ON b.book_genre_id = bg.book_genre_id AND NOT b.is_using_department
                LEFT JOIN departments d ON b.book_genre_id = d.department_id AND b.is_using_department
            """,
        }
    return {
        "columns": "bg.book_genre_id AS genre_id, bg.book_genre AS genre",
        "joins": "LEFT JOIN book_genre bg ON b.book_genre_id = bg.book_genre_id",
    }


def _book_select() -> str:
    classification = classification_sql()
    return f"""
        SELECT
            b.book_id, b.book_title, b.book_cover, b.book_number, b.book_qr, b.book_edition,
            b.book_year, b.book_price, b.book_donor, b.batch_registration_key, b.status,
            {classification['columns']},
            bp.book_publisher_id AS publisher_id, bp.publisher,
            ba.book_author_id AS author_id, ba.book_author AS author,
            bs.book_shelf_loc_id AS shelf_location_id, bs.shelf_number, bs.shelf_column, bs.shelf_row,
            b.created_at
        FROM books b
        {classification['joins']}
        LEFT JOIN book_publisher bp ON b.book_publisher_id = bp.book_publisher_id
        LEFT JOIN book_author ba ON b.book_author_id = ba.book_author_id
        LEFT JOIN book_shelf_location bs ON b.book_shelf_loc_id = bs.book_shelf_loc_id
    """


def present_book(row: Dict[str, Any]) -> Dict[str, Any]:
    """Render cover for the configured storage: base64 for BLOBs, absolute URL for paths."""
    book = dict(row)
    cover = book.get("book_cover")
    if isinstance(cover, (bytes, bytearray, memoryview)):
        book["book_cover"] = base64.b64encode(bytes(cover)).decode("ascii")
    elif settings.BOOK_COVER_STORAGE == "path":
        book["book_cover"] = upload_url(cover)
    return book


def new_batch_key() -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "0x" + "".join(secrets.choice(alphabet) for _ in range(8))


# --- Reads ---

async def list_books(db: AsyncSession, status: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    clauses, params = [], {}
    if status:
        clauses.append("b.status = :status")
        params["status"] = status
    else:
        clauses.append("(b.status IS NULL OR b.status <> 'Removed')")
    if search:
        clauses.append("(b.book_title ILIKE :search OR ba.book_author ILIKE :search OR b.batch_registration_key ILIKE :search)")
        params["search"] = f"%{search}%"
    rows = await fetch_all(
        db,
        f"{_book_select()} WHERE {' AND '.join(clauses)} ORDER BY b.book_id DESC",
        params,
    )
    return [present_book(r) for r in rows]


async def get_book(db: AsyncSession, book_id: int) -> Optional[Dict[str, Any]]:
    row = await fetch_one(db, f"{_book_select()} WHERE b.book_id = :book_id", {"book_id": book_id})
    return present_book(row) if row else None


async def get_batch(db: AsyncSession, batch_key: str) -> Optional[Dict[str, Any]]:
    """First copy of a registration batch plus copy counts."""
    row = await fetch_one(
        db,
        f"{_book_select()} WHERE b.batch_registration_key = :batch_key ORDER BY b.book_number LIMIT 1",
        {"batch_key": batch_key},
    )
    if not row:
        return None
    counts = await fetch_one(
        db,
        """
        SELECT COUNT(*) AS total_copies,
               COUNT(*) FILTER (WHERE status = 'Available') AS available_copies
        FROM books
        WHERE batch_registration_key = :batch_key AND (status IS NULL OR status <> 'Removed')
        """,
        {"batch_key": batch_key},
    )
    book = present_book(row)
    book["total_copies"] = int(counts["total_copies"]) if counts else 0
    book["available_copies"] = int(counts["available_copies"]) if counts else 0
    return book


async def find_by_qr(db: AsyncSession, book_id: int, copy_number: int) -> Optional[Dict[str, Any]]:
    """Resolve a scanned (book id, copy number) to exactly one copy.

    The copy must carry that copy number and belong to the same registration batch as book_id.
    """
    row = await fetch_one(
        db,
        f"""
        {_book_select()}
        WHERE b.book_number = :copy_number
          AND (b.book_id = :book_id OR b.batch_registration_key = (
                SELECT batch_registration_key FROM books WHERE book_id = :book_id
              ))
        ORDER BY (b.book_id = :book_id) DESC, b.book_id
        LIMIT 1
        """,
        {"book_id": book_id, "copy_number": copy_number},
    )
    return present_book(row) if row else None


# --- Writes ---

async def get_or_create_name(db: AsyncSession, table: str, id_column: str, name_column: str, value: str) -> int:
    """Reuse a lookup row (author, publisher, genre, department) by name or insert it."""
    row = await fetch_one(
        db,
        f"SELECT {id_column} AS id FROM {table} WHERE LOWER({name_column}) = LOWER(:value) LIMIT 1",
        {"value": value},
    )
    if row:
        return row["id"]
    return await insert_returning(
        db,
        f"INSERT INTO {table} ({name_column}, created_at) VALUES (:value, NOW()) RETURNING {id_column}",
        {"value": value},
    )


async def get_or_create_shelf_cell(db: AsyncSession, shelf_number: Any, shelf_column: str, shelf_row: Any) -> int:
    sql = "SELECT book_shelf_loc_id AS id FROM book_shelf_location WHERE shelf_column = :shelf_column AND shelf_row = :shelf_row"
    params = {"shelf_column": shelf_column, "shelf_row": shelf_row}
    if shelf_number is not None:
        sql += " AND shelf_number = :shelf_number"
        params["shelf_number"] = shelf_number
    row = await fetch_one(db, sql + " ORDER BY book_shelf_loc_id LIMIT 1", params)
    if row:
        return row["id"]
    return await insert_returning(
        db,
        """
        INSERT INTO book_shelf_location (shelf_number, shelf_column, shelf_row, created_at)
        VALUES (:shelf_number, :shelf_column, :shelf_row, NOW())
        RETURNING book_shelf_loc_id
        """,
        {"shelf_number": shelf_number, "shelf_column": shelf_column, "shelf_row": shelf_row},
    )


COPY_COLUMNS = (
    "book_title", "book_cover", "book_number", "book_edition", "book_year", "book_price", "book_donor",
    "book_genre_id", "book_publisher_id", "book_shelf_loc_id", "book_author_id", "batch_registration_key",
)


async def insert_copy(db: AsyncSession, values: Dict[str, Any], copy_number: int) -> int:
    """Insert one copy of a batch and stamp its QR payload."""
    columns = list(COPY_COLUMNS)
    if settings.BOOK_CLASSIFICATION == "genre_or_department":
        columns.append("is_using_department")
    params = {column: values.get(column) for column in columns}
    params["book_number"] = copy_number
    if "is_using_department" in params:
        params["is_using_department"] = bool(params["is_using_department"])
    book_id = await insert_returning(
        db,
        f"""
        INSERT INTO books ({', '.join(columns)}, status, created_at)
        VALUES ({', '.join(':' + c for c in columns)}, 'Available', NOW())
        RETURNING book_id
        """,
        params,
    )
    await execute(
        db,
        "UPDATE books SET book_qr = :book_qr WHERE book_id = :book_id",
        {"book_qr": encode_book_qr(book_id, copy_number), "book_id": book_id},
    )
    return book_id


async def update_book(db: AsyncSession, book_id: int, values: Dict[str, Any]) -> int:
    """COALESCE-update the given book columns. Unknown keys are ignored."""
    allowed = ("book_title", "book_cover", "book_edition", "book_year", "book_price", "book_donor",
               "book_author_id", "book_publisher_id", "book_genre_id", "is_using_department", "book_shelf_loc_id")
    updates = {k: v for k, v in values.items() if k in allowed and v is not None}
    if not updates:
        return 0
    assignments = ", ".join(f"{column} = :{column}" for column in updates)
    return await execute(
        db,
        f"UPDATE books SET {assignments}, updated_at = NOW() WHERE book_id = :book_id",
        {**updates, "book_id": book_id},
    )


async def set_status(db: AsyncSession, book_id: int, status: str) -> int:
    return await execute(
        db,
        "UPDATE books SET status = :status, updated_at = NOW() WHERE book_id = :book_id",
        {"status": status, "book_id": book_id},
    )


async def remove_batch(db: AsyncSession, batch_key: str) -> int:
    """Soft-delete every copy of a batch."""
    return await execute(
        db,
        "UPDATE books SET status = 'Removed', updated_at = NOW() WHERE batch_registration_key = :batch_key",
        {"batch_key": batch_key},
    )
