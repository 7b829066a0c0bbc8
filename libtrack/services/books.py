import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories import book_repo
from libtrack.repositories.book_repo import BOOK_STATUSES
from libtrack.services.errors import ServiceError
from libtrack.utils import save_upload

logger = logging.getLogger(__name__)

COVER_SUBDIR = "book_covers"


class BookError(ServiceError):
    pass


def parse_quantity(value: Any) -> int:
    try:
        quantity = int(str(value).strip()) if value not in (None, "") else 1
    except ValueError:
        quantity = 0
    if quantity < 1:
        raise BookError(400, "Invalid quantity", error="Quantity must be a positive number.")
    return quantity


async def store_cover(content: Optional[bytes], filename: Optional[str], batch_key: str) -> Any:
    """Cover value for the configured storage: raw bytes for BLOB columns, an upload path otherwise."""
    if not content:
        return None
    if settings.BOOK_COVER_STORAGE == "blob":
        return content
    return await save_upload(content, filename, COVER_SUBDIR, batch_key)


async def _classification_id(db: AsyncSession, genre: str, use_department: bool) -> int:
    if use_department:
        return await book_repo.get_or_create_name(db, "departments", "department_id", "department_name", genre)
    return await book_repo.get_or_create_name(db, "book_genre", "book_genre_id", "book_genre", genre)


async def list_books(db: AsyncSession, status: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    return await book_repo.list_books(db, status=status, search=search)


async def get_batch(db: AsyncSession, batch_key: str) -> Dict[str, Any]:
    book = await book_repo.get_batch(db, batch_key)
    if book is None:
        raise BookError(404, "Book not found")
    return book


async def add_books(
    db: AsyncSession,
    fields: Dict[str, Any],
    cover: Optional[bytes] = None,
    cover_filename: Optional[str] = None,
) -> Dict[str, Any]:
    """Register a batch of `quantity` copies sharing one registration key.

    Each copy is inserted under its own savepoint, so one failing copy is reported instead of
    aborting the whole batch.
    """
    required = ("genre", "publisher", "author", "shelfColumn", "shelfRow")
    if any(not fields.get(name) for name in required):
        raise BookError(
            400,
            "Missing required fields",
            error="genre, publisher, author, shelfColumn, and shelfRow are required and cannot be null.",
        )
    quantity = parse_quantity(fields.get("quantity", 1))

    batch_key = book_repo.new_batch_key()
    use_department = bool(fields.get("isUsingDepartment")) and settings.BOOK_CLASSIFICATION == "genre_or_department"
    genre_id = await _classification_id(db, fields["genre"], use_department)
    publisher_id = await book_repo.get_or_create_name(db, "book_publisher", "book_publisher_id", "publisher", fields["publisher"])
    author_id = await book_repo.get_or_create_name(db, "book_author", "book_author_id", "book_author", fields["author"])
    shelf_location_id = await book_repo.get_or_create_shelf_cell(
        db, fields.get("shelfNumber"), fields["shelfColumn"], fields["shelfRow"]
    )

    values = {
        "book_title": fields.get("bookTitle"),
        "book_cover": await store_cover(cover, cover_filename, batch_key),
        "book_edition": fields.get("bookEdition"),
        "book_year": fields.get("bookYear"),
        "book_price": fields.get("bookPrice"),
        "book_donor": fields.get("bookDonor"),
        "book_genre_id": genre_id,
        "book_publisher_id": publisher_id,
        "book_shelf_loc_id": shelf_location_id,
        "book_author_id": author_id,
        "batch_registration_key": batch_key,
        "is_using_department": use_department,
    }

    book_ids, errors = [], []
    for copy_number in range(1, quantity + 1):
        try:
            async with db.begin_nested():
                book_ids.append(await book_repo.insert_copy(db, values, copy_number))
        except Exception as e:
            logger.warning(f"[Books] Copy {copy_number} of batch {batch_key} failed: {e}")
            errors.append({"copy_number": copy_number, "error": str(e)})
    if not book_ids:
        await db.rollback()
        raise BookError(500, "Failed to add book", error=errors[0]["error"] if errors else "No copies inserted")
    await db.commit()

    logger.info(f"[Books] Registered batch {batch_key} with {len(book_ids)} copies.")

    return {
        "message": f"Book added successfully ({len(book_ids)} {'copy' if len(book_ids) == 1 else 'copies'})",
        "data": {
            "bookIds": book_ids,
            "genreId": genre_id,
            "publisherId": publisher_id,
            "authorId": author_id,
            "shelfLocationId": shelf_location_id,
            "batchRegistrationKey": batch_key,
            "quantity": quantity,
            "failed": errors,
        },
    }


async def update_book(
    db: AsyncSession,
    book_id: int,
    fields: Dict[str, Any],
    cover: Optional[bytes] = None,
    cover_filename: Optional[str] = None,
) -> Dict[str, Any]:
    existing = await book_repo.get_book(db, book_id)
    if existing is None:
        raise BookError(404, "Book not found")

    values: Dict[str, Any] = {
        "book_title": fields.get("bookTitle"),
        "book_edition": fields.get("bookEdition"),
        "book_year": fields.get("bookYear"),
        "book_price": fields.get("bookPrice"),
        "book_donor": fields.get("bookDonor"),
    }
    if fields.get("genre"):
        use_department = bool(fields.get("isUsingDepartment")) and settings.BOOK_CLASSIFICATION == "genre_or_department"
        values["book_genre_id"] = await _classification_id(db, fields["genre"], use_department)
        if settings.BOOK_CLASSIFICATION == "genre_or_department":
            values["is_using_department"] = use_department
    if fields.get("publisher"):
        values["book_publisher_id"] = await book_repo.get_or_create_name(
            db, "book_publisher", "book_publisher_id", "publisher", fields["publisher"]
        )
    if fields.get("author"):
        values["book_author_id"] = await book_repo.get_or_create_name(
            db, "book_author", "book_author_id", "book_author", fields["author"]
        )
    if fields.get("shelfColumn") and fields.get("shelfRow"):
        values["book_shelf_loc_id"] = await book_repo.get_or_create_shelf_cell(
            db, fields.get("shelfNumber"), fields["shelfColumn"], fields["shelfRow"]
        )
    if cover:
        values["book_cover"] = await store_cover(cover, cover_filename, existing.get("batch_registration_key") or str(book_id))

    await book_repo.update_book(db, book_id, values)
    await db.commit()
    return {
        "bookId": book_id,
        "genreId": values.get("book_genre_id", existing.get("genre_id")),
        "publisherId": values.get("book_publisher_id", existing.get("publisher_id")),
        "authorId": values.get("book_author_id", existing.get("author_id")),
        "shelfLocationId": values.get("book_shelf_loc_id", existing.get("shelf_location_id")),
    }


async def set_status(db: AsyncSession, book_id: int, status: Optional[str]) -> None:
    if status not in BOOK_STATUSES:
        raise BookError(400, f"Invalid status. Must be one of: {', '.join(BOOK_STATUSES)}")
    if not await book_repo.set_status(db, book_id, status):
        await db.rollback()
        raise BookError(404, "Book not found")
    await db.commit()


async def remove_batch(db: AsyncSession, batch_key: str) -> int:
    removed = await book_repo.remove_batch(db, batch_key)
    if not removed:
        await db.rollback()
        raise BookError(404, "Book not found")
    await db.commit()
    return removed
