import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.catalog import BookStatusUpdate
from libtrack.schemas.common import ok
from libtrack.services import books

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_upload(upload: Optional[UploadFile]) -> tuple:
    if upload is None or not upload.filename:
        return None, None
    return await upload.read(), upload.filename


def _book_fields(**values: Any) -> Dict[str, Any]:
    """Form values keyed the way the admin console names them."""
    return {key: value for key, value in values.items() if value is not None}


@router.get("/books/available")
async def available_books(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await books.list_books(db, status="Available"))


@router.get("/books")
async def list_books(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_library_db_session),
):
    return ok(data=await books.list_books(db, status=status, search=search))


@router.get("/books/batch/{batch_key}")
async def get_batch(batch_key: str, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await books.get_batch(db, batch_key))


@router.post("/books", status_code=201)
async def add_books(
    book_title: Optional[str] = Form(None, alias="bookTitle"),
    genre: Optional[str] = Form(None),
    publisher: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    shelf_number: Optional[str] = Form(None, alias="shelfNumber"),
    shelf_column: Optional[str] = Form(None, alias="shelfColumn"),
    shelf_row: Optional[str] = Form(None, alias="shelfRow"),
    book_edition: Optional[str] = Form(None, alias="bookEdition"),
    book_year: Optional[str] = Form(None, alias="bookYear"),
    book_price: Optional[str] = Form(None, alias="bookPrice"),
    book_donor: Optional[str] = Form(None, alias="bookDonor"),
    quantity: Optional[str] = Form(None),
    is_using_department: bool = Form(False, alias="isUsingDepartment"),
    book_cover: Optional[UploadFile] = File(None, alias="bookCover"),
    db: AsyncSession = Depends(get_library_db_session),
):
    cover, cover_filename = await _read_upload(book_cover)
    fields = _book_fields(
        bookTitle=book_title, genre=genre, publisher=publisher, author=author,
        shelfNumber=shelf_number, shelfColumn=shelf_column, shelfRow=shelf_row,
        bookEdition=book_edition, bookYear=book_year, bookPrice=book_price, bookDonor=book_donor,
        quantity=quantity, isUsingDepartment=is_using_department,
    )
    result = await books.add_books(db, fields, cover=cover, cover_filename=cover_filename)
    return ok(data=result["data"], message=result["message"])


@router.put("/books/{book_id}")
async def update_book(
    book_id: int,
    book_title: Optional[str] = Form(None, alias="bookTitle"),
    genre: Optional[str] = Form(None),
    publisher: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    shelf_number: Optional[str] = Form(None, alias="shelfNumber"),
    shelf_column: Optional[str] = Form(None, alias="shelfColumn"),
    shelf_row: Optional[str] = Form(None, alias="shelfRow"),
    book_edition: Optional[str] = Form(None, alias="bookEdition"),
    book_year: Optional[str] = Form(None, alias="bookYear"),
    book_price: Optional[str] = Form(None, alias="bookPrice"),
    book_donor: Optional[str] = Form(None, alias="bookDonor"),
    is_using_department: bool = Form(False, alias="isUsingDepartment"),
    book_cover: Optional[UploadFile] = File(None, alias="bookCover"),
    db: AsyncSession = Depends(get_library_db_session),
):
    cover, cover_filename = await _read_upload(book_cover)
    fields = _book_fields(
        bookTitle=book_title, genre=genre, publisher=publisher, author=author,
        shelfNumber=shelf_number, shelfColumn=shelf_column, shelfRow=shelf_row,
        bookEdition=book_edition, bookYear=book_year, bookPrice=book_price, bookDonor=book_donor,
        isUsingDepartment=is_using_department,
    )
    result = await books.update_book(db, book_id, fields, cover=cover, cover_filename=cover_filename)
    return ok(data=result, message="Book updated successfully")


@router.put("/books/{book_id}/status")
async def set_book_status(book_id: int, body: BookStatusUpdate, db: AsyncSession = Depends(get_library_db_session)):
    await books.set_status(db, book_id, body.status)
    return ok(data={"book_id": book_id, "status": body.status}, message="Book status updated")


@router.delete("/books/batch/{batch_key}")
async def remove_batch(batch_key: str, db: AsyncSession = Depends(get_library_db_session)):
    removed = await books.remove_batch(db, batch_key)
    return ok(data={"batchRegistrationKey": batch_key, "removed": removed}, message=f"{removed} copy(ies) removed")
