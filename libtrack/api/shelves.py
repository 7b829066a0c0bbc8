from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.repositories import shelf_repo
from libtrack.schemas.catalog import (
    AddColumnsRequest,
    AddRowsRequest,
    ColumnCountUpdate,
    RowCountUpdate,
    ShelfCreate,
)
from libtrack.schemas.common import ok
from libtrack.services import shelves

router = APIRouter()


@router.get("/shelves")
async def list_shelves(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await shelf_repo.list_shelves(db))


@router.post("/shelves", status_code=201)
async def add_shelf(body: ShelfCreate, db: AsyncSession = Depends(get_library_db_session)):
    shelf_id = await shelves.add_shelf(db, body.shelf_number, body.shelf_column, body.shelf_row)
    return ok(data={"shelf_id": shelf_id}, message="Shelf added successfully")


@router.put("/shelves/{shelf_id}")
async def update_shelf(shelf_id: int, body: ShelfCreate, db: AsyncSession = Depends(get_library_db_session)):
    await shelves.update_shelf(db, shelf_id, body.shelf_number, body.shelf_column, body.shelf_row)
    return ok(data={"shelf_id": shelf_id}, message="Shelf updated successfully")


@router.delete("/shelves/number/{shelf_number}")
async def delete_shelf(shelf_number: str, db: AsyncSession = Depends(get_library_db_session)):
    deleted = await shelves.delete_shelf(db, shelf_number)
    return ok(data={"shelf_number": shelf_number, "affectedRows": deleted}, message="Shelf deleted successfully")


@router.put("/shelves/{shelf_id}/rows")
async def resize_rows(shelf_id: int, body: RowCountUpdate, db: AsyncSession = Depends(get_library_db_session)):
    result = await shelves.resize_rows(db, shelf_id, body.new_row_count)
    return ok(data=result, message=result.pop("message"))


@router.put("/shelves/{shelf_id}/columns")
async def resize_columns(shelf_id: int, body: ColumnCountUpdate, db: AsyncSession = Depends(get_library_db_session)):
    result = await shelves.resize_columns(db, shelf_id, body.new_column_count)
    return ok(data=result, message=result.pop("message"))


@router.post("/shelves/{shelf_id}/rows")
async def add_rows(shelf_id: int, body: AddRowsRequest, db: AsyncSession = Depends(get_library_db_session)):
    result = await shelves.add_rows(db, shelf_id, body.rows, body.column)
    return ok(data=result, message=result.pop("message"))


@router.post("/shelves/{shelf_id}/columns")
async def add_columns(shelf_id: int, body: AddColumnsRequest, db: AsyncSession = Depends(get_library_db_session)):
    result = await shelves.add_columns(db, shelf_id, body.columns, body.row)
    return ok(data=result, message=result.pop("message"))


@router.delete("/shelves/{shelf_id}/rows/{row_number}")
async def delete_row(shelf_id: int, row_number: int, db: AsyncSession = Depends(get_library_db_session)):
    affected = await shelves.delete_row(db, shelf_id, row_number)
    return ok(data={"affectedRows": affected}, message=f"Row {row_number} removed successfully")


@router.delete("/shelves/{shelf_id}/columns/{column}")
async def delete_column(shelf_id: int, column: str, db: AsyncSession = Depends(get_library_db_session)):
    affected = await shelves.delete_column(db, shelf_id, column)
    return ok(data={"affectedRows": affected}, message=f"Column {column} removed successfully")
