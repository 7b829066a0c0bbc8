import logging
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import shelf_repo
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)


class ShelfError(ServiceError):
    pass


def column_label(index: int) -> str:
    """0 -> 'A', 1 -> 'B', ..."""
    return chr(65 + index)


def _row_count(rows: List[Any]) -> int:
    numbers = []
    for row in rows:
        try:
            numbers.append(int(row))
        except (TypeError, ValueError):
            continue
    return max(numbers) if numbers else 0


async def _shelf_number_or_404(db: AsyncSession, shelf_id: int) -> Any:
    shelf_number = await shelf_repo.get_shelf_number(db, shelf_id)
    if shelf_number is None:
        raise ShelfError(404, "Shelf not found")
    return shelf_number


async def _insert_cells(db: AsyncSession, shelf_number: Any, cells: List[tuple]) -> Dict[str, Any]:
    """Insert (column, row) cells one savepoint each so a bad cell does not sink the batch."""
    created, errors = 0, []
    for column, row in cells:
        try:
            async with db.begin_nested():
                await shelf_repo.insert_cell(db, shelf_number, column, row)
            created += 1
        except Exception as e:
            logger.warning(f"[Shelves] Could not add cell {column}{row} to shelf {shelf_number}: {e}")
            errors.append({"column": column, "row": row, "error": str(e)})
    await db.commit()
    return {"affectedRows": created, "failed": len(errors), "errors": errors}


async def add_shelf(db: AsyncSession, shelf_number: Any, shelf_column: Any, shelf_row: Any) -> int:
    if not shelf_number or not shelf_column or not shelf_row:
        raise ShelfError(400, "Missing required fields: shelf_number, shelf_column, shelf_row")
    shelf_id = await shelf_repo.insert_cell(db, shelf_number, shelf_column, shelf_row)
    await db.commit()
    return shelf_id


async def delete_shelf(db: AsyncSession, shelf_number: Any) -> int:
    deleted = await shelf_repo.delete_shelf(db, shelf_number)
    if not deleted:
        await db.rollback()
        raise ShelfError(404, "Shelf not found")
    await db.commit()
    logger.info(f"[Shelves] Deleted {deleted} location(s) for shelf {shelf_number}.")
    return deleted


async def update_shelf(db: AsyncSession, shelf_id: int, shelf_number: Any, shelf_column: Any, shelf_row: Any):
    if not shelf_number or not shelf_column or not shelf_row:
        raise ShelfError(400, "Missing required fields: shelf_id, shelf_number, shelf_column, shelf_row")
    updated = await shelf_repo.update_cell(db, shelf_id, shelf_number, shelf_column, shelf_row)
    if not updated:
        await db.rollback()
        raise ShelfError(404, "Shelf not found")
    await db.commit()


async def grow_rows(db: AsyncSession, shelf_id: int, new_row_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = _row_count(await shelf_repo.get_rows(db, shelf_number))
    if new_row_count <= current:
        raise ShelfError(400, f"New row count ({new_row_count}) must be greater than current count ({current})")
    columns = await shelf_repo.get_columns(db, shelf_number)
    rows_added = list(range(current + 1, new_row_count + 1))
    result = await _insert_cells(db, shelf_number, [(c, r) for r in rows_added for c in columns])
    result.update({
        "message": f"{len(rows_added)} row(s) added successfully for {len(columns)} column(s)",
        "rowsAdded": rows_added,
    })
    return result


async def shrink_rows(db: AsyncSession, shelf_id: int, new_row_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = _row_count(await shelf_repo.get_rows(db, shelf_number))
    if new_row_count >= current:
        raise ShelfError(400, f"New row count ({new_row_count}) must be less than current count ({current})")
    if new_row_count < 1:
        raise ShelfError(400, "Row count must be at least 1")
    rows_removed = list(range(new_row_count + 1, current + 1))
    affected = 0
    for row in rows_removed:
        affected += await shelf_repo.delete_row(db, shelf_number, row)
    await db.commit()
    return {
        "message": f"{len(rows_removed)} row(s) removed successfully",
        "rowsRemoved": rows_removed,
        "affectedRows": affected,
    }


async def delete_row(db: AsyncSession, shelf_id: int, row_number: int) -> int:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    affected = await shelf_repo.delete_row(db, shelf_number, row_number)
    if not affected:
        await db.rollback()
        raise ShelfError(404, "Row not found in the shelf")
    await db.commit()
    return affected


async def grow_columns(db: AsyncSession, shelf_id: int, new_column_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = len(await shelf_repo.get_columns(db, shelf_number))
    if new_column_count <= current:
        raise ShelfError(400, f"New column count ({new_column_count}) must be greater than current count ({current})")
    rows = await shelf_repo.get_rows(db, shelf_number)
    columns_added = [column_label(i) for i in range(current, new_column_count)]
    result = await _insert_cells(db, shelf_number, [(c, r) for c in columns_added for r in rows])
    result.update({
        "message": f"{len(columns_added)} column(s) added successfully for {len(rows)} row(s)",
        "columnsAdded": columns_added,
    })
    return result


async def shrink_columns(db: AsyncSession, shelf_id: int, new_column_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = len(await shelf_repo.get_columns(db, shelf_number))
    if new_column_count >= current:
        raise ShelfError(400, f"New column count ({new_column_count}) must be less than current count ({current})")
    if new_column_count < 1:
        raise ShelfError(400, "Column count must be at least 1")
    columns_removed = [column_label(i) for i in range(new_column_count, current)]
    affected = 0
    for column in columns_removed:
        affected += await shelf_repo.delete_column(db, shelf_number, column)
    await db.commit()
    return {
        "message": f"{len(columns_removed)} column(s) removed successfully",
        "columnsRemoved": columns_removed,
        "affectedRows": affected,
    }


async def delete_column(db: AsyncSession, shelf_id: int, column: str) -> int:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    affected = await shelf_repo.delete_column(db, shelf_number, column)
    if not affected:
        await db.rollback()
        raise ShelfError(404, "Column not found in the shelf")
    await db.commit()
    return affected


async def add_rows(db: AsyncSession, shelf_id: int, rows: List[Any], column: str) -> Dict[str, Any]:
    if not rows or not column:
        raise ShelfError(400, "Missing required fields: shelf_id, rows (array), column")
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    result = await _insert_cells(db, shelf_number, [(column, r) for r in rows])
    result["message"] = f"{result['affectedRows']} rows added successfully"
    return result


async def add_columns(db: AsyncSession, shelf_id: int, columns: List[str], row: Any) -> Dict[str, Any]:
    if not columns or not row:
        raise ShelfError(400, "Missing required fields: shelf_id, columns (array), row")
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    result = await _insert_cells(db, shelf_number, [(c, row) for c in columns])
    result["message"] = f"{result['affectedRows']} columns added successfully"
    return result


async def resize_rows(db: AsyncSession, shelf_id: int, new_row_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = _row_count(await shelf_repo.get_rows(db, shelf_number))
    if new_row_count == current:
        raise ShelfError(400, f"Shelf already has {current} row(s)")
    if new_row_count > current:
        return await grow_rows(db, shelf_id, new_row_count)
    return await shrink_rows(db, shelf_id, new_row_count)


async def resize_columns(db: AsyncSession, shelf_id: int, new_column_count: int) -> Dict[str, Any]:
    shelf_number = await _shelf_number_or_404(db, shelf_id)
    current = len(await shelf_repo.get_columns(db, shelf_number))
    if new_column_count == current:
        raise ShelfError(400, f"Shelf already has {current} column(s)")
    if new_column_count > current:
        return await grow_columns(db, shelf_id, new_column_count)
    return await shrink_columns(db, shelf_id, new_column_count)
