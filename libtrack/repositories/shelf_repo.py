from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning


async def list_shelves(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT book_shelf_loc_id AS shelf_id, shelf_number, shelf_column, shelf_row, created_at
        FROM book_shelf_location
        ORDER BY shelf_number ASC, shelf_column ASC, shelf_row ASC
        """,
    )


async def insert_cell(db: AsyncSession, shelf_number: Any, shelf_column: str, shelf_row: Any) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO book_shelf_location (shelf_number, shelf_column, shelf_row, created_at)
        VALUES (:shelf_number, :shelf_column, :shelf_row, NOW())
        RETURNING book_shelf_loc_id
        """,
        {"shelf_number": shelf_number, "shelf_column": str(shelf_column), "shelf_row": shelf_row},
    )


async def update_cell(db: AsyncSession, shelf_id: int, shelf_number: Any, shelf_column: str, shelf_row: Any) -> int:
    return await execute(
        db,
        """
        UPDATE book_shelf_location
        SET shelf_number = :shelf_number, shelf_column = :shelf_column, shelf_row = :shelf_row
        WHERE book_shelf_loc_id = :shelf_id
        """,
        {"shelf_number": shelf_number, "shelf_column": str(shelf_column), "shelf_row": shelf_row, "shelf_id": shelf_id},
    )


async def delete_shelf(db: AsyncSession, shelf_number: Any) -> int:
    return await execute(
        db, "DELETE FROM book_shelf_location WHERE shelf_number = :shelf_number", {"shelf_number": shelf_number}
    )


async def get_shelf_number(db: AsyncSession, shelf_id: int) -> Optional[Any]:
    row = await fetch_one(
        db,
        "SELECT shelf_number FROM book_shelf_location WHERE book_shelf_loc_id = :shelf_id LIMIT 1",
        {"shelf_id": shelf_id},
    )
    return row["shelf_number"] if row else None


async def get_rows(db: AsyncSession, shelf_number: Any) -> List[str]:
    rows = await fetch_all(
        db,
        "SELECT DISTINCT shelf_row FROM book_shelf_location WHERE shelf_number = :shelf_number ORDER BY shelf_row",
        {"shelf_number": shelf_number},
    )
    return [r["shelf_row"] for r in rows]


async def get_columns(db: AsyncSession, shelf_number: Any) -> List[str]:
    rows = await fetch_all(
        db,
        "SELECT DISTINCT shelf_column FROM book_shelf_location WHERE shelf_number = :shelf_number ORDER BY shelf_column",
        {"shelf_number": shelf_number},
    )
    return [r["shelf_column"] for r in rows]


async def delete_row(db: AsyncSession, shelf_number: Any, shelf_row: Any) -> int:
    return await execute(
        db,
        "DELETE FROM book_shelf_location WHERE shelf_number = :shelf_number AND shelf_row = :shelf_row",
        {"shelf_number": shelf_number, "shelf_row": shelf_row},
    )


async def delete_column(db: AsyncSession, shelf_number: Any, shelf_column: str) -> int:
    return await execute(
        db,
        "DELETE FROM book_shelf_location WHERE shelf_number = :shelf_number AND shelf_column = :shelf_column",
        {"shelf_number": shelf_number, "shelf_column": shelf_column},
    )
