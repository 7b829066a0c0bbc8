from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning


async def list_rules_with_headers(db: AsyncSession) -> List[Dict[str, Any]]:
    """Headers left-joined to their rules. Headers without rules yield one row with NULL rule columns."""
    return await fetch_all(
        db,
        """
        SELECT
            rh.id AS header_id, rh.title AS heading, rh.created_at AS header_created_at,
            r.id AS rule_id, r.title AS rule_title, r.description AS rule_content,
            r.sort_order, r.created_at AS rule_created_at
        FROM rule_headers rh
        LEFT JOIN rules r ON r.header_id = rh.id
        ORDER BY rh.id, r.sort_order, r.id
        """,
    )


async def find_header(db: AsyncSession, title: str) -> Optional[int]:
    row = await fetch_one(db, "SELECT id FROM rule_headers WHERE title = :title LIMIT 1", {"title": title})
    return row["id"] if row else None


async def insert_header(db: AsyncSession, title: str) -> int:
    return await insert_returning(
        db, "INSERT INTO rule_headers (title, created_at) VALUES (:title, NOW()) RETURNING id", {"title": title}
    )


async def max_sort_order(db: AsyncSession, header_id: int) -> int:
    row = await fetch_one(
        db, "SELECT COALESCE(MAX(sort_order), 0) AS max_order FROM rules WHERE header_id = :header_id",
        {"header_id": header_id},
    )
    return int(row["max_order"]) if row else 0


async def insert_rule(db: AsyncSession, header_id: int, title: str, description: str, sort_order: int) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO rules (header_id, title, description, sort_order, created_at)
        VALUES (:header_id, :title, :description, :sort_order, NOW())
        RETURNING id
        """,
        {"header_id": header_id, "title": title, "description": description, "sort_order": sort_order},
    )


async def get_rule(db: AsyncSession, rule_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db, "SELECT id, header_id, title, description, sort_order FROM rules WHERE id = :id", {"id": rule_id}
    )


async def update_rule(db: AsyncSession, rule_id: int, title: str, description: str, header_id: Optional[int] = None) -> int:
    params: Dict[str, Any] = {"id": rule_id, "title": title, "description": description}
    assignments = "title = :title, description = :description"
    if header_id is not None:
        assignments += ", header_id = :header_id"
        params["header_id"] = header_id
    return await execute(db, f"UPDATE rules SET {assignments} WHERE id = :id", params)


async def delete_rule(db: AsyncSession, rule_id: int) -> int:
    return await execute(db, "DELETE FROM rules WHERE id = :id", {"id": rule_id})


async def get_neighbour(db: AsyncSession, header_id: int, sort_order: int, direction: str) -> Optional[Dict[str, Any]]:
    """Closest rule above ("up") or below ("down") within the same header."""
    if direction == "up":
        comparison, ordering = "<", "DESC"
    else:
        comparison, ordering = ">", "ASC"
    return await fetch_one(
        db,
        f"""
        SELECT id, sort_order FROM rules
        WHERE header_id = :header_id AND sort_order {comparison} :sort_order
        ORDER BY sort_order {ordering}
        LIMIT 1
        """,
        {"header_id": header_id, "sort_order": sort_order},
    )


async def set_sort_order(db: AsyncSession, rule_id: int, sort_order: int) -> int:
    return await execute(db, "UPDATE rules SET sort_order = :sort_order WHERE id = :id", {"id": rule_id, "sort_order": sort_order})


async def delete_header(db: AsyncSession, header_id: int) -> int:
    """Delete a heading and every rule under it. Returns 0 when the heading does not exist."""
    await execute(db, "DELETE FROM rules WHERE header_id = :header_id", {"header_id": header_id})
    return await execute(db, "DELETE FROM rule_headers WHERE id = :header_id", {"header_id": header_id})
