import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import rules_repo
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)

DIRECTIONS = ("up", "down")


class RuleError(ServiceError):
    pass


def group_rules(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fold header/rule join rows into [{id, heading, created_at, rules: [...]}] keeping row order."""
    grouped: Dict[Any, Dict[str, Any]] = {}
    for row in rows:
        header = grouped.get(row["header_id"])
        if header is None:
            header = {
                "id": row["header_id"],
                "heading": row.get("heading"),
                "created_at": row.get("header_created_at"),
                "rules": [],
            }
            grouped[row["header_id"]] = header
        if row.get("rule_id") is not None:
            header["rules"].append({
                "id": row["rule_id"],
                "header_id": row["header_id"],
                "title": row.get("rule_title"),
                "content": row.get("rule_content"),
                "sort_order": row.get("sort_order"),
                "created_at": row.get("rule_created_at"),
            })
    return list(grouped.values())


async def list_rules(db: AsyncSession) -> List[Dict[str, Any]]:
    return group_rules(await rules_repo.list_rules_with_headers(db))


async def _header_id_for(db: AsyncSession, heading: str) -> int:
    header_id = await rules_repo.find_header(db, heading)
    if header_id is None:
        header_id = await rules_repo.insert_header(db, heading)
    return header_id


async def create_rules(db: AsyncSession, heading: Optional[str], rules: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Add rules under a heading, reusing the heading by title. Rules without title or content are skipped."""
    if not heading or not str(heading).strip():
        raise RuleError(400, "Heading is required")
    if not rules:
        raise RuleError(400, "At least one rule is required")

    header_id = await _header_id_for(db, heading.strip())
    sort_order = await rules_repo.max_sort_order(db, header_id)
    created = 0
    for rule in rules:
        title = (rule.get("title") or "").strip()
        content = (rule.get("content") or "").strip()
        if not title or not content:
            continue
        sort_order += 1
        await rules_repo.insert_rule(db, header_id, title, content, sort_order)
        created += 1
    await db.commit()
    logger.info(f"[Rules] Added {created} rule(s) under header {header_id}.")
    return {"header_id": header_id, "created": created}


async def update_rule(
    db: AsyncSession, rule_id: int, title: Optional[str], content: Optional[str], heading: Optional[str] = None
) -> Dict[str, Any]:
    if not title or not content:
        raise RuleError(400, "Title and content are required")
    existing = await rules_repo.get_rule(db, rule_id)
    if existing is None:
        raise RuleError(404, "Rule not found")

    header_id = None
    if heading and heading.strip():
        header_id = await _header_id_for(db, heading.strip())
    await rules_repo.update_rule(db, rule_id, title, content, header_id)
    await db.commit()
    return {"id": rule_id, "header_id": header_id or existing["header_id"], "title": title, "content": content}


async def delete_rule(db: AsyncSession, rule_id: int) -> None:
    if not await rules_repo.delete_rule(db, rule_id):
        await db.rollback()
        raise RuleError(404, "Rule not found")
    await db.commit()


async def reorder_rule(db: AsyncSession, rule_id: int, direction: Optional[str]) -> None:
    """Swap sort_order with the adjacent rule of the same heading."""
    if direction not in DIRECTIONS:
        raise RuleError(400, 'Invalid direction. Use "up" or "down"')
    rule = await rules_repo.get_rule(db, rule_id)
    if rule is None:
        raise RuleError(404, "Rule not found")
    neighbour = await rules_repo.get_neighbour(db, rule["header_id"], rule["sort_order"], direction)
    if neighbour is None:
        raise RuleError(400, "Cannot move in that direction")

    await rules_repo.set_sort_order(db, rule_id, neighbour["sort_order"])
    await rules_repo.set_sort_order(db, neighbour["id"], rule["sort_order"])
    await db.commit()


async def delete_header(db: AsyncSession, header_id: int) -> None:
    if not await rules_repo.delete_header(db, header_id):
        await db.rollback()
        raise RuleError(404, "Header not found")
    await db.commit()
    logger.info(f"[Rules] Deleted header {header_id} and its rules.")
