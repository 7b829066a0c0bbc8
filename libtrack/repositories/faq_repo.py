from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning

FAQ_COLUMNS = "id, question, answer, category, sort_order, is_active, created_by, created_at, updated_at"
UPDATABLE_COLUMNS = ("question", "answer", "category", "sort_order", "is_active")


async def list_faqs(db: AsyncSession, q: Optional[str] = None, active: Optional[bool] = None) -> List[Dict[str, Any]]:
    clauses, params = [], {}
    if q:
        clauses.append("(question ILIKE :q OR answer ILIKE :q OR category ILIKE :q)")
        params["q"] = f"%{q}%"
    if active is not None:
        clauses.append("is_active = :active")
        params["active"] = active
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return await fetch_all(
        db, f"SELECT {FAQ_COLUMNS} FROM faqs {where} ORDER BY sort_order ASC, created_at DESC", params
    )


async def get_faq(db: AsyncSession, faq_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(db, f"SELECT {FAQ_COLUMNS} FROM faqs WHERE id = :id", {"id": faq_id})


async def insert_faq(db: AsyncSession, values: Dict[str, Any]) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO faqs (question, answer, category, sort_order, is_active, created_by, created_at, updated_at)
        VALUES (:question, :answer, :category, :sort_order, :is_active, :created_by, NOW(), NOW())
        RETURNING id
        """,
        {
            "question": values["question"],
            "answer": values["answer"],
            "category": values.get("category"),
            "sort_order": values.get("sort_order") or 0,
            "is_active": values["is_active"] if values.get("is_active") is not None else True,
            "created_by": values.get("created_by"),
        },
    )


async def update_faq(db: AsyncSession, faq_id: int, values: Dict[str, Any]) -> int:
    updates = {k: v for k, v in values.items() if k in UPDATABLE_COLUMNS}
    if not updates:
        return 0
    assignments = ", ".join(f"{column} = :{column}" for column in updates)
    return await execute(
        db, f"UPDATE faqs SET {assignments}, updated_at = NOW() WHERE id = :id", {**updates, "id": faq_id}
    )


async def delete_faq(db: AsyncSession, faq_id: int) -> int:
    return await execute(db, "DELETE FROM faqs WHERE id = :id", {"id": faq_id})
