import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning
from libtrack.utils import encode_research_qr

logger = logging.getLogger(__name__)

PAPER_SELECT = """
    SELECT
        rp.research_paper_id,
        rp.research_title,
        rp.year_publication,
        rp.research_abstract,
        rp.research_paper_price,
        rp.research_paper_qr,
        rp.status,
        rp.created_at,
        d.department_id,
        d.department_name,
        STRING_AGG(ra.author_name, ', ' ORDER BY ra.research_author_id) AS authors,
        bs.book_shelf_loc_id AS shelf_location_id,
        bs.shelf_number,
        bs.shelf_column,
        bs.shelf_row
    FROM research_papers rp
    LEFT JOIN departments d ON rp.department_id = d.department_id
    LEFT JOIN research_author ra ON rp.research_paper_id = ra.research_paper_id
    LEFT JOIN book_shelf_location bs ON rp.book_shelf_loc_id = bs.book_shelf_loc_id
"""

PAPER_GROUP_BY = """
    GROUP BY rp.research_paper_id, d.department_id, d.department_name,
             bs.book_shelf_loc_id, bs.shelf_number, bs.shelf_column, bs.shelf_row
"""


async def list_papers(db: AsyncSession, status: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    clauses, params = [], {}
    if status:
        clauses.append("rp.status = :status")
        params["status"] = status
    if search:
        clauses.append("""(
            rp.research_title ILIKE :search OR d.department_name ILIKE :search
            OR EXISTS (SELECT 1 FROM research_author x
                       WHERE x.research_paper_id = rp.research_paper_id AND x.author_name ILIKE :search)
        )""")
        params["search"] = f"%{search}%"
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return await fetch_all(db, f"{PAPER_SELECT} {where} {PAPER_GROUP_BY} ORDER BY rp.research_paper_id DESC", params)


async def get_paper(db: AsyncSession, research_paper_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        f"{PAPER_SELECT} WHERE rp.research_paper_id = :research_paper_id {PAPER_GROUP_BY}",
        {"research_paper_id": research_paper_id},
    )


async def list_authors(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db, "SELECT research_author_id, research_paper_id, author_name FROM research_author ORDER BY author_name"
    )


async def list_departments(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db, "SELECT department_id, department_name, department_acronym FROM departments ORDER BY department_name"
    )


async def list_shelf_locations(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(
        db,
        """
        SELECT book_shelf_loc_id, shelf_number, shelf_column, shelf_row
        FROM book_shelf_location
        ORDER BY shelf_column, shelf_row
        """,
    )


async def insert_paper(
    db: AsyncSession,
    title: str,
    year_publication: Any,
    abstract: Optional[str],
    department_id: int,
    shelf_location_id: int,
    authors: List[str],
    price: Any = None,
) -> int:
    """Insert a paper, its QR payload and one research_author row per author."""
    research_paper_id = await insert_returning(
        db,
        """
        INSERT INTO research_papers (
            research_title, year_publication, research_abstract, department_id,
            book_shelf_loc_id, research_paper_price, status, created_at
        ) VALUES (
            :title, :year_publication, :abstract, :department_id,
            :shelf_location_id, :price, 'Available', NOW()
        )
        RETURNING research_paper_id
        """,
        {
            "title": title,
            "year_publication": year_publication,
            "abstract": abstract,
            "department_id": department_id,
            "shelf_location_id": shelf_location_id,
            "price": price,
        },
    )
    await execute(
        db,
        "UPDATE research_papers SET research_paper_qr = :qr WHERE research_paper_id = :research_paper_id",
        {"qr": encode_research_qr(research_paper_id), "research_paper_id": research_paper_id},
    )
    await replace_authors(db, research_paper_id, authors, clear=False)
    return research_paper_id


async def replace_authors(db: AsyncSession, research_paper_id: int, authors: List[str], clear: bool = True) -> int:
    if clear:
        await execute(
            db, "DELETE FROM research_author WHERE research_paper_id = :research_paper_id",
            {"research_paper_id": research_paper_id},
        )
    count = 0
    for author in authors:
        name = (author or "").strip()
        if not name:
            continue
        await execute(
            db,
            "INSERT INTO research_author (research_paper_id, author_name, created_at) VALUES (:rp, :name, NOW())",
            {"rp": research_paper_id, "name": name},
        )
        count += 1
    return count


async def update_paper(db: AsyncSession, research_paper_id: int, values: Dict[str, Any]) -> int:
    allowed = ("research_title", "year_publication", "research_abstract", "department_id",
               "book_shelf_loc_id", "research_paper_price", "status")
    updates = {k: v for k, v in values.items() if k in allowed and v is not None}
    if not updates:
        return 0
    assignments = ", ".join(f"{column} = :{column}" for column in updates)
    return await execute(
        db,
        f"UPDATE research_papers SET {assignments}, updated_at = NOW() WHERE research_paper_id = :research_paper_id",
        {**updates, "research_paper_id": research_paper_id},
    )


async def delete_paper(db: AsyncSession, research_paper_id: int) -> int:
    await execute(
        db, "DELETE FROM research_author WHERE research_paper_id = :rp", {"rp": research_paper_id}
    )
    return await execute(
        db, "DELETE FROM research_papers WHERE research_paper_id = :rp", {"rp": research_paper_id}
    )
