import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import book_repo, research_repo
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)


class ResearchPaperError(ServiceError):
    pass


def normalize_authors(authors: Any) -> List[str]:
    """Accept a list or a comma separated string; blanks dropped."""
    if not authors:
        return []
    if isinstance(authors, str):
        authors = authors.split(",")
    return [str(a).strip() for a in authors if a and str(a).strip()]


async def list_papers(db: AsyncSession, status: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    return await research_repo.list_papers(db, status=status, search=search)


async def get_paper(db: AsyncSession, research_paper_id: int) -> Dict[str, Any]:
    paper = await research_repo.get_paper(db, research_paper_id)
    if paper is None:
        raise ResearchPaperError(404, "Research paper not found")
    return paper


async def add_paper(db: AsyncSession, fields: Dict[str, Any]) -> int:
    authors = normalize_authors(fields.get("authors"))
    if (not fields.get("researchTitle") or not fields.get("yearPublication") or not fields.get("department")
            or not authors or not fields.get("shelfColumn") or not fields.get("shelfRow")):
        raise ResearchPaperError(400, "Missing required fields")

    department_id = await book_repo.get_or_create_name(
        db, "departments", "department_id", "department_name", fields["department"]
    )
    shelf_location_id = await book_repo.get_or_create_shelf_cell(
        db, fields.get("shelfNumber"), fields["shelfColumn"], fields["shelfRow"]
    )
    research_paper_id = await research_repo.insert_paper(
        db,
        title=fields["researchTitle"],
        year_publication=fields["yearPublication"],
        abstract=fields.get("researchAbstract"),
        department_id=department_id,
        shelf_location_id=shelf_location_id,
        authors=authors,
        price=fields.get("researchPaperPrice"),
    )
    await db.commit()
    logger.info(f"[Research] Added research paper {research_paper_id} with {len(authors)} author(s).")
    return research_paper_id


async def update_paper(db: AsyncSession, research_paper_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
    existing = await research_repo.get_paper(db, research_paper_id)
    if existing is None:
        raise ResearchPaperError(404, "Research paper not found")

    values: Dict[str, Any] = {
        "research_title": fields.get("researchTitle"),
        "year_publication": fields.get("yearPublication"),
        "research_abstract": fields.get("researchAbstract"),
        "research_paper_price": fields.get("researchPaperPrice"),
    }
    if fields.get("department"):
        values["department_id"] = await book_repo.get_or_create_name(
            db, "departments", "department_id", "department_name", fields["department"]
        )
    if fields.get("shelfColumn") and fields.get("shelfRow"):
        values["book_shelf_loc_id"] = await book_repo.get_or_create_shelf_cell(
            db, fields.get("shelfNumber"), fields["shelfColumn"], fields["shelfRow"]
        )
    await research_repo.update_paper(db, research_paper_id, values)

    authors = normalize_authors(fields.get("authors") or fields.get("author"))
    if authors:
        await research_repo.replace_authors(db, research_paper_id, authors)
    await db.commit()
    return {
        "researchPaperId": research_paper_id,
        "departmentId": values.get("department_id", existing.get("department_id")),
        "shelfLocationId": values.get("book_shelf_loc_id", existing.get("shelf_location_id")),
    }


async def delete_paper(db: AsyncSession, research_paper_id: int) -> None:
    if not await research_repo.delete_paper(db, research_paper_id):
        await db.rollback()
        raise ResearchPaperError(404, "Research paper not found")
    await db.commit()
    logger.info(f"[Research] Deleted research paper {research_paper_id}.")
