from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.repositories import research_repo
from libtrack.schemas.catalog import ResearchPaperRequest
from libtrack.schemas.common import ok
from libtrack.services import research_papers

router = APIRouter()


@router.get("/research-papers/available")
async def available_papers(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await research_papers.list_papers(db, status="Available"))


@router.get("/research-papers/authors")
async def list_authors(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await research_repo.list_authors(db))


@router.get("/research-papers/departments")
async def list_departments(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await research_repo.list_departments(db))


@router.get("/research-papers/shelf-locations")
async def list_shelf_locations(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await research_repo.list_shelf_locations(db))


@router.get("/research-papers")
async def list_papers(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_library_db_session),
):
    return ok(data=await research_papers.list_papers(db, status=status, search=search))


@router.get("/research-papers/{research_paper_id}")
async def get_paper(research_paper_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await research_papers.get_paper(db, research_paper_id))


@router.post("/research-papers", status_code=201)
async def add_paper(body: ResearchPaperRequest, db: AsyncSession = Depends(get_library_db_session)):
    research_paper_id = await research_papers.add_paper(db, body.fields())
    return ok(data={"researchPaperId": research_paper_id}, message="Research paper added successfully")


@router.put("/research-papers/{research_paper_id}")
async def update_paper(research_paper_id: int, body: ResearchPaperRequest, db: AsyncSession = Depends(get_library_db_session)):
    result = await research_papers.update_paper(db, research_paper_id, body.fields())
    return ok(data=result, message="Research paper updated successfully")


@router.delete("/research-papers/{research_paper_id}")
async def delete_paper(research_paper_id: int, db: AsyncSession = Depends(get_library_db_session)):
    await research_papers.delete_paper(db, research_paper_id)
    return ok(data={"researchPaperId": research_paper_id}, message="Research paper deleted successfully")
