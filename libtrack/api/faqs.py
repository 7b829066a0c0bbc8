from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.catalog import FaqRequest
from libtrack.schemas.common import ok
from libtrack.security import AdminActor, get_optional_admin
from libtrack.services import faqs

router = APIRouter()


@router.get("/faqs")
async def list_faqs(
    q: Optional[str] = Query(None, description="Search question or answer"),
    active: Optional[str] = Query(None, description="true/false"),
    db: AsyncSession = Depends(get_library_db_session),
):
    return ok(data=await faqs.list_faqs(db, q=q, active=active))


@router.get("/faqs/{faq_id}")
async def get_faq(faq_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await faqs.get_faq(db, faq_id))


@router.post("/faqs", status_code=201)
async def create_faq(
    body: FaqRequest,
    db: AsyncSession = Depends(get_library_db_session),
    actor: Optional[AdminActor] = Depends(get_optional_admin),
):
    faq = await faqs.create_faq(db, body.model_dump(), created_by=actor.admin_id if actor else None)
    return ok(data=faq, message="FAQ created successfully")


@router.put("/faqs/{faq_id}")
async def update_faq(faq_id: int, body: FaqRequest, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await faqs.update_faq(db, faq_id, body.model_dump()), message="FAQ updated successfully")


@router.delete("/faqs/{faq_id}")
async def delete_faq(faq_id: int, db: AsyncSession = Depends(get_library_db_session)):
    await faqs.delete_faq(db, faq_id)
    return ok(message="FAQ deleted successfully")
