from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.common import ok
from libtrack.schemas.penalties import FineSettingsUpdate
from libtrack.services import fines

router = APIRouter()


@router.get("/fines/overdue")
async def overdue_fines(
    department: Optional[str] = Query(None),
    user_type: Optional[str] = Query(None, description="student or faculty"),
    db: AsyncSession = Depends(get_library_db_session),
):
    return ok(data=await fines.overdue_report(db, department=department, user_type=user_type))


@router.get("/fines/transaction/{transaction_id}")
async def transaction_fine(transaction_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await fines.transaction_fine(db, transaction_id))


@router.get("/fines/user/{user_id}")
async def user_fines(user_id: int, db: AsyncSession = Depends(get_library_db_session)):
    data = await fines.user_fines(db, user_id)
    message = None if data["transactions"] else "No borrowed items found for this user"
    return ok(data=data, message=message)


@router.get("/fines/settings")
async def get_fine_settings(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=(await fines.load_fine_settings(db)).model_dump())


@router.put("/fines/settings")
async def update_fine_settings(body: FineSettingsUpdate, db: AsyncSession = Depends(get_library_db_session)):
    updated = await fines.update_fine_settings(db, body.model_dump(exclude_none=True))
    return ok(data=updated.model_dump(), message="Fine settings updated")
