from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.catalog import ReservationCreate, ReservationUpdate
from libtrack.schemas.common import ok
from libtrack.services import reservations

router = APIRouter()


@router.get("/reservations")
async def list_reservations(
    user_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_library_db_session),
):
    data = await reservations.list_reservations(db, user_id=user_id, status=status)
    return ok(data=data, count=len(data))


@router.get("/reservations/user/{user_id}")
async def user_reservations(
    user_id: int,
    status: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_library_db_session),
):
    data = await reservations.list_user_reservations(db, user_id, status=status)
    return ok(data=data, count=len(data))


@router.get("/reservations/{reservation_id}")
async def get_reservation(reservation_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await reservations.get_reservation(db, reservation_id))


@router.post("/reservations", status_code=201)
async def create_reservation(body: ReservationCreate, db: AsyncSession = Depends(get_library_db_session)):
    result = await reservations.create_reservation(
        db, body.user_id, book_id=body.book_id, research_paper_id=body.research_paper_id, reason=body.reason
    )
    return ok(data=result, message="Reservation created successfully")


@router.put("/reservations/{reservation_id}")
async def update_reservation(reservation_id: int, body: ReservationUpdate, db: AsyncSession = Depends(get_library_db_session)):
    result = await reservations.update_reservation(db, reservation_id, status=body.status, reason=body.reason)
    return ok(data=result, message="Reservation updated successfully")


@router.delete("/reservations/{reservation_id}")
async def delete_reservation(reservation_id: int, db: AsyncSession = Depends(get_library_db_session)):
    result = await reservations.delete_reservation(db, reservation_id)
    return ok(data=result, message="Reservation deleted successfully")
