import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.common import ok
from libtrack.schemas.penalties import MarkAsLostRequest, PayRequest, WaiveRequest
from libtrack.security import AdminActor, get_optional_admin
from libtrack.services import penalty_engine
from libtrack.services.scheduler import run_daily_penalty_checks

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/penalties")
async def list_penalties(
    status: Optional[str] = Query(None, description="Paid, Waived, or unpaid/pending"),
    user_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Borrower name, item title or reference number"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_library_db_session),
):
    result = await penalty_engine.list_penalties(db, status=status, user_id=user_id, search=search, page=page, limit=limit)
    return ok(data=result["penalties"], pagination=result["pagination"])


@router.get("/penalties/summary")
async def penalty_summary(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await penalty_engine.get_summary(db))


@router.get("/penalties/user/{user_id}")
async def user_penalties(user_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await penalty_engine.get_user_penalties(db, user_id))


@router.post("/penalties/process-overdue")
async def process_overdue(db: AsyncSession = Depends(get_library_db_session)):
    result = await penalty_engine.run_overdue_sweep(db)
    return ok(
        data=result,
        message=f"Processed {result['total_processed']} overdue transaction(s): "
                f"{result['penalties_created']} created, {result['penalties_updated']} updated",
    )


@router.post("/penalties/recalculate")
async def recalculate(db: AsyncSession = Depends(get_library_db_session)):
    result = await penalty_engine.run_overdue_sweep(db)
    return ok(data=result, message="Penalties recalculated")


@router.post("/penalties/mark-as-lost")
async def mark_as_lost(
    body: MarkAsLostRequest,
    db: AsyncSession = Depends(get_library_db_session),
    actor: Optional[AdminActor] = Depends(get_optional_admin),
):
    result = await penalty_engine.mark_as_lost(
        db,
        body.transaction_ids,
        admin_id=actor.admin_id if actor else None,
        admin_name=actor.name if actor else None,
    )
    return ok(data=result, message=f"{result['marked_lost']} of {result['total_processed']} item(s) marked as lost")


@router.post("/penalties/cleanup")
async def cleanup(db: AsyncSession = Depends(get_library_db_session)):
    result = await penalty_engine.cleanup_penalties(db)
    return ok(data=result, message=f"Removed {result['records_deleted']} penalty record(s)")


@router.post("/penalties/send-reminders")
async def send_reminders(db: AsyncSession = Depends(get_library_db_session)):
    """Same pass the daily scheduler runs; already-sent reminders are not repeated."""
    result = await run_daily_penalty_checks(db, trigger="manual")
    return ok(data=result, message=f"{result['reminders_sent']} reminder(s) sent")


@router.put("/penalties/{penalty_id}/waive")
async def waive(
    penalty_id: int,
    body: WaiveRequest,
    db: AsyncSession = Depends(get_library_db_session),
    actor: Optional[AdminActor] = Depends(get_optional_admin),
):
    result = await penalty_engine.waive_penalty(
        db,
        penalty_id,
        body.reason,
        waived_by=actor.name if actor and actor.name else body.waived_by,
        admin_id=actor.admin_id if actor else None,
    )
    return ok(data=result, message="Penalty waived successfully")


@router.put("/penalties/{penalty_id}/pay")
async def pay(
    penalty_id: int,
    body: Optional[PayRequest] = None,
    db: AsyncSession = Depends(get_library_db_session),
    actor: Optional[AdminActor] = Depends(get_optional_admin),
):
    body = body or PayRequest()
    result = await penalty_engine.pay_penalty(
        db,
        penalty_id,
        payment_method=body.payment_method,
        notes=body.notes,
        admin_id=actor.admin_id if actor else None,
        admin_name=actor.name if actor else None,
    )
    message = "Penalty was already paid" if result.get("already_paid") else "Penalty marked as paid"
    return ok(data=result, message=message)


@router.delete("/penalties/{penalty_id}")
async def delete_penalty(
    penalty_id: int,
    db: AsyncSession = Depends(get_library_db_session),
    actor: Optional[AdminActor] = Depends(get_optional_admin),
):
    result = await penalty_engine.delete_penalty(
        db, penalty_id, admin_id=actor.admin_id if actor else None, admin_name=actor.name if actor else None
    )
    return ok(data=result, message="Penalty deleted")
