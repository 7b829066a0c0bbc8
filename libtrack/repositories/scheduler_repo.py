from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import delete, desc, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
import sqlalchemy.exc

from libtrack.models.scheduling import ReminderLog, SchedulerRun
from libtrack.repositories.base import RepositoryError
import logging

logger = logging.getLogger(__name__)


async def start_run(db: AsyncSession, job_name: str, trigger: str) -> SchedulerRun:
    """Persist a 'running' row for a scheduler pass and return it."""
    try:
        run = SchedulerRun(job_name=job_name, trigger=trigger, status="running", started_at=datetime.now(timezone.utc))
        db.add(run)
        await db.commit()
        await db.refresh(run)
        logger.debug(f"Started scheduler run {run.run_id} ({job_name}, {trigger})")
        return run
    except sqlalchemy.exc.SQLAlchemyError as e:
        await db.rollback()
        error_msg = f"Could not record scheduler run start for {job_name}: {e}"
        logger.error(error_msg, exc_info=True)
        raise RepositoryError(error_msg) from e


async def finish_run(
    db: AsyncSession,
    run: SchedulerRun,
    status: str,
    due_tomorrow_count: int = 0,
    overdue_count: int = 0,
    error: Optional[str] = None,
) -> None:
    try:
        run.status = status
        run.finished_at = datetime.now(timezone.utc)
        run.due_tomorrow_count = due_tomorrow_count
        run.overdue_count = overdue_count
        run.error = error
        db.add(run)
        await db.commit()
    except sqlalchemy.exc.SQLAlchemyError as e:
        await db.rollback()
        error_msg = f"Could not record scheduler run finish for run {run.run_id}: {e}"
        logger.error(error_msg, exc_info=True)
        raise RepositoryError(error_msg) from e


async def get_last_completed_run(db: AsyncSession, job_name: str) -> Optional[SchedulerRun]:
    stmt = (
        select(SchedulerRun)
        .where(SchedulerRun.job_name == job_name)
        .where(SchedulerRun.status == "completed")
        .order_by(desc(SchedulerRun.started_at))
        .limit(1)
    )
    try:
        result = await db.execute(stmt)
        return result.scalar_one_or_none()
    except sqlalchemy.exc.SQLAlchemyError as e:
        raise RepositoryError(f"Could not read last scheduler run for {job_name}: {e}") from e


async def claim_reminder(db: AsyncSession, kind: str, transaction_id: int, user_id: int, reference_date: date) -> bool:
    """Record that a reminder is being sent. Returns False if one was already recorded."""
    stmt = (
        pg_insert(ReminderLog)
        .values(kind=kind, transaction_id=transaction_id, user_id=user_id, reference_date=reference_date)
        .on_conflict_do_nothing(constraint="unique_reminder_per_day")
        .returning(ReminderLog.reminder_id)
    )
    try:
        result = await db.execute(stmt)
        claimed = result.scalar_one_or_none() is not None
        await db.commit()
        return claimed
    except sqlalchemy.exc.SQLAlchemyError as e:
        await db.rollback()
        raise RepositoryError(f"Could not claim {kind} reminder for transaction {transaction_id}: {e}") from e


async def release_reminder(db: AsyncSession, kind: str, transaction_id: int, user_id: int, reference_date: date) -> None:
    """Drop a claim whose delivery failed so the next pass retries it."""
    stmt = (
        delete(ReminderLog)
        .where(ReminderLog.kind == kind)
        .where(ReminderLog.transaction_id == transaction_id)
        .where(ReminderLog.user_id == user_id)
        .where(ReminderLog.reference_date == reference_date)
    )
    try:
        await db.execute(stmt)
        await db.commit()
    except sqlalchemy.exc.SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Could not release {kind} reminder for transaction {transaction_id}: {e}")
