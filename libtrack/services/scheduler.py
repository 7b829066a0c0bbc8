import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.db import connection
from libtrack.repositories import penalty_repo, scheduler_repo
from libtrack.repositories.base import RepositoryError
from libtrack.services.notifications import (
    due_tomorrow_email,
    email_sender,
    event_hub,
    overdue_penalty_email,
    push_user_notification,
)

logger = logging.getLogger(__name__)

JOB_NAME = "daily_penalty_checks"
DUE_TOMORROW = "due_tomorrow"
OVERDUE_PENALTY = "overdue_penalty"


# --- Wall-clock helpers (naive local time) ---

def most_recent_slot(now: datetime, hour: int) -> datetime:
    slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now < slot:
        slot -= timedelta(days=1)
    return slot


def next_slot(now: datetime, hour: int) -> datetime:
    slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= slot:
        slot += timedelta(days=1)
    return slot


def _as_local_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def slot_missed(last_started_at: Optional[datetime], now: datetime, hour: int) -> bool:
    """True when no completed run started at or after the most recent daily slot."""
    if last_started_at is None:
        return True
    return _as_local_naive(last_started_at) < most_recent_slot(now, hour)


def _user_name(row: Dict[str, Any]) -> str:
    return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip() or "Borrower"


# --- Passes ---

async def _deliver(
    db: AsyncSession,
    kind: str,
    row: Dict[str, Any],
    reference_date: date,
    email: Dict[str, str],
    title: str,
    message: str,
    priority: str,
) -> bool:
    """Send one reminder at most once per (kind, transaction, borrower, date). Returns True if sent."""
    transaction_id, user_id = row["transaction_id"], row["user_id"]
    if not await scheduler_repo.claim_reminder(db, kind, transaction_id, user_id, reference_date):
        logger.debug(f"[Scheduler] {kind} reminder for transaction {transaction_id} already sent for {reference_date}.")
        return False

    try:
        delivered = await email_sender.send(row["email"], email["subject"], email["html"], email["text"])
    except Exception as e:
        logger.error(f"[Scheduler] Failed to email {kind} reminder for transaction {transaction_id}: {e}")
        delivered = False
    if not delivered:
        # Released claims are picked up again by the next pass
        await scheduler_repo.release_reminder(db, kind, transaction_id, user_id, reference_date)
        return False

    await push_user_notification(db, user_id, kind, title, message, priority, transaction_id)
    await db.commit()
    event_hub.broadcast("USER_NOTIFICATION", {
        "user_id": user_id,
        "type": kind,
        "title": title,
        "message": message,
        "reference_number": row.get("reference_number"),
        "priority": priority,
    })
    return True


async def send_due_tomorrow_reminders(db: AsyncSession) -> Dict[str, int]:
    rows = await penalty_repo.get_due_tomorrow(db)
    logger.info(f"[Scheduler] {len(rows)} item(s) due tomorrow.")
    sent = 0
    for row in rows:
        try:
            user_name = _user_name(row)
            email = due_tomorrow_email(user_name, row["item_title"], row.get("reference_number"), row.get("due_date"))
            message = (
                f"Your borrowed item \"{row['item_title']}\" (Ref: {row.get('reference_number')}) is due tomorrow. "
                "Please return it on time to avoid penalties."
            )
            reference_date = row["due_date"] if isinstance(row.get("due_date"), date) else date.today() + timedelta(days=1)
            if await _deliver(db, DUE_TOMORROW, row, reference_date, email, "Item Due Tomorrow", message, "medium"):
                sent += 1
        except Exception as e:
            await db.rollback()
            logger.error(f"[Scheduler] Due-tomorrow reminder failed for transaction {row.get('transaction_id')}: {e}")
    return {"found": len(rows), "sent": sent}


async def send_overdue_notifications(db: AsyncSession) -> Dict[str, int]:
    rows = await penalty_repo.get_overdue_unpaid_for_reminders(db)
    logger.info(f"[Scheduler] {len(rows)} overdue unpaid penalty(ies) to notify.")
    sent = 0
    today = date.today()
    for row in rows:
        try:
            fine = float(row.get("fine") or 0)
            days_overdue = int(row.get("days_overdue") or 0)
            email = overdue_penalty_email(_user_name(row), row["item_title"], row.get("reference_number"), days_overdue, fine)
            message = (
                f"Your item \"{row['item_title']}\" is {days_overdue} day(s) overdue. "
                f"Current fine: ₱{fine:.2f}. Please return it immediately."
            )
            if await _deliver(db, OVERDUE_PENALTY, row, today, email, "Overdue Item - Action Required", message, "high"):
                sent += 1
        except Exception as e:
            await db.rollback()
            logger.error(f"[Scheduler] Overdue notification failed for penalty {row.get('penalty_id')}: {e}")
    return {"found": len(rows), "sent": sent}


async def run_daily_penalty_checks(db: AsyncSession, trigger: str = "manual") -> Dict[str, Any]:
    """One recorded pass: due-tomorrow reminders then overdue notices."""
    start_time = time.perf_counter()
    run = await scheduler_repo.start_run(db, JOB_NAME, trigger)
    try:
        due = await send_due_tomorrow_reminders(db)
        overdue = await send_overdue_notifications(db)
    except Exception as e:
        await db.rollback()
        await scheduler_repo.finish_run(db, run, "failed", error=str(e))
        raise

    await scheduler_repo.finish_run(db, run, "completed", due["found"], overdue["found"])
    duration = round(time.perf_counter() - start_time, 3)
    logger.info(
        f"[Scheduler] Pass '{trigger}' done in {duration}s: due_tomorrow={due['found']} "
        f"(sent {due['sent']}), overdue={overdue['found']} (sent {overdue['sent']})"
    )
    return {
        "run_id": run.run_id,
        "trigger": trigger,
        "due_tomorrow_count": due["found"],
        "overdue_count": overdue["found"],
        "reminders_sent": due["sent"] + overdue["sent"],
        "duration": duration,
    }


class DailyScheduler:
    """Runs the penalty checks once after startup and then daily at a fixed local hour.

    The last completed run is persisted; a slot missed while the process was down is
    caught up on the next start.
    """

    def __init__(
        self,
        session_scope: Optional[Callable] = None,
        run_hour: Optional[int] = None,
        initial_delay: Optional[float] = None,
        interval_hours: Optional[int] = None,
        run_on_startup: Optional[bool] = None,
    ):
        self._session_scope = session_scope or connection.library_session_scope
        self.run_hour = settings.SCHEDULER_RUN_HOUR if run_hour is None else run_hour
        self.initial_delay = settings.SCHEDULER_INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        self.interval = timedelta(hours=interval_hours or settings.SCHEDULER_INTERVAL_HOURS)
        self.run_on_startup = settings.SCHEDULER_RUN_ON_STARTUP if run_on_startup is None else run_on_startup
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            logger.warning("[Scheduler] Already running.")
            return
        self._task = asyncio.create_task(self._run_forever(), name="penalty-scheduler")
        logger.info(f"[Scheduler] Started; daily run at {self.run_hour:02d}:00 local time.")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Scheduler] Stopped.")

    async def run_pass(self, trigger: str) -> Optional[Dict[str, Any]]:
        """Run one pass unless another is in progress. Errors are logged, not raised."""
        if self._lock.locked():
            logger.warning(f"[Scheduler] Pass '{trigger}' skipped; another pass is in progress.")
            return None
        async with self._lock:
            try:
                async with self._session_scope() as db:
                    return await run_daily_penalty_checks(db, trigger)
            except Exception as e:
                logger.error(f"[Scheduler] Pass '{trigger}' failed: {e}", exc_info=True)
                return None

    async def _startup_trigger(self) -> Optional[str]:
        try:
            async with self._session_scope() as db:
                last = await scheduler_repo.get_last_completed_run(db, JOB_NAME)
        except (RepositoryError, RuntimeError) as e:
            logger.error(f"[Scheduler] Could not read last run, assuming none: {e}")
            last = None
        missed = slot_missed(last.started_at if last else None, datetime.now(), self.run_hour)
        if missed:
            logger.info("[Scheduler] Most recent daily slot was missed; catching up.")
            return "catch_up"
        return "startup" if self.run_on_startup else None

    async def _run_forever(self):
        await asyncio.sleep(self.initial_delay)
        trigger = await self._startup_trigger()
        if trigger:
            await self.run_pass(trigger)

        upcoming = next_slot(datetime.now(), self.run_hour)
        while True:
            delay = max(0.0, (upcoming - datetime.now()).total_seconds())
            logger.info(f"[Scheduler] Next run at {upcoming.isoformat()} (in {delay / 3600:.2f}h).")
            await asyncio.sleep(delay)
            await self.run_pass("daily")
            upcoming += self.interval
            # Skip slots that passed while a long pass was running
            while upcoming <= datetime.now():
                upcoming += self.interval


penalty_scheduler = DailyScheduler()
