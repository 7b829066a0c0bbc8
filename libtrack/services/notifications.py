import asyncio
import logging
import smtplib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, AsyncIterator, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.core.config import settings
from libtrack.repositories import activity_repo

logger = logging.getLogger(__name__)


# --- Broadcast hub ---
class EventHub:
    """In-process fan-out of admin-console events (PENALTY_PAID, BOOK_RETURNED, ...).

    Transports (WebSocket, SSE) subscribe and forward; publishing never blocks and never
    fails the caller. A subscriber whose queue is full misses events instead of stalling
    the publisher.
    """

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: Set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"[EventHub] Subscriber queue full, dropping '{event_type}' event.")
        logger.debug(f"[EventHub] Broadcast '{event_type}' to {len(self._subscribers)} subscriber(s).")
        return event

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)


event_hub = EventHub()


# --- Email ---
class EmailSender:
    """SMTP delivery. smtplib is blocking, so sends run in a worker thread."""

    def __init__(self, host: str = None, port: int = None, user: str = None, password: str = None,
                 sender: str = None, use_tls: bool = None, timeout: int = None):
        self.host = host if host is not None else settings.SMTP_HOST
        self.port = port if port is not None else settings.SMTP_PORT
        self.user = user if user is not None else settings.SMTP_USER
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.sender = sender or settings.SMTP_FROM or self.user
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or settings.SMTP_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    async def send(self, to_addr: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        if not self.configured:
            logger.warning(f"[Email] SMTP not configured; skipping '{subject}' to {to_addr}.")
            return False
        await asyncio.to_thread(self._send_sync, to_addr, subject, html_body, text_body)
        logger.info(f"[Email] Sent '{subject}' to {to_addr}.")
        return True

    def _send_sync(self, to_addr: str, subject: str, html_body: str, text_body: Optional[str]):
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to_addr
        msg["Subject"] = subject
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [to_addr], msg.as_string())


email_sender = EmailSender()


def _format_long_date(value: Any) -> str:
    if hasattr(value, "strftime"):
        return f"{value:%B} {value.day}, {value:%Y}"
    return str(value)


def due_tomorrow_email(user_name: str, item_title: str, reference_number: Any, due_date: Any) -> Dict[str, str]:
    due_text = _format_long_date(due_date)
    html = (
        "<div style=\"font-family: Arial, sans-serif;\">"
        "<h2 style=\"color: #0A7075;\">Lib-Track</h2>"
        f"<p>Dear <strong>{user_name}</strong>,</p>"
        "<p>This is a friendly reminder that the following item is <strong>due tomorrow</strong>:</p>"
        "<table>"
        f"<tr><td><strong>Title:</strong></td><td>{item_title}</td></tr>"
        f"<tr><td><strong>Reference:</strong></td><td>{reference_number}</td></tr>"
        f"<tr><td><strong>Due Date:</strong></td><td style=\"color: #dc3545;\">{due_text}</td></tr>"
        "</table>"
        "<p>Please return the item by the due date to avoid penalties.</p>"
        "<p style=\"font-size: 12px; color: #999;\">This is an automated reminder from Lib-Track Library Management System.</p>"
        "</div>"
    )
    text = (
        f"Dear {user_name},\n\n'{item_title}' (reference {reference_number}) is due tomorrow, {due_text}.\n"
        "Please return it by the due date to avoid penalties."
    )
    return {"subject": "⚠️ Item Due Tomorrow - Lib-Track Reminder", "html": html, "text": text}


def overdue_penalty_email(user_name: str, item_title: str, reference_number: Any, days_overdue: int, fine: float) -> Dict[str, str]:
    html = (
        "<div style=\"font-family: Arial, sans-serif;\">"
        "<h2 style=\"color: #0A7075;\">Lib-Track</h2>"
        f"<p>Dear <strong>{user_name}</strong>,</p>"
        f"<p>The following item is <strong>{days_overdue} day(s) overdue</strong>:</p>"
        "<table>"
        f"<tr><td><strong>Title:</strong></td><td>{item_title}</td></tr>"
        f"<tr><td><strong>Reference:</strong></td><td>{reference_number}</td></tr>"
        f"<tr><td><strong>Current Fine:</strong></td><td style=\"color: #dc3545;\">₱{fine:.2f}</td></tr>"
        "</table>"
        "<p>Please return the item and settle the fine at the library counter.</p>"
        "</div>"
    )
    text = (
        f"Dear {user_name},\n\n'{item_title}' (reference {reference_number}) is {days_overdue} day(s) overdue. "
        f"Current fine: ₱{fine:.2f}."
    )
    return {"subject": "🚨 Overdue Item - Lib-Track Penalty Notice", "html": html, "text": text}


# --- Non-essential DB side effects ---
async def record_activity(
    db: AsyncSession,
    user_id: Optional[int],
    action: str,
    details: Optional[str] = None,
    status: str = "completed",
    admin_id: Optional[int] = None,
    admin_name: Optional[str] = None,
) -> Optional[int]:
    """Write an audit row inside a savepoint. Failures are logged and swallowed."""
    if not user_id or not action:
        logger.warning(f"[Activity] user_id and action are required; skipping '{action}'.")
        return None

    final_details = details or ""
    if admin_id and admin_name:
        final_details += f" | Admin: {admin_name} (ID: {admin_id})" if final_details else f"Admin: {admin_name} (ID: {admin_id})"
    elif admin_id:
        final_details += f" | Admin ID: {admin_id}" if final_details else f"Admin ID: {admin_id}"

    try:
        async with db.begin_nested():
            return await activity_repo.insert_activity(db, user_id, action, final_details or None, status)
    except Exception as e:
        logger.error(f"[Activity] Failed to log '{action}' for user {user_id}: {e}")
        return None


async def push_user_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    title: str,
    message: str,
    priority: str = "medium",
    related_transaction_id: Optional[int] = None,
) -> Optional[int]:
    """Insert a borrower push notification inside a savepoint. Failures are logged and swallowed."""
    try:
        async with db.begin_nested():
            return await activity_repo.insert_user_notification(
                db, user_id, notification_type, title, message, priority, related_transaction_id
            )
    except Exception as e:
        logger.error(f"[Notify] Failed to create '{notification_type}' notification for user {user_id}: {e}")
        return None
