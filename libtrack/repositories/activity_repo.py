from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import insert_returning


async def insert_activity(
    db: AsyncSession,
    user_id: int,
    action: str,
    details: Optional[str],
    status: str = "completed",
) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO activity_logs (user_id, action, details, status, created_at)
        VALUES (:user_id, :action, :details, :status, NOW())
        RETURNING activity_log_id
        """,
        {"user_id": user_id, "action": action, "details": details, "status": status},
    )


async def insert_user_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    title: str,
    message: str,
    priority: str = "medium",
    related_transaction_id: Optional[int] = None,
) -> int:
    return await insert_returning(
        db,
        """
        INSERT INTO user_notifications
            (user_id, notification_type, title, message, priority, related_transaction_id, is_read, created_at)
        VALUES (:user_id, :notification_type, :title, :message, :priority, :related_transaction_id, FALSE, NOW())
        RETURNING notification_id
        """,
        {
            "user_id": user_id,
            "notification_type": notification_type,
            "title": title,
            "message": message,
            "priority": priority,
            "related_transaction_id": related_transaction_id,
        },
    )

