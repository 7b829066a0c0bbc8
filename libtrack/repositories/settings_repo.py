import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_one, execute

logger = logging.getLogger(__name__)

FINE_SETTING_COLUMNS = ("student_daily_fine", "faculty_daily_fine", "student_borrow_days", "faculty_borrow_days")


async def get_system_settings(db: AsyncSession) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        """
        SELECT student_daily_fine, faculty_daily_fine, student_borrow_days, faculty_borrow_days
        FROM system_settings
        LIMIT 1
        """,
    )


async def update_fine_settings(db: AsyncSession, values: Dict[str, Any]) -> int:
    """Update the given columns of the single settings row. Unknown keys are ignored."""
    updates = {k: v for k, v in values.items() if k in FINE_SETTING_COLUMNS and v is not None}
    if not updates:
        return 0
    assignments = ", ".join(f"{column} = :{column}" for column in updates)
    return await execute(db, f"UPDATE system_settings SET {assignments}", updates)
