import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import faq_repo
from libtrack.repositories.faq_repo import UPDATABLE_COLUMNS
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)


class FaqError(ServiceError):
    pass


def parse_active(value: Optional[str]) -> Optional[bool]:
    """'true'/'1' and 'false'/'0' filter by the active flag; anything else does not filter."""
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    return None


async def list_faqs(db: AsyncSession, q: Optional[str] = None, active: Optional[str] = None) -> List[Dict[str, Any]]:
    return await faq_repo.list_faqs(db, q=q, active=parse_active(active))


async def get_faq(db: AsyncSession, faq_id: int) -> Dict[str, Any]:
    faq = await faq_repo.get_faq(db, faq_id)
    if faq is None:
        raise FaqError(404, "FAQ not found")
    return faq


async def create_faq(db: AsyncSession, values: Dict[str, Any], created_by: Optional[int] = None) -> Dict[str, Any]:
    if not values.get("question") or not values.get("answer"):
        raise FaqError(400, "Question and answer are required")
    faq_id = await faq_repo.insert_faq(db, {**values, "created_by": created_by})
    await db.commit()
    logger.info(f"[FAQs] Created FAQ {faq_id}.")
    return await get_faq(db, faq_id)


async def update_faq(db: AsyncSession, faq_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: v for k, v in values.items() if k in UPDATABLE_COLUMNS and v is not None}
    if not changes:
        raise FaqError(400, "No fields to update")
    if not await faq_repo.update_faq(db, faq_id, changes):
        await db.rollback()
        raise FaqError(404, "FAQ not found")
    await db.commit()
    return await get_faq(db, faq_id)


async def delete_faq(db: AsyncSession, faq_id: int) -> None:
    if not await faq_repo.delete_faq(db, faq_id):
        await db.rollback()
        raise FaqError(404, "FAQ not found")
    await db.commit()
