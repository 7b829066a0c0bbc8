import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.catalog import QrScanRequest
from libtrack.schemas.common import ok
from libtrack.services import qr, returns
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


def _optional_int(name: str, value: Optional[str]) -> Optional[int]:
    if value is None or not str(value).strip():
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise ServiceError(400, f"Invalid {name}", error=f"{name} must be an integer")


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ServiceError(400, "Invalid return_date", error="return_date must be an ISO 8601 date or datetime")


@router.post("/qr/scan")
async def scan_qr(body: QrScanRequest, db: AsyncSession = Depends(get_library_db_session)):
    result = await qr.scan(db, body.qr_data)
    return ok(data=result["data"], message=result["message"], type=result["type"])


@router.post("/kiosk/return")
async def return_items(
    transaction_id: Optional[str] = Form(None),
    reference_number: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    book_id: Optional[str] = Form(None, description="Book id(s): single id, comma list or JSON array"),
    research_paper_id: Optional[str] = Form(None, description="Research paper id(s): single id, comma list or JSON array"),
    return_date: Optional[str] = Form(None),
    receipt_image: Optional[UploadFile] = File(None),
    db: AsyncSession = Depends(get_library_db_session),
):
    receipt, receipt_filename = None, None
    if receipt_image is not None and receipt_image.filename:
        receipt, receipt_filename = await receipt_image.read(), receipt_image.filename

    result = await returns.return_items(
        db,
        transaction_id=_optional_int("transaction_id", transaction_id),
        reference_number=(reference_number or "").strip() or None,
        user_id=_optional_int("user_id", user_id),
        book_ids=book_id,
        research_paper_ids=research_paper_id,
        return_date=_optional_datetime(return_date),
        receipt=receipt,
        receipt_filename=receipt_filename,
    )
    return ok(data=result, message=f"Successfully returned {result['total_returned']} item(s)")
