import asyncio
import datetime
import decimal
import os
import random
import re
import time
import uuid
from typing import Any, Dict, Optional

from libtrack.core.config import settings

BOOK_QR_PATTERN = re.compile(r"^BookID:(\d+)-No:(\d+)$")
RESEARCH_QR_PATTERN = re.compile(r"^ResearchPaperID:(\d+)$")


def json_default(obj):
    """JSON serializer handling specific types and number formatting.

    Handles:
    - UUID -> str
    - datetime/date/time -> ISO format str
    - float representing whole number (e.g., 15.0) -> int (15)
    - Decimal -> int when whole, float otherwise (fines are 2-decimal currency)
    - bytes -> None (BLOB covers are never inlined)
    """
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, (datetime.datetime, datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, float) and obj.is_integer():
        return int(obj)
    if isinstance(obj, decimal.Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return None
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


# --- QR payloads ---

def encode_book_qr(book_id: int, copy_number: int) -> str:
    return f"BookID:{int(book_id)}-No:{int(copy_number)}"


def parse_book_qr(payload: str) -> Optional[Dict[str, int]]:
    """'BookID:42-No:3' -> {'book_id': 42, 'copy': 3}. Anything else -> None."""
    if not isinstance(payload, str):
        return None
    match = BOOK_QR_PATTERN.match(payload.strip())
    if not match:
        return None
    return {"book_id": int(match.group(1)), "copy": int(match.group(2))}


def encode_research_qr(research_paper_id: int) -> str:
    return f"ResearchPaperID:{int(research_paper_id)}"


def parse_research_qr(payload: str) -> Optional[int]:
    if not isinstance(payload, str):
        return None
    match = RESEARCH_QR_PATTERN.match(payload.strip())
    return int(match.group(1)) if match else None


# --- Uploads ---

def upload_url(path: Optional[str]) -> Optional[str]:
    """Prefix a stored upload path with UPLOAD_DOMAIN. Absolute URLs pass through."""
    if not path or not isinstance(path, str):
        return None
    if path.startswith(("http://", "https://")):
        return path
    domain = settings.UPLOAD_DOMAIN.rstrip("/")
    return f"{domain}/{path.lstrip('/')}"


def generate_session_id(user_id: Any = None) -> str:
    """session_<user id or 'guest'>_<epoch ms>_<9 random chars>"""
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=9))
    return f"session_{user_id or 'guest'}_{int(time.time() * 1000)}_{suffix}"


def _write_bytes(path: str, content: bytes):
    with open(path, "wb") as f:
        f.write(content)


async def save_upload(content: bytes, filename: Optional[str], subdir: str, stem: str) -> str:
    """Write an uploaded file under UPLOAD_DIR/<subdir> and return its public path (/<subdir>/<name>)."""
    extension = os.path.splitext(filename or "")[1].lower() or ".jpg"
    safe_stem = "".join(c for c in stem if c.isalnum() or c in "-_") or subdir
    name = f"{safe_stem}-{uuid.uuid4().hex[:8]}{extension}"
    directory = os.path.join(settings.UPLOAD_DIR, subdir)
    os.makedirs(directory, exist_ok=True)
    await asyncio.to_thread(_write_bytes, os.path.join(directory, name), content)
    return f"/{subdir}/{name}"
