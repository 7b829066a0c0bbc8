from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import book_repo, research_repo
from libtrack.services.errors import ServiceError
from libtrack.utils import parse_book_qr, parse_research_qr


class QrScanError(ServiceError):
    pass


async def scan(db: AsyncSession, qr_data: Optional[str]) -> Dict[str, Any]:
    """Resolve a scanned payload to a book copy or a research paper.

    Returns {type, message, data}; `data` carries the item plus the decoded qrInfo.
    """
    if not qr_data:
        raise QrScanError(400, "QR data is required", error="Please provide the QR code data to scan")

    scanned_at = datetime.now(timezone.utc).isoformat()
    book_ref = parse_book_qr(qr_data)
    if book_ref:
        book = await book_repo.find_by_qr(db, book_ref["book_id"], book_ref["copy"])
        if book is None:
            raise QrScanError(404, "Book not found", error="No book found matching the scanned QR code")
        return {
            "type": "book",
            "message": "Book found successfully",
            "data": {
                "book": book,
                "qrInfo": {"bookId": book_ref["book_id"], "bookNumber": book_ref["copy"], "scannedAt": scanned_at},
            },
        }

    research_paper_id = parse_research_qr(qr_data)
    if research_paper_id is not None:
        paper = await research_repo.get_paper(db, research_paper_id)
        if paper is None:
            raise QrScanError(404, "Research paper not found", error="No research paper found matching the scanned QR code")
        return {
            "type": "research_paper",
            "message": "Research paper found successfully",
            "data": {
                "researchPaper": paper,
                "qrInfo": {"researchPaperId": research_paper_id, "scannedAt": scanned_at},
            },
        }

    raise QrScanError(
        400,
        "Invalid QR code format",
        error="QR code does not match any expected format (BookID:xxx-No:xxx or ResearchPaperID:xxx)",
    )
