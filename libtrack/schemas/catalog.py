from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# --- Books ---

class BookStatusUpdate(BaseModel):
    status: Optional[str] = None


# --- Research papers ---

class ResearchPaperRequest(BaseModel):
    """Create/update body. The admin console sends camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    research_title: Optional[str] = Field(None, alias="researchTitle")
    year_publication: Optional[Union[int, str]] = Field(None, alias="yearPublication")
    research_abstract: Optional[str] = Field(None, alias="researchAbstract")
    department: Optional[str] = None
    authors: Optional[Union[List[str], str]] = None
    shelf_number: Optional[Union[int, str]] = Field(None, alias="shelfNumber")
    shelf_column: Optional[str] = Field(None, alias="shelfColumn")
    shelf_row: Optional[Union[int, str]] = Field(None, alias="shelfRow")
    research_paper_price: Optional[float] = Field(None, alias="researchPaperPrice")

    def fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# --- Reservations ---

class ReservationCreate(BaseModel):
    user_id: Optional[int] = None
    book_id: Optional[int] = None
    research_paper_id: Optional[int] = None
    reason: Optional[str] = None


class ReservationUpdate(BaseModel):
    status: Optional[str] = None
    reason: Optional[str] = None


# --- Shelves ---

class ShelfCreate(BaseModel):
    shelf_number: Optional[Union[int, str]] = None
    shelf_column: Optional[str] = None
    shelf_row: Optional[Union[int, str]] = None


class RowCountUpdate(BaseModel):
    new_row_count: int = Field(..., ge=0)


class ColumnCountUpdate(BaseModel):
    new_column_count: int = Field(..., ge=0)


class AddRowsRequest(BaseModel):
    rows: List[Union[int, str]] = Field(default_factory=list)
    column: Optional[str] = None


class AddColumnsRequest(BaseModel):
    columns: List[str] = Field(default_factory=list)
    row: Optional[Union[int, str]] = None


# --- Rules ---

class RuleItem(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class RulesCreate(BaseModel):
    heading: Optional[str] = None
    rules: List[RuleItem] = Field(default_factory=list)


class RuleUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    heading: Optional[str] = None


class RuleReorder(BaseModel):
    direction: Optional[str] = Field(None, description="'up' or 'down'")


# --- FAQs ---

class FaqRequest(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None
    category: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


# --- QR ---

class QrScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    qr_data: Optional[str] = Field(None, alias="qrData")
