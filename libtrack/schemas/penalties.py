from typing import List, Optional

from pydantic import BaseModel, Field


class WaiveRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the penalty is waived. Required and non-blank.")
    waived_by: Optional[str] = Field(None, description="Name of the waiving administrator when no token is sent")


class PayRequest(BaseModel):
    payment_method: Optional[str] = Field(None, description="Defaults to 'cash'")
    notes: Optional[str] = None


class MarkAsLostRequest(BaseModel):
    transaction_ids: List[int] = Field(default_factory=list, description="Borrow transactions to mark lost")


class FineSettingsUpdate(BaseModel):
    student_daily_fine: Optional[float] = Field(None, ge=0)
    faculty_daily_fine: Optional[float] = Field(None, ge=0)
    student_borrow_days: Optional[int] = Field(None, ge=0)
    faculty_borrow_days: Optional[int] = Field(None, ge=0)
