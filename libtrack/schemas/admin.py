from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AdminCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    password: Optional[str] = None
    role: str = "Admin"
    status: str = "Active"
    permissions: Optional[Dict[str, bool]] = None


class AdminUpdate(BaseModel):
    """Partial update; `permissions` is always rewritten in full."""
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
