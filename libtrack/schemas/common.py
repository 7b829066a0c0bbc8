from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiResponse(BaseModel):
    """Envelope shared by every route: `{success, data?, message?, error?}`.

    Routes may add top-level fields (e.g. `expected_items` on a rejected return).
    """
    model_config = ConfigDict(extra="allow")

    success: bool = Field(..., description="Whether the request was fulfilled")
    data: Optional[Any] = Field(None, description="Payload of a successful request")
    message: Optional[str] = Field(None, description="Human-readable outcome")
    error: Optional[str] = Field(None, description="Error detail when success is false")


def ok(data: Any = None, message: Optional[str] = None, **extras: Any) -> dict:
    body: dict = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    body.update(extras)
    return body
