from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    """Request schema for the chat endpoints. The kiosk sends camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = Field(None, description="The user's message")
    session_id: Optional[str] = Field(None, alias="sessionId", description="Conversation id; generated when absent")
    user_id: Optional[Union[int, str]] = Field(None, alias="userId")
    user_name: Optional[str] = Field(None, alias="userName")
    user_role: Optional[str] = Field(None, alias="userRole")

    def context(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id or None,
            "user_name": self.user_name or "User",
            "user_role": self.user_role or "student",
        }


class ChatResponse(BaseModel):
    success: bool
    sessionId: str
    message: str
    toolCallsExecuted: int = 0
    iterations: int = 0
    mode: Optional[str] = None
    intent: Optional[str] = None
    error: Optional[str] = None


class HistoryResponse(BaseModel):
    success: bool = True
    sessionId: str
    messageCount: int
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[Union[int, str]] = Field(None, alias="userId")
