import asyncio
import contextlib
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from libtrack.chatbot.agent import ToolRouter, get_tool_router
from libtrack.chatbot.formatting import STREAM_ERROR_MESSAGE
from libtrack.core.config import settings
from libtrack.schemas.chatbot import ChatRequest, ChatResponse, HistoryResponse, SessionRequest
from libtrack.schemas.common import ok
from libtrack.services.errors import ServiceError
from libtrack.utils import generate_session_id, json_default

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_DONE = "data: [DONE]\n\n"
SSE_KEEPALIVE = ": keep-alive\n\n"


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=json_default)}\n\n"


def _require_message(chat_request: ChatRequest) -> str:
    message = (chat_request.message or "").strip()
    if not message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is required")
    return message


@router.post("/chatbot/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(chat_request: ChatRequest, tool_router: ToolRouter = Depends(get_tool_router)):
    request_id = uuid.uuid4()
    message = _require_message(chat_request)
    session_id = chat_request.session_id or generate_session_id(chat_request.user_id)
    logger.info(f"[ReqID: {request_id}] Chat request for session {session_id} (user: {chat_request.user_id or 'guest'})")

    try:
        result = await asyncio.wait_for(
            tool_router.process_message(message, session_id, chat_request.context()),
            timeout=settings.CHAT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error(f"[ReqID: {request_id}] Chat turn exceeded {settings.CHAT_TIMEOUT_SECONDS}s.")
        raise ServiceError(503, "The assistant took too long to respond. Please try again.", error="Chat request timed out")

    if not result.get("success"):
        raise ServiceError(503, result.get("message") or "Chatbot unavailable", error=result.get("error"))

    return ChatResponse(
        success=True,
        sessionId=session_id,
        message=result["message"],
        toolCallsExecuted=result.get("toolCallsExecuted", 0),
        iterations=result.get("iterations", 0),
        mode=result.get("mode"),
        intent=result.get("intent"),
    )


async def _stream_events(
    request: Request,
    tool_router: ToolRouter,
    message: str,
    session_id: str,
    context: Dict[str, Any],
) -> AsyncIterator[str]:
    """SSE frames: session first, then router events, keep-alives while idle, then [DONE]."""
    yield _sse({"type": "session", "sessionId": session_id})

    events = tool_router.stream_message(message, session_id, context)
    pending: Optional[asyncio.Future] = None
    disconnected = False
    try:
        while True:
            if await request.is_disconnected():
                logger.info(f"[ChatStream] Client disconnected from session {session_id}; stopping.")
                disconnected = True
                break
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=settings.STREAM_KEEPALIVE_SECONDS)
            if not done:
                yield SSE_KEEPALIVE
                continue
            finished, pending = pending, None
            try:
                event = finished.result()
            except StopAsyncIteration:
                break
            yield _sse(event)
    except Exception as e:
        logger.error(f"[ChatStream] Stream failed for session {session_id}: {e}", exc_info=True)
        yield _sse({"type": "error", "error": STREAM_ERROR_MESSAGE})
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await pending
        await events.aclose()

    if not disconnected:
        yield SSE_DONE


@router.post("/chatbot/chat/stream")
async def chat_stream(
    request: Request,
    chat_request: ChatRequest,
    tool_router: ToolRouter = Depends(get_tool_router),
):
    message = _require_message(chat_request)
    session_id = chat_request.session_id or generate_session_id(chat_request.user_id)
    logger.info(f"[ChatStream] Streaming chat for session {session_id}")
    return StreamingResponse(
        _stream_events(request, tool_router, message, session_id, chat_request.context()),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/chatbot/status")
async def chatbot_status(tool_router: ToolRouter = Depends(get_tool_router)):
    return {"success": True, **tool_router.status()}


@router.get("/chatbot/history/{session_id}", response_model=HistoryResponse)
async def get_history(session_id: str, tool_router: ToolRouter = Depends(get_tool_router)):
    messages = tool_router.get_history(session_id)
    return HistoryResponse(sessionId=session_id, messageCount=len(messages), messages=messages)


@router.delete("/chatbot/history/{session_id}")
async def clear_history(session_id: str, tool_router: ToolRouter = Depends(get_tool_router)):
    cleared = tool_router.clear_history(session_id)
    return ok(message="Conversation history cleared", sessionId=session_id, cleared=cleared)


@router.post("/chatbot/generate-session")
async def generate_session(body: Optional[SessionRequest] = None):
    user_id = body.user_id if body else None
    return ok(sessionId=generate_session_id(user_id))
