import asyncio
import logging
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APITimeoutError, RateLimitError
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from libtrack.chatbot.tools.account_tools import UserBorrowedBooksTool, UserTransactionHistoryTool
from libtrack.chatbot.tools.base import LibraryTool
from libtrack.chatbot.tools.book_tools import (
    BookAvailabilityTool,
    BookCategoriesTool,
    PopularBooksTool,
    RecommendBooksTool,
    SearchBooksTool,
)
from libtrack.chatbot.tools.library_info_tools import FaqsTool, LibraryRulesTool
from libtrack.chatbot.tools.research_tools import RecommendResearchPapersTool, SearchResearchPapersTool
from libtrack.core.config import settings

logger = logging.getLogger(__name__)

# Tools whose user_id is taken from the request context, never from the model
USER_SCOPED_TOOLS = frozenset({
    "get_user_borrowed_books",
    "get_user_transaction_history",
    "recommend_books",
    "recommend_research_papers",
})


def get_tools() -> List[LibraryTool]:
    """Instantiate the read-only tool catalog in the order it is offered to the model."""
    return [
        SearchBooksTool(),
        BookAvailabilityTool(),
        SearchResearchPapersTool(),
        RecommendResearchPapersTool(),
        RecommendBooksTool(),
        FaqsTool(),
        LibraryRulesTool(),
        PopularBooksTool(),
        UserBorrowedBooksTool(),
        UserTransactionHistoryTool(),
        BookCategoriesTool(),
    ]


TOOLS_BY_NAME: Dict[str, LibraryTool] = {tool.name: tool for tool in get_tools()}


def scope_tool_args(tool_name: str, args: Optional[Dict[str, Any]], user_id: Optional[Any]) -> Dict[str, Any]:
    scoped = dict(args or {})
    if tool_name in USER_SCOPED_TOOLS and user_id:
        scoped["user_id"] = user_id
    return scoped


def _is_retryable_error(error: Exception) -> bool:
    """Determine if an error should be retried."""
    if isinstance(error, (TimeoutError, ConnectionError, APIConnectionError, APITimeoutError, RateLimitError)):
        return True
    if isinstance(error, OperationalError):
        return True
    error_str = str(error).lower()
    return any(term in error_str for term in [
        "timeout", "connection", "network", "temporarily",
        "unavailable", "busy", "rate limit",
        "too many requests", "429", "503", "504",
    ])


async def execute_with_retry(invocation_detail: Dict[str, Any]) -> Dict[str, Any]:
    """Run one tool call with backoff on transient errors.

    Returns `{id, name, result, is_error}`; a failed call's result is `{success: False, error}`.
    """
    tool_to_call = invocation_detail["tool"]
    tool_input_args = invocation_detail["args"]
    tool_call_id = invocation_detail.get("id")
    tool_name = invocation_detail["name"]
    retries_left = max(0, invocation_detail.get("retries_left", settings.TOOL_EXECUTION_RETRIES))

    attempt = 0
    last_exception: Optional[Exception] = None

    while attempt <= retries_left:
        current_attempt_number = attempt + 1
        max_attempts = retries_left + 1
        logger.info(f"[ToolRetry] Attempt {current_attempt_number}/{max_attempts} for tool '{tool_name}' (ID: {tool_call_id}). Args: {tool_input_args}")
        try:
            tool_output = await tool_to_call.ainvoke(tool_input_args)
            return {"id": tool_call_id, "name": tool_name, "result": tool_output, "is_error": False}
        except Exception as e:
            logger.warning(f"[ToolRetry] Attempt {current_attempt_number}/{max_attempts} for tool '{tool_name}' (ID: {tool_call_id}) failed. Error: {e}")
            last_exception = e

            if isinstance(e, ValidationError) or not _is_retryable_error(e):
                logger.warning(f"[ToolRetry] Non-retryable error for '{tool_name}' (ID: {tool_call_id}). Stopping retries immediately.")
                break
            if attempt >= retries_left:
                break
            delay = settings.TOOL_RETRY_DELAY_SECONDS * (2 ** attempt)
            logger.info(f"[ToolRetry] Retryable error for '{tool_name}'. Retrying in {delay:.2f} seconds...")
            await asyncio.sleep(delay)
            attempt += 1

    # The driver error usually carries the useful message
    cause = getattr(last_exception, "__cause__", None)
    detail = str(cause) if cause else str(last_exception)
    logger.error(f"[ToolRetry] Tool '{tool_name}' (ID: {tool_call_id}) failed after {attempt + 1} attempt(s): {detail}")
    return {
        "id": tool_call_id,
        "name": tool_name,
        "result": {"success": False, "error": detail},
        "is_error": True,
    }


async def execute_tool(tool_name: str, args: Optional[Dict[str, Any]] = None, tool_call_id: Optional[str] = None) -> Dict[str, Any]:
    """Execute a catalog tool by name and return its result payload."""
    tool = TOOLS_BY_NAME.get(tool_name)
    if tool is None:
        logger.error(f"[ToolExecutor] Tool '{tool_name}' requested but not registered.")
        return {"success": False, "error": f"Tool {tool_name} not found"}
    outcome = await execute_with_retry({"tool": tool, "args": dict(args or {}), "id": tool_call_id, "name": tool_name})
    return outcome["result"]
