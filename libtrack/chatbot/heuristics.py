"""Cheap message classifiers that decide how a chat turn is routed.

All functions here are pure so they can be swapped or tuned without touching the router.
"""
import json
import re
from typing import Any, Optional

BOOK_TRIGGERS = (
    "book", "books", "title", "author", "isbn", "recommend", "recommendation", "suggest", "suggestion",
    "random", "popular", "best", "top", "new", "recent", "available", "availability",
    "search", "find", "looking for", "where is", "location", "shelf",
    "research", "paper", "thesis", "study", "publication",
    "categories", "category", "genre", "subject", "topic",
    "fiction", "non-fiction", "novel", "textbook",
)

ACCOUNT_TRIGGERS = (
    "my books", "my borrowings", "borrowed", "transaction", "transactions",
    "overdue", "due date", "fine", "penalty", "history",
)

PERSONAL_TRIGGERS = ("my", "i have", "do i", "me")

HEAVY_TRIGGERS = (
    "search", "find", "where", "availability", "recommend", "reserve", "borrow", "return",
    "paper", "research", "isbn", "transaction", "my", "due", "overdue", "fine",
)

SIMPLE_MESSAGE_MAX_CHARS = 80

RESEARCH_INTENT_PATTERN = re.compile(
    r"\bresearch paper\b|\bresearch papers\b|\bresearch\b|\bpaper by\b|\bpaper titled\b|\bprovide a paper\b"
    r"|\bthesis\b|\bpublication\b|\bjournal\b|\bconference\b|\bproceedings\b|\bpaper\b",
    re.IGNORECASE,
)
_BY_NAME_PATTERN = re.compile(r"by\s+(.+)$", re.IGNORECASE)
_PAPER_TITLE_PATTERN = re.compile(r'(?:paper|research paper|publication)\s+(?:titled\s+)?"?([^\n"]+)"?', re.IGNORECASE)


def needs_tools(message: Any, user_id: Optional[Any] = None) -> bool:
    """True when the message likely needs live catalog or account data."""
    if not message or not isinstance(message, str):
        return False
    lowered = message.lower()
    if any(trigger in lowered for trigger in BOOK_TRIGGERS):
        return True
    if any(trigger in lowered for trigger in ACCOUNT_TRIGGERS):
        return True
    if user_id and any(trigger in lowered for trigger in PERSONAL_TRIGGERS):
        return True
    return False


def is_simple_message(message: Any) -> bool:
    """Short or trigger-free messages qualify for the single-call fast path."""
    if not message or not isinstance(message, str):
        return False
    if len(message) < SIMPLE_MESSAGE_MAX_CHARS:
        return True
    lowered = message.lower()
    return not any(trigger in lowered for trigger in HEAVY_TRIGGERS)


def truncate_message(text: Any, max_chars: int = 1200) -> Any:
    if not text or not isinstance(text, str):
        return text
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def has_research_intent(message: Any) -> bool:
    if not message or not isinstance(message, str):
        return False
    return bool(RESEARCH_INTENT_PATTERN.search(message))


def extract_research_query(message: str) -> str:
    """'... by <name>' wins, then 'paper titled "<t>"'; otherwise the whole message."""
    by_match = _BY_NAME_PATTERN.search(message)
    if by_match and by_match.group(1).strip():
        return by_match.group(1).strip()
    title_match = _PAPER_TITLE_PATTERN.search(message)
    if title_match and title_match.group(1).strip():
        return title_match.group(1).strip()
    return message


def looks_like_tool_call(text: Any) -> bool:
    """Detect serialized tool-call JSON that some models emit as plain content."""
    if not text or not isinstance(text, str):
        return False
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return False
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return False
    if isinstance(parsed, list):
        return bool(parsed) and isinstance(parsed[0], dict) and _is_tool_call_object(parsed[0])
    return isinstance(parsed, dict) and _is_tool_call_object(parsed)


def _is_tool_call_object(obj: dict) -> bool:
    return obj.get("type") == "function" or bool(obj.get("function")) or bool(obj.get("name"))
