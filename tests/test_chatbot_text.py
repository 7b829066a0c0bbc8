import pytest

from libtrack.chatbot import formatting, heuristics
from libtrack.chatbot.rule_based import (
    RuleBasedChatbot,
    extract_entities,
    extract_search_query,
    identify_intent,
)
from libtrack.chatbot.tools.book_tools import SearchBooksTool, tokenize_search_query


# --- Routing heuristics ---

def test_needs_tools_on_catalog_words():
    assert heuristics.needs_tools("Do you have any books by Rizal?") is True
    assert heuristics.needs_tools("hello there") is False


def test_personal_triggers_need_a_user():
    assert heuristics.needs_tools("what do i owe") is False
    assert heuristics.needs_tools("what do i owe", user_id=7) is True


def test_simple_message():
    assert heuristics.is_simple_message("hi!") is True
    assert heuristics.is_simple_message(None) is False
    long_chat = "tell me something nice about the weather today " * 3
    assert heuristics.is_simple_message(long_chat) is True
    assert heuristics.is_simple_message(long_chat + " and where to borrow") is False


def test_truncate_message():
    assert heuristics.truncate_message("abcdef", 5) == "ab..."
    assert heuristics.truncate_message("abc", 5) == "abc"


def test_research_query_extraction():
    assert heuristics.has_research_intent("any thesis on mangroves?") is True
    assert heuristics.extract_research_query("research paper by Dela Cruz") == "Dela Cruz"
    assert heuristics.extract_research_query('paper titled "Coastal Erosion"') == "Coastal Erosion"


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"name": "search_books", "arguments": {}}', True),
        ('[{"type": "function", "function": {"name": "get_faqs"}}]', True),
        ('{"title": "Noli"}', False),
        ("Here are some books", False),
        ("{not json", False),
    ],
)
def test_looks_like_tool_call(text, expected):
    assert heuristics.looks_like_tool_call(text) is expected


# --- Rendering ---

def test_search_results_group_copies():
    books = [
        {"title": "Noli Me Tangere", "author": "Jose Rizal", "status": "Available", "book_number": 1},
        {"title": "Noli Me Tangere", "author": "Jose Rizal", "status": "Borrowed", "book_number": 2},
    ]

    text = formatting.format_tool_results([{"name": "search_books", "result": {"success": True, "books": books}}])

    assert text.count("📚 **Noli Me Tangere** by Jose Rizal") == 1
    assert "✅ Copies: 2 • Available: 1" in text
    assert "📍 Locations: 1, 2" in text


def test_empty_searches_are_detected():
    results = [{"name": "search_books", "result": {"success": True, "count": 0, "books": []}}]
    assert formatting.has_zero_result_search(results) is True
    assert formatting.format_tool_results(results) is None
    assert formatting.format_tool_results(results, "fallback") == "fallback"


def test_empty_faq_list_still_renders():
    text = formatting.format_tool_results([{"name": "get_faqs", "result": {"success": True, "faqs": []}}])
    assert text.startswith("📝 **Frequently Asked Questions**")


def test_failed_results_are_skipped():
    results = [
        {"name": "search_books", "result": {"success": False, "error": "db down"}},
        {"name": "get_library_rules", "result": {"success": True, "rules": [
            {"rule_title": "Silence", "rule_description": "Keep quiet in reading areas."},
        ]}},
    ]
    assert "• **Silence** - Keep quiet in reading areas." in formatting.format_tool_results(results)


def test_extract_authors():
    assert formatting.extract_authors({"authors": ["A. Santos", "B. Cruz"]}) == "A. Santos, B. Cruz"
    assert formatting.extract_authors({"title": "x"}) is None


# --- Search tokenizer ---

def test_tokenizer_drops_stopwords_and_keeps_initials():
    tokens = tokenize_search_query("Find the book by H. Lee", SearchBooksTool.STOPWORDS)
    assert tokens == ["h", "lee"]
    assert "the" not in tokens
    assert "h" in tokenize_search_query("H. Lee", frozenset())


# --- Rule-based responder ---

@pytest.mark.parametrize(
    "message, intent",
    [
        ("hello", "greeting"),
        ("thanks!", "thanks"),
        ("can you suggest a research paper on climate", "research_papers"),
        ("where can i find the book Dekada 70", "book_search"),
        ("how much is the late fee", "penalties"),
        ("what time does the library open", "library_hours"),
        ("zzzz", "unknown"),
    ],
)
def test_identify_intent(message, intent):
    assert identify_intent(message) == intent


def test_entities_and_query():
    entities = extract_entities('find "Dekada 70" by Lualhati Bautista')
    assert entities == {"book_title": "Dekada 70", "author_name": "Lualhati Bautista"}
    assert extract_search_query("Can you find books about marine biology?") == "books marine biology"


async def test_rule_based_book_search_uses_tool():
    calls = []

    async def executor(name, args):
        calls.append((name, args))
        return {"success": True, "count": 1, "books": [
            {"title": "Dekada 70", "author": "Lualhati Bautista", "status": "Available", "availability_status": "Available"},
        ]}

    reply = await RuleBasedChatbot(tool_executor=executor).process_message('find the book "Dekada 70"')

    assert reply["intent"] == "book_search"
    assert reply["tool_used"] == "search_books"
    assert calls == [("search_books", {"query": "Dekada 70", "limit": 8})]
    assert "1. Dekada 70" in reply["message"]


async def test_rule_based_greets_by_name():
    reply = await RuleBasedChatbot(tool_executor=None).process_message("hi", {"user_name": "Ana"})
    assert reply["success"] is True
    assert reply["message"].startswith("Hello Ana!")


async def test_rule_based_reports_tool_failures():
    async def executor(name, args):
        raise RuntimeError("db down")

    reply = await RuleBasedChatbot(tool_executor=executor).process_message('find the book "Dekada 70"')

    assert reply["success"] is False
    assert reply["error"] == "db down"
