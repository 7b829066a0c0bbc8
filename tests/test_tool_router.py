import asyncio

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from libtrack.chatbot.agent import ToolRouter
from libtrack.chatbot.memory import SessionStore
from libtrack.chatbot.tools import registry
from libtrack.chatbot.tools.registry import execute_tool, execute_with_retry, scope_tool_args
from libtrack.services.notifications import EventHub


class ScriptedLLM:
    """Chat model double: replays AIMessages in order, or raises when given an exception."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    def bind_tools(self, tools):
        return self

    async def ainvoke(self, messages, *args, **kwargs):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def llm_factory(llm):
    def factory(streaming=False):
        return llm
    return factory


class RecordingExecutor:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def __call__(self, name, args):
        self.calls.append((name, args))
        return self.results[name]


SEARCH_CALL = AIMessage(content="", tool_calls=[{"name": "search_books", "args": {"query": "python"}, "id": "call_1"}])


def make_router(llm, executor, **kwargs):
    return ToolRouter(
        llm_factory=llm_factory(llm),
        tool_executor=executor,
        store=SessionStore(),
        llm_enabled=kwargs.pop("llm_enabled", True),
        debounce_seconds=0.01,
        **kwargs,
    )


# --- Tool-calling loop ---

async def test_tool_results_are_rendered_from_data():
    llm = ScriptedLLM([SEARCH_CALL, AIMessage(content="I found Invented Title for you.")])
    executor = RecordingExecutor({"search_books": {"success": True, "count": 1, "books": [
        {"title": "Python Basics", "author": "G. Cruz", "status": "Available"},
    ]}})
    router = make_router(llm, executor)

    result = await router.process_message("find books about python", "s1", {"user_id": 3})

    assert result["success"] is True
    assert "📚 **Python Basics** by G. Cruz" in result["message"]
    assert "Invented Title" not in result["message"]
    assert result["toolCallsExecuted"] == 1
    assert result["iterations"] == 1
    assert executor.calls == [("search_books", {"query": "python"})]
    assert len(router.store.recent_messages("s1")) == 2


async def test_empty_search_falls_back_to_popular_books():
    llm = ScriptedLLM([SEARCH_CALL, AIMessage(content="Try 'Made Up Book'.")])
    executor = RecordingExecutor({
        "search_books": {"success": True, "count": 0, "books": []},
        "get_popular_books": {"success": True, "count": 1, "books": [
            {"book_title": "Noli Me Tangere", "author": "Jose Rizal", "status": "Available", "borrow_count": 12},
        ]},
    })
    router = make_router(llm, executor)

    result = await router.process_message("find books about python", "s1", {})

    assert "⭐ **Recommended Popular Books**" in result["message"]
    assert "Made Up Book" not in result["message"]
    assert executor.calls[-1] == ("get_popular_books", {"type": "most_borrowed", "limit": 6})


async def test_iteration_limit_stops_the_loop():
    llm = ScriptedLLM([SEARCH_CALL, SEARCH_CALL, SEARCH_CALL])
    executor = RecordingExecutor({"search_books": {"success": True, "count": 1, "books": [
        {"title": "Python Basics", "author": "G. Cruz", "status": "Available"},
    ]}})
    router = make_router(llm, executor, max_iterations=2)

    result = await router.process_message("find books about python", None, {})

    assert result["iterations"] == 2
    assert llm.calls == 3
    assert "Python Basics" in result["message"]


async def test_user_scoped_tools_ignore_model_user_id():
    call = AIMessage(content="", tool_calls=[
        {"name": "get_user_borrowed_books", "args": {"user_id": 999}, "id": "call_1"},
    ])
    llm = ScriptedLLM([call, AIMessage(content="done")])
    executor = RecordingExecutor({"get_user_borrowed_books": {"success": True, "count": 0, "borrowed_books": []}})
    router = make_router(llm, executor)

    await router.process_message("show my borrowed books", None, {"user_id": 3})

    assert executor.calls == [("get_user_borrowed_books", {"user_id": 3})]


async def test_fast_path_skips_tools_and_history():
    llm = ScriptedLLM([AIMessage(content="Hello! How can I help?")])
    router = make_router(llm, RecordingExecutor({}))

    result = await router.process_message("hey", "s1", {})

    assert result == {"success": True, "message": "Hello! How can I help?", "toolCallsExecuted": 0, "iterations": 0}
    assert router.store.recent_messages("s1") == []


# --- Fallbacks ---

async def test_model_failure_degrades_to_rule_based():
    llm = ScriptedLLM([RuntimeError("quota"), RuntimeError("quota")])
    router = make_router(llm, RecordingExecutor({}))

    result = await router.process_message("hello", "s1", {"user_name": "Ana"})

    assert result["success"] is True
    assert result["mode"] == "rule_based"
    assert result["intent"] == "greeting"


async def test_disabled_llm_uses_rule_based_only():
    llm = ScriptedLLM([])
    router = make_router(llm, RecordingExecutor({}), llm_enabled=False)

    result = await router.process_message("thanks", "s1", {})

    assert result["mode"] == "rule_based"
    assert llm.calls == 0
    assert [m["role"] for m in router.get_history("s1")] == ["user", "assistant"]
    assert router.status()["mode"] == "rule_based"


async def test_research_questions_skip_the_model():
    executor = RecordingExecutor({"search_research_papers": {"success": True, "count": 1, "papers": [
        {"title": "Mangrove Loss in Zamboanga", "authors": ["A. Santos"], "status": "Available"},
    ]}})
    router = make_router(ScriptedLLM([]), executor)

    result = await router.process_message("any research paper by Santos", None, {})

    assert executor.calls == [("search_research_papers", {"query": "Santos", "limit": 20})]
    assert "📄 **Mangrove Loss in Zamboanga**" in result["message"]
    assert result["toolCallsExecuted"] == 1


async def test_research_without_matches():
    executor = RecordingExecutor({"search_research_papers": {"success": True, "count": 0, "papers": []}})
    router = make_router(ScriptedLLM([]), executor, llm_enabled=False)

    result = await router.process_message("paper by Nobody", None, {})

    assert 'exact matches for "Nobody"' in result["message"]


# --- Streaming ---

async def test_stream_coalesces_content_and_completes():
    router = make_router(ScriptedLLM([]), RecordingExecutor({}), llm_enabled=False)

    events = [event async for event in router.stream_message("thanks", "s1", {})]

    assert [e["type"] for e in events] == ["content", "complete"]
    assert events[0]["content"] == "You're welcome! Need anything else? 😊"


async def test_closing_the_stream_cancels_generation():
    started = asyncio.Event()

    class SlowLLM(ScriptedLLM):
        async def ainvoke(self, messages, *args, **kwargs):
            started.set()
            await asyncio.sleep(60)

    router = make_router(SlowLLM([]), RecordingExecutor({}))
    stream = router.stream_message("hey", None, {})

    first = await stream.__anext__()
    await asyncio.wait_for(started.wait(), timeout=1)
    await stream.aclose()

    assert first == {"type": "thinking", "thinking": True}


class StreamingLLM(ScriptedLLM):
    """Streams the given chunks, then answers follow-up calls from the scripted responses."""

    def __init__(self, chunks, responses=()):
        super().__init__(responses)
        self.chunks = chunks

    async def astream(self, messages, *args, **kwargs):
        for chunk in self.chunks:
            yield chunk


def search_call_chunk():
    return AIMessageChunk(content="", tool_call_chunks=[
        {"name": "search_books", "args": '{"query": "python"}', "id": "call_1", "index": 0},
    ])


async def test_stream_hides_tool_call_json():
    tool_json = '{"name": "search_books", "arguments": {"query": "python"}}'
    llm = StreamingLLM(
        [AIMessageChunk(content=tool_json), AIMessageChunk(content=tool_json), search_call_chunk()],
        [AIMessage(content="done")],
    )
    executor = RecordingExecutor({"search_books": {"success": True, "count": 1, "books": [
        {"title": "Python Basics", "author": "G. Cruz", "status": "Available"},
    ]}})
    router = make_router(llm, executor)

    events = [event async for event in router.stream_message("find books about python", None, {})]

    infos = [e["info"] for e in events if e["type"] == "info"]
    content = "".join(e["content"] for e in events if e["type"] == "content")
    assert infos.count("Invoking tools...") == 1
    assert '"arguments"' not in content
    assert "📚 **Python Basics** by G. Cruz" in content
    assert events[-1] == {"type": "complete", "toolCallsExecuted": 1}


async def test_stream_drops_model_text_before_empty_search():
    llm = StreamingLLM(
        [AIMessageChunk(content="Sure! Try 'Made Up Book'. "), search_call_chunk()],
        [AIMessage(content="Also 'Another Fake'.")],
    )
    executor = RecordingExecutor({
        "search_books": {"success": True, "count": 0, "books": []},
        "get_popular_books": {"success": True, "count": 1, "books": [
            {"book_title": "Noli Me Tangere", "author": "Jose Rizal", "status": "Available", "borrow_count": 12},
        ]},
    })
    router = make_router(llm, executor)

    events = [event async for event in router.stream_message("find books about python", None, {})]

    content = "".join(e["content"] for e in events if e["type"] == "content")
    assert "Made Up Book" not in content
    assert "Another Fake" not in content
    assert "⭐ **Recommended Popular Books**" in content


async def test_stream_sends_plain_answer_when_no_tools_are_called():
    llm = StreamingLLM([AIMessageChunk(content="We have "), AIMessageChunk(content="many books.")])
    router = make_router(llm, RecordingExecutor({}))

    events = [event async for event in router.stream_message("find books about python", "s1", {})]

    content = "".join(e["content"] for e in events if e["type"] == "content")
    assert content == "We have many books."
    assert router.store.recent_messages("s1")[-1].content == "We have many books."


# --- Session store ---

def test_session_store_expires_idle_sessions():
    now = [0.0]
    store = SessionStore(ttl_seconds=10, max_messages=4, clock=lambda: now[0])
    store.append_exchange("a", "hi", "hello")

    now[0] = 5
    assert len(store.recent_messages("a")) == 2
    now[0] = 16
    assert store.recent_messages("a") == []
    assert len(store) == 0


def test_session_store_caps_history():
    store = SessionStore(ttl_seconds=60, max_messages=4)
    for i in range(3):
        store.append_exchange("a", f"q{i}", f"a{i}")

    exported = store.export("a")
    assert [m["content"] for m in exported] == ["q1", "a1", "q2", "a2"]
    assert store.clear("a") is True
    assert store.clear("a") is False


# --- Event hub ---

async def test_event_hub_fans_out_and_unsubscribes():
    hub = EventHub(max_queue_size=1)
    async with hub.subscribe() as first, hub.subscribe() as second:
        hub.broadcast("PENALTY_PAID", {"penalty_id": 1})
        hub.broadcast("PENALTY_PAID", {"penalty_id": 2})
        assert first.get_nowait()["data"] == {"penalty_id": 1}
        assert second.qsize() == 1
        assert hub.subscriber_count == 2
    assert hub.subscriber_count == 0


# --- Tool registry ---

def test_scope_tool_args():
    assert scope_tool_args("recommend_books", {"user_id": 9, "limit": 3}, 4) == {"user_id": 4, "limit": 3}
    assert scope_tool_args("search_books", {"query": "x"}, 4) == {"query": "x"}


def test_registry_offers_every_tool():
    assert set(registry.TOOLS_BY_NAME) == {
        "search_books", "get_book_availability", "search_research_papers", "recommend_research_papers",
        "recommend_books", "get_faqs", "get_library_rules", "get_popular_books",
        "get_user_borrowed_books", "get_user_transaction_history", "get_book_categories",
    }


async def test_unknown_tool():
    assert await execute_tool("drop_tables", {}) == {"success": False, "error": "Tool drop_tables not found"}


class FlakyTool:
    def __init__(self, failures):
        self.failures = list(failures)
        self.attempts = 0

    async def ainvoke(self, args):
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return {"success": True, "count": 0}


async def test_transient_tool_errors_are_retried(monkeypatch):
    monkeypatch.setattr(registry.settings, "TOOL_RETRY_DELAY_SECONDS", 0)
    tool = FlakyTool([ConnectionError("connection reset")])

    outcome = await execute_with_retry({"tool": tool, "args": {}, "id": "c1", "name": "search_books", "retries_left": 1})

    assert outcome["is_error"] is False
    assert tool.attempts == 2


async def test_permanent_tool_errors_are_not_retried():
    tool = FlakyTool([ValueError("bad argument")])

    outcome = await execute_with_retry({"tool": tool, "args": {}, "id": "c1", "name": "search_books", "retries_left": 3})

    assert outcome["is_error"] is True
    assert outcome["result"] == {"success": False, "error": "bad argument"}
    assert tool.attempts == 1
