import asyncio
import functools
import json
import logging
import operator
from typing import Annotated, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypedDict

from aiolimiter import AsyncLimiter
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.runnables import RunnableConfig
from langchain_openai import AzureChatOpenAI
from langgraph.graph import END, StateGraph

from libtrack.chatbot.formatting import (
    GENERIC_ERROR_MESSAGE,
    NO_RESULTS_MESSAGE,
    STREAM_ERROR_MESSAGE,
    format_tool_results,
    has_zero_result_search,
    research_no_results_message,
)
from libtrack.chatbot.heuristics import (
    extract_research_query,
    has_research_intent,
    is_simple_message,
    looks_like_tool_call,
    needs_tools,
    truncate_message,
)
from libtrack.chatbot.memory import SessionStore, session_store
from libtrack.chatbot.rule_based import RuleBasedChatbot
from libtrack.chatbot.tools.registry import execute_tool, get_tools, scope_tool_args
from libtrack.core.config import settings
from libtrack.prompts import build_system_prompt
from libtrack.utils import json_default

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]

_STREAM_DONE = object()

# Shared across router instances so every model call counts against one budget
llm_rate_limiter = AsyncLimiter(settings.LLM_MAX_RATE, settings.LLM_TIME_PERIOD)


def get_llm(streaming: bool = False):
    """Get the Azure OpenAI LLM configured with internal retries."""
    logger.info(f"Initializing Azure OpenAI LLM with deployment {settings.AZURE_OPENAI_DEPLOYMENT_NAME}")
    return AzureChatOpenAI(
        openai_api_key=settings.AZURE_OPENAI_API_KEY,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        openai_api_version=settings.AZURE_OPENAI_API_VERSION,
        deployment_name=settings.AZURE_OPENAI_DEPLOYMENT_NAME,
        model_name=settings.LLM_MODEL_NAME,
        temperature=0.3,
        verbose=settings.VERBOSE_LLM,
        max_retries=settings.LLM_MAX_RETRIES,
        streaming=streaming,
    )


async def test_azure_openai_connection() -> bool:
    """Test connection to Azure OpenAI API."""
    if not settings.LLM_ENABLED:
        return False
    try:
        llm = get_llm()
        prompt = ChatPromptTemplate.from_template("Say hello.")
        chain = prompt | llm
        async with llm_rate_limiter:
            response = await chain.ainvoke({})
        return isinstance(response, AIMessage) and bool(str(response.content).strip())
    except Exception as e:
        logger.warning(f"Azure OpenAI connection test failed: {str(e)}")
        return False


# --- Agent State --- #
class AgentState(TypedDict):
    messages: Annotated[Sequence[BaseMessage], operator.add]
    tool_results: Annotated[List[Dict[str, Any]], operator.add]
    iterations: int
    user_id: Optional[Any]
    expose_tools: bool


def _tool_message_content(result: Dict[str, Any]) -> str:
    return json.dumps(result, default=json_default)


class ToolRouter:
    """Routes a chat turn between the fast path, the tool-calling loop and the rule-based fallback.

    The model never gets the final word on catalog data: whenever tools ran, the reply is rendered
    from their results.
    """

    def __init__(
        self,
        llm_factory: Callable[..., Any] = get_llm,
        tool_executor: ToolExecutor = execute_tool,
        store: Optional[SessionStore] = None,
        fallback: Optional[RuleBasedChatbot] = None,
        llm_enabled: Optional[bool] = None,
        max_iterations: Optional[int] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.llm_factory = llm_factory
        self.tool_executor = tool_executor
        self.store = store if store is not None else session_store
        self.fallback = fallback or RuleBasedChatbot(tool_executor=tool_executor)
        self._llm_enabled = llm_enabled
        self.max_iterations = max_iterations if max_iterations is not None else settings.MAX_TOOL_ITERATIONS
        self.debounce_seconds = debounce_seconds if debounce_seconds is not None else settings.STREAM_DEBOUNCE_MS / 1000
        self.tools = get_tools()
        self.graph_app = self.create_graph_app()

    @property
    def llm_enabled(self) -> bool:
        return settings.LLM_ENABLED if self._llm_enabled is None else self._llm_enabled

    # --- Model access --- #
    def _model(self, expose_tools: bool, streaming: bool = False):
        llm = self.llm_factory(streaming=streaming)
        return llm.bind_tools(self.tools) if expose_tools else llm

    async def _invoke_model(self, messages: Sequence[BaseMessage], expose_tools: bool) -> AIMessage:
        llm = self._model(expose_tools)
        async with llm_rate_limiter:
            return await llm.ainvoke(list(messages))

    def _initial_messages(self, message: str, context: Dict[str, Any], history: Sequence[BaseMessage] = ()) -> List[BaseMessage]:
        system = SystemMessage(content=build_system_prompt(
            context.get("user_name"), context.get("user_role"), context.get("user_id")
        ))
        return [system, *history, HumanMessage(content=message)]

    # --- Tool execution --- #
    async def _run_tool_call(self, tool_call: Dict[str, Any], user_id: Optional[Any]) -> Dict[str, Any]:
        name = tool_call.get("name")
        args = scope_tool_args(name, tool_call.get("args"), user_id)
        try:
            result = await self.tool_executor(name, args)
        except Exception as e:
            logger.error(f"[ToolRouter] Error executing tool {name}: {e}", exc_info=True)
            result = {"success": False, "error": str(e)}
        return {"id": tool_call.get("id"), "name": name, "result": result}

    async def _execute_tool_calls(self, tool_calls: Sequence[Dict[str, Any]], user_id: Optional[Any]) -> List[Dict[str, Any]]:
        logger.info(f"[ToolRouter] Dispatching {len(tool_calls)} tool call(s): {[tc.get('name') for tc in tool_calls]}")
        return list(await asyncio.gather(*(self._run_tool_call(tc, user_id) for tc in tool_calls)))

    # --- Graph nodes --- #
    async def agent_node(self, state: AgentState) -> Dict[str, Any]:
        response = await self._invoke_model(state["messages"], state.get("expose_tools", False))
        logger.debug(f"[AgentNode] Model returned {len(getattr(response, 'tool_calls', []) or [])} tool call(s).")
        return {"messages": [response]}

    async def tools_node(self, state: AgentState) -> Dict[str, Any]:
        last_message = state["messages"][-1] if state["messages"] else None
        tool_calls = list(getattr(last_message, "tool_calls", None) or [])
        iteration = state.get("iterations", 0) + 1
        logger.info(f"[ToolsNode] Iteration {iteration}: processing {len(tool_calls)} tool call(s)")

        executed = await self._execute_tool_calls(tool_calls, state.get("user_id"))
        tool_messages = [
            ToolMessage(content=_tool_message_content(item["result"]), name=item["name"], tool_call_id=item["id"] or item["name"])
            for item in executed
        ]
        return {
            "messages": tool_messages,
            "tool_results": [{"name": item["name"], "result": item["result"]} for item in executed],
            "iterations": iteration,
        }

    def should_continue(self, state: AgentState) -> str:
        messages = state.get("messages", [])
        last_message = messages[-1] if messages else None
        if isinstance(last_message, AIMessage) and last_message.tool_calls:
            if state.get("iterations", 0) < self.max_iterations:
                return "tools"
            logger.warning(f"[ShouldContinue] Tool iteration limit ({self.max_iterations}) reached. Routing to END.")
        return END

    def create_graph_app(self):
        workflow = StateGraph(AgentState)
        workflow.add_node("agent", self.agent_node)
        workflow.add_node("tools", self.tools_node)
        workflow.set_entry_point("agent")
        workflow.add_conditional_edges("agent", self.should_continue, {"tools": "tools", END: END})
        workflow.add_edge("tools", "agent")
        logger.info("Compiling LangGraph workflow...")
        graph_app = workflow.compile()
        logger.info("LangGraph workflow compiled.")
        return graph_app

    # --- Shared decisions --- #
    async def _direct_research(self, message: str) -> Optional[str]:
        """Research-paper questions skip the model; None means fall through to the normal flow."""
        if not has_research_intent(message):
            return None
        query = extract_research_query(message)
        result = await self.tool_executor("search_research_papers", {"query": query, "limit": 20})
        if not result or not result.get("success"):
            logger.warning(f"[ToolRouter] Direct research lookup failed: {(result or {}).get('error')}")
            return None
        if result.get("papers"):
            formatted = format_tool_results([{"name": "search_research_papers", "result": result}])
            return formatted or f'🔎 I found the following research papers for "{query}".'
        return research_no_results_message(query)

    async def _compose_reply(self, tool_results: List[Dict[str, Any]], model_message: str) -> str:
        if tool_results and has_zero_result_search(tool_results):
            # Never let the model fill an empty search with invented titles
            try:
                popular = await self.tool_executor("get_popular_books", {"type": "most_borrowed", "limit": 6})
                if popular and popular.get("success") and popular.get("books"):
                    tool_results = [*tool_results, {"name": "get_popular_books", "result": popular}]
            except Exception as e:
                logger.warning(f"[ToolRouter] Failed to fetch popular books fallback: {e}")
            return format_tool_results(tool_results) or NO_RESULTS_MESSAGE
        if tool_results:
            formatted = format_tool_results(tool_results)
            if formatted:
                return formatted
        return model_message or ""

    async def _fallback_reply(self, message: str, session_id: Optional[str], context: Dict[str, Any]) -> Dict[str, Any]:
        reply = await self.fallback.process_message(message, context)
        if session_id and reply.get("success"):
            self.store.append_exchange(
                session_id, message, reply.get("message", ""), intent=reply.get("intent"), tool_used=reply.get("tool_used")
            )
        return {
            "success": reply.get("success", False),
            "message": reply.get("message"),
            "toolCallsExecuted": 1 if reply.get("tool_used") else 0,
            "iterations": 0,
            "mode": "rule_based",
            "intent": reply.get("intent"),
            **({"error": reply["error"]} if reply.get("error") else {}),
        }

    # --- Non-streaming --- #
    async def process_message(self, message: str, session_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = context or {}
        user_id = context.get("user_id")
        try:
            try:
                research_reply = await self._direct_research(message)
            except Exception as e:
                logger.warning(f"[ToolRouter] Direct research tool lookup failed: {e}")
                research_reply = None
            if research_reply is not None:
                return {"success": True, "message": research_reply, "toolCallsExecuted": 1, "iterations": 0}

            if not self.llm_enabled:
                return await self._fallback_reply(message, session_id, context)

            expose_tools = needs_tools(message, user_id)
            simple = is_simple_message(message)
            if expose_tools:
                logger.info("[ToolRouter] Exposing tools for this request")
            elif simple:
                logger.info("[ToolRouter] Simple message - fast path (no tools)")

            if not expose_tools and simple:
                try:
                    response = await self._invoke_model(self._initial_messages(message, context), expose_tools=False)
                    out = truncate_message(str(response.content or ""), settings.FAST_PATH_MAX_CHARS)
                    return {"success": True, "message": out, "toolCallsExecuted": 0, "iterations": 0}
                except Exception as e:
                    logger.warning(f"[ToolRouter] Fast-path chat failed, falling back to normal flow: {e}")

            history = self.store.recent_messages(session_id) if session_id else []
            initial_state = AgentState(
                messages=self._initial_messages(message, context, history),
                tool_results=[],
                iterations=0,
                user_id=user_id,
                expose_tools=expose_tools,
            )
            final_state = await self.graph_app.ainvoke(
                initial_state,
                config=RunnableConfig(recursion_limit=self.max_iterations * 2 + 3),
            )

            tool_results = final_state.get("tool_results", [])
            last_message = final_state["messages"][-1] if final_state.get("messages") else None
            model_message = str(last_message.content) if isinstance(last_message, AIMessage) else ""
            reply = await self._compose_reply(tool_results, model_message)

            if session_id:
                self.store.append_exchange(session_id, message, reply)
            return {
                "success": True,
                "message": reply,
                "toolCallsExecuted": len(tool_results),
                "iterations": final_state.get("iterations", 0),
            }
        except Exception as e:
            logger.error(f"[ToolRouter] Error processing message, using rule-based fallback: {e}", exc_info=True)
            try:
                return await self._fallback_reply(message, session_id, context)
            except Exception as fallback_error:
                logger.error(f"[ToolRouter] Rule-based fallback failed: {fallback_error}", exc_info=True)
                return {"success": False, "error": str(e), "message": GENERIC_ERROR_MESSAGE}

    # --- Streaming --- #
    async def stream_message(self, message: str, session_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        """Yield stream events; content is coalesced until the producer is quiet for the debounce window.

        Closing the iterator cancels the in-flight generation.
        """
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce_stream(message, session_id, context or {}, queue))
        buffer = ""
        try:
            while True:
                if buffer:
                    try:
                        item = await asyncio.wait_for(queue.get(), timeout=self.debounce_seconds)
                    except asyncio.TimeoutError:
                        yield {"type": "content", "content": buffer}
                        buffer = ""
                        continue
                else:
                    item = await queue.get()

                if item is _STREAM_DONE:
                    break
                if item.get("type") == "content":
                    buffer += item["content"]
                    continue
                if buffer:
                    yield {"type": "content", "content": buffer}
                    buffer = ""
                yield item
            if buffer:
                yield {"type": "content", "content": buffer}
        finally:
            if not producer.done():
                logger.info("[ToolRouter] Stream consumer closed; cancelling generation.")
                producer.cancel()

    async def _produce_stream(self, message: str, session_id: Optional[str], context: Dict[str, Any], queue: asyncio.Queue) -> None:
        emit = queue.put_nowait
        user_id = context.get("user_id")
        state = {"thinking": False, "content_sent": False}

        def send_content(text: str) -> None:
            if text:
                state["content_sent"] = True
                emit({"type": "content", "content": text})

        def set_thinking(value: bool) -> None:
            if state["thinking"] != value:
                state["thinking"] = value
                emit({"type": "thinking", "thinking": value})

        try:
            try:
                research_reply = await self._direct_research(message)
            except Exception as e:
                logger.warning(f"[ToolRouter] Direct research tool lookup failed: {e}")
                research_reply = None
            if research_reply is not None:
                set_thinking(True)
                send_content(research_reply)
                set_thinking(False)
                emit({"type": "complete", "toolCallsExecuted": 1})
                return

            if not self.llm_enabled:
                reply = await self._fallback_reply(message, session_id, context)
                send_content(reply.get("message") or "")
                emit({"type": "complete", "toolCallsExecuted": reply.get("toolCallsExecuted", 0)})
                return

            expose_tools = needs_tools(message, user_id)
            if expose_tools:
                emit({"type": "info", "info": "Exposing tools for this stream"})

            if not expose_tools and is_simple_message(message):
                try:
                    set_thinking(True)
                    response = await self._invoke_model(self._initial_messages(message, context), expose_tools=False)
                    send_content(truncate_message(str(response.content or ""), settings.FAST_PATH_MAX_CHARS))
                    set_thinking(False)
                    emit({"type": "complete", "toolCallsExecuted": 0})
                    return
                except Exception as e:
                    logger.warning(f"[ToolRouter] Fast-path stream failed, falling back to normal streaming: {e}")

            set_thinking(True)
            history = self.store.recent_messages(session_id) if session_id else []
            messages = self._initial_messages(message, context, history)
            tool_notice_sent = False

            gathered = None
            streamed_text = ""
            llm = self._model(expose_tools, streaming=True)
            async with llm_rate_limiter:
                async for chunk in llm.astream(messages):
                    gathered = chunk if gathered is None else gathered + chunk
                    text = chunk.content if isinstance(chunk.content, str) else ""
                    if not text:
                        continue
                    if looks_like_tool_call(text):
                        if not tool_notice_sent:
                            emit({"type": "info", "info": "Invoking tools..."})
                            tool_notice_sent = True
                        continue
                    streamed_text += text
                    # With tools bound the text may precede tool calls, so it waits for the full response
                    if not expose_tools:
                        send_content(text)

            tool_calls = list(getattr(gathered, "tool_calls", None) or [])
            if expose_tools and not tool_calls:
                send_content(streamed_text)
            last_response = AIMessage(content=streamed_text, tool_calls=tool_calls)
            all_results: List[Dict[str, Any]] = []
            iteration = 0
            while tool_calls and iteration < self.max_iterations:
                iteration += 1
                emit({"type": "tool_execution", "count": len(tool_calls)})
                executed = await self._execute_tool_calls(tool_calls, user_id)
                all_results.extend({"name": item["name"], "result": item["result"]} for item in executed)
                messages = [
                    *messages,
                    last_response,
                    *(ToolMessage(content=_tool_message_content(item["result"]), name=item["name"], tool_call_id=item["id"] or item["name"]) for item in executed),
                ]
                last_response = await self._invoke_model(messages, expose_tools=True)
                tool_calls = list(last_response.tool_calls or [])

            reply = streamed_text
            if all_results:
                model_text = str(last_response.content or "")
                reply = await self._compose_reply(all_results, "" if looks_like_tool_call(model_text) else model_text)
                if reply:
                    send_content(reply)
                elif not tool_notice_sent:
                    emit({"type": "info", "info": "Tool invocation completed. Preparing results..."})

            if session_id:
                self.store.append_exchange(session_id, message, reply)
            set_thinking(False)
            emit({"type": "complete", "toolCallsExecuted": len(all_results)})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[ToolRouter] Error in streaming: {e}", exc_info=True)
            if not state["content_sent"]:
                try:
                    reply = await self._fallback_reply(message, session_id, context)
                    send_content(reply.get("message") or "")
                    set_thinking(False)
                    emit({"type": "complete", "toolCallsExecuted": reply.get("toolCallsExecuted", 0)})
                    return
                except Exception as fallback_error:
                    logger.error(f"[ToolRouter] Rule-based fallback failed: {fallback_error}", exc_info=True)
            set_thinking(False)
            emit({"type": "error", "error": STREAM_ERROR_MESSAGE})
        finally:
            emit(_STREAM_DONE)

    # --- Session helpers --- #
    def get_history(self, session_id: str) -> List[Dict[str, Any]]:
        return self.store.export(session_id)

    def clear_history(self, session_id: str) -> bool:
        return self.store.clear(session_id)

    def status(self) -> Dict[str, Any]:
        mode = "llm" if self.llm_enabled else "rule_based"
        return {
            "status": "online",
            "mode": mode,
            "service": "LibTrack Assistant" if mode == "llm" else "Rule-Based Chatbot",
            "tools": [tool.name for tool in self.tools],
            "features": [
                "Book search",
                "Research paper search",
                "Library hours",
                "FAQs",
                "Borrowing/Return info",
                "Recommendations",
            ],
        }


@functools.lru_cache(maxsize=1)
def get_tool_router() -> ToolRouter:
    return ToolRouter()
