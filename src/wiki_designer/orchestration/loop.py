"""
Streaming Orchestration Loop

Drives one model turn: up to `max_steps` streamed model steps, with the tool
calls of each step executed in emission order and their results fed back to
the model.

Major Responsibilities
----------------------
1. Govern the incoming history (sanitize + size bound) and convert it to the
   chat-completions message format.
2. Stream every step and re-emit it as `StreamEvent`s:
    - start, text-delta, tool-call, tool-result, step-finish, finish, error
3. Forward tool events to an optional turn-local callback without blocking.
4. On normal finish: build the assistant message, persist the conversation,
   then release the turn's tool sessions.
5. On any other exit (client abort, model failure): release the tool sessions
   through the abort path. A `completed` flag set only on the normal path
   guarantees a single cleanup.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import mcp.types as types

from ..api.models import (
    OtherPart,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
    UIMessage,
)
from ..config import settings
from ..db.chat_store import ChatStore
from ..history.governor import govern_history
from ..llm.client import LLMClient, LLMClientError
from ..tools.aggregator import ToolSet

logger = logging.getLogger("designer.orchestration")

StreamEvent = Dict[str, Any]
ToolEventCallback = Callable[[StreamEvent], Any]

GENERIC_ERROR_MESSAGE = "An error occurred."
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
INVALID_ARGUMENTS_MESSAGE = "Invalid JSON arguments for tool call."


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------

def _result_text(result: Any) -> str:
    """Flatten a tool result (as stored on a part) into model-readable text."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        chunks = []
        for block in result["content"]:
            if isinstance(block, dict) and block.get("type") == "text":
                chunks.append(block.get("text", ""))
            else:
                chunks.append(json.dumps(block, ensure_ascii=False, default=str))
        return "\n".join(chunks)
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _tool_call_entry(call_id: str, name: str, arguments: str) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def _append_tool_result(
    loop_messages: List[Dict[str, Any]],
    call_id: str,
    tool_output: Any,
) -> None:
    """Append a tool output message in the format expected by the LLM."""
    loop_messages.append({
        "role": "tool",
        "tool_call_id": call_id,
        "content": _result_text(tool_output),
    })


def _convert_history_to_llm_format(history: List[UIMessage]) -> List[Dict[str, Any]]:
    """
    Convert UI messages into chat-completions messages.

    Assistant messages are split at every text part that follows a tool call,
    so each emitted assistant message is followed by the tool messages of its
    own calls. Tool invocations without a result are not sent.
    """
    converted: List[Dict[str, Any]] = []

    for message in history:
        if message.role != "assistant":
            text = "\n".join(p.text for p in message.text_parts())
            converted.append({"role": message.role, "content": text})
            continue

        texts: List[str] = []
        calls: List[Dict[str, Any]] = []
        results: List[Dict[str, Any]] = []

        def flush() -> None:
            if not texts and not calls:
                return
            entry: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
            if calls:
                entry["tool_calls"] = list(calls)
            converted.append(entry)
            converted.extend(results)
            texts.clear()
            calls.clear()
            results.clear()

        parts = message.parts or message.text_parts()
        for part in parts:
            if isinstance(part, TextPart):
                if calls:
                    flush()
                texts.append(part.text)
            elif isinstance(part, ToolInvocationPart):
                invocation = part.toolInvocation
                if invocation.state != "result":
                    continue
                calls.append(_tool_call_entry(
                    invocation.toolCallId,
                    invocation.toolName,
                    json.dumps(invocation.args or {}, ensure_ascii=False, default=str),
                ))
                _append_tool_result(results, invocation.toolCallId, invocation.result)
        flush()

    return converted


def _serialize_result(result: types.CallToolResult) -> Dict[str, Any]:
    return result.model_dump(mode="json", exclude_none=True)


def _error_payload(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": True}


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------

class TurnOrchestrator:
    """
    Runs model turns against a per-turn `ToolSet`.

    Parameters
    ----------
    llm : LLMClient
        Streaming chat-completions client.

    chat_store : ChatStore
        Conversation persistence.

    max_steps : Optional[int]
        Step budget per turn. Defaults to `settings.max_steps`.

    history_threshold : Optional[int]
        Byte threshold handed to the history governor.
    """

    def __init__(
        self,
        llm: LLMClient,
        chat_store: ChatStore,
        max_steps: Optional[int] = None,
        history_threshold: Optional[int] = None,
    ) -> None:
        self.llm = llm
        self.chat_store = chat_store
        self.max_steps = max_steps or settings.max_steps
        self.history_threshold = history_threshold or settings.history_size_threshold
        self._callback_tasks: Set[asyncio.Task] = set()

    async def run(
        self,
        *,
        chat_id: str,
        user_id: str,
        messages: List[UIMessage],
        tool_set: ToolSet,
        system_prompt: str,
        on_tool_event: Optional[ToolEventCallback] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one turn and yield its events.

        Parameters
        ----------
        messages : List[UIMessage]
            Full conversation so far, ending with the new user message. It is
            governed before being sent to the model; the ungoverned list is
            what gets persisted.

        tool_set : ToolSet
            Tools for this turn. The orchestrator owns its cleanup.

        on_tool_event : Optional[ToolEventCallback]
            Receives every tool-call and tool-result event. Never awaited
            inline; coroutine callbacks run as background tasks.
        """
        completed = False
        message_id = uuid.uuid4().hex
        parts: List[Any] = []

        try:
            yield {"type": "start", "chatId": chat_id, "messageId": message_id}

            governed = govern_history(messages, self.history_threshold)
            loop_messages = _convert_history_to_llm_format(governed)
            tools = tool_set.openai_tools()

            finish_reason: Optional[str] = None
            step = 0

            try:
                while step < self.max_steps:
                    step += 1
                    parts.append(OtherPart(type="step-start"))
                    step_text: List[str] = []
                    tool_calls: List[Dict[str, Any]] = []

                    async for chunk in self.llm.stream_chat(system_prompt, loop_messages, tools=tools):
                        if chunk["type"] == "text-delta":
                            step_text.append(chunk["text"])
                            yield {"type": "text-delta", "text": chunk["text"]}
                        elif chunk["type"] == "finish":
                            finish_reason = chunk.get("finish_reason")
                            tool_calls = chunk.get("tool_calls") or []

                    text = "".join(step_text)
                    if text:
                        parts.append(TextPart(text=text))

                    assistant_entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
                    if tool_calls:
                        assistant_entry["tool_calls"] = [
                            _tool_call_entry(c["id"], c["name"], c["arguments"]) for c in tool_calls
                        ]
                    loop_messages.append(assistant_entry)

                    for call in tool_calls:
                        async for event in self._execute_tool(call, tool_set, loop_messages, parts):
                            self._notify(on_tool_event, event)
                            yield event

                    yield {
                        "type": "step-finish",
                        "step": step,
                        "finishReason": finish_reason,
                        "isContinued": bool(tool_calls),
                    }

                    if not tool_calls:
                        break
            except Exception as exc:
                logger.exception("Model turn failed for chat %s", chat_id)
                message = (
                    RATE_LIMIT_MESSAGE
                    if isinstance(exc, LLMClientError) and exc.is_rate_limit
                    else GENERIC_ERROR_MESSAGE
                )
                yield {"type": "error", "error": message}
                return

            assistant = UIMessage(id=message_id, role="assistant", content=_joined_text(parts), parts=parts)
            await self._persist(chat_id, user_id, list(messages) + [assistant])

            completed = True
            await tool_set.cleanup()

            yield {"type": "finish", "finishReason": finish_reason, "steps": step}
        finally:
            if not completed:
                await tool_set.cleanup()

    async def _execute_tool(
        self,
        call: Dict[str, Any],
        tool_set: ToolSet,
        loop_messages: List[Dict[str, Any]],
        parts: List[Any],
    ) -> AsyncIterator[StreamEvent]:
        call_id, name = call["id"], call["name"]
        raw_args = call.get("arguments") or "{}"

        try:
            args = json.loads(raw_args)
            if not isinstance(args, dict):
                raise ValueError("tool arguments must be a JSON object")
        except ValueError:
            args = None

        invocation = ToolInvocation(toolCallId=call_id, toolName=name, args=args if args is not None else raw_args)
        parts.append(ToolInvocationPart(toolInvocation=invocation))
        yield {"type": "tool-call", "toolCallId": call_id, "toolName": name, "args": invocation.args}

        if args is None:
            payload = _error_payload(INVALID_ARGUMENTS_MESSAGE)
        else:
            payload = _serialize_result(await tool_set.call_tool(name, args))

        invocation.state = "result"
        invocation.result = payload
        _append_tool_result(loop_messages, call_id, payload)

        yield {
            "type": "tool-result",
            "toolCallId": call_id,
            "toolName": name,
            "result": payload,
            "isError": bool(payload.get("isError")),
        }

    def _notify(self, callback: Optional[ToolEventCallback], event: StreamEvent) -> None:
        if callback is None:
            return
        try:
            outcome = callback(event)
        except Exception:
            logger.exception("Tool event callback failed")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Tool event callback failed", exc_info=task.exception())

    async def _persist(self, chat_id: str, user_id: str, messages: List[UIMessage]) -> None:
        title = None
        if sum(1 for m in messages if m.role == "user") == 1:
            title = await self._title_for(messages)
        try:
            await self.chat_store.save_chat(chat_id, user_id, title=title)
            await self.chat_store.save_messages(chat_id, messages, user_id=user_id)
        except Exception:
            logger.exception("Failed to persist chat %s", chat_id)

    async def _title_for(self, messages: List[UIMessage]) -> Optional[str]:
        first = next(m for m in messages if m.role == "user")
        text = "\n".join(p.text for p in first.text_parts())
        if not text:
            return None
        try:
            return await self.llm.generate_title(text)
        except Exception as exc:
            logger.warning("Title generation failed: %s", exc)
            return None


def _joined_text(parts: List[Any]) -> str:
    return "".join(p.text for p in parts if isinstance(p, TextPart))
