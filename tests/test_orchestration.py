import asyncio
import json
from contextlib import AsyncExitStack
from unittest.mock import AsyncMock

import pytest

from wiki_designer.api.models import TextPart, ToolInvocation, ToolInvocationPart, UIMessage
from wiki_designer.db.chat_store import ChatStore
from wiki_designer.llm.client import LLMClientError
from wiki_designer.orchestration.loop import (
    GENERIC_ERROR_MESSAGE,
    INVALID_ARGUMENTS_MESSAGE,
    RATE_LIMIT_MESSAGE,
    TurnOrchestrator,
    _convert_history_to_llm_format,
)
from wiki_designer.tools.aggregator import ToolSet
from wiki_designer.tools.definitions import ToolDefinition

from fakes import FakeLLM, text_result, text_step, tool_step


class CleanupCounter:
    def __init__(self):
        self.count = 0

    async def __call__(self):
        self.count += 1


def make_tool_set(counter, calls):
    async def get_page(arguments):
        calls.append(arguments)
        return text_result(f"content of {arguments['title']}")

    stack = AsyncExitStack()
    stack.push_async_callback(counter)
    tools = {
        "get-page": ToolDefinition(
            name="get-page",
            description="Read a page",
            input_schema={"type": "object"},
            execute=get_page,
            source="wikihelper",
        )
    }
    return ToolSet(tools, stack)


def user(text):
    return UIMessage(id="u1", role="user", content=text, parts=[TextPart(text=text)])


async def collect(events):
    return [event async for event in events]


def run(orchestrator, tool_set, messages=None, **kwargs):
    return orchestrator.run(
        chat_id="chat-1",
        user_id="user-1",
        messages=messages or [user("Tell me about dragons")],
        tool_set=tool_set,
        system_prompt="You are a designer.",
        **kwargs,
    )


@pytest.fixture
def store():
    return AsyncMock(spec=ChatStore)


@pytest.fixture
def counter():
    return CleanupCounter()


# ---------------------------------------------------------------------
# Normal turns
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_text_turn_streams_persists_and_cleans_up(store, counter):
    llm = FakeLLM([text_step("Dragons ", "are ancient.")])
    orchestrator = TurnOrchestrator(llm, store, max_steps=50)

    events = await collect(run(orchestrator, make_tool_set(counter, [])))

    assert [e["type"] for e in events] == ["start", "text-delta", "text-delta", "step-finish", "finish"]
    assert events[0]["chatId"] == "chat-1"
    assert events[-1]["finishReason"] == "stop"

    store.save_chat.assert_awaited_once_with("chat-1", "user-1", title="Dragon Lore")
    saved_chat_id, saved = store.save_messages.await_args.args
    assert saved_chat_id == "chat-1"
    assert store.save_messages.await_args.kwargs == {"user_id": "user-1"}
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[-1].content == "Dragons are ancient."
    assert saved[-1].id == events[0]["messageId"]
    assert counter.count == 1


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_in_order(store, counter):
    calls = []
    llm = FakeLLM([
        tool_step(
            ("call_1", "get-page", json.dumps({"title": "Dragons"})),
            ("call_2", "get-page", json.dumps({"title": "Wyverns"})),
            text="Let me look.",
        ),
        text_step("Both pages exist."),
    ])
    seen = []
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, calls), on_tool_event=seen.append))

    assert [e["type"] for e in events] == [
        "start",
        "text-delta",
        "tool-call",
        "tool-result",
        "tool-call",
        "tool-result",
        "step-finish",
        "text-delta",
        "step-finish",
        "finish",
    ]
    assert calls == [{"title": "Dragons"}, {"title": "Wyverns"}]
    assert [e["type"] for e in seen] == ["tool-call", "tool-result", "tool-call", "tool-result"]

    second_request = llm.requests[1]["messages"]
    assert second_request[-3]["role"] == "assistant"
    assert [c["id"] for c in second_request[-3]["tool_calls"]] == ["call_1", "call_2"]
    assert second_request[-2] == {"role": "tool", "tool_call_id": "call_1", "content": "content of Dragons"}
    assert second_request[-1]["tool_call_id"] == "call_2"

    assistant = store.save_messages.await_args.args[1][-1]
    kinds = [p.type for p in assistant.parts]
    assert kinds == ["step-start", "text", "tool-invocation", "tool-invocation", "step-start", "text"]
    invocation = assistant.parts[2].toolInvocation
    assert invocation.state == "result"
    assert invocation.result["content"][0]["text"] == "content of Dragons"
    assert counter.count == 1


@pytest.mark.asyncio
async def test_invalid_tool_arguments_return_error_to_model(store, counter):
    calls = []
    llm = FakeLLM([
        tool_step(("call_1", "get-page", "{not json")),
        text_step("Sorry."),
    ])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, calls)))

    result = next(e for e in events if e["type"] == "tool-result")
    assert result["isError"] is True
    assert result["result"]["content"][0]["text"] == INVALID_ARGUMENTS_MESSAGE
    assert calls == []


@pytest.mark.asyncio
async def test_step_budget_is_enforced(store, counter):
    looping = tool_step(("call_x", "get-page", '{"title": "Loop"}'))
    llm = FakeLLM([looping, looping, looping])
    orchestrator = TurnOrchestrator(llm, store, max_steps=2)

    events = await collect(run(orchestrator, make_tool_set(counter, [])))

    assert len(llm.requests) == 2
    assert events[-1] == {"type": "finish", "finishReason": "tool_calls", "steps": 2}
    assert counter.count == 1


@pytest.mark.asyncio
async def test_title_only_generated_for_first_exchange(store, counter):
    llm = FakeLLM([text_step("ok")])
    orchestrator = TurnOrchestrator(llm, store)
    history = [
        user("first"),
        UIMessage(role="assistant", content="hi", parts=[TextPart(text="hi")]),
        user("second"),
    ]

    await collect(run(orchestrator, make_tool_set(counter, []), messages=history))

    store.save_chat.assert_awaited_once_with("chat-1", "user-1", title=None)


# ---------------------------------------------------------------------
# Failures and aborts
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_model_failure_emits_generic_error(store, counter):
    llm = FakeLLM([RuntimeError("boom")])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, [])))

    assert events[-1] == {"type": "error", "error": GENERIC_ERROR_MESSAGE}
    store.save_messages.assert_not_awaited()
    assert counter.count == 1


@pytest.mark.asyncio
async def test_rate_limit_has_dedicated_message(store, counter):
    llm = FakeLLM([LLMClientError("slow down", status_code=429)])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, [])))

    assert events[-1] == {"type": "error", "error": RATE_LIMIT_MESSAGE}


@pytest.mark.asyncio
async def test_abort_cleans_up_once_without_persisting(store, counter):
    llm = FakeLLM([text_step("partial ", "answer")])
    orchestrator = TurnOrchestrator(llm, store)
    tool_set = make_tool_set(counter, [])

    events = run(orchestrator, tool_set)
    assert (await events.__anext__())["type"] == "start"
    assert (await events.__anext__())["type"] == "text-delta"
    await events.aclose()

    assert counter.count == 1
    assert tool_set.closed
    store.save_chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_persistence_failure_does_not_break_the_stream(store, counter):
    store.save_chat.side_effect = RuntimeError("database down")
    llm = FakeLLM([text_step("fine")])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, [])))

    assert events[-1]["type"] == "finish"
    assert counter.count == 1


@pytest.mark.asyncio
async def test_async_tool_callback_does_not_block(store, counter):
    release = asyncio.Event()
    received = []

    async def slow_callback(event):
        await release.wait()
        received.append(event["type"])

    llm = FakeLLM([
        tool_step(("call_1", "get-page", '{"title": "Dragons"}')),
        text_step("done"),
    ])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, []), on_tool_event=slow_callback))
    assert events[-1]["type"] == "finish"
    assert received == []

    release.set()
    await asyncio.sleep(0.01)
    assert received == ["tool-call", "tool-result"]


@pytest.mark.asyncio
async def test_failing_callback_is_logged(store, counter, caplog):
    def broken(event):
        raise ValueError("callback bug")

    llm = FakeLLM([
        tool_step(("call_1", "get-page", '{"title": "Dragons"}')),
        text_step("done"),
    ])
    orchestrator = TurnOrchestrator(llm, store)

    events = await collect(run(orchestrator, make_tool_set(counter, []), on_tool_event=broken))

    assert events[-1]["type"] == "finish"
    assert "Tool event callback failed" in caplog.text


# ---------------------------------------------------------------------
# History conversion
# ---------------------------------------------------------------------

def test_history_conversion_splits_steps_and_skips_unfinished_calls():
    def invocation(call_id, state, result=None):
        return ToolInvocationPart(toolInvocation=ToolInvocation(
            toolCallId=call_id,
            toolName="get-page",
            args={"title": "Dragons"},
            state=state,
            result=result,
        ))

    history = [
        user("hi"),
        UIMessage(role="assistant", parts=[
            TextPart(text="Looking."),
            invocation("c1", "result", {"content": [{"type": "text", "text": "page body"}]}),
            TextPart(text="Found it."),
        ]),
        UIMessage(role="user", parts=[TextPart(text="thanks"), invocation("c2", "call")]),
    ]

    converted = _convert_history_to_llm_format(history)

    assert converted == [
        {"role": "user", "content": "hi"},
        {
            "role": "assistant",
            "content": "Looking.",
            "tool_calls": [{
                "id": "c1",
                "type": "function",
                "function": {"name": "get-page", "arguments": '{"title": "Dragons"}'},
            }],
        },
        {"role": "tool", "tool_call_id": "c1", "content": "page body"},
        {"role": "assistant", "content": "Found it."},
        {"role": "user", "content": "thanks"},
    ]
