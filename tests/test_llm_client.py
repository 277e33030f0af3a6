import json

import httpx
import pytest

from wiki_designer.llm.client import LLMClient, LLMClientError


def sse_body(*chunks):
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def make_client(handler):
    return LLMClient(
        api_key="sk-test",
        base_url="https://llm.example/v1/",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


async def collect(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_stream_chat_yields_text_then_finish():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["payload"] = json.loads(request.content)
        body = sse_body(
            {"choices": [{"delta": {"content": "Hello"}}]},
            {"choices": [{"delta": {"content": " world"}, "finish_reason": "stop"}]},
        )
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    client = make_client(handler)
    events = await collect(client.stream_chat("system", [{"role": "user", "content": "hi"}], temperature=0.5))

    assert events == [
        {"type": "text-delta", "text": "Hello"},
        {"type": "text-delta", "text": " world"},
        {"type": "finish", "finish_reason": "stop", "tool_calls": []},
    ]
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["payload"]["stream"] is True
    assert seen["payload"]["model"] == "test-model"
    assert seen["payload"]["messages"][0] == {"role": "system", "content": "system"}
    assert "tools" not in seen["payload"]


@pytest.mark.asyncio
async def test_stream_chat_assembles_tool_call_fragments():
    def handler(request):
        body = sse_body(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_a", "function": {"name": "get-page", "arguments": '{"ti'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": 'tle": "Dragons"}'}},
                {"index": 1, "id": "call_b", "function": {"name": "list-all-page-titles", "arguments": "{}"}},
            ]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )
        return httpx.Response(200, content=body)

    client = make_client(handler)
    tools = [{"type": "function", "function": {"name": "get-page", "parameters": {}}}]
    events = await collect(client.stream_chat("s", [], tools=tools))

    assert events == [{
        "type": "finish",
        "finish_reason": "tool_calls",
        "tool_calls": [
            {"id": "call_a", "name": "get-page", "arguments": '{"title": "Dragons"}'},
            {"id": "call_b", "name": "list-all-page-titles", "arguments": "{}"},
        ],
    }]


@pytest.mark.asyncio
async def test_stream_chat_skips_malformed_chunks():
    def handler(request):
        body = b"data: {broken\n\n" + sse_body({"choices": [{"delta": {"content": "ok"}}]})
        return httpx.Response(200, content=body)

    events = await collect(make_client(handler).stream_chat("s", []))

    assert events[0] == {"type": "text-delta", "text": "ok"}


@pytest.mark.asyncio
async def test_stream_chat_http_error_carries_status():
    def handler(request):
        return httpx.Response(429, text="rate limited")

    with pytest.raises(LLMClientError) as excinfo:
        await collect(make_client(handler).stream_chat("s", []))

    assert excinfo.value.status_code == 429
    assert excinfo.value.is_rate_limit


@pytest.mark.asyncio
async def test_generate_title_uses_non_streaming_chat():
    def handler(request):
        payload = json.loads(request.content)
        assert "stream" not in payload
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": '"Dragon Lore"'}}]})

    title = await make_client(handler).generate_title("Tell me about dragons")

    assert title == "Dragon Lore"


@pytest.mark.asyncio
async def test_chat_raises_on_server_error():
    def handler(request):
        return httpx.Response(500, text="upstream down")

    with pytest.raises(LLMClientError) as excinfo:
        await make_client(handler).chat("s", [])

    assert not excinfo.value.is_rate_limit
