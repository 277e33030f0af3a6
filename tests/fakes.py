"""Test doubles for MCP sessions and the LLM client."""

from contextlib import asynccontextmanager

import mcp.types as types


def text_result(text, is_error=False):
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


class FakeWikiHelper:
    """Stands in for the wiki-editing MCP server."""

    def __init__(self, result=None, fail_connect=False):
        self.result = result
        self.fail_connect = fail_connect
        self.calls = []
        self.headers = []

    @asynccontextmanager
    async def connect(self, headers=None):
        self.headers.append(dict(headers or {}))
        if self.fail_connect:
            raise ConnectionError("wiki helper unreachable")
        yield self

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.result is not None:
            return self.result
        return text_result(f"Page {arguments.get('title')} saved")


class FakeSession:
    """A connected MCP client session exposing a fixed set of tools."""

    def __init__(self, tools, label=""):
        self.tools = tools
        self.label = label
        self.calls = []

    async def list_tools(self):
        return types.ListToolsResult(
            tools=[
                types.Tool(name=name, description=f"{name} from {self.label}", inputSchema={"type": "object"})
                for name in self.tools
            ]
        )

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return text_result(f"{self.label}:{name}")


class FakeConnector:
    """
    Remote connector keyed by URL. Records every open and close so tests can
    check that sessions are released.
    """

    def __init__(self, sessions, failing=()):
        self.sessions = sessions
        self.failing = set(failing)
        self.opened = []
        self.closed = []

    @asynccontextmanager
    async def __call__(self, url, transport="http", headers=None):
        self.opened.append((url, transport, dict(headers or {})))
        if url in self.failing:
            raise ConnectionError(f"cannot reach {url}")
        try:
            yield self.sessions[url]
        finally:
            self.closed.append(url)


class FakeLLM:
    """
    Scripted streaming LLM. Each entry of `steps` is a list of chunks for one
    `stream_chat` call, or an exception to raise.
    """

    def __init__(self, steps, title="Dragon Lore"):
        self.steps = list(steps)
        self.requests = []
        self.title = title

    async def stream_chat(self, system_prompt, messages, tools=None, temperature=None):
        self.requests.append({"system": system_prompt, "messages": [dict(m) for m in messages], "tools": tools})
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        for chunk in step:
            yield chunk

    async def generate_title(self, text):
        return self.title


def text_step(*texts):
    return [{"type": "text-delta", "text": t} for t in texts] + [
        {"type": "finish", "finish_reason": "stop", "tool_calls": []}
    ]


def tool_step(*calls, text=None):
    chunks = [{"type": "text-delta", "text": text}] if text else []
    chunks.append({
        "type": "finish",
        "finish_reason": "tool_calls",
        "tool_calls": [
            {"id": call_id, "name": name, "arguments": arguments}
            for call_id, name, arguments in calls
        ],
    })
    return chunks
