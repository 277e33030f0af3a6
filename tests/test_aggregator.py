import asyncio
import logging

import pytest

from wiki_designer.api.models import MCPServerConfig
from wiki_designer.rendezvous.registry import ResultRendezvous
from wiki_designer.tools.aggregator import SessionHost, ToolAggregator
from wiki_designer.tools.builtin_server import BuiltinToolServer

from fakes import FakeConnector, FakeSession

WIKIHELPER_URL = "http://wikihelper/mcp"
REMOTE_URL = "https://tools.example/mcp"


def make_aggregator(connector, **kwargs):
    builtin = BuiltinToolServer(ResultRendezvous(), confirm_timeout=0.05)
    return ToolAggregator(
        builtin,
        WIKIHELPER_URL,
        remote_connector=connector,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_merges_all_sources_and_hides_direct_page_writes():
    remote = FakeSession(["search-lore", "create-page"], label="remote")
    wikihelper = FakeSession(["get-page", "list-all-page-titles", "create-page", "update-page"], label="wikihelper")
    connector = FakeConnector({REMOTE_URL: remote, WIKIHELPER_URL: wikihelper})

    tool_set = await make_aggregator(connector).build(
        [MCPServerConfig(url=REMOTE_URL, type="sse", headers=[{"key": "X-Key", "value": "k"}])],
        "chat-1",
        {"Cookie": "sid=1"},
    )
    try:
        assert set(tool_set.tools) == {
            "search-lore",
            "get-page",
            "list-all-page-titles",
            "ui-show-options",
            "edit-page",
            "create-new-wiki-site",
        }
        assert connector.opened == [
            (REMOTE_URL, "sse", {"X-Key": "k"}),
            (WIKIHELPER_URL, "http", {"Cookie": "sid=1"}),
        ]
    finally:
        await tool_set.cleanup()


@pytest.mark.asyncio
async def test_later_source_overrides_earlier_one():
    remote = FakeSession(["get-page", "edit-page"], label="remote")
    wikihelper = FakeSession(["get-page"], label="wikihelper")
    connector = FakeConnector({REMOTE_URL: remote, WIKIHELPER_URL: wikihelper})

    tool_set = await make_aggregator(connector).build([MCPServerConfig(url=REMOTE_URL)], "chat-1")
    try:
        assert tool_set.tools["get-page"].source == WIKIHELPER_URL
        assert tool_set.tools["edit-page"].source == "built-in-user-interface"

        result = await tool_set.call_tool("get-page", {"title": "Dragons"})
        assert result.content[0].text == "wikihelper:get-page"
        assert remote.calls == []
    finally:
        await tool_set.cleanup()


@pytest.mark.asyncio
async def test_unreachable_source_is_skipped():
    wikihelper = FakeSession(["get-page"], label="wikihelper")
    connector = FakeConnector({WIKIHELPER_URL: wikihelper}, failing=[REMOTE_URL])

    tool_set = await make_aggregator(connector).build([MCPServerConfig(url=REMOTE_URL)], "chat-1")
    try:
        assert "get-page" in tool_set.tools
        assert "edit-page" in tool_set.tools
    finally:
        await tool_set.cleanup()


@pytest.mark.asyncio
async def test_cleanup_closes_every_session_once():
    remote = FakeSession(["search-lore"], label="remote")
    wikihelper = FakeSession(["get-page"], label="wikihelper")
    connector = FakeConnector({REMOTE_URL: remote, WIKIHELPER_URL: wikihelper})

    tool_set = await make_aggregator(connector).build([MCPServerConfig(url=REMOTE_URL)], "chat-1")
    assert connector.closed == []

    await tool_set.cleanup()
    await tool_set.cleanup()

    assert tool_set.closed
    assert sorted(connector.closed) == sorted([REMOTE_URL, WIKIHELPER_URL])


@pytest.mark.asyncio
async def test_unknown_tool_and_failures_become_error_results():
    class BrokenSession(FakeSession):
        async def call_tool(self, name, arguments):
            raise RuntimeError("socket closed")

    connector = FakeConnector({WIKIHELPER_URL: BrokenSession(["get-page"])})
    tool_set = await make_aggregator(connector).build([], "chat-1")
    try:
        unknown = await tool_set.call_tool("no-such-tool", {})
        assert unknown.isError
        assert "Unknown tool requested: no-such-tool" in unknown.content[0].text

        broken = await tool_set.call_tool("get-page", {})
        assert broken.isError
        assert "socket closed" in broken.content[0].text
    finally:
        await tool_set.cleanup()


@pytest.mark.asyncio
async def test_built_in_calls_carry_chat_id():
    registry = ResultRendezvous()
    registry.deliver("chat-xyz", {"confirm": "false", "content": "not now"}, "edit-page")
    connector = FakeConnector({WIKIHELPER_URL: FakeSession([])})
    aggregator = ToolAggregator(
        BuiltinToolServer(registry, confirm_timeout=1),
        WIKIHELPER_URL,
        remote_connector=connector,
    )
    tool_set = await aggregator.build([], "chat-xyz")
    try:
        result = await tool_set.call_tool("edit-page", {
            "server": "https://lore.pub.wiki/",
            "editType": "update",
            "title": "Dragons",
            "content": "x",
        })
        assert not result.isError
        assert "not now" in result.content[1].text
        assert registry.buffered_count() == 0
    finally:
        await tool_set.cleanup()


def test_openai_tool_schema_shape():
    from wiki_designer.tools.definitions import ToolDefinition

    async def execute(arguments):
        return None

    tool = ToolDefinition(name="get-page", description="Read a page", input_schema={}, execute=execute)
    assert tool.to_openai() == {
        "type": "function",
        "function": {
            "name": "get-page",
            "description": "Read a page",
            "parameters": {"type": "object", "properties": {}},
        },
    }


@pytest.mark.asyncio
async def test_cleanup_of_in_process_session_leaves_caller_running(caplog):
    connector = FakeConnector({WIKIHELPER_URL: FakeSession(["get-page"], label="wikihelper")})
    tool_set = await make_aggregator(connector).build([], "chat-1")
    assert "ui-show-options" in tool_set.tools

    with caplog.at_level(logging.ERROR):
        await tool_set.cleanup()
        await asyncio.sleep(0.05)

    assert tool_set.closed
    assert connector.closed == [WIKIHELPER_URL]
    assert [r for r in caplog.records if r.levelno >= logging.ERROR] == []


@pytest.mark.asyncio
async def test_session_host_unwinds_when_opening_fails():
    closed = []

    async def record():
        closed.append(True)

    async def opener(stack):
        stack.push_async_callback(record)
        raise RuntimeError("catalogue unavailable")

    host = SessionHost()
    with pytest.raises(RuntimeError, match="catalogue unavailable"):
        await host.open(opener)

    assert closed == [True]
    await host.aclose()
