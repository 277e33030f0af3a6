"""
Tool Aggregator

Builds the flat tool namespace the model sees for one turn. Tools come from:

1. Remote MCP servers chosen by the user (SSE or streamable HTTP)
2. The wiki-editing MCP server, minus its direct create-page/update-page
3. The in-process built-in server, with session metadata bound to every call

Precedence is by order: a later source overrides a same-named tool from an
earlier one. The disabled names (create-page, update-page) are then removed
regardless of source, so page mutations are only reachable through the
confirmation-gated `edit-page` tool.

A source that fails to connect is logged and skipped; it never aborts the
turn. Every session opened here lives until `ToolSet.cleanup()`.

MCP transports keep anyio task groups open for the life of a session, and a
task group has to be exited by the task that entered it with no other cancel
scope in between. All sessions of a turn are therefore opened and closed by a
dedicated host task; callers only talk to them through `ClientSession`
methods, which are safe to await from any task on the loop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from functools import partial
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, Iterable, List, Optional

import anyio
import mcp.types as types

from ..api.models import MCPServerConfig
from .builtin_server import BuiltinToolServer
from .clients import open_in_process_session, open_remote_session
from .definitions import BUILTIN_SERVER_NAME, ToolDefinition

logger = logging.getLogger("designer.tools.aggregator")

RemoteConnector = Callable[[str, str, Dict[str, str]], AsyncContextManager[Any]]
InProcessConnector = Callable[[Any, Dict[str, Any]], AsyncContextManager[Any]]
SourceOpener = Callable[[AsyncExitStack], Awaitable[Dict[str, ToolDefinition]]]


def _error_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=True,
    )


# ---------------------------------------------------------------------
# Session Host (one task per turn)
# ---------------------------------------------------------------------

class SessionHost:
    """
    Task that owns the client sessions of one turn.

    `open()` starts the task, which enters every source on its own exit stack
    and reports the merged tools back. `aclose()` releases the task and waits
    for it to unwind the stack.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._release = asyncio.Event()

    async def open(self, opener: SourceOpener) -> Dict[str, ToolDefinition]:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = loop.create_task(self._run(opener))
        try:
            return await self._ready
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._task is None:
            return
        self._release.set()
        with anyio.CancelScope(shield=True):
            await self._task

    async def _run(self, opener: SourceOpener) -> None:
        try:
            async with AsyncExitStack() as stack:
                tools = await opener(stack)
                if not self._ready.done():
                    self._ready.set_result(tools)
                await self._release.wait()
        except Exception as exc:
            if self._ready.done():
                logger.exception("Error during MCP client cleanup")
            else:
                self._ready.set_exception(exc)
        finally:
            if not self._ready.done():
                self._ready.cancel()


# ---------------------------------------------------------------------
# Tool Set (one per turn)
# ---------------------------------------------------------------------

class ToolSet:
    """
    Merged tools for a single turn plus the sessions backing them.

    Parameters
    ----------
    tools : Dict[str, ToolDefinition]
        Tool name to definition.

    sessions : Any
        Anything with an async ``aclose()`` that disconnects the sessions,
        normally a `SessionHost`.
    """

    def __init__(self, tools: Dict[str, ToolDefinition], sessions: Any) -> None:
        self.tools = tools
        self._sessions = sessions
        self._closed = False

    def openai_tools(self) -> List[Dict[str, Any]]:
        return [tool.to_openai() for tool in self.tools.values()]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        """
        Execute a tool by name. Never raises for tool-level failures; they
        come back as `isError` results.
        """
        tool = self.tools.get(name)
        if tool is None:
            return _error_result(f"Unknown tool requested: {name}")

        try:
            return await tool.execute(arguments)
        except Exception as exc:
            logger.exception("Tool %s (%s) failed", name, tool.source)
            return _error_result(f"Tool execution failed: {exc}")

    @property
    def closed(self) -> bool:
        return self._closed

    async def cleanup(self) -> None:
        """Disconnect every client opened for this turn. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._sessions.aclose()
        except Exception:
            logger.exception("Error during MCP client cleanup")


# ---------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------

class ToolAggregator:
    """
    Opens every tool source for a turn and merges their catalogues.
    """

    def __init__(
        self,
        builtin: BuiltinToolServer,
        wikihelper_url: str,
        disabled_tools: Iterable[str] = ("create-page", "update-page"),
        remote_connector: RemoteConnector = open_remote_session,
        in_process_connector: InProcessConnector = open_in_process_session,
    ) -> None:
        self._builtin = builtin
        self._wikihelper_url = wikihelper_url
        self._disabled = frozenset(disabled_tools)
        self._connect_remote = remote_connector
        self._connect_in_process = in_process_connector

    async def build(
        self,
        servers: List[MCPServerConfig],
        chat_id: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> ToolSet:
        """
        Connect to all sources and return the merged tool set.

        Parameters
        ----------
        servers : List[MCPServerConfig]
            User-selected remote servers, in precedence order.

        chat_id : str
            Conversation id bound into built-in tool calls.

        headers : Optional[Dict[str, str]]
            Forwarded request headers (wiki cookies, CSRF token) for the
            wiki-editing server and the built-in tools.
        """
        headers = dict(headers or {})
        host = SessionHost()
        tools = await host.open(partial(self._open_sources, servers, chat_id, headers))

        for name in self._disabled:
            tools.pop(name, None)

        logger.info("Tools for chat %s: %s", chat_id, sorted(tools))
        return ToolSet(tools, host)

    async def _open_sources(
        self,
        servers: List[MCPServerConfig],
        chat_id: str,
        headers: Dict[str, str],
        stack: AsyncExitStack,
    ) -> Dict[str, ToolDefinition]:
        tools: Dict[str, ToolDefinition] = {}

        for config in servers:
            await self._merge(
                tools,
                stack,
                config.url,
                self._connect_remote(config.url, config.type, config.header_dict()),
            )

        await self._merge(
            tools,
            stack,
            self._wikihelper_url,
            self._connect_remote(self._wikihelper_url, "http", headers),
        )

        await self._merge(
            tools,
            stack,
            BUILTIN_SERVER_NAME,
            self._connect_in_process(
                self._builtin.server,
                {"chatId": chat_id, "headers": headers},
            ),
        )
        return tools

    async def _merge(
        self,
        tools: Dict[str, ToolDefinition],
        stack: AsyncExitStack,
        source: str,
        connection: AsyncContextManager[Any],
    ) -> None:
        source_stack = AsyncExitStack()
        try:
            session = await source_stack.enter_async_context(connection)
            listed = await session.list_tools()
        except Exception as exc:
            logger.warning("Failed to initialize MCP client for %s: %s", source, exc)
            try:
                await source_stack.aclose()
            except Exception:
                logger.debug("Ignoring close error for %s", source, exc_info=True)
            return

        stack.push_async_callback(source_stack.aclose)

        for tool in listed.tools:
            tools[tool.name] = ToolDefinition(
                name=tool.name,
                description=tool.description or f"Tool provided by MCP: {tool.name}",
                input_schema=tool.inputSchema,
                execute=_bind_call(session, tool.name),
                source=source,
            )
        logger.info("MCP tools from %s: %s", source, [t.name for t in listed.tools])


def _bind_call(session: Any, name: str):
    async def execute(arguments: Dict[str, Any]) -> types.CallToolResult:
        return await session.call_tool(name, arguments)
    return execute
