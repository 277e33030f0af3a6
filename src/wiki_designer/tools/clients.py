"""
MCP Client Sessions

Async context managers that open an initialized `mcp.ClientSession` against:

- a remote MCP server over SSE or streamable HTTP
- the wiki-editing MCP server (streamable HTTP, forwarded headers)
- an in-process low-level `Server`, linked through memory streams and with
  session metadata injected into every tool call

Each manager must be entered and exited in the same task.
"""

from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from functools import partial
from typing import Any, AsyncIterator, Dict, Optional

import anyio
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.server.lowlevel import Server
from mcp.shared.memory import create_client_server_memory_streams

from ..config import settings
from .transport import MetadataInjectingStream


@asynccontextmanager
async def open_remote_session(
    url: str,
    transport: str = "http",
    headers: Optional[Dict[str, str]] = None,
) -> AsyncIterator[ClientSession]:
    """
    Connect to a remote MCP server.

    Parameters
    ----------
    url : str
        Server endpoint.

    transport : str
        "sse" for the legacy SSE transport, anything else for streamable HTTP.

    headers : Optional[Dict[str, str]]
        Extra headers sent with every request.
    """
    if transport == "sse":
        client = sse_client(url, headers=headers or None)
    else:
        client = streamablehttp_client(url, headers=headers or None)

    async with AsyncExitStack() as stack:
        streams = await stack.enter_async_context(client)
        read_stream, write_stream = streams[0], streams[1]
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
        yield session


def open_wikihelper_session(headers: Optional[Dict[str, str]] = None):
    """Session against the wiki-editing MCP server."""
    return open_remote_session(settings.wikihelper_mcp_url, "http", headers)


@asynccontextmanager
async def open_in_process_session(
    server: Server,
    meta: Dict[str, Any],
) -> AsyncIterator[ClientSession]:
    """
    Run ``server`` in-process and yield a client session whose tool calls
    carry ``meta`` as `_meta`.
    """
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        client_read, client_write = client_streams
        server_read, server_write = server_streams

        async with anyio.create_task_group() as tg:
            tg.start_soon(
                partial(
                    server.run,
                    server_read,
                    server_write,
                    server.create_initialization_options(),
                    raise_exceptions=False,
                )
            )
            try:
                async with ClientSession(
                    client_read,
                    MetadataInjectingStream(client_write, meta),
                ) as session:
                    await session.initialize()
                    yield session
            finally:
                tg.cancel_scope.cancel()
