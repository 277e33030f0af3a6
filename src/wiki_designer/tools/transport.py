"""
Metadata-Injecting Transport

Wraps the client-side write stream of an MCP session so that every outgoing
`tools/call` request carries session metadata in `params._meta`:

    {"chatId": "...", "headers": {...}}

The model never sees or controls this metadata; tool handlers read it from
the request context on the server side.
"""

from __future__ import annotations

from typing import Any, Dict

import mcp.types as types
from mcp.shared.message import SessionMessage

TOOLS_CALL_METHOD = "tools/call"


class MetadataInjectingStream:
    """
    Send-stream decorator with the same surface as the wrapped stream.
    """

    def __init__(self, inner: Any, meta: Dict[str, Any]) -> None:
        self._inner = inner
        self._meta = dict(meta)

    async def send(self, item: SessionMessage) -> None:
        await self._inner.send(self.augment(item))

    def augment(self, item: SessionMessage) -> SessionMessage:
        """Return ``item`` with metadata merged into `tools/call` params."""
        root = item.message.root
        if not isinstance(root, types.JSONRPCRequest) or root.method != TOOLS_CALL_METHOD:
            return item

        params = dict(root.params or {})
        meta = dict(params.get("_meta") or {})
        meta.update(self._meta)
        params["_meta"] = meta

        request = root.model_copy(update={"params": params})
        return SessionMessage(message=types.JSONRPCMessage(request), metadata=item.metadata)

    async def aclose(self) -> None:
        await self._inner.aclose()

    def close(self) -> None:
        self._inner.close()

    async def __aenter__(self) -> "MetadataInjectingStream":
        await self._inner.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Any:
        return await self._inner.__aexit__(exc_type, exc, tb)
