"""
Built-in Interactive Tool Server

An in-process MCP server exposing the tools that need the human in the loop:

- `ui-show-options`: acknowledges; the UI renders the options from the call
- `edit-page`: parks on the result rendezvous until the user confirms or
  rejects the change, then delegates approved edits to the wiki-editing
  server's create-page/update-page
- `create-new-wiki-site`: acknowledges; provisioning runs through the task API

Session metadata (`chatId`, forwarded `headers`) is read from the `_meta`
that the aggregator injects into every call; the model never supplies it.

Failure semantics
-----------------
A missing or declined confirmation is a normal result. Only a failed
delegation surfaces as an error result (`isError`), by raising
`ToolDelegationError` out of the MCP call handler.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server

from ..rendezvous.registry import ResultRendezvous, RendezvousError
from .clients import open_wikihelper_session
from .definitions import (
    BUILTIN_SERVER_NAME,
    BUILTIN_TOOL_DEFINITIONS,
    EDIT_PAGE_TASK,
    BuiltinTool,
)
from .edit_tools import (
    ToolDelegationError,
    WikiHelperConnector,
    build_delegated_call,
    delegate_edit,
)

logger = logging.getLogger("designer.tools.builtin")

UNKNOWN_CHAT_ID = "unknown"


@dataclass(frozen=True)
class SessionMetadata:
    chat_id: str = UNKNOWN_CHAT_ID
    headers: Dict[str, str] = field(default_factory=dict)


def parse_session_metadata(meta: Any) -> SessionMetadata:
    """
    Extract chat id and headers from a request's `_meta`.

    Missing metadata falls back to the "unknown" conversation. That keeps the
    tool usable, but every unrelated conversation without metadata shares the
    same rendezvous key.
    """
    if meta is None:
        data: Dict[str, Any] = {}
    elif isinstance(meta, dict):
        data = meta
    else:
        data = meta.model_dump()

    chat_id = data.get("chatId")
    if not chat_id:
        logger.warning("Tool call without session metadata; using chat id '%s'", UNKNOWN_CHAT_ID)
        chat_id = UNKNOWN_CHAT_ID

    headers = data.get("headers") or {}
    return SessionMetadata(
        chat_id=str(chat_id),
        headers={str(k): str(v) for k, v in headers.items()},
    )


def _text(text: str) -> types.TextContent:
    return types.TextContent(type="text", text=text)


class BuiltinToolServer:
    """
    Handlers for the built-in tools plus the MCP server that exposes them.
    """

    def __init__(
        self,
        rendezvous: ResultRendezvous,
        confirm_timeout: float = 300.0,
        wikihelper_connector: WikiHelperConnector = open_wikihelper_session,
    ) -> None:
        self._rendezvous = rendezvous
        self._confirm_timeout = confirm_timeout
        self._connect_wikihelper = wikihelper_connector
        self.server = self._build_server()

    # ------------------------------------------------------------------
    # MCP adapter
    # ------------------------------------------------------------------

    def _build_server(self) -> Server:
        server: Server = Server(BUILTIN_SERVER_NAME)

        @server.list_tools()
        async def list_tools() -> list[types.Tool]:
            return list(BUILTIN_TOOL_DEFINITIONS)

        @server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
            meta = parse_session_metadata(server.request_context.meta)
            return await self.call(name, arguments or {}, meta)

        return server

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def call(
        self,
        name: str,
        arguments: Dict[str, Any],
        meta: SessionMetadata,
    ) -> List[types.TextContent]:
        """
        Execute a built-in tool.

        Raises
        ------
        ValueError
            If ``name`` is not a built-in tool.

        ToolDelegationError
            If an approved edit could not be applied.
        """
        try:
            tool = BuiltinTool(name)
        except ValueError:
            raise ValueError(f"Unknown tool requested: {name}") from None

        if tool is BuiltinTool.SHOW_OPTIONS:
            return self._show_options(arguments)
        if tool is BuiltinTool.EDIT_PAGE:
            return await self._edit_page(arguments, meta)
        return self._create_wiki_site(arguments)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _show_options(self, arguments: Dict[str, Any]) -> List[types.TextContent]:
        logger.info("Options UI shown with %d option(s)", len(arguments.get("options") or []))
        return [
            _text(
                "Options UI has been shown. End this response now and wait for the "
                "next message from the user."
            )
        ]

    def _create_wiki_site(self, arguments: Dict[str, Any]) -> List[types.TextContent]:
        logger.info(
            "Wiki creation advertised: slug=%s language=%s",
            arguments.get("slug"),
            arguments.get("language"),
        )
        return [
            _text(
                "\n".join(
                    [
                        "Wiki creation request submitted successfully.",
                        "Status: The wiki is being created in the background. "
                        "This may take several minutes.",
                        "Note for assistant: The task is in progress, you may end the "
                        "conversation for now.",
                    ]
                )
            )
        ]

    async def _edit_page(
        self,
        arguments: Dict[str, Any],
        meta: SessionMetadata,
    ) -> List[types.TextContent]:
        logger.info("Waiting for user confirmation on page change, chat %s", meta.chat_id)

        try:
            result = await self._rendezvous.wait(
                meta.chat_id,
                EDIT_PAGE_TASK,
                timeout=self._confirm_timeout,
            )
        except RendezvousError as exc:
            logger.info("No confirmation for chat %s: %s", meta.chat_id, exc)
            return [
                _text(
                    "Change confirmation UI has been created, but the user's decision "
                    f"could not be obtained: {exc}. For safety, the assistant should NOT "
                    "proceed with the page change."
                )
            ]

        decision: Dict[str, Any] = result if isinstance(result, dict) else {"confirm": str(result)}
        confirmation = _text(
            "Change confirmation UI has been created. Result: "
            + json.dumps(decision, ensure_ascii=False)
        )

        if decision.get("confirm") != "true":
            reason: Optional[str] = decision.get("content")
            declined = "The user declined the change; it was not applied."
            if reason:
                declined += f" User response: {reason}"
            return [confirmation, _text(declined)]

        tool_name, call_args = build_delegated_call(arguments)
        try:
            delegated = await delegate_edit(
                self._connect_wikihelper,
                meta.headers,
                tool_name,
                call_args,
            )
        except ToolDelegationError as exc:
            raise ToolDelegationError(f"{confirmation.text}\n{exc}") from exc

        return [confirmation, *delegated]
