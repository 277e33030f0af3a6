"""
Tool Definitions

This module defines:

- `ToolDefinition`, the unit the aggregator merges from every tool source
- The closed set of built-in tool names (`BuiltinTool`)
- The authoritative input schemas of the built-in tools

The built-in schemas must remain synchronized with the handlers in
tools/builtin_server.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Final

import mcp.types as types


# ---------------------------------------------------------------------
# Aggregated Tool Type
# ---------------------------------------------------------------------

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[types.CallToolResult]]


@dataclass
class ToolDefinition:
    """
    A callable tool exposed to the model for one turn.
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    execute: ToolExecutor
    source: str = field(default="")

    def to_openai(self) -> Dict[str, Any]:
        """Function-calling schema in the chat completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


# ---------------------------------------------------------------------
# Built-in Tool Names (Single Source of Truth)
# ---------------------------------------------------------------------

class BuiltinTool(str, Enum):
    SHOW_OPTIONS = "ui-show-options"
    EDIT_PAGE = "edit-page"
    CREATE_WIKI_SITE = "create-new-wiki-site"


class EditContentFormat(str, Enum):
    CSS = "sanitized-css"
    WIKITEXT = "wikitext"
    LUA = "Scribunto"


BUILTIN_SERVER_NAME: Final[str] = "built-in-user-interface"
EDIT_PAGE_TASK: Final[str] = BuiltinTool.EDIT_PAGE.value

TOOL_CREATE_PAGE: Final[str] = "create-page"
TOOL_UPDATE_PAGE: Final[str] = "update-page"


# ---------------------------------------------------------------------
# Built-in Tool Definitions
# ---------------------------------------------------------------------

BUILTIN_TOOL_DEFINITIONS: List[types.Tool] = [
    types.Tool(
        name=BuiltinTool.SHOW_OPTIONS.value,
        description=(
            "Display a set of interactive option buttons in the user interface. "
            "This tool is typically called at the end of a response to let the user "
            "conveniently choose the next action. Each option has a title (shown as the "
            "button label) and an action (the underlying command to trigger)."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "options": {
                    "type": "array",
                    "description": (
                        "Buttons to display. title: a short, clear label. "
                        "action: the next step for the assistant, either a tool to call and "
                        "what to do with it (e.g. \"edit-page: make a new character entry\") "
                        "or a non-tool task (e.g. \"task: draft a storyline outline\")."
                    ),
                    "items": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string"},
                            "action": {"type": "string"},
                        },
                        "required": ["title", "action"],
                    },
                },
            },
            "required": ["options"],
        },
        annotations=types.ToolAnnotations(
            title="Show Options",
            readOnlyHint=True,
            destructiveHint=False,
        ),
    ),
    types.Tool(
        name=BuiltinTool.EDIT_PAGE.value,
        description=(
            "Show a confirmation dialog in the UI asking the user whether to accept the "
            "proposed page change. This tool must be called whenever the assistant has "
            "prepared a page creation or update and needs explicit user approval. "
            "Do not assume the outcome: the result is only known once the user confirms "
            "or rejects it. When the user confirms, the change is executed immediately. "
            "When updating a page, prefer the `section` parameter to make the smallest "
            "possible change; only fall back to full-page edits when needed."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "server": {
                    "type": "string",
                    "description": (
                        "The host URL of the target wiki for this session, "
                        "e.g. https://{WIKI_ID}.pub.wiki/."
                    ),
                },
                "editType": {
                    "type": "string",
                    "enum": ["create", "update"],
                    "description": "Create a new page or update an existing one.",
                },
                "title": {
                    "type": "string",
                    "description": "Wiki page title to be changed.",
                },
                "content": {
                    "type": "string",
                    "description": "Proposed new content (full page or specific section).",
                },
                "section": {
                    "type": "string",
                    "description": (
                        'Section for incremental edits: "new" adds a section, "0" is the lead '
                        'section, "1", "2", ... are section indexes. "all" replaces or creates '
                        "the entire page."
                    ),
                },
                "comment": {
                    "type": "string",
                    "description": "Optional edit summary.",
                },
                "contentModel": {
                    "type": "string",
                    "enum": [f.value for f in EditContentFormat],
                    "description": (
                        "Format of the page content. Defaults to 'wikitext'; use "
                        "'sanitized-css' for CSS and 'Scribunto' for Lua modules."
                    ),
                },
            },
            "required": ["server", "editType", "title", "content"],
        },
        annotations=types.ToolAnnotations(
            title="Request Change Confirmation",
            readOnlyHint=True,
            destructiveHint=False,
        ),
    ),
    types.Tool(
        name=BuiltinTool.CREATE_WIKI_SITE.value,
        description=(
            "Submit a request to create a new wiki (sub-site) in the wiki farm. "
            "This process may take several minutes. "
            "Note: this does not immediately create the wiki, it only starts the creation task."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "The display name of the new wiki. MUST be in English.",
                },
                "slug": {
                    "type": "string",
                    "description": (
                        "Unique slug used in the subdomain, e.g. for https://{slug}.pub.wiki/"
                    ),
                },
                "language": {
                    "type": "string",
                    "description": "Language code, e.g. zh-hans, en.",
                },
            },
            "required": ["name", "slug", "language"],
        },
        annotations=types.ToolAnnotations(
            title="Create wiki",
            readOnlyHint=False,
            destructiveHint=True,
        ),
    ),
]
