"""
Edit Tools

Helpers behind the confirmation-gated `edit-page` tool: content model
resolution, template minification, section mapping, and delegation of the
approved edit to the wiki-editing MCP server.
"""

from __future__ import annotations

import logging
import re
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Union

import mcp.types as types

from .definitions import EditContentFormat, TOOL_CREATE_PAGE, TOOL_UPDATE_PAGE

logger = logging.getLogger("designer.tools.edit")

WikiHelperConnector = Callable[[Dict[str, str]], AsyncContextManager[Any]]


class ToolDelegationError(RuntimeError):
    """Raised when the delegated create-page/update-page call fails."""


# ---------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------

def resolve_content_model(title: str, content_model: Optional[str] = None) -> EditContentFormat:
    """
    Effective content model for a page: the explicit argument, else inferred
    from the title.
    """
    if content_model:
        return EditContentFormat(content_model)
    if title.endswith("styles.css"):
        return EditContentFormat.CSS
    if title.startswith("Module:"):
        return EditContentFormat.LUA
    return EditContentFormat.WIKITEXT


def minify_mediawiki_html(html: str) -> str:
    """
    Collapse whitespace in template markup so MediaWiki does not turn
    indentation into <pre> blocks or stray paragraphs.
    """
    html = re.sub(r"[\n\r\t]+", "", html)
    html = re.sub(r">\s+<", "><", html)
    html = html.strip()
    return re.sub(r"\s{2,}", " ", html)


def prepare_source(title: str, content: str, model: EditContentFormat) -> str:
    if model is EditContentFormat.WIKITEXT and title.startswith("Template:"):
        return minify_mediawiki_html(content)
    return content


def map_section(section: Optional[str]) -> Optional[Union[int, str]]:
    """
    Translate the model-facing section argument for update-page.

    "all" (or nothing) means the whole page, "new" appends a section, and a
    numeric string selects a section index.
    """
    if section is None or section == "all":
        return None
    if section == "new":
        return "new"
    try:
        return int(section)
    except ValueError:
        return None


# ---------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------

def build_delegated_call(args: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
    """
    Resolve the tool name and arguments for an approved edit-page request.
    """
    title = args["title"]
    model = resolve_content_model(title, args.get("contentModel"))
    call_args: Dict[str, Any] = {
        "server": args["server"],
        "source": prepare_source(title, args["content"], model),
        "title": title,
        "contentModel": model.value,
    }
    if args.get("comment"):
        call_args["comment"] = args["comment"]

    if args.get("editType") == "create":
        return TOOL_CREATE_PAGE, call_args

    section = map_section(args.get("section"))
    if section is not None:
        call_args["section"] = section
    return TOOL_UPDATE_PAGE, call_args


async def delegate_edit(
    connector: WikiHelperConnector,
    headers: Dict[str, str],
    tool_name: str,
    call_args: Dict[str, Any],
) -> List[types.TextContent]:
    """
    Run create-page/update-page on a fresh wiki-editing session.

    Returns
    -------
    List[types.TextContent]
        Text blocks returned by the delegated tool.

    Raises
    ------
    ToolDelegationError
        If the session cannot be opened, the call fails, or the tool
        reports `isError`.
    """
    try:
        async with connector(headers) as session:
            result = await session.call_tool(tool_name, call_args)
    except Exception as exc:
        logger.exception("Delegated %s failed for '%s'", tool_name, call_args.get("title"))
        raise ToolDelegationError(f"{tool_name} could not be executed: {exc}") from exc

    texts = [c for c in result.content if isinstance(c, types.TextContent)]
    if result.isError:
        detail = " ".join(t.text for t in texts) or "unknown error"
        raise ToolDelegationError(f"{tool_name} failed: {detail}")

    return texts
