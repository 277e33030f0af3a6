"""
API Models for the Wiki Designer Service

This module defines the Pydantic models used for request/response validation
across the chat, UI-result, task, and wiki endpoints, plus the message/part
models shared with the history governor and the orchestration loop.

Design Goals
------------
- Wire-compatible with the chat UI's message format (camelCase fields)
- Safe defaults (no shared mutable state)
- Lenient on UI part kinds the backend does not interpret
"""

from __future__ import annotations

from typing import Annotated, List, Optional, Dict, Any, Literal, Union
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, Discriminator, Tag


# ---------------------------------------------------------------------
# Message Parts
# ---------------------------------------------------------------------

ToolInvocationState = Literal["partial-call", "call", "result"]

# Monotonic ordering of invocation states; a part never moves backwards.
TOOL_STATE_ORDER: Dict[str, int] = {"partial-call": 0, "call": 1, "result": 2}


class TextPart(BaseModel):
    """
    Plain text segment of a message.
    """
    type: Literal["text"] = "text"
    text: str

    model_config = ConfigDict(extra="ignore")


class ToolInvocation(BaseModel):
    """
    One model-initiated tool call and, once available, its result.
    """
    toolCallId: str = Field(..., min_length=1)
    toolName: str = Field(..., min_length=1)
    args: Any = None
    state: ToolInvocationState = "call"
    result: Any = None

    model_config = ConfigDict(extra="ignore")


class ToolInvocationPart(BaseModel):
    """
    Message part wrapping a tool invocation.
    """
    type: Literal["tool-invocation"] = "tool-invocation"
    toolInvocation: ToolInvocation

    model_config = ConfigDict(extra="ignore")


class OtherPart(BaseModel):
    """
    Any other UI part kind (step-start, reasoning, file, ...), carried through untouched.
    """
    type: str

    model_config = ConfigDict(extra="allow")


def _part_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in ("text", "tool-invocation") else "other"


MessagePart = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[ToolInvocationPart, Tag("tool-invocation")],
        Annotated[OtherPart, Tag("other")],
    ],
    Discriminator(_part_kind),
]


class UIMessage(BaseModel):
    """
    Single message in a conversation, as exchanged with the chat UI.
    """
    id: Optional[str] = None
    role: Literal["system", "user", "assistant"]
    content: str = ""
    parts: List[MessagePart] = Field(default_factory=list)
    createdAt: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    def text_parts(self) -> List[TextPart]:
        """Text parts, falling back to `content` for part-less messages."""
        texts = [p for p in self.parts if isinstance(p, TextPart)]
        if not self.parts and self.content:
            texts = [TextPart(text=self.content)]
        return texts


# ---------------------------------------------------------------------
# Chat Models
# ---------------------------------------------------------------------

class KeyValuePair(BaseModel):
    key: str = ""
    value: str = ""


class MCPServerConfig(BaseModel):
    """
    Descriptor of a remote MCP tool server chosen by the user.
    """
    url: str = Field(..., min_length=1)
    type: Literal["sse", "http"] = "http"
    headers: List[KeyValuePair] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def header_dict(self) -> Dict[str, str]:
        """Headers as a mapping; entries with an empty key are skipped."""
        return {h.key: h.value or "" for h in self.headers if h.key}


class ChatRequest(BaseModel):
    """
    Chat turn request payload.
    """
    messages: List[UIMessage] = Field(..., min_length=1)
    chatId: Optional[str] = None
    userId: Optional[str] = None
    mcpServers: List[MCPServerConfig] = Field(default_factory=list)
    appendHeaders: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class ChatResponse(BaseModel):
    """
    Persisted conversation payload.
    """
    id: str
    userId: str
    title: Optional[str] = None
    messages: List[UIMessage] = Field(default_factory=list)


# ---------------------------------------------------------------------
# UI Result Models
# ---------------------------------------------------------------------

class UIResultRequest(BaseModel):
    """
    A human decision posted back by the UI (e.g. edit-page confirmation).

    `chatId` is optional at the schema level so that a missing id is reported
    as a 400 by the endpoint rather than a schema error.
    """
    chatId: Optional[str] = None
    result: Dict[str, str] = Field(default_factory=dict)
    taskName: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class UIResultResponse(BaseModel):
    ok: bool = True
    delivered: bool


# ---------------------------------------------------------------------
# Wiki Farm Models
# ---------------------------------------------------------------------

class CreateWikiRequest(BaseModel):
    """
    Request to provision a new wiki site.
    """
    slug: Optional[str] = None
    language: Optional[str] = None
    name: Optional[str] = None
    reqcookie: str = ""

    model_config = ConfigDict(extra="ignore")


class CreateWikiResponse(BaseModel):
    ok: bool = True
    taskId: Optional[str] = None


class WikiInfo(BaseModel):
    """
    One wiki owned by a user, as reported by the farm backend.
    """
    id: int
    name: str
    slug: str
    domain: str = ""
    path: str = ""
    language: str = ""
    owner_user_id: Optional[int] = None
    owner_username: Optional[str] = None
    visibility: Literal["public", "private", "unlisted"] = "public"
    status: str = ""
    is_featured: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class WikiListResponse(BaseModel):
    wikis: List[WikiInfo] = Field(default_factory=list)


class ParseRequest(BaseModel):
    wikitext: Optional[str] = None


class ParseResponse(BaseModel):
    html: str = ""


class TokenResponse(BaseModel):
    token: str
    expires_in: int
