"""
Chat Routes: Streaming Wiki Designer Conversation

This module implements the conversational endpoint used by the chat UI.

Major Responsibilities
----------------------
1. Accept a ChatRequest with the full conversation, the user id, the
   user-selected MCP servers and the headers to forward to wiki tools.
2. Build the per-turn tool set (remote servers, wiki-editing server,
   built-in UI server) inside the response stream, so every tool session is
   opened and closed by the task that streams the response.
3. Run the orchestration loop and relay its events as server-sent events.
4. Serve persisted conversations back to the UI.

Security Model
--------------
- Routes require an anonymous access token (`require_anon_token`).
"""

import json
import logging
import uuid
from typing import Annotated, Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from .models import ChatRequest, ChatResponse
from .dependencies import get_chat_store, get_orchestrator, get_tool_aggregator
from ..auth.security import require_anon_token
from ..db.chat_store import ChatStore
from ..orchestration.loop import TurnOrchestrator
from ..prompts import build_system_prompt
from ..tools.aggregator import ToolAggregator

logger = logging.getLogger("designer.api.chat")

router = APIRouter(
    prefix="/api",
    tags=["chat"],
    dependencies=[Depends(require_anon_token)],
)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------

def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


def _log_tool_event(event: Dict[str, Any]) -> None:
    if event["type"] == "tool-call":
        logger.info("Tool call %s (%s)", event["toolName"], event["toolCallId"])
    elif event.get("isError"):
        logger.warning("Tool %s returned an error result", event["toolName"])


# ---------------------------------------------------------------------
# Chat Route
# ---------------------------------------------------------------------

@router.post("/chat", summary="Run one streamed Wiki Designer turn")
async def chat(
    req: ChatRequest,
    aggregator: Annotated[ToolAggregator, Depends(get_tool_aggregator)],
    orchestrator: Annotated[TurnOrchestrator, Depends(get_orchestrator)],
) -> StreamingResponse:
    """
    Stream one model turn.

    Returns
    -------
    StreamingResponse
        `text/event-stream` of turn events; the conversation id is in the
        `X-Chat-ID` header.
    """
    if not req.userId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing userId",
        )

    chat_id = req.chatId or uuid.uuid4().hex
    user_id = req.userId

    async def event_stream() -> AsyncIterator[str]:
        tool_set = await aggregator.build(req.mcpServers, chat_id, req.appendHeaders)
        events = orchestrator.run(
            chat_id=chat_id,
            user_id=user_id,
            messages=req.messages,
            tool_set=tool_set,
            system_prompt=build_system_prompt(),
            on_tool_event=_log_tool_event,
        )
        try:
            async for event in events:
                yield _sse(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "X-Chat-ID": chat_id,
            "Cache-Control": "no-cache",
        },
    )


@router.get("/chats/{chat_id}", response_model=ChatResponse)
async def get_chat(
    chat_id: str,
    user_id: Annotated[str, Query(alias="userId", min_length=1)],
    store: Annotated[ChatStore, Depends(get_chat_store)],
) -> ChatResponse:
    """Load a persisted conversation owned by `userId`."""
    chat = await store.get_chat(chat_id, user_id)
    if chat is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Chat not found",
        )
    return chat
