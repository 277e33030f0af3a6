"""
Wiki Site Task Routes

Submits wiki-site provisioning requests and relays their progress.

- POST /api/task/create forwards the request (with the user's wiki cookie)
  to the provisioner and returns the task id.
- GET /api/task/{task_id}/status proxies the provisioner's event stream.
"""

import logging
from contextlib import AsyncExitStack
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from .models import CreateWikiRequest, CreateWikiResponse
from .dependencies import get_farm_client
from ..auth.security import require_anon_token
from ..wiki.farm_client import WikiFarmClient, WikiFarmError

logger = logging.getLogger("designer.api.task")

router = APIRouter(
    prefix="/api/task",
    tags=["task"],
    dependencies=[Depends(require_anon_token)],
)


@router.post("/create", response_model=CreateWikiResponse)
async def create_task(
    req: CreateWikiRequest,
    farm: Annotated[WikiFarmClient, Depends(get_farm_client)],
) -> CreateWikiResponse:
    if not req.slug or not req.language or not req.name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing slug, language or name",
        )

    try:
        task_id = await farm.create_wiki(req.slug, req.language, req.name, cookie=req.reqcookie)
    except WikiFarmError as exc:
        logger.warning("Wiki creation for %s failed: %s", req.slug, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        )

    return CreateWikiResponse(ok=True, taskId=task_id)


@router.get("/{task_id}/status")
async def task_status(
    task_id: str,
    farm: Annotated[WikiFarmClient, Depends(get_farm_client)],
) -> StreamingResponse:
    """
    Relay the provisioner's server-sent events for `task_id`.

    The upstream connection is opened before responding, so a failing
    upstream becomes a 502 instead of an empty stream.
    """
    stack = AsyncExitStack()
    try:
        upstream = await stack.enter_async_context(farm.task_events(task_id))
    except WikiFarmError as exc:
        await stack.aclose()
        logger.warning("Task %s event stream unavailable: %s", task_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to connect to backend SSE",
        )

    async def relay() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream:
                yield chunk
        finally:
            await stack.aclose()

    return StreamingResponse(
        relay(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
