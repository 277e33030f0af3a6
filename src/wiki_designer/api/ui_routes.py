"""
UI Result Routes

Receives human decisions from the chat UI (for instance the edit-page
confirmation dialog) and hands them to the rendezvous registry, where the
waiting tool call picks them up.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from .models import UIResultRequest, UIResultResponse
from .dependencies import get_rendezvous
from ..auth.security import require_anon_token
from ..rendezvous.registry import ResultRendezvous

logger = logging.getLogger("designer.api.ui")

router = APIRouter(
    prefix="/api/ui",
    tags=["ui"],
    dependencies=[Depends(require_anon_token)],
)


@router.post("/result", response_model=UIResultResponse)
async def post_ui_result(
    req: UIResultRequest,
    rendezvous: Annotated[ResultRendezvous, Depends(get_rendezvous)],
) -> UIResultResponse:
    """
    Deliver a UI result to the tool call waiting on `(chatId, taskName)`.

    A result that arrives before the tool starts waiting is buffered, so
    `delivered` is false but the decision is not lost.
    """
    if not req.chatId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing chatId",
        )

    delivered = rendezvous.deliver(req.chatId, dict(req.result), req.taskName)
    logger.info(
        "UI result for chat %s (task %s): delivered=%s",
        req.chatId,
        req.taskName or "default",
        delivered,
    )
    return UIResultResponse(ok=True, delivered=delivered)
