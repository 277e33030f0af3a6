"""
Wiki Routes

Read-only helpers for the chat UI:

- GET /api/wiki lists the wikis a user owns on the farm
- POST /api/parse renders wikitext to HTML for previews
"""

import logging
from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status

from .models import ParseRequest, ParseResponse, WikiInfo, WikiListResponse
from .dependencies import get_farm_client, get_mediawiki_client
from ..wiki.api_client import MediaWikiClient
from ..wiki.farm_client import WikiFarmClient, WikiFarmError

logger = logging.getLogger("designer.api.wiki")

router = APIRouter(prefix="/api", tags=["wiki"])


@router.get("/wiki", response_model=WikiListResponse)
async def list_wikis(
    farm: Annotated[WikiFarmClient, Depends(get_farm_client)],
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> WikiListResponse:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing userId parameter",
        )

    try:
        wikis = await farm.list_user_wikis(user_id)
    except WikiFarmError as exc:
        raise HTTPException(
            status_code=exc.status_code or status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        )

    return WikiListResponse(wikis=[WikiInfo.model_validate(w) for w in wikis])


@router.post("/parse", response_model=ParseResponse)
async def parse(
    req: ParseRequest,
    mw: Annotated[MediaWikiClient, Depends(get_mediawiki_client)],
) -> ParseResponse:
    if not req.wikitext:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing wikitext",
        )

    try:
        html = await mw.parse_wikitext(req.wikitext)
    except httpx.HTTPError as exc:
        logger.warning("MediaWiki parse failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch from MediaWiki API",
        )

    return ParseResponse(html=html)
