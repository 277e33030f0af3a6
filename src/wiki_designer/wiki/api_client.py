import httpx
from typing import Dict, Any, Optional
from ..config import settings


class MediaWikiClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = api_url or settings.mw_parse_api_url
        self._transport = transport

    async def _post(self, params: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
            resp = await client.post(self.base_url, params=params, data=data)
        resp.raise_for_status()
        return resp.json()

    async def parse_wikitext(self, wikitext: str) -> str:
        """Render wikitext to HTML through action=parse. Returns "" when nothing was rendered."""
        params = {"action": "parse", "format": "json"}
        data = await self._post(params, {"text": wikitext, "contentmodel": "wikitext"})
        return (data.get("parse") or {}).get("text", {}).get("*", "") or ""
