"""
Wiki Farm Client

Talks to the wiki farm services:

- the provisioner, which creates wiki sites asynchronously and reports
  progress as a server-sent event stream per task
- the farm backend, which lists the wikis owned by a user
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..config import settings

logger = logging.getLogger("designer.wiki.farm")

PROVISION_PATH = "provisioner/v1/wikis"


class WikiFarmError(RuntimeError):
    """Raised when a farm service is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WikiFarmClient:
    def __init__(
        self,
        endpoint: Optional[str] = None,
        backend_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = str(endpoint or settings.wikifarm_endpoint).rstrip("/") + "/"
        self.backend_url = (backend_url or settings.backend_url).rstrip("/")
        self._transport = transport

    def _client(self, timeout: Optional[float] = 15.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def create_wiki(self, slug: str, language: str, name: str, cookie: str = "") -> Optional[str]:
        """
        Submit a provisioning request.

        Returns
        -------
        Optional[str]
            The provisioner task id, used to follow progress.
        """
        headers = {"Cookie": cookie} if cookie else {}
        try:
            async with self._client() as client:
                resp = await client.post(
                    self.endpoint + PROVISION_PATH,
                    json={"slug": slug, "language": language, "name": name},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise WikiFarmError(f"Provisioner unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise WikiFarmError(
                f"Provisioner error ({resp.status_code}): {resp.text[:500]}",
                status_code=resp.status_code,
            )
        result = resp.json()
        logger.info("Create wiki %s submitted: %s", slug, result)
        task_id = result.get("task_id")
        return str(task_id) if task_id is not None else None

    @asynccontextmanager
    async def task_events(self, task_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open the provisioner's event stream for a task.

        The connection is established on entry, so an unreachable or failing
        upstream raises `WikiFarmError` before any byte is forwarded. The
        yielded iterator relays the decoded stream.
        """
        client = self._client(timeout=None)
        try:
            request = client.build_request(
                "GET",
                f"{self.endpoint}tasks/{task_id}/events",
                headers={"Accept": "text/event-stream"},
            )
            try:
                resp = await client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise WikiFarmError(f"Task stream unreachable: {exc}") from exc

            try:
                if resp.status_code >= 400:
                    raise WikiFarmError(
                        f"Task stream failed ({resp.status_code})",
                        status_code=resp.status_code,
                    )
                yield resp.aiter_bytes()
            finally:
                await resp.aclose()
        finally:
            await client.aclose()

    async def list_user_wikis(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            async with self._client() as client:
                resp = await client.get(
                    f"{self.backend_url}/api/v1/users/{user_id}/wikis",
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise WikiFarmError(f"Farm backend unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise WikiFarmError(f"Backend error: {resp.text}", status_code=resp.status_code)
        return resp.json().get("wikis") or []
