"""
LLM Client

Thin httpx client for any OpenAI-compatible chat completions endpoint.

- `stream_chat` streams one model step and yields text deltas as they arrive,
  followed by a single `finish` event carrying the assembled tool calls.
- `chat` performs a non-streaming completion (used for chat titles).
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..config import settings

logger = logging.getLogger("designer.llm")

TITLE_PROMPT = (
    "Generate a short title (at most 8 words) for a conversation that starts with "
    "the following user message. Reply with the title only, without quotes."
)


class LLMClientError(RuntimeError):
    """Raised when the LLM endpoint fails or returns an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429


class LLMClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.llm_api_key.get_secret_value()
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.llm_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _payload(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        temperature: float,
        model: Optional[str],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": [{"role": "system", "content": system_prompt}] + messages,
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def chat(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Returns the raw assistant message dict, e.g.:
        {
            "role": "assistant",
            "content": "...",
            "tool_calls": [...]
        }
        """
        payload = self._payload(system_prompt, messages, tools, temperature, model)

        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
            )
        if resp.status_code >= 400:
            raise LLMClientError(
                f"LLM request failed ({resp.status_code}): {resp.text[:500]}",
                status_code=resp.status_code,
            )
        data = resp.json()
        return data["choices"][0]["message"]

    async def stream_chat(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream one completion step.

        Yields
        ------
        {"type": "text-delta", "text": str}
            For every content fragment.

        {"type": "finish", "finish_reason": str | None, "tool_calls": list}
            Exactly once, at the end. `tool_calls` entries have the shape
            {"id", "name", "arguments"} with `arguments` as the raw JSON string.
        """
        payload = self._payload(
            system_prompt,
            messages,
            tools,
            settings.llm_temperature if temperature is None else temperature,
            None,
        )
        payload["stream"] = True

        tool_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None

        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise LLMClientError(
                        f"LLM request failed ({resp.status_code}): {body[:500]}",
                        status_code=resp.status_code,
                    )

                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream chunk: %r", data[:200])
                        continue

                    if chunk.get("error"):
                        raise LLMClientError(str(chunk["error"]))

                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}

                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

                    content = delta.get("content")
                    if content:
                        yield {"type": "text-delta", "text": content}

                    for tc in delta.get("tool_calls") or []:
                        idx = tc.get("index", len(tool_calls))
                        entry = tool_calls.setdefault(
                            idx,
                            {"id": tc.get("id") or f"call_{idx}", "name": None, "arguments": ""},
                        )
                        if tc.get("id"):
                            entry["id"] = tc["id"]
                        fn = tc.get("function") or {}
                        if fn.get("name"):
                            entry["name"] = fn["name"]
                        if isinstance(fn.get("arguments"), str):
                            entry["arguments"] += fn["arguments"]

        calls = []
        for idx in sorted(tool_calls):
            call = tool_calls[idx]
            if not call["name"]:
                logger.warning("Tool call %d missing name, skipping", idx)
                continue
            calls.append(call)

        yield {"type": "finish", "finish_reason": finish_reason, "tool_calls": calls}

    async def generate_title(self, text: str) -> str:
        message = await self.chat(
            TITLE_PROMPT,
            [{"role": "user", "content": text[:2000]}],
            temperature=0.3,
            model=settings.llm_title_model,
        )
        title = (message.get("content") or "").strip().strip('"').strip()
        return title[:100] or "New Chat"
