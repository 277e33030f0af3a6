"""
Conversation History Governor

Pure functions that keep the message history sent to the model well-formed
and bounded in size.

- `sanitize_messages` drops tool invocations that never reached the `result`
  state from every message except the latest one. A closed turn cannot
  complete them, and providers reject tool calls without results.
- `limit_message_size` strips tool calls/results from older messages once the
  serialized history grows past a threshold, keeping the last two messages
  intact.

Neither function mutates its input.
"""

from __future__ import annotations

import json
import logging
from typing import List

from ..api.models import UIMessage, TextPart, ToolInvocationPart

logger = logging.getLogger("designer.history")

DEFAULT_SIZE_THRESHOLD = 100_000
KEEP_INTACT = 2


def sanitize_messages(messages: List[UIMessage]) -> List[UIMessage]:
    """Remove non-`result` tool invocations from all but the last message."""
    last = len(messages) - 1
    sanitized: List[UIMessage] = []

    for i, msg in enumerate(messages):
        if i == last:
            sanitized.append(msg)
            continue

        parts = [
            p for p in msg.parts
            if not isinstance(p, ToolInvocationPart) or p.toolInvocation.state == "result"
        ]
        if len(parts) == len(msg.parts):
            sanitized.append(msg)
        else:
            sanitized.append(msg.model_copy(update={"parts": parts}))

    return sanitized


def history_size(messages: List[UIMessage]) -> int:
    """
    Serialized size, in UTF-8 bytes, of all text and tool-invocation content.
    """
    total = 0
    for msg in messages:
        for part in msg.parts:
            if isinstance(part, TextPart):
                total += len(part.text.encode("utf-8"))
            elif isinstance(part, ToolInvocationPart):
                payload = json.dumps(
                    part.toolInvocation.model_dump(mode="json"),
                    ensure_ascii=False,
                    default=str,
                )
                total += len(payload.encode("utf-8"))
    return total


def limit_message_size(
    messages: List[UIMessage],
    threshold: int = DEFAULT_SIZE_THRESHOLD,
) -> List[UIMessage]:
    """
    Keep only text parts in all but the last two messages once the history
    exceeds ``threshold`` bytes. Under the threshold the input is returned as is.
    """
    size = history_size(messages)
    if size <= threshold:
        return messages

    logger.info("Simplifying message history, total size: %d bytes", size)

    cutoff = len(messages) - KEEP_INTACT
    simplified: List[UIMessage] = []
    for i, msg in enumerate(messages):
        if i >= cutoff:
            simplified.append(msg)
            continue
        parts = [p for p in msg.parts if isinstance(p, TextPart)]
        simplified.append(msg.model_copy(update={"parts": parts}))

    return simplified


def govern_history(
    messages: List[UIMessage],
    threshold: int = DEFAULT_SIZE_THRESHOLD,
) -> List[UIMessage]:
    """Sanitize, then bound, a history before it is sent to the model."""
    return limit_message_size(sanitize_messages(messages), threshold)
