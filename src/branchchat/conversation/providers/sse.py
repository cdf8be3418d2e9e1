"""
Server-sent event framing shared by the streaming adapters.

Providers use two line layouts:

- data only: ``data: {...}`` lines, the event type (if any) lives inside the
  JSON payload, and ``data: [DONE]`` may end the stream;
- event + data: an ``event: <name>`` line followed by its ``data: {...}``
  line.

:func:`iter_sse_json` understands both.  It yields ``(event_name, payload)``
pairs where ``event_name`` is the most recent ``event:`` line (``None`` for
data-only streams).  Comment lines (``: keep-alive``), blank lines, empty
payloads and a ``{}`` payload without an ``event:`` name are skipped;
payloads that are not a JSON object are logged and skipped so one malformed
chunk never aborts a response.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


async def iter_sse_json(
    lines: AsyncIterable[str],
) -> AsyncIterator[tuple[str | None, dict[str, Any]]]:
    """Yield ``(event_name, payload)`` pairs from raw SSE *lines*.

    Args:
        lines: Decoded response lines, e.g. ``httpx.Response.aiter_lines()``.

    Yields:
        The pending ``event:`` name (or ``None``) and the decoded JSON object.
        Iteration stops at a ``[DONE]`` marker or when *lines* is exhausted.
    """
    event_name: str | None = None
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            event_name = None
            continue
        if line.startswith(":"):
            continue
        if line.strip() == DONE_MARKER:
            return
        if line.startswith("event:"):
            event_name = line[len("event:"):].strip() or None
            continue
        if not line.startswith("data:"):
            logger.debug("Ignoring SSE line: %r", line[:200])
            continue

        data = line[len("data:"):].strip()
        if not data or (data == "{}" and event_name is None):
            continue
        if data == DONE_MARKER:
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping malformed stream chunk (%s): %r", exc, data[:200])
            continue
        if not isinstance(payload, dict):
            logger.warning("Skipping non-object stream chunk: %r", data[:200])
            continue
        yield event_name, payload
        event_name = None
