"""Shared fixtures for the conversation tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Sequence

import httpx
import pytest


class ScriptedTransport:
    """Serves canned responses in order and records every request.

    Each script entry is ``(status, body)`` or an exception instance to
    raise.  The last entry is repeated once the script runs out.
    """

    def __init__(self, *script: tuple[int, str] | Exception) -> None:
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(entry, Exception):
            raise entry
        status, body = entry
        content_type = "text/event-stream" if status < 400 else "application/json"
        return httpx.Response(
            status, content=body.encode("utf-8"), headers={"content-type": content_type}
        )

    def json_body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def scripted_http() -> Callable[..., tuple[httpx.AsyncClient, ScriptedTransport]]:
    """Return a factory building an ``httpx.AsyncClient`` over a script."""

    def build(*script: tuple[int, str] | Exception) -> tuple[httpx.AsyncClient, ScriptedTransport]:
        transport = ScriptedTransport(*script)
        return httpx.AsyncClient(transport=httpx.MockTransport(transport)), transport

    return build


def sse_data(*payloads: dict[str, Any]) -> str:
    """Format payloads as ``data:`` SSE lines."""
    return "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)


def sse_events(*events: tuple[str, dict[str, Any]]) -> str:
    """Format ``(name, payload)`` pairs as ``event:`` + ``data:`` SSE blocks."""
    return "".join(f"event: {name}\ndata: {json.dumps(p)}\n\n" for name, p in events)


@pytest.fixture
def sse() -> Any:
    """Expose the SSE formatting helpers to tests."""

    class _Formatter:
        data = staticmethod(sse_data)
        events = staticmethod(sse_events)

    return _Formatter


class ScriptedProvider:
    """Provider stub that plays one event list per request; the last list repeats."""

    name = "test"

    def __init__(self, *scripts: Sequence[Any]) -> None:
        self.scripts = list(scripts)
        self.requests: list[Any] = []
        self.closed = False

    async def stream(self, request: Any, on_event: Callable[[Any], None]) -> None:
        self.requests.append(request)
        events = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        await asyncio.sleep(0)
        for event in events:
            on_event(event)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def scripted_provider() -> type[ScriptedProvider]:
    """Expose :class:`ScriptedProvider` to tests."""
    return ScriptedProvider
