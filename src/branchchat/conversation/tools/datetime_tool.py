"""
Date/time tool.

Returns the current date and time, optionally for a named IANA timezone.
It needs no external API, so it is the tool registered by default.

- ``DateTimeTool.TOOL_DEFINITION``: the ``ToolDefinition`` sent to models.
- ``DateTimeTool.get_datetime(timezone)``: async method returning a dict.
- ``DateTimeTool.as_handler()``: async callable for ``ToolRegistry``.

An unrecognised timezone falls back to UTC and the result carries an
``"error"`` field describing the problem.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from branchchat.conversation.models import ToolDefinition, ToolResult, ToolSuccess

logger = logging.getLogger(__name__)


class DateTimeTool:
    """Returns the current date and time, with optional timezone support."""

    TOOL_DEFINITION: ToolDefinition = ToolDefinition(
        name="get_current_datetime",
        description=(
            "Get the current date and time. "
            "Returns the date, time, day of the week, and Unix timestamp. "
            "Optionally accepts an IANA timezone name such as "
            "'America/New_York' or 'Europe/London'; defaults to UTC."
        ),
        parameters={
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": (
                        "IANA timezone name, e.g. 'America/Chicago', 'Asia/Tokyo'. "
                        "Omit for UTC."
                    ),
                }
            },
            "required": [],
        },
    )
    DISPLAY_NAME = "Current date and time"

    def __init__(self, clock: Any = None) -> None:
        # ``clock(tz)`` returns an aware datetime; injectable for tests.
        self._clock = clock or (lambda tz: datetime.now(tz=tz))

    async def get_datetime(self, timezone_name: str | None = None) -> dict[str, Any]:
        """Return the current date and time.

        Args:
            timezone_name: IANA timezone name.  ``None`` or ``""`` means UTC.

        Returns:
            A dict with ``datetime_iso``, ``date``, ``time``, ``timezone``,
            ``day_of_week``, ``unix_timestamp`` and, when the timezone was
            invalid, ``error``.
        """
        tz, tz_error = self._resolve_timezone(timezone_name)
        now = self._clock(tz)
        result: dict[str, Any] = {
            "datetime_iso": now.isoformat(timespec="seconds"),
            "date": now.strftime("%Y-%m-%d"),
            "time": now.strftime("%H:%M:%S"),
            "timezone": str(tz),
            "day_of_week": now.strftime("%A"),
            "unix_timestamp": int(now.timestamp()),
        }
        if tz_error:
            result["error"] = tz_error
        return result

    def as_handler(self):
        """Return an async callable for ``ToolRegistry.register``."""

        async def _call(params: dict[str, Any]) -> ToolResult:
            result = await self.get_datetime(params.get("timezone") or None)
            return ToolSuccess(json.dumps(result), details={"timezone": result["timezone"]})

        return _call

    def _resolve_timezone(self, timezone_name: str | None) -> tuple[Any, str | None]:
        if not timezone_name:
            return timezone.utc, None
        try:
            return ZoneInfo(timezone_name), None
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone: %r; falling back to UTC", timezone_name)
            return timezone.utc, f"Unknown timezone {timezone_name!r}; showing UTC instead."
