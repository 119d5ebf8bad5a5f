from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

_logger = logging.getLogger("partner.telemetry")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


# Rolling buffer of recent events for diagnostics
_RECENT_EVENTS: List[TelemetryEvent] = []
_MAX_BUFFER = 200


def record_event(event: TelemetryEvent) -> None:
    """Log a telemetry event and keep it in the in-memory buffer."""

    _RECENT_EVENTS.append(event)
    if len(_RECENT_EVENTS) > _MAX_BUFFER:
        del _RECENT_EVENTS[0 : len(_RECENT_EVENTS) - _MAX_BUFFER]

    _logger.info(
        "telemetry_event",
        extra={
            "telemetry_name": event.name,
            "telemetry_session": event.session_id,
            "telemetry_properties": event.properties,
        },
    )


def list_recent_events(limit: int = 50) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    return list(_RECENT_EVENTS[-limit:])


def clear_events() -> None:
    _RECENT_EVENTS.clear()
