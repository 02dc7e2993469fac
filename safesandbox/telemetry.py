"""Telemetry events emitted by the mediator and relay.

Events are created inside the sandbox trust domain, relayed to the
supervisor and surfaced to the host as ``log`` events. They are never
persisted.
"""

import time
from enum import StrEnum
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field


class TelemetryLevel(StrEnum):
    LOG = "log"
    WARN = "warn"
    ERROR = "error"


class TelemetryArea(StrEnum):
    NETWORK = "network"
    SECURITY = "security"
    SYSTEM = "system"
    USER_CODE = "user-code"


class TelemetrySource(StrEnum):
    RELAY = "relay"  # Relay and mediator, the sandbox side of the boundary
    CONTEXT = "context"  # Code running inside the execution context


def _now_ms() -> int:
    return int(time.time() * 1000)


class TelemetryEvent(BaseModel):
    """A single ``LOG`` message as it crosses the relay."""

    model_config = ConfigDict(frozen=True)

    type: Literal["LOG"] = "LOG"
    timestamp: int = Field(default_factory=_now_ms, description="Milliseconds since epoch")
    source: TelemetrySource = TelemetrySource.RELAY
    level: TelemetryLevel = TelemetryLevel.LOG
    area: TelemetryArea | None = None
    message: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def make_event(
    level: TelemetryLevel,
    area: TelemetryArea,
    message: str,
    data: dict[str, Any] | None = None,
    *,
    source: TelemetrySource = TelemetrySource.RELAY,
) -> TelemetryEvent:
    """Build a relay-side telemetry event."""
    return TelemetryEvent(level=level, area=area, message=message, data=data or {}, source=source)


def serialize_error(err: BaseException, url: str | None) -> dict[str, Any]:
    """Reduce an exception to plain data safe to post across the boundary."""
    return {
        "name": type(err).__name__,
        "message": str(err) or "Unknown error",
        "url": url or "unknown",
    }


def serialize_network(method: str, url: str, response: httpx.Response) -> dict[str, Any]:
    """Reduce a forwarded exchange to plain data."""
    return {
        "method": method,
        "url": url,
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "ok": response.is_success,
    }


__all__ = [
    "TelemetryArea",
    "TelemetryEvent",
    "TelemetryLevel",
    "TelemetrySource",
    "make_event",
    "serialize_error",
    "serialize_network",
]
