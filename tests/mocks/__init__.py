"""Fakes for the isolation primitive and the network.

Provides deterministic stand-ins for the collaborators the core only
talks to through narrow protocols.
"""

import asyncio
import uuid
from collections.abc import Callable
from typing import Any

import httpx

from safesandbox.channel import MessageChannel
from safesandbox.context import CapabilityManifest, InboundHandler
from safesandbox.mediator.engine import Mediator
from safesandbox.telemetry import TelemetryEvent

HOST_ORIGIN = "http://localhost:3333"
SANDBOX_ORIGIN = "http://sandbox.localhost:3333"


# =============================================================================
# ISOLATION PRIMITIVE
# =============================================================================


class FakeContext:
    """Execution context that records what it receives."""

    def __init__(self, origin: str, inbound: InboundHandler, manifest: CapabilityManifest) -> None:
        self.context_id = str(uuid.uuid4())
        self.origin = origin
        self.manifest = manifest
        self.inbound = inbound
        self.received: list[Any] = []
        self.url: str | None = None
        self.destroyed = False

    @property
    def executed(self) -> list[str]:
        return [m["code"] for m in self.received if isinstance(m, dict) and m.get("type") == "EXECUTE"]

    async def post(self, message: Any) -> None:
        if not self.destroyed:
            self.received.append(message)

    async def navigate(self, url: str) -> None:
        self.url = url

    async def destroy(self) -> None:
        self.destroyed = True

    async def signal_ready(self) -> None:
        await self.inbound(self.origin, "READY")

    async def send(self, data: Any, *, origin: str | None = None) -> None:
        await self.inbound(origin or self.origin, data)

    async def log(self, message: str, *, level: str = "log") -> None:
        await self.inbound(
            self.origin,
            {"type": "LOG", "timestamp": 1, "source": "context", "level": level, "area": "user-code", "message": message},
        )


class FakeContextFactory:
    """Creates :class:`FakeContext` instances.

    With ``auto_ready`` the context reports READY from inside ``create``,
    before the supervisor has attached it to the relay. ``delay`` makes
    ``create`` yield to the event loop first.
    """

    def __init__(self, origin: str = SANDBOX_ORIGIN, *, auto_ready: bool = False, delay: float = 0) -> None:
        self.origin = origin
        self.auto_ready = auto_ready
        self.delay = delay
        self.contexts: list[FakeContext] = []

    @property
    def latest(self) -> FakeContext:
        return self.contexts[-1]

    async def create(self, manifest: CapabilityManifest, inbound: InboundHandler) -> FakeContext:
        if self.delay:
            await asyncio.sleep(self.delay)
        context = FakeContext(self.origin, inbound, manifest)
        self.contexts.append(context)
        if self.auto_ready:
            await context.signal_ready()
        return context


# =============================================================================
# NETWORK
# =============================================================================


class UpstreamStub:
    """Handler for httpx.MockTransport that records every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, content=b"ok"
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def respond(self, *args: Any, **kwargs: Any) -> None:
        self.responder = lambda request: httpx.Response(*args, **kwargs)

    def fail(self, exc: Exception) -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise exc

        self.responder = _raise

    @property
    def calls(self) -> int:
        return len(self.requests)


# =============================================================================
# TELEMETRY
# =============================================================================


class TelemetryRecorder:
    """Stands in for the relay on a mediator's control port."""

    def __init__(self, channel: MessageChannel) -> None:
        self.channel = channel
        self.events: list[TelemetryEvent] = []
        channel.port1.on_message(self._record)

    @classmethod
    def attach(cls, mediator: Mediator) -> "TelemetryRecorder":
        channel = MessageChannel(mediator.origin, mediator.origin)
        recorder = cls(channel)
        mediator.attach_control(channel.port2)
        return recorder

    async def _record(self, origin: str, data: Any) -> None:
        self.events.append(TelemetryEvent.model_validate(data))

    async def send(self, data: Any) -> None:
        await self.channel.port1.post(data)

    @property
    def areas(self) -> list[str]:
        return [e.area.value if e.area else "" for e in self.events]

    def clear(self) -> None:
        self.events.clear()
