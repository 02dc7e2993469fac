"""Relay between the supervisor and the execution context.

The relay lives on the sandbox side of the trust boundary. It receives
commands from the host, forwards them into the context or to the
mediator, and carries readiness and telemetry back up.

Every inbound ``(origin, data)`` pair is resolved once to a source. An
origin that is neither the host's nor the context's is a protocol
violation: the message is dropped silently and only counted, so a
probing context learns nothing from the relay's behaviour.

States::

    CONTEXT_NOT_READY --READY--> CONTEXT_READY
    CONTEXT_READY     --RESET--> CONTEXT_NOT_READY

EXECUTE commands that arrive before READY are queued and flushed in
order; they reach the context exactly once, in issue order.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from safesandbox.exceptions import ConfigurationError, ProtocolViolation
from safesandbox.messages import (
    READY,
    ExecuteCommand,
    ReadySignal,
    ResetCommand,
    SetPolicyCommand,
    parse_message,
)
from safesandbox.telemetry import TelemetryArea, TelemetryEvent, TelemetryLevel, make_event

if TYPE_CHECKING:
    from safesandbox.channel import MessagePort
    from safesandbox.context import ExecutionContext

logger = logging.getLogger(__name__)


class RelayState(StrEnum):
    CONTEXT_NOT_READY = "context_not_ready"
    CONTEXT_READY = "context_ready"


class Source(StrEnum):
    HOST = "host"
    CONTEXT = "context"


class Relay:
    """Message forwarder for one provisioning cycle.

    Args:
        host_origin: Origin commands must come from
        context_origin: Origin the execution context reports from
        host_port: Sandbox-side end of the host channel
        mediator_port: Relay-side end of the mediator control channel
    """

    def __init__(
        self,
        *,
        host_origin: str,
        context_origin: str,
        host_port: MessagePort,
        mediator_port: MessagePort,
    ) -> None:
        if host_origin == context_origin:
            raise ConfigurationError("Host and context must live on different origins")
        self._origins = {host_origin: Source.HOST, context_origin: Source.CONTEXT}
        self._host_port = host_port
        self._mediator_port = mediator_port
        self._context: ExecutionContext | None = None
        self._queue: deque[ExecuteCommand] = deque()
        self.state = RelayState.CONTEXT_NOT_READY
        self.dropped_count = 0
        self._closed = False
        self._announce_on_attach = False

        host_port.on_message(self.receive)
        mediator_port.on_message(self._on_mediator)

    @property
    def queued(self) -> list[str]:
        """Code of the EXECUTE commands waiting for READY, oldest first."""
        return [command.code for command in self._queue]

    @property
    def closed(self) -> bool:
        return self._closed

    async def attach_context(self, context: ExecutionContext) -> None:
        """Bind the context that queued commands are delivered to."""
        self._context = context
        if self.state is RelayState.CONTEXT_READY:
            await self._flush()
        if self._announce_on_attach:
            self._announce_on_attach = False
            await self._host_port.post(READY)

    def close(self) -> None:
        """Discard the queue and ignore all further traffic."""
        self._closed = True
        self._queue.clear()
        self.state = RelayState.CONTEXT_NOT_READY
        self._context = None
        self._host_port.close()
        self._mediator_port.close()

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def receive(self, origin: str, data: Any) -> None:
        """Admit one message from the host or the context."""
        if self._closed:
            return
        source = self._origins.get(origin)
        if source is None:
            await self._drop(ProtocolViolation("Message from unexpected origin", origin=origin))
            return

        try:
            message = parse_message(data)
        except ProtocolViolation as e:
            if source is Source.CONTEXT:
                # Free-form payloads from the context go up untouched
                await self._host_port.post(data)
            else:
                await self._drop(e)
            return

        match (source, message):
            case (Source.HOST, ExecuteCommand()):
                await self._execute(message)
            case (Source.HOST, SetPolicyCommand()):
                await self._mediator_port.post(message.to_wire())
            case (Source.HOST, ResetCommand()):
                await self._reset()
            case (Source.CONTEXT, ReadySignal()):
                await self._ready()
            case (Source.CONTEXT, TelemetryEvent()):
                await self._host_port.post(message.to_wire())
            case _:
                await self._drop(
                    ProtocolViolation(f"{message.type} not accepted from {source.value}", origin=origin)
                )

    async def _on_mediator(self, origin: str, data: Any) -> None:
        if self._closed:
            return
        try:
            message = parse_message(data)
        except ProtocolViolation as e:
            await self._drop(e)
            return
        if isinstance(message, TelemetryEvent):
            await self._host_port.post(message.to_wire())
        else:
            await self._drop(ProtocolViolation(f"{message.type} not accepted from mediator", origin=origin))

    async def _drop(self, violation: ProtocolViolation) -> None:
        self.dropped_count += 1
        logger.debug("Dropped relay message: %s", violation)
        # Count only; the payload never leaves the relay
        event = make_event(
            TelemetryLevel.WARN,
            TelemetryArea.SECURITY,
            "Relay dropped a message",
            {"dropped": self.dropped_count},
        )
        await self._host_port.post(event.to_wire())

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def _execute(self, command: ExecuteCommand) -> None:
        if self.state is RelayState.CONTEXT_READY and self._context is not None and not self._queue:
            await self._context.post(command.model_dump())
        else:
            self._queue.append(command)

    async def _ready(self) -> None:
        self.state = RelayState.CONTEXT_READY
        if self._context is None:
            # Announce once the queue can actually be flushed
            self._announce_on_attach = True
            return
        await self._flush()
        await self._host_port.post(READY)

    async def _flush(self) -> None:
        while self._queue and not self._closed:
            command = self._queue.popleft()
            await self._context.post(command.model_dump())

    async def _reset(self) -> None:
        self._queue.clear()
        self.state = RelayState.CONTEXT_NOT_READY
        await self._host_port.post(ResetCommand().model_dump())


__all__ = ["Relay", "RelayState", "Source"]
