"""Heartbeat supervision of the mediator.

The execution context shares a trust domain with the mediator (it has to,
for the mediator to see its traffic), so code inside the context can try
to unregister or wedge the mediator. A missing PONG on a private channel
is the signal: after ``threshold`` consecutive misses the supervisor
tears the context down and rebuilds it. There is no grace period and no
backoff.

This is a compensating control. Whether it can detect every way of
disabling the mediator is an open question; a mediator that keeps
answering PINGs while no longer enforcing policy is not caught here.

States::

    DISCONNECTED --register_channel--> AWAITING_CONNECT
    AWAITING_CONNECT --CONNECTED--> CONNECTED
    CONNECTED --missed ping--> DEGRADED(n)
    DEGRADED(n) --PONG--> CONNECTED
    DEGRADED(threshold) --> RESETTING --disconnect--> DISCONNECTED
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from safesandbox.exceptions import IntegrityFailure
from safesandbox.messages import CONNECTED, PING, PONG
from safesandbox.settings import get_settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from safesandbox.channel import MessagePort

logger = logging.getLogger(__name__)


class HeartbeatStatus(StrEnum):
    DISCONNECTED = "disconnected"
    AWAITING_CONNECT = "awaiting_connect"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RESETTING = "resetting"


@dataclass
class HeartbeatState:
    last_pong_at: float | None = None
    missed_count: int = 0
    channel_epoch: int = 0
    pending: bool = False


class HeartbeatSupervisor:
    """Pings the mediator every ``interval`` seconds and counts misses.

    ``on_failure`` is awaited exactly once per channel when the miss count
    reaches ``threshold``. Drive it with :meth:`start` in production or
    call :meth:`tick` directly.
    """

    def __init__(
        self,
        on_failure: Callable[[IntegrityFailure], Awaitable[None]],
        *,
        interval: float | None = None,
        threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.interval = interval if interval is not None else settings.heartbeat_interval_seconds
        self.threshold = threshold if threshold is not None else settings.heartbeat_threshold
        self._on_failure = on_failure
        self._clock = clock
        self.state = HeartbeatState()
        self.status = HeartbeatStatus.DISCONNECTED
        self._port: MessagePort | None = None
        self._task: asyncio.Task[None] | None = None
        self._task_epoch = 0

    def register_channel(self, port: MessagePort) -> None:
        """Start watching a fresh channel; the mediator must answer with CONNECTED."""
        if self._port is not None:
            self._port.close()
        epoch = self.state.channel_epoch + 1
        self.state = HeartbeatState(channel_epoch=epoch)
        self._port = port
        port.on_message(self._make_handler(epoch))
        self.status = HeartbeatStatus.AWAITING_CONNECT
        logger.debug("Heartbeat channel registered (epoch %d)", epoch)

    def disconnect(self) -> None:
        """Forget the channel and every piece of heartbeat state but the epoch."""
        if self._port is not None:
            self._port.close()
            self._port = None
        self.state = HeartbeatState(channel_epoch=self.state.channel_epoch)
        self.status = HeartbeatStatus.DISCONNECTED

    def _make_handler(self, epoch: int) -> Callable[[str, Any], Awaitable[None]]:
        async def handler(origin: str, data: Any) -> None:
            if epoch != self.state.channel_epoch:
                return
            await self._on_message(data)

        return handler

    async def _on_message(self, data: Any) -> None:
        if data == CONNECTED and self.status is HeartbeatStatus.AWAITING_CONNECT:
            self.status = HeartbeatStatus.CONNECTED
            self.state.missed_count = 0
            self.state.last_pong_at = self._clock()
            logger.info("Secure heartbeat established (epoch %d)", self.state.channel_epoch)
            await self._ping()
        elif data == PONG and self.state.pending:
            self.state.pending = False
            self.state.missed_count = 0
            self.state.last_pong_at = self._clock()
            if self.status is HeartbeatStatus.DEGRADED:
                logger.info("Heartbeat recovered")
            self.status = HeartbeatStatus.CONNECTED

    async def _ping(self) -> None:
        # Pending must be set before posting; the PONG may arrive inside post()
        self.state.pending = True
        if self._port is not None:
            await self._port.post(PING)

    async def tick(self) -> None:
        """One heartbeat interval."""
        if self.status in (HeartbeatStatus.DISCONNECTED, HeartbeatStatus.RESETTING):
            return

        if self.status is HeartbeatStatus.AWAITING_CONNECT:
            # A mediator that never connects counts the same as one that stopped answering
            self.state.missed_count += 1
            logger.warning(
                "Heartbeat: mediator has not connected (%d/%d)",
                self.state.missed_count,
                self.threshold,
            )
        elif self.state.pending:
            self.state.missed_count += 1
            self.status = HeartbeatStatus.DEGRADED
            logger.warning("Heartbeat: missed PONG (%d/%d)", self.state.missed_count, self.threshold)
        else:
            await self._ping()
            return

        if self.state.missed_count >= self.threshold:
            await self._fail()
            return
        if self.status is HeartbeatStatus.DEGRADED:
            await self._ping()

    async def _fail(self) -> None:
        self.status = HeartbeatStatus.RESETTING
        failure = IntegrityFailure(
            f"Mediator missed {self.state.missed_count} heartbeats",
            missed_count=self.state.missed_count,
        )
        logger.error("Resetting sandbox due to security/health failure: %s", failure)
        await self._on_failure(failure)

    # -------------------------------------------------------------------------
    # Periodic loop
    # -------------------------------------------------------------------------

    async def run(self, epoch: int | None = None) -> None:
        """Tick every ``interval`` seconds until stopped or a failure is raised.

        The loop belongs to channel ``epoch`` (the current one by default) and
        exits as soon as a newer channel is registered.
        """
        if epoch is None:
            epoch = self.state.channel_epoch
        while True:
            await asyncio.sleep(self.interval)
            if self.state.channel_epoch != epoch:
                return
            await self.tick()
            # A failure callback may already have registered the next channel
            if self.status is HeartbeatStatus.RESETTING or self.state.channel_epoch != epoch:
                return

    def start(self) -> asyncio.Task[None]:
        """Start the periodic loop as a background task."""
        epoch = self.state.channel_epoch
        # A loop from a replaced channel exits on its own at its next wakeup
        if self._task is None or self._task.done() or self._task_epoch != epoch:
            self._task = asyncio.create_task(self.run(epoch))
            self._task_epoch = epoch
        return self._task

    async def stop(self) -> None:
        """Stop the periodic loop. Safe to call from inside the loop's own failure callback."""
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


__all__ = ["HeartbeatState", "HeartbeatStatus", "HeartbeatSupervisor"]
