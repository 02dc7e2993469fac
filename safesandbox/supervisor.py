"""Supervisor: the host-side composition root.

Owns the policy store, the execution context handle, the relay of the
current provisioning cycle and the heartbeat. Everything it knows about
the sandbox arrives as messages on the host end of the relay channel;
messages from a superseded cycle are dropped.

Usage::

    supervisor = Supervisor(factory, mediator)
    supervisor.on("log", lambda event: print(event.message))
    await supervisor.start()
    await supervisor.set_policy(NetworkPolicy(allow=["example.com"]))
    await supervisor.execute("fetch('https://example.com')")
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from safesandbox.channel import MessageChannel, MessagePort
from safesandbox.context import CapabilityManifest
from safesandbox.exceptions import ConfigurationError
from safesandbox.heartbeat import HeartbeatSupervisor
from safesandbox.messages import READY, ExecuteCommand, ResetCommand, SetPolicyCommand
from safesandbox.policy import NetworkPolicy, PolicyStore
from safesandbox.relay import Relay
from safesandbox.settings import get_settings
from safesandbox.telemetry import TelemetryEvent

if TYPE_CHECKING:
    from collections.abc import Callable

    from safesandbox.context import ContextFactory, ExecutionContext
    from safesandbox.exceptions import IntegrityFailure
    from safesandbox.mediator.engine import Mediator

logger = logging.getLogger(__name__)

EVENTS = frozenset({"ready", "log", "message", "reset"})


class Supervisor:
    """Runs untrusted code in a rebuildable, mediated execution context.

    Args:
        factory: Isolation primitive used to create contexts
        mediator: Policy enforcement point of the sandbox trust domain
        policy: Initial network policy
        host_origin: Origin of this side of the relay (settings default)
        sandbox_origin: Origin the context and mediator live on (settings default)
        heartbeat: Pre-built heartbeat supervisor, mainly for tests
        run_heartbeat: Start the periodic heartbeat loop once a context is ready
    """

    def __init__(
        self,
        factory: ContextFactory,
        mediator: Mediator,
        *,
        policy: NetworkPolicy | None = None,
        host_origin: str | None = None,
        sandbox_origin: str | None = None,
        heartbeat: HeartbeatSupervisor | None = None,
        run_heartbeat: bool = True,
    ) -> None:
        settings = get_settings()
        self.host_origin = (host_origin or settings.host_origin).rstrip("/")
        self.sandbox_origin = (sandbox_origin or settings.sandbox_origin).rstrip("/")
        if self.host_origin == self.sandbox_origin:
            raise ConfigurationError("The sandbox must be served from a different origin than the host")

        self._factory = factory
        self._mediator = mediator
        self._store = PolicyStore(policy)
        self._heartbeat = heartbeat or HeartbeatSupervisor(self._on_integrity_failure)
        self._run_heartbeat = run_heartbeat

        self._relay: Relay | None = None
        self._host_port: MessagePort | None = None
        self._context: ExecutionContext | None = None
        self._manifest: CapabilityManifest | None = None
        self._generation = 0
        self._ready_generation = 0
        self._resetting = False
        self._closed = False
        self.cycles = 0
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def policy(self) -> NetworkPolicy:
        return self._store.snapshot()

    @property
    def policy_revision(self) -> int:
        return self._store.revision

    @property
    def context(self) -> ExecutionContext | None:
        return self._context

    @property
    def relay(self) -> Relay | None:
        return self._relay

    @property
    def heartbeat(self) -> HeartbeatSupervisor:
        return self._heartbeat

    @property
    def is_resetting(self) -> bool:
        return self._resetting

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Subscribe to ``ready``, ``log``, ``message`` or ``reset``."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event '{event}'. Available: {', '.join(sorted(EVENTS))}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for '%s' event failed", event)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Provision the first execution context."""
        if self._closed:
            raise ConfigurationError("Supervisor is closed")
        if self._context is None and self._relay is None:
            await self._provision()

    async def execute(self, code: str) -> None:
        """Run ``code`` in the context, queued until it reports READY."""
        if self._host_port is None:
            logger.info("execute() ignored: no execution context")
            return
        await self._host_port.post(ExecuteCommand(code=code).model_dump())

    async def set_policy(self, policy: NetworkPolicy | dict[str, Any]) -> None:
        """Replace the network policy.

        Construction-time fields (the capability manifest) cannot be
        hot-applied; changing them rebuilds the context. Everything else
        is sent to the mediator as is.
        """
        if isinstance(policy, dict):
            policy = NetworkPolicy.from_wire(policy)
        previous, revision = self._store.replace(policy)
        changed = policy.construction_changes(previous)
        if changed:
            logger.info("Policy revision %d changes %s, recreating context", revision, ", ".join(sorted(changed)))
            await self.reset(reason="capabilities changed")
            return
        await self._send_policy()

    async def reset(self, reason: str = "manual") -> None:
        """Tear down and rebuild the execution context.

        Concurrent calls while a reset is running return immediately. A
        capability change that lands while the new context is being built
        triggers one more rebuild before the reset finishes.
        """
        if self._resetting or self._closed:
            logger.debug("reset(%s) skipped: already resetting or closed", reason)
            return
        self._resetting = True
        try:
            logger.warning("Resetting sandbox: %s", reason)
            await self._emit("reset", reason)
            if self._host_port is not None:
                await self._host_port.post(ResetCommand().model_dump())
            await self._teardown()
            await self._provision()
            while self._manifest_is_stale():
                logger.info("Capabilities changed during provisioning, recreating context")
                await self._teardown()
                await self._provision()
        finally:
            self._resetting = False

    async def close(self) -> None:
        """Destroy the context for good."""
        self._closed = True
        await self._teardown()

    def stats(self) -> dict[str, Any]:
        """Diagnostics for the current cycle."""
        return {
            "cycles": self.cycles,
            "generation": self._generation,
            "policy_revision": self._store.revision,
            "relay_state": self._relay.state.value if self._relay else None,
            "dropped_messages": self._relay.dropped_count if self._relay else 0,
            "heartbeat_status": self._heartbeat.status.value,
            "missed_heartbeats": self._heartbeat.state.missed_count,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _provision(self) -> None:
        self._generation += 1
        generation = self._generation

        host_channel = MessageChannel(self.host_origin, self.sandbox_origin)
        control_channel = MessageChannel(self.sandbox_origin, self.sandbox_origin)
        relay = Relay(
            host_origin=self.host_origin,
            context_origin=self.sandbox_origin,
            host_port=host_channel.port2,
            mediator_port=control_channel.port1,
        )
        self._mediator.attach_control(control_channel.port2)
        host_channel.port1.on_message(self._relay_handler(generation))
        self._relay = relay
        self._host_port = host_channel.port1

        manifest = CapabilityManifest(
            capabilities=self._store.snapshot().capabilities,
            host_origin=self.host_origin,
        )
        context = await self._factory.create(manifest, relay.receive)
        if generation != self._generation or self._closed:
            # Superseded while the primitive was building
            await context.destroy()
            return
        if context.origin.rstrip("/") != self.sandbox_origin:
            logger.error(
                "Context reports origin %s, expected %s; its messages will be dropped",
                context.origin,
                self.sandbox_origin,
            )
        self._context = context
        self._manifest = manifest
        self.cycles += 1
        logger.info(
            'Provisioned execution context %s (cycle %d, sandbox="%s")',
            context.context_id,
            self.cycles,
            manifest.to_attribute(),
        )
        await relay.attach_context(context)

    def _manifest_is_stale(self) -> bool:
        if self._closed or self._manifest is None:
            return False
        return self._manifest.capabilities != self._store.snapshot().capabilities

    async def _teardown(self) -> None:
        await self._heartbeat.stop()
        self._heartbeat.disconnect()

        relay, self._relay = self._relay, None
        self._host_port = None
        if relay is not None:
            relay.close()

        context, self._context = self._context, None
        self._manifest = None
        if context is not None:
            try:
                await context.destroy()
            except Exception:
                logger.exception("Failed to destroy execution context %s", context.context_id)

    async def _arm_heartbeat(self) -> None:
        channel = MessageChannel(self.host_origin, self.sandbox_origin)
        self._heartbeat.register_channel(channel.port1)
        await self._mediator.register_heartbeat(channel.port2)
        if self._run_heartbeat:
            self._heartbeat.start()

    async def _send_policy(self) -> None:
        if self._host_port is None:
            return
        command = SetPolicyCommand(rules=self._store.snapshot(), revision=self._store.revision)
        await self._host_port.post(command.to_wire())

    async def _on_integrity_failure(self, failure: IntegrityFailure) -> None:
        await self.reset(reason=f"integrity failure: {failure}")

    # -------------------------------------------------------------------------
    # Inbound from the relay
    # -------------------------------------------------------------------------

    def _relay_handler(self, generation: int) -> Callable[[str, Any], Any]:
        async def handler(origin: str, data: Any) -> None:
            if generation != self._generation or origin != self.sandbox_origin:
                return
            await self._on_relay_message(generation, data)

        return handler

    async def _on_relay_message(self, generation: int, data: Any) -> None:
        if data == READY:
            await self._on_ready(generation)
            return
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "LOG":
            try:
                event = TelemetryEvent.model_validate(data)
            except ValidationError:
                await self._emit("message", data)
                return
            await self._emit("log", event)
        elif kind == "RESET":
            await self.reset(reason="relay requested reset")
        else:
            await self._emit("message", data)

    async def _on_ready(self, generation: int) -> None:
        # The mediator may be scoped per trust domain and outlive the context,
        # so the policy is always resent to the fresh context's relay.
        await self._send_policy()
        if self._ready_generation == generation:
            return
        self._ready_generation = generation
        await self._emit("ready")
        await self._arm_heartbeat()


__all__ = ["EVENTS", "Supervisor"]
