"""Unit tests for safesandbox/relay.py."""

from typing import Any

import pytest

from safesandbox.channel import MessageChannel
from safesandbox.context import CapabilityManifest
from safesandbox.exceptions import ConfigurationError
from safesandbox.relay import Relay, RelayState
from tests.mocks import HOST_ORIGIN, SANDBOX_ORIGIN, FakeContext


class Endpoint:
    """Collects what arrives on one side of a channel."""

    def __init__(self, port) -> None:
        self.port = port
        self.received: list[Any] = []
        port.on_message(self._collect)

    async def _collect(self, origin: str, data: Any) -> None:
        self.received.append(data)

    async def send(self, data: Any) -> None:
        await self.port.post(data)

    @property
    def logs(self) -> list[dict]:
        return [m for m in self.received if isinstance(m, dict) and m.get("type") == "LOG"]


@pytest.fixture
def wiring():
    host_channel = MessageChannel(HOST_ORIGIN, SANDBOX_ORIGIN)
    control_channel = MessageChannel(SANDBOX_ORIGIN, SANDBOX_ORIGIN)
    host = Endpoint(host_channel.port1)
    mediator = Endpoint(control_channel.port2)
    relay = Relay(
        host_origin=HOST_ORIGIN,
        context_origin=SANDBOX_ORIGIN,
        host_port=host_channel.port2,
        mediator_port=control_channel.port1,
    )
    context = FakeContext(SANDBOX_ORIGIN, relay.receive, CapabilityManifest(host_origin=HOST_ORIGIN))
    return relay, host, mediator, context


def execute(code: str) -> dict:
    return {"type": "EXECUTE", "code": code}


def test_rejects_shared_origin():
    channel = MessageChannel(HOST_ORIGIN, HOST_ORIGIN)
    with pytest.raises(ConfigurationError):
        Relay(host_origin=HOST_ORIGIN, context_origin=HOST_ORIGIN, host_port=channel.port1, mediator_port=channel.port2)


class TestOriginCheck:
    async def test_unknown_origin_dropped_and_counted(self, wiring):
        relay, host, _, context = wiring
        await relay.attach_context(context)
        await context.signal_ready()
        host.received.clear()

        await relay.receive("https://evil.example", execute("steal()"))

        assert context.executed == []
        assert relay.dropped_count == 1
        assert len(host.logs) == 1
        assert host.logs[0]["area"] == "security"
        assert host.logs[0]["data"] == {"dropped": 1}
        assert "steal" not in str(host.received)

    async def test_execute_from_context_dropped(self, wiring):
        relay, host, _, context = wiring
        await relay.attach_context(context)
        await context.signal_ready()

        await context.send(execute("self()"))

        assert context.executed == []
        assert relay.dropped_count == 1

    async def test_ready_from_host_dropped(self, wiring):
        relay, host, _, _ = wiring
        await host.send("READY")
        assert relay.state is RelayState.CONTEXT_NOT_READY
        assert relay.dropped_count == 1

    async def test_malformed_host_message_dropped(self, wiring):
        relay, host, _, _ = wiring
        await host.send({"type": "EXECUTE"})
        assert relay.dropped_count == 1


class TestExecuteQueue:
    async def test_queues_until_ready_in_order(self, wiring):
        relay, host, _, context = wiring
        await relay.attach_context(context)

        await host.send(execute("a"))
        await host.send(execute("b"))
        assert relay.queued == ["a", "b"]
        assert context.executed == []

        await context.signal_ready()
        await host.send(execute("c"))

        assert context.executed == ["a", "b", "c"]
        assert relay.queued == []
        assert host.received == ["READY"]

    async def test_ready_before_attach_is_announced_after_flush(self, wiring):
        relay, host, _, context = wiring
        await host.send(execute("a"))
        await context.signal_ready()
        assert host.received == []

        await relay.attach_context(context)

        assert context.executed == ["a"]
        assert host.received == ["READY"]

    async def test_no_duplicates_on_repeated_ready(self, wiring):
        relay, host, _, context = wiring
        await relay.attach_context(context)
        await host.send(execute("a"))
        await context.signal_ready()
        await context.signal_ready()
        assert context.executed == ["a"]


class TestForwarding:
    async def test_set_policy_goes_to_mediator(self, wiring):
        relay, host, mediator, context = wiring
        await host.send({"type": "SET_POLICY", "rules": {"allow": ["a.com"]}, "revision": 3})

        assert len(mediator.received) == 1
        sent = mediator.received[0]
        assert sent["type"] == "SET_POLICY"
        assert sent["rules"]["allow"] == ["a.com"]
        assert sent["revision"] == 3
        assert context.received == []

    async def test_reset_clears_queue_and_echoes(self, wiring):
        relay, host, _, context = wiring
        await host.send(execute("stale"))
        await host.send({"type": "RESET"})

        assert relay.queued == []
        assert host.received == [{"type": "RESET"}]

        await relay.attach_context(context)
        await context.signal_ready()
        assert context.executed == []

    async def test_reset_returns_to_not_ready(self, wiring):
        relay, host, _, context = wiring
        await relay.attach_context(context)
        await context.signal_ready()
        await host.send({"type": "RESET"})
        await host.send(execute("late"))

        assert relay.state is RelayState.CONTEXT_NOT_READY
        assert relay.queued == ["late"]
        assert context.executed == []

    async def test_context_log_forwarded(self, wiring):
        relay, host, _, context = wiring
        await context.log("hello")
        assert host.logs[0]["message"] == "hello"
        assert host.logs[0]["source"] == "context"

    async def test_free_form_context_payload_forwarded(self, wiring):
        relay, host, _, context = wiring
        await context.send({"custom": [1, 2, 3]})
        await context.send("plain text")
        assert host.received == [{"custom": [1, 2, 3]}, "plain text"]
        assert relay.dropped_count == 0

    async def test_mediator_telemetry_forwarded(self, wiring):
        relay, host, mediator, _ = wiring
        await mediator.send({"type": "LOG", "timestamp": 1, "level": "warn", "area": "security", "message": "Blocked"})
        assert host.logs[0]["message"] == "Blocked"

    async def test_mediator_commands_dropped(self, wiring):
        relay, host, mediator, context = wiring
        await relay.attach_context(context)
        await context.signal_ready()
        await mediator.send(execute("x"))
        assert context.executed == []
        assert relay.dropped_count == 1


async def test_closed_relay_ignores_traffic(wiring):
    relay, host, mediator, context = wiring
    await relay.attach_context(context)
    await host.send(execute("a"))
    relay.close()

    await context.signal_ready()
    await relay.receive(HOST_ORIGIN, execute("b"))

    assert relay.closed
    assert relay.queued == []
    assert context.executed == []
    assert host.received == []
