"""Shared test fixtures for SafeSandbox.

Provides origins, an httpx mock transport, a mediator wired to it, and a
fake isolation primitive for supervisor tests.
"""

from collections.abc import AsyncGenerator, Callable

import httpx
import pytest

from safesandbox.mediator.engine import Mediator
from safesandbox.settings import Settings
from safesandbox.supervisor import Supervisor
from tests.mocks import HOST_ORIGIN, SANDBOX_ORIGIN, FakeContextFactory, TelemetryRecorder, UpstreamStub

# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="testing",
        debug=True,
        host_origin=HOST_ORIGIN,
        sandbox_origin=SANDBOX_ORIGIN,
        heartbeat_interval_seconds=0.01,
        heartbeat_threshold=5,
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() everywhere it was imported."""
    for module in (
        "safesandbox.settings",
        "safesandbox.heartbeat",
        "safesandbox.logging_config",
        "safesandbox.supervisor",
        "safesandbox.mediator.engine",
        "safesandbox.cli.main",
    ):
        monkeypatch.setattr(f"{module}.get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# MEDIATOR
# =============================================================================


@pytest.fixture
def upstream() -> UpstreamStub:
    """Programmable upstream behind httpx.MockTransport."""
    return UpstreamStub()


@pytest.fixture
async def http_client(upstream: UpstreamStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle)) as client:
        yield client


@pytest.fixture
def make_mediator(http_client: httpx.AsyncClient) -> Callable[..., Mediator]:
    def _make(**kwargs) -> Mediator:
        kwargs.setdefault("http_client", http_client)
        return Mediator(SANDBOX_ORIGIN, **kwargs)

    return _make


@pytest.fixture
def mediator(make_mediator: Callable[..., Mediator]) -> Mediator:
    return make_mediator()


@pytest.fixture
def telemetry(mediator: Mediator) -> TelemetryRecorder:
    """Collects everything the mediator emits on its control port."""
    return TelemetryRecorder.attach(mediator)


# =============================================================================
# SUPERVISOR
# =============================================================================


@pytest.fixture
def factory() -> FakeContextFactory:
    return FakeContextFactory(origin=SANDBOX_ORIGIN)


@pytest.fixture
async def supervisor(factory: FakeContextFactory, mediator: Mediator) -> AsyncGenerator[Supervisor, None]:
    sup = Supervisor(
        factory,
        mediator,
        host_origin=HOST_ORIGIN,
        sandbox_origin=SANDBOX_ORIGIN,
        run_heartbeat=False,
    )
    yield sup
    await sup.close()
