"""Isolation primitive contracts.

The isolation primitive (an iframe on a sibling origin, a container, a
subprocess jail) is an external collaborator. The core only creates,
configures, navigates and destroys execution contexts through the
protocols below.

Capabilities are fixed when a context is constructed. Changing them
means destroying the context and creating a new one.
"""

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class Capability(StrEnum):
    """Platform-level permissions granted to an execution context."""

    SCRIPTS = "scripts"
    FORMS = "forms"
    POPUPS = "popups"
    MODALS = "modals"
    SAME_ORIGIN = "same-origin"  # Required for the mediator to intercept traffic


DEFAULT_CAPABILITIES: frozenset[Capability] = frozenset(Capability)


class CapabilityManifest(BaseModel):
    """Construction-time declaration of what a context may attempt."""

    model_config = ConfigDict(frozen=True)

    capabilities: frozenset[Capability] = Field(
        default=DEFAULT_CAPABILITIES,
        description="Enumerated capability set passed once at construction",
    )
    host_origin: str = Field(..., description="Origin allowed to drive the context")

    def to_attribute(self) -> str:
        """Render as an iframe-style ``sandbox`` attribute value."""
        return " ".join(f"allow-{cap.value}" for cap in sorted(self.capabilities))


# (origin, payload) delivered from the context to the trusted side
InboundHandler = Callable[[str, Any], Awaitable[None]]


@runtime_checkable
class ExecutionContext(Protocol):
    """Handle on one isolated execution context instance."""

    context_id: str
    origin: str

    async def post(self, message: Any) -> None:
        """Deliver a message into the context."""
        ...

    async def navigate(self, url: str) -> None:
        """Point the context at a new document."""
        ...

    async def destroy(self) -> None:
        """Tear the context down. Must be safe to call twice."""
        ...


@runtime_checkable
class ContextFactory(Protocol):
    """Creates execution contexts for the supervisor."""

    async def create(
        self,
        manifest: CapabilityManifest,
        inbound: InboundHandler,
    ) -> ExecutionContext:
        """Create a context; it reports back through ``inbound``."""
        ...


__all__ = [
    "DEFAULT_CAPABILITIES",
    "Capability",
    "CapabilityManifest",
    "ContextFactory",
    "ExecutionContext",
    "InboundHandler",
]
