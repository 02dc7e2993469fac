"""SafeSandbox exception hierarchy.

Base exceptions for all sandbox layers with correlation ID support.

Usage:
    from safesandbox.exceptions import PolicyViolation, UpstreamFailure

    try:
        await self._forward(request, snapshot)
    except UpstreamFailure as e:
        logger.warning("Forward failed", extra={"correlation_id": e.correlation_id})
"""

import uuid
from typing import Any


class SafeSandboxError(Exception):
    """Base exception for all SafeSandbox errors.

    Carries a correlation_id for tracing errors across trust domains.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class PolicyViolation(SafeSandboxError):
    """A request was rejected by the network policy.

    Raised during mediator evaluation and converted to a Block decision
    before it can leave the mediator.
    """

    def __init__(self, message: str, *, reason: str, status: int = 403, **kwargs):
        self.reason = reason
        self.status = status
        super().__init__(message, **kwargs)


class UpstreamFailure(SafeSandboxError):
    """A forwarded request failed at the network or proxy layer."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        details: dict[str, Any] | None = None,
        **kwargs,
    ):
        self.url = url
        self.details = details or {}
        super().__init__(message, **kwargs)


class IntegrityFailure(SafeSandboxError):
    """The mediator stopped answering heartbeats.

    Fatal to the current execution context, never to the supervisor.
    """

    def __init__(self, message: str, *, missed_count: int, **kwargs):
        self.missed_count = missed_count
        super().__init__(message, **kwargs)


class ProtocolViolation(SafeSandboxError):
    """A relay message came from an unexpected origin or was malformed."""

    def __init__(self, message: str, *, origin: str | None = None, **kwargs):
        self.origin = origin
        super().__init__(message, **kwargs)


class ConfigurationError(SafeSandboxError):
    """Errors from sandbox configuration."""

    pass
