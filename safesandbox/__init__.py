"""SafeSandbox: mediated, self-healing execution contexts for untrusted code.

Three parts work together:

- The mediator decides every outbound request from the sandbox
- The relay carries commands, policy and telemetry across the boundary
- The heartbeat rebuilds the sandbox when the mediator stops answering
"""

from safesandbox.context import Capability, CapabilityManifest, ContextFactory, ExecutionContext
from safesandbox.heartbeat import HeartbeatStatus, HeartbeatSupervisor
from safesandbox.mediator import InterceptedRequest, MediatedResponse, Mediator
from safesandbox.policy import CacheStrategy, NetworkPolicy, PolicyStore
from safesandbox.relay import Relay, RelayState
from safesandbox.supervisor import Supervisor
from safesandbox.telemetry import TelemetryEvent

__version__ = "0.1.0"

__all__ = [
    "CacheStrategy",
    "Capability",
    "CapabilityManifest",
    "ContextFactory",
    "ExecutionContext",
    "HeartbeatStatus",
    "HeartbeatSupervisor",
    "InterceptedRequest",
    "MediatedResponse",
    "Mediator",
    "NetworkPolicy",
    "PolicyStore",
    "Relay",
    "RelayState",
    "Supervisor",
    "TelemetryEvent",
]
