"""Request mediation for the sandbox trust domain.

The mediator intercepts every outbound request from the execution
context and resolves it against the current network policy.
"""

from safesandbox.mediator.cache import CachedResponse, CacheManager, InMemoryCacheStore
from safesandbox.mediator.decisions import (
    Block,
    BlockReason,
    Decision,
    Forward,
    InterceptedRequest,
    MediatedResponse,
    ServeCache,
    ServeVirtual,
)
from safesandbox.mediator.engine import Mediator, evaluate, proxy_target
from safesandbox.mediator.vfs import VirtualFS

__all__ = [
    # Engine
    "Mediator",
    "evaluate",
    "proxy_target",
    # Decisions
    "Block",
    "BlockReason",
    "Decision",
    "Forward",
    "InterceptedRequest",
    "MediatedResponse",
    "ServeCache",
    "ServeVirtual",
    # Storage
    "CacheManager",
    "CachedResponse",
    "InMemoryCacheStore",
    "VirtualFS",
]
