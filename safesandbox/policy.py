"""Network policy model and the single-owner policy store.

A policy is an immutable value. Updates never mutate a policy in place;
the store swaps the whole value so a request admitted by the mediator
always evaluates against one consistent snapshot.
"""

from enum import StrEnum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from safesandbox.context import DEFAULT_CAPABILITIES, Capability


class Scheme(StrEnum):
    """URL schemes the mediator can forward."""

    HTTP = "http"
    HTTPS = "https"


class CacheStrategy(StrEnum):
    """Caching strategies for the mediator's own assets."""

    NETWORK_FIRST = "network-first"
    CACHE_FIRST = "cache-first"
    NETWORK_ONLY = "network-only"


DEFAULT_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})


class NetworkPolicy(BaseModel):
    """Complete network policy for one trust domain.

    Field aliases match the wire shape sent to the mediator
    (``allow``, ``allowProtocols``, ``proxyUrl`` ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    # Fields that can only take effect when the context is constructed
    CONSTRUCTION_FIELDS: ClassVar[frozenset[str]] = frozenset({"capabilities"})

    version: Literal[1] = Field(default=1, description="Schema version")
    allowed_domains: frozenset[str] = Field(
        default_factory=frozenset,
        alias="allow",
        description="Domain suffixes external requests may reach",
    )
    allowed_protocols: frozenset[Scheme] = Field(
        default=frozenset(Scheme),
        alias="allowProtocols",
    )
    allowed_methods: frozenset[str] = Field(
        default=DEFAULT_METHODS,
        alias="allowMethods",
    )
    max_content_length: int | None = Field(
        default=None,
        ge=0,
        alias="maxContentLength",
        description="Largest declared response body released to the context",
    )
    proxy_url: str | None = Field(
        default=None,
        alias="proxyUrl",
        description="CORS proxy endpoint; requests are rewritten to ?url=<target>",
    )
    virtual_files: dict[str, str] = Field(
        default_factory=dict,
        alias="files",
        description="In-memory files served before any other check",
    )
    cache_strategy: CacheStrategy = Field(
        default=CacheStrategy.NETWORK_FIRST,
        alias="cacheStrategy",
    )
    capabilities: frozenset[Capability] = Field(
        default=DEFAULT_CAPABILITIES,
        description="Platform capability manifest (construction-time only)",
    )

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def _normalize_domains(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return frozenset(d.strip().lower().rstrip(".") for d in value if d and d.strip())

    @field_validator("allowed_protocols", mode="before")
    @classmethod
    def _normalize_protocols(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        # Accept both "https" and the URL-style "https:"
        return frozenset(str(p).strip().lower().rstrip(":") for p in value)

    @field_validator("allowed_methods", mode="before")
    @classmethod
    def _normalize_methods(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return frozenset(m.strip().upper() for m in value)

    @field_validator("proxy_url")
    @classmethod
    def _non_empty_proxy(cls, value: str | None) -> str | None:
        return value or None

    def allows_host(self, hostname: str) -> bool:
        """Whether ``hostname`` equals or is a subdomain of an allowed domain."""
        host = hostname.lower().rstrip(".")
        return any(host == d or host.endswith("." + d) for d in self.allowed_domains)

    def construction_changes(self, other: "NetworkPolicy") -> set[str]:
        """Names of construction-time fields that differ from ``other``."""
        return {name for name in self.CONSTRUCTION_FIELDS if getattr(self, name) != getattr(other, name)}

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the external JSON shape."""
        data = self.model_dump(mode="json", by_alias=True)
        # Sets serialize in arbitrary order
        for key in ("allow", "allowProtocols", "allowMethods", "capabilities"):
            data[key] = sorted(data[key])
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "NetworkPolicy":
        """Parse the external JSON shape."""
        return cls.model_validate(data)


class PolicyStore:
    """Holds the current policy and its revision.

    Owned exclusively by the supervisor. ``replace`` swaps the value in a
    single assignment; readers take ``snapshot()`` and keep it.
    """

    def __init__(self, policy: NetworkPolicy | None = None) -> None:
        self._current: tuple[int, NetworkPolicy] = (0, policy or NetworkPolicy())

    def snapshot(self) -> NetworkPolicy:
        return self._current[1]

    @property
    def revision(self) -> int:
        return self._current[0]

    def replace(self, policy: NetworkPolicy) -> tuple[NetworkPolicy, int]:
        """Swap in ``policy`` and return ``(previous, new_revision)``."""
        revision, previous = self._current
        self._current = (revision + 1, policy)
        return previous, revision + 1


__all__ = [
    "DEFAULT_METHODS",
    "CacheStrategy",
    "NetworkPolicy",
    "PolicyStore",
    "Scheme",
]
