"""Requests seen by the mediator and the decisions it resolves them to."""

import uuid
from enum import StrEnum
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from safesandbox.mediator.cache import CachedResponse


class InterceptedRequest(BaseModel):
    """An outbound request from the execution context. Immutable once admitted."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    context_id: str = Field(..., description="Execution context that issued the request")
    method: str
    url: str
    protocol: str = Field(..., description="URL scheme without the colon")
    hostname: str
    path: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes | None = None

    @property
    def origin(self) -> str:
        """``scheme://host[:port]`` with the host lower-cased and userinfo dropped."""
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        try:
            port = urlsplit(self.url).port
        except ValueError:
            port = None
        return f"{self.protocol}://{host}" if port is None else f"{self.protocol}://{host}:{port}"

    @classmethod
    def build(
        cls,
        method: str,
        url: str,
        *,
        context_id: str,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> "InterceptedRequest":
        """Parse ``url`` and build a request.

        Unparseable URLs produce an empty hostname so the mediator can
        still resolve them to a block.
        """
        try:
            parts = urlsplit(url)
            hostname = parts.hostname or ""
        except ValueError:
            parts = urlsplit("")
            hostname = ""
        return cls(
            context_id=context_id,
            method=method.upper(),
            url=url,
            protocol=parts.scheme.lower(),
            hostname=hostname,
            path=parts.path or "/",
            headers=headers or {},
            body=body,
        )


class BlockReason(StrEnum):
    PROTOCOL = "protocol"
    METHOD = "method"
    DOMAIN = "domain"
    TOO_LARGE = "too-large"
    UPSTREAM_FAILURE = "upstream-failure"
    NO_MATCH = "no-match"


class ServeVirtual(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["serve-virtual"] = "serve-virtual"
    path: str
    content: str


class ServeCache(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["serve-cache"] = "serve-cache"
    entry: CachedResponse


class Forward(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["forward"] = "forward"
    target: str = Field(..., description="URL actually fetched")
    via_proxy: bool = False
    local: bool = Field(default=False, description="Same-origin asset, served through the cache strategy")


class Block(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["block"] = "block"
    reason: BlockReason
    message: str
    status: int = 403
    details: dict[str, object] = Field(default_factory=dict)


Decision = ServeVirtual | ServeCache | Forward | Block


class MediatedResponse(BaseModel):
    """What the execution context receives for one intercepted request."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    decision: Decision = Field(..., discriminator="kind")
    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    @property
    def blocked(self) -> bool:
        return isinstance(self.decision, Block)
