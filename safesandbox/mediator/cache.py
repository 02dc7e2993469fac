"""Cache strategies for the mediator's own assets.

The persistent store is a collaborator (``open`` / ``match`` / ``put``
keyed by request identity). :class:`InMemoryCacheStore` is the default
and what the tests use.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict, Field

from safesandbox.policy import CacheStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class CachedResponse(BaseModel):
    """A stored response body with the headers needed to replay it."""

    model_config = ConfigDict(frozen=True)

    url: str
    status: int = 200
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""


class Cache(Protocol):
    async def match(self, key: str) -> CachedResponse | None: ...

    async def put(self, key: str, entry: CachedResponse) -> None: ...


class CacheStore(Protocol):
    async def open(self, name: str) -> Cache: ...


class InMemoryCache:
    def __init__(self) -> None:
        self._entries: dict[str, CachedResponse] = {}

    async def match(self, key: str) -> CachedResponse | None:
        return self._entries.get(key)

    async def put(self, key: str, entry: CachedResponse) -> None:
        self._entries[key] = entry

    def __len__(self) -> int:
        return len(self._entries)


class InMemoryCacheStore:
    """Named caches kept in process memory."""

    def __init__(self) -> None:
        self._caches: dict[str, InMemoryCache] = {}

    async def open(self, name: str) -> InMemoryCache:
        return self._caches.setdefault(name, InMemoryCache())


def request_key(method: str, url: str) -> str:
    """Cache identity of a request."""
    return f"{method.upper()} {url}"


class CacheOutcome(BaseModel):
    """What the cache manager did for one request."""

    model_config = ConfigDict(frozen=True)

    response: CachedResponse
    from_cache: bool


class CacheManager:
    """Applies a :class:`CacheStrategy` around a network fetch.

    ``fetch`` is the network call; it raises on transport failure and
    returns a :class:`CachedResponse` otherwise. Only successful GET
    responses are written.
    """

    def __init__(self, store: CacheStore, cache_name: str) -> None:
        self._store = store
        self._cache_name = cache_name

    async def resolve(
        self,
        method: str,
        url: str,
        strategy: CacheStrategy,
        fetch: Callable[[], Awaitable[CachedResponse]],
    ) -> CacheOutcome:
        if strategy is CacheStrategy.NETWORK_ONLY:
            return CacheOutcome(response=await fetch(), from_cache=False)

        cache = await self._store.open(self._cache_name)
        key = request_key(method, url)

        if strategy is CacheStrategy.CACHE_FIRST:
            cached = await cache.match(key)
            if cached is not None:
                return CacheOutcome(response=cached, from_cache=True)
            response = await fetch()
            await self._store_if_cacheable(cache, key, method, response)
            return CacheOutcome(response=response, from_cache=False)

        # Network first: refresh on success, fall back to cache on failure
        try:
            response = await fetch()
        except Exception:
            cached = await cache.match(key)
            if cached is None:
                raise
            logger.debug("Network failed for %s, serving cached copy", url)
            return CacheOutcome(response=cached, from_cache=True)
        await self._store_if_cacheable(cache, key, method, response)
        return CacheOutcome(response=response, from_cache=False)

    @staticmethod
    async def _store_if_cacheable(cache: Cache, key: str, method: str, response: CachedResponse) -> None:
        if method.upper() == "GET" and 200 <= response.status < 300:
            await cache.put(key, response)
