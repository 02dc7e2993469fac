"""Request mediation engine.

The mediator sits in front of every outbound request from the execution
context and resolves it to exactly one :data:`Decision`, in a fixed
precedence order:

1. Virtual file on the request path
2. Same-origin asset, through the configured cache strategy
3. Scheme not allowed
4. Method not allowed
5. Hostname outside the allow list
6. Allowed with a proxy: rewrite to ``proxyUrl?url=<target>``
7. Allowed without a proxy: forward directly
8. Anything else: block, naming the URL

Policy violations and upstream failures are raised internally and
converted to :class:`Block` decisions here; :meth:`Mediator.handle`
never raises.

Content length is enforced against the declared ``content-length``
header only. A response without that header that streams past the
limit is not caught.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urljoin

import httpx

from safesandbox.exceptions import PolicyViolation, ProtocolViolation, UpstreamFailure
from safesandbox.mediator.cache import CachedResponse, CacheManager, CacheStore, InMemoryCacheStore
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
from safesandbox.mediator.vfs import VirtualFS
from safesandbox.messages import CONNECTED, PING, PONG, SetPolicyCommand, parse_message
from safesandbox.policy import NetworkPolicy
from safesandbox.settings import get_settings
from safesandbox.telemetry import (
    TelemetryArea,
    TelemetryLevel,
    make_event,
    serialize_error,
    serialize_network,
)

if TYPE_CHECKING:
    from safesandbox.channel import MessagePort

logger = logging.getLogger(__name__)

# encodeURIComponent leaves these unescaped in addition to [A-Za-z0-9_.-~]
_URI_COMPONENT_SAFE = "!~*'()"

# Transfer-specific headers that no longer describe the released body
_HOP_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding", "connection"})

_PROXY_HINT = "Set proxyUrl in the network policy to route this request through the CORS proxy"


def proxy_target(proxy_url: str, url: str, origin: str) -> str:
    """Rewrite ``url`` to go through the CORS proxy.

    Relative proxy URLs (``/_proxy``) resolve against the mediator's origin.
    """
    base = urljoin(origin + "/", proxy_url) if proxy_url.startswith("/") else proxy_url
    return f"{base}?url={quote(url, safe=_URI_COMPONENT_SAFE)}"


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _release_headers(response: httpx.Response) -> dict[str, str]:
    return {k.lower(): v for k, v in response.headers.items() if k.lower() not in _HOP_HEADERS}


def check_request(request: InterceptedRequest, policy: NetworkPolicy) -> None:
    """Raise :class:`PolicyViolation` if the request may not leave the sandbox."""
    if request.protocol not in policy.allowed_protocols:
        raise PolicyViolation(
            f"Blocked: protocol '{request.protocol}' not allowed for {request.url}",
            reason=BlockReason.PROTOCOL,
        )
    if request.method not in policy.allowed_methods:
        raise PolicyViolation(
            f"Blocked: method {request.method} not allowed for {request.url}",
            reason=BlockReason.METHOD,
        )
    if not request.hostname:
        raise PolicyViolation(f"Blocked: no rule matches {request.url}", reason=BlockReason.NO_MATCH)
    if not policy.allows_host(request.hostname):
        raise PolicyViolation(
            f"Blocked: {request.hostname} is not in the allow list ({request.url})",
            reason=BlockReason.DOMAIN,
        )


def evaluate(
    request: InterceptedRequest,
    policy: NetworkPolicy,
    origin: str,
    files: VirtualFS | None = None,
) -> Decision:
    """Resolve a request to a decision without touching the network.

    ``files`` is the virtual filesystem paired with ``policy``; one is built
    from the policy when omitted. Forwarded requests may still turn into a
    too-large or upstream-failure block once the response arrives.
    """
    if files is None:
        files = VirtualFS(policy.virtual_files)
    content = files.lookup(request.path)
    if content is not None:
        return ServeVirtual(path=request.path, content=content)

    if request.hostname and request.origin == origin.rstrip("/").lower():
        return Forward(target=request.url, local=True)

    try:
        check_request(request, policy)
    except PolicyViolation as e:
        return Block(reason=BlockReason(e.reason), message=str(e), status=e.status)

    if policy.proxy_url:
        return Forward(target=proxy_target(policy.proxy_url, request.url, origin), via_proxy=True)
    return Forward(target=request.url)


class Mediator:
    """Policy enforcement point for one trust domain.

    Scoped per trust domain, not per execution context: it survives
    supervisor resets, and so do its virtual files and cache. It talks to
    the rest of the system only through two ports: the control port
    (``SET_POLICY`` in, ``LOG`` out) and the private heartbeat port.

    Usage::

        mediator = Mediator("http://sandbox.localhost:3333")
        response = await mediator.handle(
            InterceptedRequest.build("GET", "https://example.com/", context_id=ctx.context_id)
        )
    """

    def __init__(
        self,
        origin: str | None = None,
        *,
        policy: NetworkPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        cache_store: CacheStore | None = None,
        cache_name: str | None = None,
    ) -> None:
        settings = get_settings()
        self.origin = (origin or settings.sandbox_origin).rstrip("/")
        initial = policy or NetworkPolicy()
        # Policy and virtual files swap together so a request sees one pair
        self._state: tuple[NetworkPolicy, VirtualFS] = (initial, VirtualFS(initial.virtual_files))
        self._revision = 0
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)
        self._cache = CacheManager(cache_store or InMemoryCacheStore(), cache_name or settings.cache_name)
        self._control_port: MessagePort | None = None
        self._heartbeat_port: MessagePort | None = None
        self._disabled = False

    @property
    def policy(self) -> NetworkPolicy:
        return self._state[0]

    @property
    def revision(self) -> int:
        return self._revision

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    def attach_control(self, port: MessagePort) -> None:
        """Bind the control port of the current relay, replacing any previous one."""
        if self._control_port is not None and self._control_port is not port:
            self._control_port.close()
        port.on_message(self._on_control)
        self._control_port = port

    async def register_heartbeat(self, port: MessagePort) -> None:
        """Accept a heartbeat channel and announce the connection on it."""
        if self._heartbeat_port is not None and self._heartbeat_port is not port:
            self._heartbeat_port.close()
        port.on_message(self._on_heartbeat)
        self._heartbeat_port = port
        if not self._disabled:
            await port.post(CONNECTED)

    def disable(self) -> None:
        """Stop answering heartbeats, as an unregistered or crashed mediator would."""
        self._disabled = True

    def enable(self) -> None:
        self._disabled = False

    async def apply_policy(self, policy: NetworkPolicy, revision: int | None = None) -> None:
        """Replace the policy wholesale, then acknowledge it."""
        self._state = (policy, VirtualFS(policy.virtual_files))
        self._revision = revision if revision is not None else self._revision + 1
        await self._emit(
            self._control_port,
            TelemetryLevel.LOG,
            TelemetryArea.SECURITY,
            f"Policy updated (proxy: {policy.proxy_url or 'OFF'})",
            {
                "revision": self._revision,
                "allow": sorted(policy.allowed_domains),
                "files": sorted(policy.virtual_files),
            },
        )

    async def _on_control(self, origin: str, data: Any) -> None:
        if origin != self.origin:
            logger.debug("Ignoring control message from %s", origin)
            return
        try:
            message = parse_message(data)
        except ProtocolViolation:
            logger.debug("Ignoring malformed control message")
            return
        match message:
            case SetPolicyCommand(rules=rules, revision=revision):
                await self.apply_policy(rules, revision)
            case _:
                logger.debug("Ignoring %s on control port", type(message).__name__)

    async def _on_heartbeat(self, origin: str, data: Any) -> None:
        if self._disabled or data != PING or self._heartbeat_port is None:
            return
        await self._heartbeat_port.post(PONG)

    async def _emit(
        self,
        port: MessagePort | None,
        level: TelemetryLevel,
        area: TelemetryArea,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = make_event(level, area, message, data)
        logger.debug("%s: %s", area.value, message)
        if port is None or not await port.post(event.to_wire()):
            logger.debug("Telemetry dropped, no relay attached")

    # -------------------------------------------------------------------------
    # Interception
    # -------------------------------------------------------------------------

    async def handle(self, request: InterceptedRequest) -> MediatedResponse:
        """Resolve one intercepted request. Never raises."""
        # Telemetry goes to the relay that was attached when the request arrived
        policy, vfs = self._state
        port = self._control_port
        try:
            return await self._decide(request, policy, vfs, port)
        except Exception as e:
            logger.exception("Unexpected mediator failure for %s", request.url)
            return await self._block(
                request,
                Block(
                    reason=BlockReason.UPSTREAM_FAILURE,
                    message=f"Mediator error for {request.url}",
                    status=502,
                    details=serialize_error(e, request.url),
                ),
                port,
            )

    async def _decide(
        self,
        request: InterceptedRequest,
        policy: NetworkPolicy,
        vfs: VirtualFS,
        port: MessagePort | None,
    ) -> MediatedResponse:
        decision = evaluate(request, policy, self.origin, vfs)
        match decision:
            case ServeVirtual(content=content):
                return await self._serve_virtual(request, content, vfs, port)
            case Block():
                return await self._block(request, decision, port)
            case Forward(local=True):
                return await self._serve_local(request, policy, port)
            case Forward(target=target, via_proxy=via_proxy):
                try:
                    return await self._forward(request, target, via_proxy, policy, port)
                except PolicyViolation as e:
                    return await self._block(
                        request, Block(reason=BlockReason(e.reason), message=str(e), status=e.status), port
                    )
                except UpstreamFailure as e:
                    return await self._block(
                        request,
                        Block(reason=BlockReason.UPSTREAM_FAILURE, message=str(e), status=502, details=e.details),
                        port,
                        level=TelemetryLevel.ERROR,
                    )
        raise AssertionError(f"Unhandled decision {decision!r}")

    async def _serve_virtual(
        self, request: InterceptedRequest, content: str, vfs: VirtualFS, port: MessagePort | None
    ) -> MediatedResponse:
        if vfs.mark_served(request.path):
            await self._emit(
                port,
                TelemetryLevel.LOG,
                TelemetryArea.NETWORK,
                f"Virtual file: {request.method} {request.path}",
                {"path": request.path, "method": request.method, "status": 200},
            )
        return MediatedResponse(
            request_id=request.request_id,
            decision=ServeVirtual(path=request.path, content=content),
            status=200,
            headers={"content-type": "text/plain"},
            body=content.encode(),
        )

    async def _serve_local(
        self, request: InterceptedRequest, policy: NetworkPolicy, port: MessagePort | None
    ) -> MediatedResponse:
        async def fetch() -> CachedResponse:
            upstream = await self._client.request(
                request.method, request.url, headers=request.headers, content=request.body
            )
            return CachedResponse(
                url=request.url,
                status=upstream.status_code,
                headers=_release_headers(upstream),
                body=upstream.content,
            )

        try:
            outcome = await self._cache.resolve(request.method, request.url, policy.cache_strategy, fetch)
        except httpx.HTTPError as e:
            return await self._block(
                request,
                Block(
                    reason=BlockReason.UPSTREAM_FAILURE,
                    message=f"Fetch Error: {request.method} {request.url} - {e}",
                    status=502,
                    details=serialize_error(e, request.url),
                ),
                port,
                level=TelemetryLevel.ERROR,
            )

        entry = outcome.response
        if outcome.from_cache:
            decision: ServeCache | Forward = ServeCache(entry=entry)
            message = f"Cache hit: {request.method} {request.url}"
        else:
            decision = Forward(target=request.url)
            message = f"Fetch: {request.method} {request.url} -> {entry.status}"
        await self._emit(
            port,
            TelemetryLevel.LOG,
            TelemetryArea.NETWORK,
            message,
            {
                "url": request.url,
                "method": request.method,
                "status": entry.status,
                "cacheStrategy": policy.cache_strategy.value,
                "fromCache": outcome.from_cache,
            },
        )
        return MediatedResponse(
            request_id=request.request_id,
            decision=decision,
            status=entry.status,
            headers=entry.headers,
            body=entry.body,
        )

    async def _forward(
        self,
        request: InterceptedRequest,
        target: str,
        via_proxy: bool,
        policy: NetworkPolicy,
        port: MessagePort | None,
    ) -> MediatedResponse:
        limit = policy.max_content_length
        try:
            async with self._client.stream(
                request.method, target, headers=request.headers, content=request.body
            ) as upstream:
                declared = _declared_length(upstream)
                if limit is not None and declared is not None and declared > limit:
                    # Leaving the block closes the stream unread
                    raise PolicyViolation(
                        f"Blocked: response for {request.url} declares {declared} bytes (limit {limit})",
                        reason=BlockReason.TOO_LARGE,
                        status=413,
                    )
                body = await upstream.aread()
        except httpx.HTTPError as e:
            details = serialize_error(e, request.url)
            if not via_proxy:
                details["hint"] = _PROXY_HINT
            raise UpstreamFailure(
                f"Fetch Error: {request.method} {request.url} - {e}",
                url=request.url,
                details=details,
            ) from e

        await self._emit(
            port,
            TelemetryLevel.LOG,
            TelemetryArea.NETWORK,
            f"Fetch: {request.method} {request.url} -> {upstream.status_code}",
            {**serialize_network(request.method, request.url, upstream), "target": target, "viaProxy": via_proxy},
        )
        return MediatedResponse(
            request_id=request.request_id,
            decision=Forward(target=target, via_proxy=via_proxy),
            status=upstream.status_code,
            headers=_release_headers(upstream),
            body=body,
        )

    async def _block(
        self,
        request: InterceptedRequest,
        block: Block,
        port: MessagePort | None,
        *,
        level: TelemetryLevel = TelemetryLevel.WARN,
        area: TelemetryArea = TelemetryArea.SECURITY,
    ) -> MediatedResponse:
        await self._emit(
            port,
            level,
            area,
            block.message,
            {
                "url": request.url,
                "method": request.method,
                "reason": block.reason.value,
                "status": block.status,
                **block.details,
            },
        )
        return MediatedResponse(
            request_id=request.request_id,
            decision=block,
            status=block.status,
            headers={"content-type": "text/plain"},
            body=block.message.encode(),
        )

    async def aclose(self) -> None:
        """Release the HTTP client if the mediator created it."""
        if self._control_port is not None:
            self._control_port.close()
        if self._heartbeat_port is not None:
            self._heartbeat_port.close()
        if self._owns_client:
            await self._client.aclose()


__all__ = ["Mediator", "check_request", "evaluate", "proxy_target"]
