"""Message ports between trust domains.

Trust domains never share objects. Everything that crosses a boundary
goes through a :class:`MessagePort`, which deep-copies the payload
(structured clone semantics) and stamps it with the sender's origin.
Posting is an awaited step; delivery order per port is FIFO.

Usage::

    channel = MessageChannel("http://localhost:3333", "http://sandbox.localhost:3333")
    channel.port2.on_message(handler)  # handler(origin, data)
    await channel.port1.post("PING")
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    MessageHandler = Callable[[str, Any], Awaitable[None]]

logger = logging.getLogger(__name__)


class MessagePort:
    """One end of a :class:`MessageChannel`."""

    def __init__(self, origin: str) -> None:
        self.origin = origin
        self._peer: MessagePort | None = None
        self._handler: MessageHandler | None = None
        self._closed = False

    def on_message(self, handler: MessageHandler | None) -> None:
        """Install the coroutine receiving ``(origin, data)`` for this port."""
        self._handler = handler

    @property
    def closed(self) -> bool:
        return self._closed

    async def post(self, data: Any) -> bool:
        """Send ``data`` to the peer port.

        Returns False when the message was dropped because either end is
        closed or the peer has no handler.
        """
        peer = self._peer
        if self._closed or peer is None or peer._closed or peer._handler is None:
            return False
        try:
            await peer._handler(self.origin, copy.deepcopy(data))
        except Exception:
            # A failing receiver never surfaces on the sending side
            logger.exception("Message handler failed on port %s", peer.origin)
        return True

    def close(self) -> None:
        """Close this end. Traffic in both directions is dropped afterwards."""
        self._closed = True
        self._handler = None


class MessageChannel:
    """A pair of entangled ports.

    ``port1`` is stamped with ``origin1`` and ``port2`` with ``origin2``.
    """

    def __init__(self, origin1: str, origin2: str) -> None:
        self.port1 = MessagePort(origin1)
        self.port2 = MessagePort(origin2)
        self.port1._peer = self.port2
        self.port2._peer = self.port1

    def close(self) -> None:
        self.port1.close()
        self.port2.close()


__all__ = ["MessageChannel", "MessagePort"]
