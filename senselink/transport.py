"""
Transport interface for SenseLink.

The chat transport (Matrix client, bridge, test double) is an external
collaborator. SenseLink only needs to send text to a room and to receive
inbound events; everything else about the connection lives outside.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("SenseLink.Transport")


@dataclass
class InboundEvent:
    """A message delivered by the transport, mutable in place.

    The dispatcher blanks ``body`` and ``formatted_body`` of handled protocol
    messages so no downstream consumer (including the agent) ever sees them.
    """

    room_id: str
    sender: str
    body: str
    formatted_body: Optional[str] = None
    event_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def blank(self):
        self.body = ""
        if self.formatted_body:
            self.formatted_body = ""


EventCallback = Callable[[InboundEvent], Awaitable[Any]]


class Transport(ABC):
    """Abstract chat transport."""

    name: str = "base"

    def __init__(self):
        self._subscribers: List[EventCallback] = []

    @abstractmethod
    async def send(self, room_id: str, text: str) -> bool:
        """Send *text* to *room_id*. Returns True if the transport accepted it."""

    async def inject(self, room_id: str, text: str) -> bool:
        """Deliver a natural-language message toward the agent.

        By default this is an ordinary room message, which the agent reads
        like any other chat.
        """
        return await self.send(room_id, text)

    def subscribe(self, callback: EventCallback):
        """Register *callback* to receive every inbound event, in order."""
        self._subscribers.append(callback)

    async def deliver(self, event: InboundEvent):
        """Feed an inbound event to subscribers (called by the transport glue)."""
        for callback in list(self._subscribers):
            await callback(event)


class MemoryTransport(Transport):
    """In-process transport that records everything it is asked to send."""

    name = "memory"

    def __init__(self):
        super().__init__()
        self.sent: List[Tuple[str, str]] = []
        self.injected: List[Tuple[str, str]] = []

    async def send(self, room_id: str, text: str) -> bool:
        self.sent.append((room_id, text))
        return True

    async def inject(self, room_id: str, text: str) -> bool:
        self.injected.append((room_id, text))
        return True
