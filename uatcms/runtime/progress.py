from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HubMessage:
    channel: str
    event: str
    data: dict[str, Any]
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"channel": self.channel, "event": self.event, "data": self.data, "created_at": self.created_at}


# Marks the end of a channel on subscriber queues.
CLOSED = object()


class ProgressHub:
    """In-process fan-out of live events to subscribers.

    Channels are run ids and batch ids. Publishing never blocks: a slow subscriber
    whose buffer is full loses its oldest buffered message. Only the latest
    `progress` message per channel is kept for polling readers.
    """

    def __init__(self, *, subscriber_buffer: int = 256) -> None:
        self._subscriber_buffer = int(subscriber_buffer)
        self._subscribers: dict[str, set[asyncio.Queue[Any]]] = defaultdict(set)
        self._latest: dict[str, HubMessage] = {}

    def publish(self, channel: str, event: str, data: dict[str, Any]) -> HubMessage:
        msg = HubMessage(channel=channel, event=event, data=data)
        if event == "progress":
            self._latest[channel] = msg
        for q in list(self._subscribers.get(channel, ())):
            self._offer(q, msg)
        return msg

    def close(self, channel: str) -> None:
        """End every subscription on `channel` and forget its latest progress."""
        self._latest.pop(channel, None)
        for q in list(self._subscribers.pop(channel, ())):
            self._offer(q, CLOSED)

    def latest(self, channel: str) -> HubMessage | None:
        return self._latest.get(channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    @staticmethod
    def _offer(q: asyncio.Queue[Any], item: Any) -> None:
        if q.full():
            try:
                q.get_nowait()
            except asyncio.QueueEmpty:
                pass
        q.put_nowait(item)

    def attach(self, channel: str) -> asyncio.Queue[Any]:
        """Register a raw subscriber queue. Items are HubMessage or `CLOSED`."""
        q: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._subscriber_buffer)
        self._subscribers[channel].add(q)
        return q

    def detach(self, channel: str, q: asyncio.Queue[Any]) -> None:
        subs = self._subscribers.get(channel)
        if subs is not None:
            subs.discard(q)
            if not subs:
                self._subscribers.pop(channel, None)

    async def subscribe(self, channel: str) -> AsyncIterator[HubMessage]:
        q = self.attach(channel)
        try:
            while True:
                item = await q.get()
                if item is CLOSED:
                    return
                yield item
        finally:
            self.detach(channel, q)
