"""
Realtime fanout of message state changes to dashboard sessions.

Delivery is best-effort: a subscriber that fails is logged and dropped, and
clients connecting late only see events published after they subscribed.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect

from inbox.schemas import MessageOut, MessageRecord

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], Awaitable[None]]


class EventKind(str, Enum):
    CREATED = "message:created"
    UPDATED = "message:updated"
    DELETED = "message:deleted"


@dataclass
class MessageEvent:
    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def created(cls, record: MessageRecord) -> "MessageEvent":
        return cls(EventKind.CREATED, _project(record))

    @classmethod
    def updated(cls, record: MessageRecord) -> "MessageEvent":
        return cls(EventKind.UPDATED, _project(record))

    @classmethod
    def deleted(cls, message_id: str) -> "MessageEvent":
        return cls(EventKind.DELETED, {"id": message_id})

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.kind.value, "data": self.data}


def _project(record: MessageRecord) -> dict[str, Any]:
    return MessageOut.from_record(record).model_dump(mode="json", by_alias=True)


class EventBroadcaster:
    """
    In-process fanout. ``publish`` runs inside webhook and reply requests, so it
    never waits on a slow client: dashboard sessions get a bounded queue that is
    filled with ``put_nowait``, and other subscribers are cut off after
    ``send_timeout`` seconds.
    """

    def __init__(self, send_timeout: float = 1.0, max_pending: int = 100) -> None:
        self.send_timeout = send_timeout
        self.max_pending = max_pending
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        """Add a subscriber. Returns a function that removes it again."""
        self._subscribers.append(handler)

        def remove() -> None:
            try:
                self._subscribers.remove(handler)
            except ValueError:
                pass
        return remove

    def open_queue(self) -> tuple[asyncio.Queue, Callable[[], None]]:
        """
        Subscribe a bounded queue. A queue that is full when an event arrives
        is dropped, like any other failing subscriber.

        Returns:
            (queue, unsubscribe)
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)

        async def enqueue(message: dict[str, Any]) -> None:
            queue.put_nowait(message)

        return queue, self.subscribe(enqueue)

    async def publish(self, event: MessageEvent) -> int:
        """
        Deliver an event to every current subscriber. Never raises.

        Returns:
            Number of subscribers that received the event
        """
        message = event.to_wire()
        delivered = 0
        for handler in list(self._subscribers):
            try:
                await asyncio.wait_for(handler(message), timeout=self.send_timeout)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime subscriber after failed send of {event.kind.value}: {e!r}")
                try:
                    self._subscribers.remove(handler)
                except ValueError:
                    pass
        logger.debug(f"Published {event.kind.value} to {delivered} subscriber(s)")
        return delivered

    async def serve(self, websocket: WebSocket) -> None:
        """
        Run one dashboard session: acknowledge, then stream events until the
        client goes away. Inbound client frames are read and ignored.
        """
        await websocket.accept()
        # Subscribed before the ack, so anything published after it is queued
        queue, unsubscribe = self.open_queue()
        try:
            await websocket.send_json({"event": "connected", "data": {"ok": True}})
        except Exception:
            unsubscribe()
            raise
        writer = asyncio.create_task(self._drain(queue, websocket, unsubscribe))
        logger.info(f"Realtime session connected, sessions={self.subscriber_count}")
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
            logger.info(f"Realtime session disconnected, sessions={self.subscriber_count}")

    async def _drain(
        self,
        queue: asyncio.Queue,
        websocket: WebSocket,
        unsubscribe: Callable[[], None],
    ) -> None:
        while True:
            message = await queue.get()
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Realtime session send failed, unsubscribing: {e!r}")
                unsubscribe()
                return
