"""Real-time fan-out of queue events.

Connected displays (WebSocket or Server-Sent Events) are registered with
the :class:`ConnectionManager`.  The coordinator publishes from whatever
thread served the request; messages go into an outbox on the event loop
and a single dispatcher task delivers them in order.  Delivery is
fire-and-forget: an observer that fails is dropped and has to reconnect,
at which point it receives a fresh snapshot.

When Redis is configured every event is mirrored to a pub/sub channel so
other processes (e.g. a wall display service) can follow the queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import redis
from fastapi import WebSocket

logger = logging.getLogger(__name__)


def make_message(event: str, payload: Any) -> Dict[str, Any]:
    return {
        "event": event,
        "data": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class Observer:
    """Something that can receive event messages."""

    async def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError


class WebSocketObserver(Observer):
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(message))


class StreamObserver(Observer):
    """Buffers messages for a Server-Sent Events response."""

    def __init__(self, maxsize: int = 100) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, message: Dict[str, Any]) -> None:
        # A slow reader loses its stream instead of holding up the others.
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.closed = True
            raise

    async def get(self, timeout: float) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class ConnectionManager:
    """Tracks connected observers and broadcasts events to them."""

    def __init__(self) -> None:
        self._observers: Set[Observer] = set()
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch())

    async def stop(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
        self._loop = None
        self._outbox = None

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        """Queue an event for delivery; safe to call from any thread."""
        loop, outbox = self._loop, self._outbox
        if loop is None or outbox is None or loop.is_closed():
            logger.debug("Fan-out not running, dropping %s event", event)
            return
        loop.call_soon_threadsafe(outbox.put_nowait, make_message(event, payload))

    async def _dispatch(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.broadcast(message)
            except Exception:
                logger.exception("Broadcast of %s failed", message.get("event"))

    async def connect(self, observer: Observer, snapshot: Callable[[], Dict[str, Any]]) -> None:
        """Send the initial state, then register for broadcasts.

        Both happen under the broadcast lock so no event can reach the
        observer ahead of its snapshot.  ``snapshot`` takes the coordinator
        lock, so it runs in a worker thread.
        """
        async with self._lock:
            state = await asyncio.to_thread(snapshot)
            await observer.send(make_message("initial-state", state))
            self._observers.add(observer)
        logger.info("Observer connected (%d total)", len(self._observers))

    async def disconnect(self, observer: Observer) -> None:
        async with self._lock:
            self._observers.discard(observer)
        logger.info("Observer disconnected (%d total)", len(self._observers))

    async def broadcast(self, message: Dict[str, Any]) -> None:
        async with self._lock:
            observers = list(self._observers)
            closed: List[Observer] = []
            for observer in observers:
                try:
                    await observer.send(message)
                except Exception as e:
                    logger.warning("Dropping observer after failed send: %s", e)
                    closed.append(observer)
            for observer in closed:
                self._observers.discard(observer)

    def get_total_connections(self) -> int:
        return len(self._observers)


class RedisPublisher:
    """Mirrors events to a Redis pub/sub channel.

    ``publish`` only enqueues; a worker thread owns the client, so a slow
    or unreachable Redis never holds up the coordinator.
    """

    def __init__(self, client: "redis.Redis", channel: str) -> None:
        self.client = client
        self.channel = channel
        self._outbox: "queue.Queue[Optional[str]]" = queue.Queue()
        self._worker = threading.Thread(target=self._run, name="redis-publisher", daemon=True)
        self._worker.start()

    @classmethod
    def from_url(cls, url: str, channel: str) -> Optional["RedisPublisher"]:
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed, events will not be mirrored: %s", e)
            return None
        return cls(client, channel)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        self._outbox.put(json.dumps(make_message(event, payload)))

    def _run(self) -> None:
        while True:
            data = self._outbox.get()
            if data is None:
                break
            try:
                self.client.publish(self.channel, data)
            except redis.RedisError as e:
                logger.warning("Redis publish error: %s", e)

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is already queued, then close the client."""
        self._outbox.put(None)
        self._worker.join(timeout)
        self.client.close()


class Broadcaster:
    """Hands each event to every configured sink."""

    def __init__(self, *sinks: Any) -> None:
        self.sinks = [s for s in sinks if s is not None]

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event, payload)
            except Exception:
                logger.exception("Event sink %r failed on %s", sink, event)
