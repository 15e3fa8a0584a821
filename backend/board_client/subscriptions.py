"""
Change-feed subscriptions for the board client.

A Subscription is an async iterator of immutable snapshots read from one
/ws/command connection. It reconnects with exponential backoff, can be
restarted with a fresh URL (new access token) and is closed explicitly.
SubscriptionManager owns every live Subscription by purpose key so a view
change tears them all down in one call.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from services.command.snapshots import from_message

logger = logging.getLogger(__name__)

_CLOSED = object()


def _default_connect(url: str) -> Awaitable:
    # The server pings at the application level
    return websockets.connect(url, ping_interval=None, ping_timeout=None)


class Subscription:
    """Restartable snapshot stream for one purpose (incident view, request tracking...)."""

    BASE_DELAY_SECONDS = 0.5
    MAX_DELAY_SECONDS = 30.0

    def __init__(
        self,
        key: str,
        url_factory: Callable[[], str],
        connect: Optional[Callable[[str], Awaitable]] = None,
    ):
        self.key = key
        self._url_factory = url_factory
        self._connect = connect or _default_connect
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._ws = None
        self._closed = False
        self.reconnect_attempts = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def get_reconnect_delay(self, attempt: int) -> float:
        return min(self.BASE_DELAY_SECONDS * (2 ** attempt), self.MAX_DELAY_SECONDS)

    def start(self):
        if self._closed:
            raise RuntimeError(f"Subscription {self.key} is closed")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def restart(self):
        """Drop the connection and reconnect with a freshly built URL."""
        await self._stop()
        self.reconnect_attempts = 0
        self.start()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self._stop()
        self._queue.put_nowait(_CLOSED)

    async def _stop(self):
        ws, self._ws = self._ws, None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if ws is not None:
            await ws.close()

    async def _run(self):
        while not self._closed:
            try:
                self._ws = await self._connect(self._url_factory())
                self.reconnect_attempts = 0
                async for raw in self._ws:
                    await self._handle_message(raw)
                logger.info(f"Subscription {self.key}: connection closed by server")
            except ConnectionClosed as e:
                logger.info(f"Subscription {self.key}: connection lost ({e})")
            except (InvalidHandshake, OSError) as e:
                logger.warning(f"Subscription {self.key}: connect failed ({e})")
            except Exception as e:
                logger.exception(f"Subscription {self.key}: unexpected error, reconnecting: {e}")
                if self._ws is not None:
                    await self._ws.close()
            self._ws = None

            delay = self.get_reconnect_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            await asyncio.sleep(delay)

    async def _handle_message(self, raw):
        try:
            message = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Subscription {self.key}: invalid JSON ({e})")
            return
        if not isinstance(message, dict):
            logger.warning(f"Subscription {self.key}: ignoring non-object frame")
            return
        if message.get("type") == "ping":
            await self._ws.send(json.dumps({"type": "pong"}))
            return
        try:
            snapshot = from_message(message)
        except (TypeError, AttributeError) as e:
            logger.warning(f"Subscription {self.key}: ignoring malformed {message.get('type')} message ({e})")
            return
        if snapshot is not None:
            self._queue.put_nowait(snapshot)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class SubscriptionManager:
    def __init__(self, connect: Optional[Callable[[str], Awaitable]] = None):
        self._connect = connect
        self._subscriptions: Dict[str, Subscription] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._subscriptions

    def get(self, key: str) -> Optional[Subscription]:
        return self._subscriptions.get(key)

    @property
    def keys(self):
        return list(self._subscriptions)

    async def open(self, key: str, url_factory: Callable[[], str]) -> Subscription:
        """Start a subscription, replacing any previous one under the same key."""
        await self.close(key)
        subscription = Subscription(key, url_factory, connect=self._connect)
        self._subscriptions[key] = subscription
        subscription.start()
        return subscription

    async def close(self, key: str):
        subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            await subscription.close()

    async def restart_all(self):
        for subscription in list(self._subscriptions.values()):
            await subscription.restart()

    async def close_all(self):
        for key in list(self._subscriptions):
            await self.close(key)
