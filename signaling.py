"""Client side of the relay connection.

A SignalingChannel is constructed explicitly and handed to whoever needs
it; nothing here is a module-level singleton. Handlers are registered per
event name with on(), which returns a Subscription that the caller closes
on teardown.

When the relay goes away on its own, subscribers of protocol.DISCONNECTED
are called once with None. Closing the channel ourselves does not fire it.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

import protocol
from errors import ProtocolError, SignalingError

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for one registered handler. close() is idempotent."""

    def __init__(self, channel: 'SignalingChannel', event: str, handler: Callable):
        self.channel = channel
        self.event = event
        self.handler = handler
        self.active = True

    def close(self):
        if self.active:
            self.active = False
            self.channel._unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class SignalingChannel:
    def __init__(self, url: str, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self.session_id: Optional[str] = None
        self._connection = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: dict[str, list[Subscription]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._closed.is_set()

    async def connect(self):
        """Open the connection and wait for the relay to assign our id."""
        if self._connection is not None:
            raise SignalingError('channel already connected')
        self._closed.clear()
        self._connection = await websockets.connect(self.url, open_timeout=self.open_timeout)
        try:
            event, data = protocol.decode(await self._connection.recv())
        except (ConnectionClosed, ProtocolError) as e:
            await self.close()
            raise SignalingError(f'relay handshake failed: {e}') from e
        if event != protocol.SESSION:
            await self.close()
            raise SignalingError(f'expected {protocol.SESSION!r} from relay, got {event!r}')
        self.session_id = data
        self._reader = asyncio.ensure_future(self._read_loop())
        logger.info('connected to %s as %s', self.url, self.session_id)

    def on(self, event: str, handler: Callable[[Any], Any]) -> Subscription:
        """Call handler(data) for every inbound frame named event.

        Coroutine handlers are scheduled as tasks in arrival order.
        """
        sub = Subscription(self, event, handler)
        self._handlers.setdefault(event, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription):
        subs = self._handlers.get(sub.event, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._handlers.pop(sub.event, None)

    async def emit(self, event: str, data=None):
        if not self.connected:
            raise SignalingError(f'cannot send {event!r}: channel is not connected')
        try:
            await self._connection.send(protocol.encode(event, data))
        except ConnectionClosed as e:
            raise SignalingError(f'channel closed while sending {event!r}') from e

    def _dispatch(self, event: str, data):
        subs = list(self._handlers.get(event, ()))
        if not subs:
            logger.debug('no handler for %r', event)
        for sub in subs:
            result = sub.handler(data)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('signaling handler failed', exc_info=task.exception())

    async def _read_loop(self):
        try:
            async for raw in self._connection:
                try:
                    event, data = protocol.decode(raw)
                except ProtocolError as e:
                    logger.warning('dropping frame from relay: %s', e)
                    continue
                self._dispatch(event, data)
        except ConnectionClosed as e:
            logger.info('relay connection lost: %s', e)
        else:
            logger.info('relay closed the connection')
        finally:
            self._closed.set()
        # skipped when close() cancelled us
        self._dispatch(protocol.DISCONNECTED, None)

    async def wait_closed(self):
        await self._closed.wait()

    async def close(self):
        connection, self._connection = self._connection, None
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
        self._reader = None
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        if connection is not None:
            await connection.close()
        self._closed.set()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()
