"""Headless call participant, no browser needed.

Speaks the same relay protocol as the browser client: joins a room, answers
or places the call, and chats with the other member.

Usage:
    async with CallClient('ws://localhost:5000') as client:
        await client.join('r1')          # first in the room: we will call
        await client.wait_connected()    # remote track arrived
        await client.send('hello')
        msg = await client.receive()     # blocks until a message arrives

Call start_call() to ring without waiting for peer-joined.
"""
import asyncio
import functools
import logging
import time
from typing import Callable, Optional

import protocol
from media import PeerConnection, acquire_local_media
from negotiation import NegotiationMachine
from protocol import ChatMessage
from signaling import SignalingChannel

logger = logging.getLogger(__name__)


class CallClient:
    def __init__(self, server_url: str, ice_servers: Optional[list] = None,
                 media_source: Optional[str] = None,
                 peer_connection_factory: Optional[Callable] = None,
                 media_factory: Optional[Callable] = None,
                 on_error: Optional[Callable] = None):
        self.channel = SignalingChannel(server_url)
        self.remote_tracks = []
        self.room_full = asyncio.Event()
        self._chat: asyncio.Queue = asyncio.Queue()
        self._subscriptions = []
        self.machine = NegotiationMachine(
            self.channel,
            peer_connection_factory=peer_connection_factory
            or functools.partial(PeerConnection, ice_servers),
            media_factory=media_factory
            or functools.partial(acquire_local_media, media_source),
            on_error=on_error,
            on_track=self.remote_tracks.append,
        )

    @property
    def session_id(self) -> Optional[str]:
        return self.channel.session_id

    @property
    def state(self) -> str:
        return self.machine.state

    @property
    def room_id(self) -> Optional[str]:
        return self.machine.room_id

    async def connect(self):
        await self.channel.connect()
        self._subscriptions = [
            self.channel.on(protocol.RECEIVE_MESSAGE, self._on_chat),
            self.channel.on(protocol.ROOM_FULL, self._on_room_full),
        ]
        self.machine.attach()

    def _on_chat(self, data):
        if not isinstance(data, dict):
            logger.warning('dropping malformed chat message')
            return
        self._chat.put_nowait(ChatMessage.from_dict(data))

    def _on_room_full(self, room_id):
        logger.warning('room %s is full', room_id)
        self.room_full.set()

    # ============ PUBLIC API ============

    async def join(self, room_id: str):
        room_id = room_id.strip()
        if not room_id:
            raise ValueError('room id must not be empty')
        self.room_full.clear()
        await self.machine.join(room_id)

    async def start_call(self):
        await self.machine.start_call()

    async def hangup(self):
        await self.machine.hangup()

    async def wait_connected(self, timeout: float = 15.0):
        """Wait for the first remote track."""
        await self.machine.wait_connected(timeout)

    async def send(self, text: str) -> Optional[ChatMessage]:
        """Send a chat line to the room. It comes back to us via receive()."""
        text = text.strip()
        if not text:
            return None
        msg = ChatMessage(message=text, from_id=self.session_id or '',
                          time=int(time.time() * 1000))
        await self.channel.emit(protocol.SEND_MESSAGE,
                                {'roomId': self.room_id, 'message': msg.to_dict()})
        return msg

    async def receive(self, timeout: float = None) -> ChatMessage:
        """Receive next message. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._chat.get(), timeout)
        return await self._chat.get()

    def has_messages(self) -> bool:
        return not self._chat.empty()

    async def close(self):
        await self.machine.close()
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []
        await self.channel.close()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()
