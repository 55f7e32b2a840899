#!/usr/bin/env python3
"""WebSocket relay for two-party calls.

Keeps the room table and forwards signaling frames between room members.
Offers, answers and candidates go to the *other* members of the sender's
room; chat goes to every member, sender included. Payloads are never
inspected.
"""
import argparse
import asyncio
import json
import logging
import uuid
from http import HTTPStatus
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

import protocol
from config import Settings, get_settings
from errors import ProtocolError, RoomNotJoined

logger = logging.getLogger(__name__)


class ClientSession:
    """One relay-side connection. Member of at most one room at a time."""

    def __init__(self, connection, session_id: Optional[str] = None):
        self.connection = connection
        self.id = session_id or str(uuid.uuid4())
        self.room: Optional[str] = None
        self.closed = False

    async def send(self, event: str, data=None):
        if self.closed:
            logger.debug('dropping %s for departed session %s', event, self.id)
            return
        try:
            await self.connection.send(protocol.encode(event, data))
        except ConnectionClosed:
            logger.debug('dropping %s for departed session %s', event, self.id)

    def __repr__(self):
        return f'<ClientSession {self.id} room={self.room!r}>'


class RelayHub:
    """Process-wide room table.

    Membership changes and recipient snapshots happen under one lock, so a
    frame is always forwarded to a consistent member set. Delivery itself
    happens outside the lock; a recipient that left in the meantime just
    drops the frame.
    """

    def __init__(self, capacity: int = 2):
        self.capacity = capacity
        self.rooms: dict[str, set[ClientSession]] = {}
        self._lock = asyncio.Lock()

    def members(self, room_id: str) -> list[ClientSession]:
        return list(self.rooms.get(room_id, ()))

    def _remove(self, session: ClientSession) -> tuple[Optional[str], list[ClientSession]]:
        # caller holds the lock
        room_id = session.room
        if room_id is None:
            return None, []
        members = self.rooms.get(room_id, set())
        members.discard(session)
        if not members:
            self.rooms.pop(room_id, None)
        session.room = None
        return room_id, list(members)

    async def join(self, session: ClientSession, room_id: str) -> bool:
        """Put session in room_id. Returns False if the room is full."""
        async with self._lock:
            if session.closed:
                return False
            if session.room == room_id:
                return True
            if len(self.rooms.get(room_id, ())) >= self.capacity:
                logger.info('%s rejected from full room %s', session.id, room_id)
                return False
            old_room, left_behind = self._remove(session)
            members = self.rooms.setdefault(room_id, set())
            others = list(members)
            members.add(session)
            session.room = room_id

        logger.info('%s joined %s (%d in room)', session.id, room_id, len(others) + 1)
        for peer in left_behind:
            await peer.send(protocol.PEER_LEFT, session.id)
        if old_room is not None:
            logger.info('%s left %s', session.id, old_room)
        for peer in others:
            await peer.send(protocol.PEER_JOINED, session.id)
        return True

    async def leave(self, session: ClientSession):
        async with self._lock:
            session.closed = True
            room_id, remaining = self._remove(session)
        if room_id is None:
            return
        logger.info('%s left %s', session.id, room_id)
        for peer in remaining:
            await peer.send(protocol.PEER_LEFT, session.id)

    async def relay(self, kind: str, session: ClientSession, payload) -> int:
        """Forward payload to everyone else in the sender's room.

        Returns the number of recipients. A sender in no room is a client
        protocol slip, not a relay fault: the frame is dropped.
        """
        if kind not in protocol.RELAYED_EVENTS:
            raise ValueError(f'{kind!r} is not a relayed event')
        async with self._lock:
            if session.room is None:
                logger.warning('dropping %s: %s', kind,
                               RoomNotJoined(f'session {session.id} is not in a room'))
                return 0
            targets = [m for m in self.rooms[session.room] if m is not session]
        for peer in targets:
            await peer.send(kind, payload)
        return len(targets)

    async def broadcast_chat(self, session: ClientSession, room_id, message) -> int:
        """Deliver a chat message to every member of room_id, sender included."""
        async with self._lock:
            if session.room is None or session.room != room_id:
                logger.warning('dropping chat: %s',
                               RoomNotJoined(f'session {session.id} is not in room {room_id!r}'))
                return 0
            targets = list(self.rooms[room_id])
        for peer in targets:
            await peer.send(protocol.RECEIVE_MESSAGE, message)
        return len(targets)


class RelayServer:
    """Binds a RelayHub to websocket connections."""

    def __init__(self, settings: Optional[Settings] = None, hub: Optional[RelayHub] = None):
        self.settings = settings or get_settings()
        self.hub = hub or RelayHub(capacity=self.settings.ROOM_CAPACITY)

    async def handler(self, connection):
        """Handle one WebSocket connection."""
        session = ClientSession(connection)
        logger.info('session %s connected from %s', session.id, connection.remote_address)
        await session.send(protocol.SESSION, session.id)
        try:
            async for raw in connection:
                await self.dispatch(session, raw)
        except ConnectionClosed as e:
            logger.info('session %s dropped: %s', session.id, e)
        finally:
            await self.hub.leave(session)
            logger.info('session %s disconnected', session.id)

    async def dispatch(self, session: ClientSession, raw):
        try:
            event, data = protocol.decode(raw)
        except ProtocolError as e:
            logger.warning('session %s sent a bad frame: %s', session.id, e)
            return

        if event == protocol.JOIN_ROOM:
            if not isinstance(data, str) or not data.strip():
                logger.warning('session %s sent join-room without a room id', session.id)
                return
            if not await self.hub.join(session, data):
                await session.send(protocol.ROOM_FULL, data)
        elif event in protocol.RELAYED_EVENTS:
            await self.hub.relay(event, session, data)
        elif event == protocol.SEND_MESSAGE:
            if not isinstance(data, dict):
                logger.warning('session %s sent a malformed chat frame', session.id)
                return
            await self.hub.broadcast_chat(session, data.get('roomId'), data.get('message'))
        else:
            logger.warning('session %s sent unknown event %r', session.id, event)

    def process_request(self, connection, request):
        """Plain HTTP endpoints served next to the websocket."""
        path = request.path.split('?', 1)[0]
        if path == '/health':
            return connection.respond(HTTPStatus.OK, 'OK\n')
        if path == '/config':
            body = json.dumps({'iceServers': self.settings.ice_servers()})
            response = connection.respond(HTTPStatus.OK, body)
            del response.headers['Content-Type']
            response.headers['Content-Type'] = 'application/json'
            return response
        return None

    def serve(self, host: str, port: int):
        return websockets.serve(
            self.handler, host, port,
            process_request=self.process_request,
            ping_interval=self.settings.PING_INTERVAL,
        )


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description='Room relay for two-party calls')
    p.add_argument('--host', default=settings.HOST, help='Address to listen on')
    p.add_argument('--port', type=int, default=settings.PORT, help='Port to listen on')
    p.add_argument('--capacity', type=int, default=settings.ROOM_CAPACITY,
                   help='Maximum members per room')
    return p


async def main(argv=None):
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    server = RelayServer(settings, RelayHub(capacity=args.capacity))
    async with server.serve(args.host, args.port):
        logger.info('relay on ws://%s:%d', args.host, args.port)
        await asyncio.Future()  # run forever


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    run()
