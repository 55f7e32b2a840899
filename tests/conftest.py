import asyncio
from collections import defaultdict

import pytest
from websockets.exceptions import ConnectionClosed

import protocol
from config import Settings
from media import LocalMedia
from negotiation import NegotiationMachine
from relay import ClientSession, RelayServer
from signaling import SignalingChannel


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.01)


# ============ RELAY SIDE ============

class FakeConnection:
    """Records decoded frames instead of writing to a socket."""

    def __init__(self):
        self.frames = []

    async def send(self, raw):
        self.frames.append(protocol.decode(raw))

    def events(self, name):
        return [data for event, data in self.frames if event == name]


class DeadConnection:
    async def send(self, raw):
        raise ConnectionClosed(None, None)


def make_session(session_id):
    return ClientSession(FakeConnection(), session_id=session_id)


# ============ CLIENT SIDE ============

class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakePeerConnection:
    """Records every call the negotiation code makes on it."""

    def __init__(self, fail_on=()):
        self.handlers = defaultdict(list)
        self.fail_on = set(fail_on)
        self.calls = []
        self.tracks = []
        self.candidates = []
        self.local_description = None
        self.remote_description = None
        self.iceConnectionState = 'new'
        self.closed = False

    def on(self, event, handler):
        self.handlers[event].append(handler)
        return handler

    def emit(self, event, *args):
        for handler in list(self.handlers[event]):
            handler(*args)

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f'{name} failed')

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        self._call('createOffer')
        return {'type': 'offer', 'sdp': 'v=0 offer'}

    async def createAnswer(self):
        self._call('createAnswer')
        return {'type': 'answer', 'sdp': 'v=0 answer'}

    async def setLocalDescription(self, description):
        self._call('setLocalDescription')
        self.local_description = description

    async def setRemoteDescription(self, description):
        self._call('setRemoteDescription')
        self.remote_description = description

    async def addIceCandidate(self, candidate):
        self._call('addIceCandidate')
        self.candidates.append(candidate)

    @property
    def localDescription(self):
        return self.local_description

    async def close(self):
        self.closed = True


class PeerConnectionFactory:
    def __init__(self):
        self.created = []
        self.fail_on = set()

    def __call__(self):
        pc = FakePeerConnection(self.fail_on)
        self.created.append(pc)
        return pc


class FakeMediaSource:
    """Stands in for camera and microphone capture."""

    def __init__(self):
        self.acquired = []
        self.gate = None
        self.error = None

    async def __call__(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        media = LocalMedia([FakeTrack('audio'), FakeTrack('video')])
        self.acquired.append(media)
        return media

    def tracks(self):
        return [t for media in self.acquired for t in media.tracks]


class LoopbackChannel(SignalingChannel):
    """A channel with no socket: outbound frames are recorded, inbound injected."""

    def __init__(self):
        super().__init__('ws://loopback')
        self.session_id = 'me'
        self.sent = []

    @property
    def connected(self):
        return True

    async def emit(self, event, data=None):
        self.sent.append((event, data))

    def sent_events(self, name):
        return [data for event, data in self.sent if event == name]

    def inject(self, event, data=None):
        self._dispatch(event, data)

    async def deliver(self, event, data=None):
        self.inject(event, data)
        await self.drain()

    async def drain(self):
        pending = [t for t in self._tasks if not t.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [t for t in self._tasks if not t.done()]


@pytest.fixture
def channel():
    return LoopbackChannel()


@pytest.fixture
def pcs():
    return PeerConnectionFactory()


@pytest.fixture
def media():
    return FakeMediaSource()


@pytest.fixture
def machine(channel, pcs, media):
    m = NegotiationMachine(channel, pcs, media, room_id='r1')
    m.attach()
    return m


@pytest.fixture
async def relay_server():
    server = RelayServer(Settings(STUN_SERVER='stun:stun.example.org:3478'))
    async with server.serve('127.0.0.1', 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        server.url = f'ws://127.0.0.1:{port}'
        server.http_url = f'http://127.0.0.1:{port}'
        yield server
