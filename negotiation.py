"""Client-side call negotiation.

The NegotiationMachine reacts to local actions (join, start call, hang up)
and to signaling frames (peer-joined, offer, answer, candidate, peer-left),
and drives one NegotiationContext per call attempt:

    idle -> awaiting-local-media -> negotiating -> connected -> closed

Whoever is already in the room when a second party arrives is the
initiator and sends the offer; the newcomer answers. Transitions for one
machine run one at a time under a lock, in the order their triggers
arrived. Teardown does not take the lock: it marks the context closed and
every in-flight step checks that mark after each await and discards its
result.

The peer connection is anything shaped like media.PeerConnection:
createOffer/createAnswer/setLocalDescription/setRemoteDescription/
addIceCandidate/addTrack/close, plus on('track'), on('icecandidate') and
on('iceconnectionstatechange'). Descriptions and candidates are plain
dicts and are passed through untouched.

Remote candidates that arrive before any call attempt are buffered and
handed to the peer connection as soon as the next attempt is created,
ahead of local media and the remote description. A real peer connection
(aiortc included) has no transceiver to match them against until the
remote description is set and may drop them. In the ordered flow the
candidates queue behind the offer on the lock and arrive after it.
"""
import asyncio
import logging
from collections import deque
from typing import Callable, Optional

import protocol
from errors import (
    CallError,
    ConnectivityFailure,
    DescriptionFailure,
    MediaAcquisitionFailure,
    NoActiveContext,
    SignalingError,
)

logger = logging.getLogger(__name__)


class CallState:
    IDLE = 'idle'
    AWAITING_LOCAL_MEDIA = 'awaiting-local-media'
    NEGOTIATING = 'negotiating'
    CONNECTED = 'connected'
    CLOSED = 'closed'


class Role:
    INITIATOR = 'initiator'
    RESPONDER = 'responder'


def is_candidate(payload) -> bool:
    return (isinstance(payload, dict)
            and isinstance(payload.get('candidate'), str)
            and bool(payload['candidate'].strip()))


def is_description(payload, kind: str) -> bool:
    return (isinstance(payload, dict)
            and payload.get('type') == kind
            and isinstance(payload.get('sdp'), str))


def _as_failure(cls, what: str, exc: Exception) -> CallError:
    if isinstance(exc, cls):
        return exc
    error = cls(f'{what}: {exc}')
    error.__cause__ = exc
    return error


class CandidateBuffer:
    """Remote candidates that arrived before there was a call to give them to."""

    def __init__(self):
        self._pending = deque()

    def __len__(self):
        return len(self._pending)

    def push(self, candidate):
        self._pending.append(candidate)

    async def flush(self, apply):
        """Hand every buffered candidate to apply(), oldest first."""
        while self._pending:
            await apply(self._pending.popleft())

    def clear(self):
        self._pending.clear()


class NegotiationContext:
    """One call attempt: its peer connection, local media and role."""

    def __init__(self, role: str, pc):
        self.role = role
        self.pc = pc
        self.media = None
        self.closed = False
        self.failed = False
        self.connected = False
        self.has_local_description = False
        self.has_remote_description = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.media is not None:
            self.media.stop()
        try:
            await self.pc.close()
        except Exception:
            logger.exception('error while closing peer connection')


class NegotiationMachine:
    def __init__(self, channel, peer_connection_factory: Callable, media_factory: Callable,
                 room_id: Optional[str] = None,
                 on_state_change: Optional[Callable[[str], None]] = None,
                 on_error: Optional[Callable[[CallError], None]] = None,
                 on_track: Optional[Callable] = None):
        self.channel = channel
        self.room_id = room_id
        self._previous_room: Optional[str] = None
        self.context: Optional[NegotiationContext] = None
        self.candidates = CandidateBuffer()
        self.state = CallState.IDLE
        self.errors: list[CallError] = []
        self._pc_factory = peer_connection_factory
        self._media_factory = media_factory
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._on_track = on_track
        self._lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._subscriptions = []
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False

    @property
    def role(self) -> Optional[str]:
        return self.context.role if self.context is not None else None

    def attach(self):
        """Subscribe to the signaling frames that drive the machine."""
        if self._subscriptions or self._disposed:
            return
        self._subscriptions = [
            self.channel.on(protocol.PEER_JOINED, self._on_peer_joined),
            self.channel.on(protocol.PEER_LEFT, self._on_peer_left),
            self.channel.on(protocol.OFFER, self._on_offer),
            self.channel.on(protocol.ANSWER, self._on_answer),
            self.channel.on(protocol.CANDIDATE, self._on_candidate),
            self.channel.on(protocol.ROOM_FULL, self._on_room_full),
            self.channel.on(protocol.DISCONNECTED, self._on_disconnected),
        ]

    # ============ STATE ============

    def _live(self, ctx: Optional[NegotiationContext]) -> bool:
        return (ctx is not None and ctx is self.context
                and not ctx.closed and not self._disposed)

    def _set_state(self, state: str):
        if state == self.state:
            return
        logger.info('call state %s -> %s', self.state, state)
        self.state = state
        if state == CallState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if self._on_state_change:
            self._on_state_change(state)

    def _report(self, ctx: Optional[NegotiationContext], error: CallError):
        if ctx is not None:
            ctx.failed = True
        logger.error('call attempt failed: %s', error)
        self.errors.append(error)
        if self._on_error:
            self._on_error(error)

    async def wait_connected(self, timeout: Optional[float] = 15.0):
        await asyncio.wait_for(self._connected.wait(), timeout)

    # ============ LOCAL ACTIONS ============

    async def join(self, room_id: str):
        """Join a room. Membership alone does not start a call."""
        self._previous_room, self.room_id = self.room_id, room_id
        await self.channel.emit(protocol.JOIN_ROOM, room_id)

    async def start_call(self):
        """Become initiator, unless a healthy call is already underway.

        A failed attempt is thrown away and a fresh one started.
        """
        async with self._lock:
            if self._disposed:
                return
            ctx = self.context
            if ctx is not None and not ctx.closed:
                if not ctx.failed:
                    logger.info('call already in progress, ignoring start')
                    return
                await ctx.close()
            await self._initiate()

    async def hangup(self):
        """End the current call attempt. Safe from any state, even mid-step."""
        self.candidates.clear()
        ctx = self.context
        if ctx is None or ctx.closed:
            return
        await ctx.close()
        self._set_state(CallState.CLOSED)

    async def close(self):
        """Hang up and drop every subscription. The machine is spent afterwards."""
        if self._disposed:
            return
        self._disposed = True
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []
        self.candidates.clear()
        if self.context is not None:
            await self.context.close()
        for task in list(self._tasks):
            task.cancel()
        self._set_state(CallState.CLOSED)

    # ============ CONTEXT ============

    async def _create_context(self, role: str) -> Optional[NegotiationContext]:
        # caller holds the lock
        try:
            pc = self._pc_factory()
        except Exception as e:
            self._report(None, _as_failure(DescriptionFailure, 'cannot create peer connection', e))
            return None
        ctx = NegotiationContext(role, pc)
        self.context = ctx
        self._watch(ctx)
        self._set_state(CallState.AWAITING_LOCAL_MEDIA)
        logger.info('new call attempt as %s', role)

        if len(self.candidates):
            logger.info('applying %d buffered candidates', len(self.candidates))
            await self.candidates.flush(lambda c: self._apply_candidate(ctx, c))
            if not self._live(ctx):
                return None

        try:
            media = await self._media_factory()
        except Exception as e:
            if self._live(ctx):
                self._report(ctx, _as_failure(MediaAcquisitionFailure, 'cannot capture local media', e))
            return None
        if not self._live(ctx):
            # torn down while we were waiting for the devices
            media.stop()
            return None
        ctx.media = media
        try:
            for track in media.tracks:
                pc.addTrack(track)
        except Exception as e:
            self._report(ctx, _as_failure(MediaAcquisitionFailure, 'cannot attach local media', e))
            return None
        return ctx

    def _watch(self, ctx: NegotiationContext):
        pc = ctx.pc
        pc.on('track', lambda track: self._on_remote_track(ctx, track))
        pc.on('icecandidate', lambda candidate: self._on_local_candidate(ctx, candidate))
        pc.on('iceconnectionstatechange', lambda: self._on_ice_state(ctx))

    def _on_remote_track(self, ctx: NegotiationContext, track):
        if not self._live(ctx):
            return
        logger.info('remote %s track received', getattr(track, 'kind', 'media'))
        ctx.connected = True
        self._set_state(CallState.CONNECTED)
        if self._on_track:
            self._on_track(track)

    def _on_local_candidate(self, ctx: NegotiationContext, candidate):
        if not self._live(ctx) or not is_candidate(candidate):
            return
        payload = {'roomId': self.room_id, 'candidate': candidate}
        task = asyncio.ensure_future(self._send(ctx, protocol.CANDIDATE, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_ice_state(self, ctx: NegotiationContext):
        if not self._live(ctx):
            return
        state = ctx.pc.iceConnectionState
        logger.info('ICE state: %s', state)
        if state == 'failed':
            self._report(ctx, ConnectivityFailure('ICE connection failed'))

    async def _apply_candidate(self, ctx: NegotiationContext, candidate):
        try:
            await ctx.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning('could not apply remote candidate: %s', e)

    async def _send(self, ctx: NegotiationContext, event: str, data):
        try:
            await self.channel.emit(event, data)
        except SignalingError as e:
            if self._live(ctx):
                self._report(ctx, e)

    async def _initiate(self):
        # caller holds the lock
        ctx = await self._create_context(Role.INITIATOR)
        if ctx is None:
            return
        try:
            offer = await ctx.pc.createOffer()
            if not self._live(ctx):
                return
            await ctx.pc.setLocalDescription(offer)
        except Exception as e:
            if self._live(ctx):
                self._report(ctx, _as_failure(DescriptionFailure, 'cannot create offer', e))
            return
        if not self._live(ctx):
            return
        ctx.has_local_description = True
        if not ctx.connected:
            self._set_state(CallState.NEGOTIATING)
        await self._send(ctx, protocol.OFFER,
                         {'roomId': self.room_id, 'offer': ctx.pc.localDescription or offer})
        logger.info('offer sent')

    # ============ SIGNALING ============

    async def _on_peer_joined(self, session_id):
        logger.info('peer joined: %s', session_id)
        async with self._lock:
            if self._disposed:
                return
            if self.context is not None and not self.context.closed:
                logger.warning('ignoring peer-joined from %s: call already underway', session_id)
                return
            await self._initiate()

    async def _on_peer_left(self, session_id):
        logger.info('peer left: %s', session_id)
        await self.hangup()

    def _on_room_full(self, room_id):
        if room_id != self.room_id:
            return
        # the relay kept us where we were
        logger.warning('room %s is full, staying in %s', room_id, self._previous_room)
        self.room_id = self._previous_room

    async def _on_disconnected(self, _):
        logger.warning('lost the relay, ending any call in progress')
        await self.hangup()

    async def _on_offer(self, data):
        offer = data.get('offer') if isinstance(data, dict) else None
        if not is_description(offer, 'offer'):
            logger.warning('ignoring malformed offer')
            return
        logger.info('offer received')
        async with self._lock:
            if self._disposed:
                return
            if self.context is not None and not self.context.closed:
                logger.warning('ignoring offer: call already underway as %s', self.context.role)
                return
            ctx = await self._create_context(Role.RESPONDER)
            if ctx is None:
                return
            try:
                await ctx.pc.setRemoteDescription(offer)
                if not self._live(ctx):
                    return
                ctx.has_remote_description = True
                answer = await ctx.pc.createAnswer()
                if not self._live(ctx):
                    return
                await ctx.pc.setLocalDescription(answer)
            except Exception as e:
                if self._live(ctx):
                    self._report(ctx, _as_failure(DescriptionFailure, 'cannot answer offer', e))
                return
            if not self._live(ctx):
                return
            ctx.has_local_description = True
            if not ctx.connected:
                self._set_state(CallState.NEGOTIATING)
            await self._send(ctx, protocol.ANSWER,
                             {'roomId': self.room_id, 'answer': ctx.pc.localDescription or answer})
            logger.info('answer sent')

    async def _on_answer(self, data):
        answer = data.get('answer') if isinstance(data, dict) else None
        if not is_description(answer, 'answer'):
            logger.warning('ignoring malformed answer')
            return
        logger.info('answer received')
        async with self._lock:
            ctx = self.context
            if not self._live(ctx):
                logger.warning('%s', NoActiveContext('answer arrived with no call in progress'))
                return
            if (ctx.role != Role.INITIATOR or not ctx.has_local_description
                    or ctx.has_remote_description):
                logger.warning('ignoring unexpected answer as %s', ctx.role)
                return
            try:
                await ctx.pc.setRemoteDescription(answer)
            except Exception as e:
                if self._live(ctx):
                    self._report(ctx, _as_failure(DescriptionFailure, 'cannot apply answer', e))
                return
            if self._live(ctx):
                ctx.has_remote_description = True

    async def _on_candidate(self, data):
        candidate = data.get('candidate') if isinstance(data, dict) else None
        if not is_candidate(candidate):
            logger.debug('ignoring empty candidate')
            return
        async with self._lock:
            if self._disposed:
                return
            ctx = self.context
            if not self._live(ctx):
                self.candidates.push(candidate)
                logger.debug('buffered candidate (%d pending)', len(self.candidates))
                return
            await self._apply_candidate(ctx, candidate)
