"""aiortc-backed media capabilities for headless call participants.

Descriptions travel as {"type", "sdp"} dicts and candidates as
{"candidate", "sdpMid", "sdpMLineIndex"} dicts, the same shapes a browser
puts on the wire, so the negotiation code never touches aiortc types.
"""
import logging
from typing import Optional

import requests
from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp

from errors import MediaAcquisitionFailure

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = [{'urls': 'stun:stun.l.google.com:19302'}]


def description_to_dict(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    if description is None:
        return None
    return {'type': description.type, 'sdp': description.sdp}


def candidate_from_dict(payload: dict):
    """Build an RTCIceCandidate from the browser's candidate-init shape."""
    sdp = payload['candidate']
    if sdp.startswith('candidate:'):
        sdp = sdp.split(':', 1)[1]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.get('sdpMid')
    candidate.sdpMLineIndex = payload.get('sdpMLineIndex')
    return candidate


class PeerConnection:
    """RTCPeerConnection speaking plain dicts."""

    def __init__(self, ice_servers: Optional[list] = None):
        servers = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        config = RTCConfiguration(iceServers=[RTCIceServer(**s) for s in servers])
        self.pc = RTCPeerConnection(config)

    def on(self, event: str, handler):
        # aiortc never fires 'icecandidate': it gathers into the SDP instead
        self.pc.on(event, handler)
        return handler

    def addTrack(self, track):
        return self.pc.addTrack(track)

    async def createOffer(self) -> dict:
        return description_to_dict(await self.pc.createOffer())

    async def createAnswer(self) -> dict:
        return description_to_dict(await self.pc.createAnswer())

    async def setLocalDescription(self, description: dict):
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description['sdp'], type=description['type']))

    async def setRemoteDescription(self, description: dict):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description['sdp'], type=description['type']))

    async def addIceCandidate(self, payload: dict):
        await self.pc.addIceCandidate(candidate_from_dict(payload))

    @property
    def localDescription(self) -> Optional[dict]:
        return description_to_dict(self.pc.localDescription)

    @property
    def iceConnectionState(self) -> str:
        return self.pc.iceConnectionState

    async def close(self):
        await self.pc.close()


class LocalMedia:
    """Captured local tracks. stop() ends every one of them."""

    def __init__(self, tracks, player: Optional[MediaPlayer] = None):
        self.tracks = list(tracks)
        self.player = player

    def stop(self):
        for track in self.tracks:
            track.stop()


async def acquire_local_media(source: Optional[str] = None, format: Optional[str] = None,
                              options: Optional[dict] = None) -> LocalMedia:
    """Open a file/device with MediaPlayer, or synthesize audio+video.

    Synthetic tracks (silence and a generated test picture) let a headless
    participant take part in a call without capture hardware.
    """
    if source is None:
        return LocalMedia([AudioStreamTrack(), VideoStreamTrack()])
    try:
        player = MediaPlayer(source, format=format, options=options or {})
    except Exception as e:
        raise MediaAcquisitionFailure(f'cannot open media source {source!r}: {e}') from e
    tracks = [t for t in (player.audio, player.video) if t is not None]
    if not tracks:
        raise MediaAcquisitionFailure(f'media source {source!r} has no audio or video')
    logger.info('capturing %s from %s', '+'.join(t.kind for t in tracks), source)
    return LocalMedia(tracks, player)


def fetch_ice_servers(config_url: str, timeout: float = 10) -> list:
    """Ask the relay's /config endpoint for the ICE server list."""
    r = requests.get(config_url, timeout=timeout)
    r.raise_for_status()
    return r.json()['iceServers']
