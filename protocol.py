"""Wire format shared by the relay and its clients.

Every frame is a JSON text frame: {"event": <name>, "data": <payload>}.
Payloads of offer/answer/candidate/chat are opaque to the relay.
"""
import json
from dataclasses import dataclass
from typing import Any

from errors import ProtocolError

# client -> server
JOIN_ROOM = 'join-room'
SEND_MESSAGE = 'send_message'

# server -> client
SESSION = 'session'
PEER_JOINED = 'peer-joined'
PEER_LEFT = 'peer-left'
ROOM_FULL = 'room-full'
RECEIVE_MESSAGE = 'receive_message'

# both directions, relayed verbatim to the other room members
OFFER = 'offer'
ANSWER = 'answer'
CANDIDATE = 'candidate'

RELAYED_EVENTS = (OFFER, ANSWER, CANDIDATE)

# raised locally by SignalingChannel when the relay connection drops; never on the wire
DISCONNECTED = 'disconnected'


def encode(event: str, data: Any = None) -> str:
    return json.dumps({'event': event, 'data': data})


def decode(raw) -> tuple[str, Any]:
    """Parse one frame into (event, data). Raises ProtocolError."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode()
        except UnicodeDecodeError as e:
            raise ProtocolError('frame is not UTF-8') from e
    try:
        frame = json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f'frame is not JSON: {e}') from e
    if not isinstance(frame, dict) or not isinstance(frame.get('event'), str):
        raise ProtocolError('frame has no event name')
    return frame['event'], frame.get('data')


@dataclass
class ChatMessage:
    message: str
    from_id: str = ''
    time: float = 0  # epoch milliseconds

    def to_dict(self) -> dict:
        return {'message': self.message, 'from': self.from_id, 'time': self.time}

    @classmethod
    def from_dict(cls, data: dict) -> 'ChatMessage':
        return cls(
            message=str(data.get('message', '')),
            from_id=str(data.get('from', '')),
            time=data.get('time', 0),
        )
