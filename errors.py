"""Errors raised or reported by the relay, the signaling channel and calls."""


class CallError(Exception):
    """Base class for everything a call attempt can report."""


class RoomNotJoined(CallError):
    """A room-scoped message was sent by a session that is in no room."""


class NoActiveContext(CallError):
    """An answer or candidate arrived while no call attempt exists."""


class MediaAcquisitionFailure(CallError):
    """Local audio/video could not be captured."""


class DescriptionFailure(CallError):
    """Creating an offer/answer or applying a description failed."""


class ConnectivityFailure(CallError):
    """ICE could not establish a path to the peer."""


class SignalingError(CallError):
    """The signaling channel is not connected or went away mid-send."""


class ProtocolError(ValueError):
    """A frame on the signaling channel could not be decoded."""
