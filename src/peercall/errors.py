"""Call error hierarchy."""

from __future__ import annotations


class CallError(Exception):
    """Base class for call-level errors."""


class MediaAccessError(CallError):
    """Local capture could not be started (denied, missing or busy device)."""


class InvalidStateError(CallError):
    """An intent was issued in a phase that forbids it."""


class StaleInviteError(CallError):
    """The invite being acted on is no longer the buffered one."""


class NegotiationError(CallError):
    """A session description or ICE candidate was malformed or refused."""


class PeerUnreachableError(CallError):
    """The relay reported the remote user as offline."""


class SignalingProtocolError(ValueError):
    """A signaling frame could not be decoded."""
