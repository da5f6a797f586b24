"""Call-level state: phases, statuses and the per-call session record."""

from __future__ import annotations

import dataclasses
import time
from enum import StrEnum
from typing import Any


class CallPhase(StrEnum):
    IDLE = "idle"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"


class Direction(StrEnum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class CallStatus(StrEnum):
    """User-facing status line, rendered verbatim by the presentation layer."""

    IDLE = ""
    CALLING = "Calling…"
    RINGING = "Ringing…"
    CONNECTING = "Connecting…"
    CONNECTED = "Connected"
    REJECTED = "Call rejected"
    ENDED = "Call ended"
    OFFLINE = "User is offline"
    FAILED = "Connection failed"
    MEDIA_FAILED = "Failed to access camera/microphone"
    NO_ANSWER = "No answer"


@dataclasses.dataclass
class IncomingInvite:
    """A buffered invite waiting for the local user to accept or reject it."""

    call_id: str
    from_id: str
    offer: dict[str, Any]
    early_candidates: list[dict[str, Any]] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class CallSession:
    local_id: str
    remote_id: str
    direction: Direction
    phase: CallPhase
    call_id: str | None = None
    invite: IncomingInvite | None = None
    created_at: float = dataclasses.field(default_factory=time.monotonic)


@dataclasses.dataclass(frozen=True)
class CallSnapshot:
    """Consistent read-only view of the coordinator for presentation."""

    phase: CallPhase
    status: CallStatus
    call_id: str | None = None
    remote_id: str | None = None
    direction: Direction | None = None
    incoming: IncomingInvite | None = None
    mic_on: bool = True
    camera_on: bool = True
    peers: dict[str, str] = dataclasses.field(default_factory=dict)
    remote_tracks: dict[str, tuple[str, ...]] = dataclasses.field(default_factory=dict)
    error: Exception | None = None

    @property
    def in_call(self) -> bool:
        """An outgoing or answered call exists; ringing does not count."""
        return self.phase in (CallPhase.DIALING, CallPhase.CONNECTING, CallPhase.ACTIVE)
