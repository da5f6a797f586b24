"""Signaling event model and JSON wire codec.

Frames are JSON objects ``{"event": <name>, "data": {...}}``. A client sends
frames addressed with ``to``; the relay rewrites them to carry ``from`` before
delivery. ``invite-offer`` is the one event whose name changes on the way
through: the callee receives it as ``incoming-call`` with ``callId: null``.
"""

from __future__ import annotations

import dataclasses
import json
from enum import StrEnum
from typing import Any

from peercall.errors import SignalingProtocolError

REGISTER = "register"
REGISTERED = "registered"
INCOMING_CALL = "incoming-call"
REASON_BUSY = "busy"


class EventType(StrEnum):
    """Wire names of the call signaling events as sent by a client."""

    INVITE_OFFER = "invite-offer"
    ANSWER = "call-accepted"
    ICE_CANDIDATE = "ice-candidate"
    REJECT = "call-rejected"
    END = "end-call"
    PEER_OFFLINE = "peer-offline"


# Data key holding the event payload, if the event carries one
_PAYLOAD_KEYS = {
    EventType.INVITE_OFFER: "offer",
    EventType.ANSWER: "answer",
    EventType.ICE_CANDIDATE: "candidate",
}

_INBOUND_NAMES = {INCOMING_CALL: EventType.INVITE_OFFER}


@dataclasses.dataclass
class SignalingEvent:
    """One signaling message, in either direction."""

    type: EventType
    from_id: str | None = None
    to_id: str | None = None
    call_id: str | None = None
    payload: dict[str, Any] | None = None
    reason: str | None = None


def _load(frame: str | bytes | dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except ValueError as exc:
            raise SignalingProtocolError(f"invalid JSON frame: {exc}") from exc
    if not isinstance(frame, dict):
        raise SignalingProtocolError("frame is not a JSON object")
    name = frame.get("event")
    data = frame.get("data") or {}
    if not isinstance(name, str) or not isinstance(data, dict):
        raise SignalingProtocolError("frame needs a string 'event' and object 'data'")
    return name, data


def _event_type(name: str, *, inbound: bool) -> EventType:
    if inbound and name in _INBOUND_NAMES:
        return _INBOUND_NAMES[name]
    try:
        return EventType(name)
    except ValueError:
        raise SignalingProtocolError(f"unknown event {name!r}") from None


def _payload(etype: EventType, data: dict[str, Any]) -> dict[str, Any] | None:
    key = _PAYLOAD_KEYS.get(etype)
    if key is None:
        return None
    value = data.get(key)
    if not isinstance(value, dict):
        raise SignalingProtocolError(f"{etype} requires an object {key!r}")
    return value


def _frame(name: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": name, "data": data}


def _data(event: SignalingEvent, peer_key: str, peer_id: str | None) -> dict[str, Any]:
    data: dict[str, Any] = {peer_key: peer_id, "callId": event.call_id}
    key = _PAYLOAD_KEYS.get(event.type)
    if key is not None:
        data[key] = event.payload
    if event.reason is not None:
        data["reason"] = event.reason
    return data


# ---------------------------------------------------------------------------
# Client side: encode frames to the relay, decode frames from it
# ---------------------------------------------------------------------------


def build_register(user_id: str) -> dict[str, Any]:
    return _frame(REGISTER, {"userId": user_id})


def encode_outbound(event: SignalingEvent) -> dict[str, Any]:
    """Build the frame a client sends for *event* (addressed by ``to``)."""
    if not event.to_id:
        raise SignalingProtocolError(f"{event.type} has no recipient")
    data = _data(event, "to", event.to_id)
    if event.type == EventType.INVITE_OFFER:
        # The caller never knows a call id at invite time
        data.pop("callId")
    return _frame(event.type.value, data)


def decode_inbound(
    frame: str | bytes | dict[str, Any], local_id: str | None = None
) -> SignalingEvent:
    """Parse a frame delivered by the relay into a SignalingEvent."""
    name, data = _load(frame)
    etype = _event_type(name, inbound=True)
    from_id = data.get("from")
    if not isinstance(from_id, str) or not from_id:
        raise SignalingProtocolError(f"{name} frame has no sender")
    call_id = data.get("callId")
    return SignalingEvent(
        type=etype,
        from_id=from_id,
        to_id=local_id,
        call_id=str(call_id) if call_id is not None else None,
        payload=_payload(etype, data),
        reason=data.get("reason"),
    )


# ---------------------------------------------------------------------------
# Relay side: decode frames from a registered sender, encode for delivery
# ---------------------------------------------------------------------------


def parse_register(frame: str | bytes | dict[str, Any]) -> str:
    """Return the user id announced by a ``register`` frame."""
    name, data = _load(frame)
    user_id = data.get("userId")
    if name != REGISTER or not isinstance(user_id, str) or not user_id:
        raise SignalingProtocolError("expected register {userId}")
    return user_id


def decode_outbound(
    frame: str | bytes | dict[str, Any], sender_id: str
) -> SignalingEvent:
    """Parse a client frame received by the relay from *sender_id*."""
    name, data = _load(frame)
    etype = _event_type(name, inbound=False)
    if etype == EventType.PEER_OFFLINE:
        raise SignalingProtocolError("peer-offline is relay-originated")
    to_id = data.get("to")
    if not isinstance(to_id, str) or not to_id:
        raise SignalingProtocolError(f"{name} frame has no recipient")
    call_id = data.get("callId")
    return SignalingEvent(
        type=etype,
        from_id=sender_id,
        to_id=to_id,
        call_id=str(call_id) if call_id is not None else None,
        payload=_payload(etype, data),
        reason=data.get("reason"),
    )


def encode_inbound(event: SignalingEvent) -> dict[str, Any]:
    """Build the frame the relay delivers to ``event.to_id``."""
    data = _data(event, "from", event.from_id)
    if event.type == EventType.INVITE_OFFER:
        data["callId"] = None
        return _frame(INCOMING_CALL, data)
    return _frame(event.type.value, data)


def build_registered(user_id: str) -> dict[str, Any]:
    return _frame(REGISTERED, {"userId": user_id})


def peer_offline(unreachable_id: str, call_id: str | None) -> SignalingEvent:
    """Relay notice that *unreachable_id* is not registered."""
    return SignalingEvent(
        type=EventType.PEER_OFFLINE, from_id=unreachable_id, call_id=call_id
    )
