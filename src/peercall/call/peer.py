"""Per-peer negotiation state around one RTC peer connection.

A PeerSession owns the connection to a single remote participant. It
applies the remote description once per negotiation round and holds ICE
candidates that arrive early, replaying them in arrival order as soon as
the remote description is in place.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum
from typing import Any

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peercall.errors import NegotiationError

logger = logging.getLogger(__name__)

# What RTCPeerConnection raises for a refused or out-of-order operation
_RTC_ERRORS = (ValueError, RuntimeError, InvalidStateError, InvalidAccessError)


class ConnectionState(StrEnum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


CandidateCallback = Callable[["PeerSession", dict[str, Any]], Awaitable[None]]
StateCallback = Callable[["PeerSession", ConnectionState], Awaitable[None]]
TrackCallback = Callable[["PeerSession", Any], Awaitable[None]]


def description_to_dict(desc: RTCSessionDescription) -> dict[str, Any]:
    return {"type": desc.type, "sdp": desc.sdp}


def description_from_dict(data: dict[str, Any]) -> RTCSessionDescription:
    try:
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])
    except (KeyError, TypeError, ValueError) as exc:
        raise NegotiationError(f"malformed session description: {exc}") from exc


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict[str, Any]) -> RTCIceCandidate:
    line = data.get("candidate")
    if not isinstance(line, str) or not line:
        raise NegotiationError("candidate line missing")
    # Browsers send the attribute with its "candidate:" prefix
    if line.startswith("candidate:"):
        line = line[len("candidate:") :]
    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as exc:
        raise NegotiationError(f"malformed candidate {line!r}") from exc
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerSession:
    def __init__(
        self,
        peer_id: str,
        pc: RTCPeerConnection,
        *,
        tracks: Iterable[Any] = (),
        on_candidate: CandidateCallback | None = None,
        on_state: StateCallback | None = None,
        on_track: TrackCallback | None = None,
    ) -> None:
        self.peer_id = peer_id
        self.pc = pc
        self.pending_candidates: deque[dict[str, Any]] = deque()
        self.outgoing_tracks: list[Any] = []
        self.remote_tracks: list[Any] = []
        self._remote_set = False
        self._closed = False

        @pc.on("icecandidate")
        async def _on_icecandidate(candidate: RTCIceCandidate | None) -> None:
            if candidate is None or on_candidate is None or self._closed:
                return
            await on_candidate(self, candidate_to_dict(candidate))

        @pc.on("connectionstatechange")
        async def _on_connectionstatechange() -> None:
            state = self.connection_state
            logger.info("Peer %s connection state -> %s", peer_id, state)
            if on_state is not None and not self._closed:
                await on_state(self, state)

        @pc.on("track")
        async def _on_track(track: Any) -> None:
            logger.info("Peer %s sent %s track", peer_id, track.kind)
            self.remote_tracks.append(track)
            if on_track is not None and not self._closed:
                await on_track(self, track)

        for track in tracks:
            pc.addTrack(track)
            self.outgoing_tracks.append(track)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_state(self) -> ConnectionState:
        if self._closed:
            return ConnectionState.CLOSED
        try:
            return ConnectionState(self.pc.connectionState)
        except ValueError:
            return ConnectionState.NEW

    @property
    def local_description(self) -> dict[str, Any] | None:
        desc = self.pc.localDescription
        return description_to_dict(desc) if desc is not None else None

    @property
    def remote_description(self) -> dict[str, Any] | None:
        desc = self.pc.remoteDescription
        return description_to_dict(desc) if desc is not None else None

    @property
    def has_remote_description(self) -> bool:
        return self._remote_set

    def _check_open(self) -> None:
        if self._closed:
            raise NegotiationError(f"peer {self.peer_id} is closed")

    async def create_offer(self) -> dict[str, Any]:
        self._check_open()
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except _RTC_ERRORS as exc:
            raise NegotiationError(f"could not create offer: {exc}") from exc
        self._check_open()
        return description_to_dict(self.pc.localDescription)

    async def create_answer(self) -> dict[str, Any]:
        self._check_open()
        try:
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except _RTC_ERRORS as exc:
            raise NegotiationError(f"could not create answer: {exc}") from exc
        self._check_open()
        return description_to_dict(self.pc.localDescription)

    async def set_remote_description(self, data: dict[str, Any]) -> None:
        """Apply the peer's description, then replay buffered candidates."""
        self._check_open()
        if self._remote_set:
            raise NegotiationError(f"remote description already set for {self.peer_id}")
        desc = description_from_dict(data)
        try:
            await self.pc.setRemoteDescription(desc)
        except _RTC_ERRORS as exc:
            raise NegotiationError(f"remote {desc.type} refused: {exc}") from exc
        self._remote_set = True
        if self.pending_candidates:
            logger.debug(
                "Peer %s: draining %d buffered candidate(s)",
                self.peer_id,
                len(self.pending_candidates),
            )
        # Candidates arriving while draining are appended and picked up here
        while self.pending_candidates and not self._closed:
            await self._apply(self.pending_candidates.popleft())

    async def add_candidate(self, data: dict[str, Any]) -> None:
        if self._closed:
            return
        if not self._remote_set or self.pending_candidates:
            self.pending_candidates.append(data)
            return
        await self._apply(data)

    async def _apply(self, data: dict[str, Any]) -> None:
        if not data.get("candidate"):
            # End-of-candidates marker
            return
        try:
            candidate = candidate_from_dict(data)
            await self.pc.addIceCandidate(candidate)
        except Exception:
            logger.warning(
                "Peer %s: skipping bad candidate %r", self.peer_id, data, exc_info=True
            )

    async def close(self) -> None:
        """Close the transport and stop this peer's outgoing tracks."""
        if self._closed:
            return
        self._closed = True
        self.pending_candidates.clear()
        for track in self.outgoing_tracks:
            track.stop()
        self.outgoing_tracks.clear()
        await self.pc.close()
        logger.info("Peer %s closed", self.peer_id)
