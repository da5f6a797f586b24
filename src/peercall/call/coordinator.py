"""Call coordinator: the call-level signaling state machine.

Phases: Idle → Dialing → Connecting → Active (outgoing) and
Idle → Ringing → Connecting → Active (incoming). Every path out of a call
funnels through ``_teardown``, which closes the peer sessions, releases
local media and retires the call id so late events cannot revive it.

Intents and inbound events run on one event loop and only interleave at
awaits; after each await an intent checks that its session is still the
live one and backs out if it was superseded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from peercall.call.peer import ConnectionState, PeerSession
from peercall.call.session import (
    CallPhase,
    CallSession,
    CallSnapshot,
    CallStatus,
    Direction,
    IncomingInvite,
)
from peercall.config import IceServer
from peercall.errors import (
    CallError,
    InvalidStateError,
    MediaAccessError,
    NegotiationError,
    PeerUnreachableError,
    StaleInviteError,
)
from peercall.media import AUDIO, VIDEO, LocalMedia, MediaAcquisition
from peercall.signaling.channel import SignalingChannel
from peercall.signaling.events import REASON_BUSY, EventType, SignalingEvent

logger = logging.getLogger(__name__)

_EventHandler = Callable[[SignalingEvent], Awaitable[None]]
Listener = Callable[[CallSnapshot], None]
PeerConnectionFactory = Callable[[], RTCPeerConnection]

# Ended call ids remembered for dropping late events
RETIRED_CALL_IDS = 64


def peer_connection_factory(
    ice_servers: list[IceServer] | None = None,
) -> PeerConnectionFactory:
    """Return a factory building aiortc peer connections for *ice_servers*."""
    config = RTCConfiguration(
        iceServers=[
            RTCIceServer(
                urls=list(server.urls),
                username=server.username,
                credential=server.credential,
            )
            for server in ice_servers or []
        ]
    )
    return lambda: RTCPeerConnection(configuration=config)


class CallCoordinator:
    """Owns the single live call of a local endpoint."""

    def __init__(
        self,
        local_id: str,
        channel: SignalingChannel,
        media: MediaAcquisition,
        *,
        pc_factory: PeerConnectionFactory | None = None,
        want_audio: bool = True,
        want_video: bool = True,
        ring_timeout: float | None = None,
    ) -> None:
        self.local_id = local_id
        self._channel = channel
        self._media_source = media
        self._pc_factory = pc_factory or peer_connection_factory()
        self._want_audio = want_audio
        self._want_video = want_video
        self._ring_timeout = ring_timeout

        self._session: CallSession | None = None
        self._peers: dict[str, PeerSession] = {}
        self._media: LocalMedia | None = None
        self._status = CallStatus.IDLE
        self._error: Exception | None = None
        self._retired: deque[str] = deque(maxlen=RETIRED_CALL_IDS)
        self._listeners: list[Listener] = []
        self._ring_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._handlers: dict[EventType, _EventHandler] = {
            EventType.INVITE_OFFER: self._on_invite,
            EventType.ANSWER: self._on_answer,
            EventType.ICE_CANDIDATE: self._on_candidate,
            EventType.REJECT: self._on_reject,
            EventType.END: self._on_end,
            EventType.PEER_OFFLINE: self._on_peer_offline,
        }

    # ------------------------------------------------------------------
    # Lifecycle and presentation surface
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to inbound signaling for the lifetime of the coordinator."""
        self._channel.subscribe(self.handle_event)

    def detach(self) -> None:
        self._channel.unsubscribe()

    async def close(self) -> None:
        await self.end_call()
        self.detach()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def phase(self) -> CallPhase:
        return self._session.phase if self._session is not None else CallPhase.IDLE

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def peers(self) -> dict[str, PeerSession]:
        return dict(self._peers)

    @property
    def media(self) -> LocalMedia | None:
        return self._media

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> CallSnapshot:
        session = self._session
        media = self._media
        incoming = None
        if session is not None and session.phase == CallPhase.RINGING:
            incoming = session.invite
        return CallSnapshot(
            phase=self.phase,
            status=self._status,
            call_id=session.call_id if session is not None else None,
            remote_id=session.remote_id if session is not None else None,
            direction=session.direction if session is not None else None,
            incoming=incoming,
            mic_on=media.audio_enabled if media is not None else True,
            camera_on=media.video_enabled if media is not None else True,
            peers={pid: str(p.connection_state) for pid, p in self._peers.items()},
            remote_tracks={
                pid: tuple(t.kind for t in p.remote_tracks)
                for pid, p in self._peers.items()
            },
            error=self._error,
        )

    def _publish(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Call state listener failed")

    def _set_status(self, status: CallStatus) -> None:
        self._status = status
        self._publish()

    def _send(
        self,
        etype: EventType,
        to_id: str,
        *,
        call_id: str | None = None,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        """Hand an event to the relay without waiting for delivery."""
        self._channel.send(
            SignalingEvent(
                type=etype,
                from_id=self.local_id,
                to_id=to_id,
                call_id=call_id,
                payload=payload,
                reason=reason,
            )
        )

    # ------------------------------------------------------------------
    # User intents
    # ------------------------------------------------------------------

    async def start_call(self, remote_id: str) -> None:
        """Dial *remote_id*: acquire media, build an offer and send the invite."""
        if not remote_id:
            raise InvalidStateError("a remote user id is required")
        if self._session is not None:
            raise InvalidStateError(f"cannot start a call while {self.phase}")

        session = CallSession(
            local_id=self.local_id,
            remote_id=remote_id,
            direction=Direction.OUTGOING,
            phase=CallPhase.DIALING,
        )
        self._session = session
        self._error = None
        self._set_status(CallStatus.CALLING)

        try:
            media = await self._media_source.acquire(self._want_audio, self._want_video)
        except MediaAccessError as exc:
            logger.warning("Media acquisition failed for call to %s: %s", remote_id, exc)
            if self._session is session:
                self._session = None
                session.phase = CallPhase.FAILED
                self._error = exc
                self._set_status(CallStatus.MEDIA_FAILED)
                raise
            return
        if self._session is not session:
            media.release()
            return
        self._media = media

        peer = self._ensure_peer(remote_id)
        try:
            offer = await peer.create_offer()
        except NegotiationError as exc:
            if self._session is session:
                await self._fail(session, exc)
            return
        if self._session is not session:
            return

        logger.info("Inviting %s", remote_id)
        self._send(EventType.INVITE_OFFER, remote_id, payload=offer)
        self._start_ring_timer(session)
        self._publish()

    def _claim_invite(self, invite: IncomingInvite) -> CallSession:
        session = self._session
        if session is not None and session.direction == Direction.OUTGOING:
            raise InvalidStateError("cannot accept while an outgoing call is in progress")
        if (
            session is None
            or session.invite is None
            or session.invite.call_id != invite.call_id
            or session.phase != CallPhase.RINGING
        ):
            raise StaleInviteError(f"invite {invite.call_id} is no longer pending")
        return session

    async def accept_call(self, invite: IncomingInvite) -> None:
        """Answer the buffered invite. A superseded invite is a no-op."""
        try:
            session = self._claim_invite(invite)
        except StaleInviteError as exc:
            logger.info("Ignoring accept: %s", exc)
            return
        pending = session.invite
        assert pending is not None

        # Leaving Ringing now makes a second accept stale
        session.phase = CallPhase.CONNECTING
        self._cancel_ring_timer()
        self._error = None
        self._set_status(CallStatus.CONNECTING)

        try:
            media = await self._media_source.acquire(self._want_audio, self._want_video)
        except MediaAccessError as exc:
            logger.warning("Media acquisition failed accepting %s: %s", pending.call_id, exc)
            if self._session is not session:
                return
            # Keep the invite so the user can retry
            session.phase = CallPhase.RINGING
            self._error = exc
            self._start_ring_timer(session)
            self._set_status(CallStatus.MEDIA_FAILED)
            raise
        if self._session is not session:
            media.release()
            return
        self._media = media
        session.call_id = pending.call_id

        peer = self._ensure_peer(pending.from_id)
        for candidate in pending.early_candidates:
            await peer.add_candidate(candidate)
        try:
            await peer.set_remote_description(pending.offer)
            answer = await peer.create_answer()
        except NegotiationError as exc:
            if self._session is session:
                await self._fail(session, exc, notify=True)
            return
        if self._session is not session:
            return

        logger.info("Accepted call %s from %s", pending.call_id, pending.from_id)
        self._send(
            EventType.ANSWER, pending.from_id, call_id=pending.call_id, payload=answer
        )
        self._publish()

    async def reject_call(self, call_id: str) -> None:
        """Decline the buffered invite *call_id*. Idempotent."""
        session = self._session
        if (
            session is None
            or session.direction != Direction.INCOMING
            or session.invite is None
            or session.invite.call_id != call_id
        ):
            logger.debug("Reject for %s ignored, no such pending invite", call_id)
            return
        logger.info("Rejecting call %s from %s", call_id, session.remote_id)
        self._send(EventType.REJECT, session.remote_id, call_id=call_id)
        await self._teardown(session, CallStatus.IDLE)

    async def end_call(self) -> None:
        """Hang up from any phase. Idempotent, never waits on the relay."""
        session = self._session
        if session is None:
            return
        call_id = self._call_id_of(session)
        for peer_id in {session.remote_id, *self._peers}:
            self._send(EventType.END, peer_id, call_id=call_id)
        logger.info("Ending call %s with %s", call_id, session.remote_id)
        await self._teardown(session, CallStatus.ENDED)

    def toggle_mic(self) -> bool:
        return self._toggle(AUDIO)

    def toggle_camera(self) -> bool:
        return self._toggle(VIDEO)

    def _toggle(self, kind: str) -> bool:
        # Track enable state only; the negotiated session is untouched
        if self._media is None:
            return True
        enabled = self._media.toggle(kind)
        self._publish()
        return enabled

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------

    async def handle_event(self, event: SignalingEvent) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("No handler for %s", event.type)
            return
        try:
            await handler(event)
        except CallError:
            logger.exception("Error handling %s from %s", event.type, event.from_id)

    def _match(self, event: SignalingEvent) -> CallSession | None:
        """Return the live session *event* belongs to, or None if it is stale."""
        session = self._session
        if event.call_id is not None and event.call_id in self._retired:
            return None
        if session is None:
            return None
        if event.from_id != session.remote_id and event.from_id not in self._peers:
            return None
        if session.direction == Direction.INCOMING:
            assert session.invite is not None
            # The caller only learns the id from our answer
            return session if event.call_id in (None, session.invite.call_id) else None
        if event.call_id is None:
            return session if session.call_id is None else None
        if session.call_id is None or session.call_id == event.call_id:
            return session
        return None

    async def _on_invite(self, event: SignalingEvent) -> None:
        assert event.from_id is not None and event.payload is not None
        session = self._session
        if session is not None:
            if (
                session.direction == Direction.INCOMING
                and session.remote_id == event.from_id
                and session.invite is not None
                and session.invite.offer == event.payload
            ):
                logger.debug("Duplicate invite from %s dropped", event.from_id)
                return
            logger.info("Busy: rejecting invite from %s during %s", event.from_id, session.phase)
            self._send(EventType.REJECT, event.from_id, reason=REASON_BUSY)
            return

        invite = IncomingInvite(
            call_id=uuid.uuid4().hex, from_id=event.from_id, offer=event.payload
        )
        session = CallSession(
            local_id=self.local_id,
            remote_id=event.from_id,
            direction=Direction.INCOMING,
            phase=CallPhase.RINGING,
            invite=invite,
        )
        self._session = session
        self._error = None
        logger.info("Incoming call %s from %s", invite.call_id, event.from_id)
        self._start_ring_timer(session)
        self._set_status(CallStatus.RINGING)

    async def _on_answer(self, event: SignalingEvent) -> None:
        session = self._match(event)
        if session is None:
            logger.debug("Stale answer from %s dropped", event.from_id)
            return
        if session.direction != Direction.OUTGOING or session.phase != CallPhase.DIALING:
            logger.debug("Answer from %s ignored during %s", event.from_id, session.phase)
            return
        assert event.from_id is not None and event.payload is not None
        peer = self._peers.get(event.from_id)
        if peer is None:
            logger.warning(
                "Answer from %s arrived before the offer was recorded, dropped",
                event.from_id,
            )
            return

        session.call_id = event.call_id
        session.phase = CallPhase.CONNECTING
        self._cancel_ring_timer()
        self._set_status(CallStatus.CONNECTING)
        try:
            await peer.set_remote_description(event.payload)
        except NegotiationError as exc:
            if self._session is session:
                await self._fail(session, exc, notify=True)

    async def _on_candidate(self, event: SignalingEvent) -> None:
        session = self._match(event)
        if session is None or event.payload is None:
            logger.debug("Stale candidate from %s dropped", event.from_id)
            return
        assert event.from_id is not None
        peer = self._peers.get(event.from_id)
        if peer is None and session.direction == Direction.INCOMING:
            # Ringing, or accept still acquiring media; replayed once the peer exists
            assert session.invite is not None
            session.invite.early_candidates.append(event.payload)
            return
        if peer is None:
            logger.debug("Candidate from %s before its peer session, dropped", event.from_id)
            return
        await peer.add_candidate(event.payload)

    async def _on_reject(self, event: SignalingEvent) -> None:
        session = self._match(event)
        if session is None:
            logger.debug("Stale reject from %s dropped", event.from_id)
            return
        logger.info("Call to %s rejected (%s)", event.from_id, event.reason or "declined")
        await self._teardown(session, CallStatus.REJECTED)

    async def _on_end(self, event: SignalingEvent) -> None:
        session = self._match(event)
        if session is None:
            logger.debug("Stale end from %s dropped", event.from_id)
            return
        logger.info("Call ended by %s", event.from_id)
        await self._teardown(session, CallStatus.ENDED)

    async def _on_peer_offline(self, event: SignalingEvent) -> None:
        session = self._match(event)
        if session is None:
            return
        self._error = PeerUnreachableError(f"{event.from_id} is offline")
        logger.info("Peer %s is offline", event.from_id)
        await self._teardown(session, CallStatus.OFFLINE)

    # ------------------------------------------------------------------
    # Peer sessions
    # ------------------------------------------------------------------

    def _ensure_peer(self, peer_id: str) -> PeerSession:
        peer = self._peers.get(peer_id)
        if peer is not None:
            return peer
        peer = PeerSession(
            peer_id,
            self._pc_factory(),
            tracks=self._media.subscribe() if self._media is not None else (),
            on_candidate=self._on_local_candidate,
            on_state=self._on_peer_state,
            on_track=self._on_remote_track,
        )
        self._peers[peer_id] = peer
        return peer

    async def _on_local_candidate(self, peer: PeerSession, candidate: dict[str, Any]) -> None:
        session = self._session
        if session is None or self._peers.get(peer.peer_id) is not peer:
            return
        self._send(
            EventType.ICE_CANDIDATE,
            peer.peer_id,
            call_id=session.call_id,
            payload=candidate,
        )

    async def _on_peer_state(self, peer: PeerSession, state: ConnectionState) -> None:
        session = self._session
        if session is None or self._peers.get(peer.peer_id) is not peer:
            return
        if state == ConnectionState.CONNECTED and session.phase == CallPhase.CONNECTING:
            session.phase = CallPhase.ACTIVE
            logger.info("Call %s active", session.call_id)
            self._set_status(CallStatus.CONNECTED)
        elif state == ConnectionState.FAILED:
            logger.warning("Transport to %s failed", peer.peer_id)
            self._error = ConnectionError(f"transport to {peer.peer_id} failed")
            await self._teardown(session, CallStatus.FAILED, phase=CallPhase.FAILED)
        else:
            self._publish()

    async def _on_remote_track(self, peer: PeerSession, track: Any) -> None:
        if self._peers.get(peer.peer_id) is peer:
            self._publish()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    @staticmethod
    def _call_id_of(session: CallSession) -> str | None:
        if session.call_id is not None:
            return session.call_id
        return session.invite.call_id if session.invite is not None else None

    async def _fail(
        self, session: CallSession, exc: Exception, *, notify: bool = False
    ) -> None:
        if self._session is not session:
            return
        logger.error("Call with %s failed: %s", session.remote_id, exc)
        self._error = exc
        if notify:
            self._send(EventType.END, session.remote_id, call_id=self._call_id_of(session))
        await self._teardown(session, CallStatus.FAILED, phase=CallPhase.FAILED)

    async def _teardown(
        self,
        session: CallSession,
        status: CallStatus,
        *,
        phase: CallPhase = CallPhase.ENDED,
    ) -> None:
        """Single exit path for a call. Safe to call more than once."""
        if self._session is not session:
            return
        session.phase = CallPhase.ENDING
        self._session = None
        self._cancel_ring_timer()
        call_id = self._call_id_of(session)
        if call_id is not None:
            self._retired.append(call_id)

        peers = list(self._peers.values())
        self._peers.clear()
        media = self._media
        self._media = None
        if media is not None:
            media.release()

        session.phase = phase
        self._set_status(status)

        for peer in peers:
            try:
                await peer.close()
            except Exception:
                logger.exception("Error closing peer %s", peer.peer_id)

    # ------------------------------------------------------------------
    # Ring / dial timeout
    # ------------------------------------------------------------------

    def _start_ring_timer(self, session: CallSession) -> None:
        if self._ring_timeout is None:
            return
        self._cancel_ring_timer()
        loop = asyncio.get_running_loop()
        self._ring_timer = loop.call_later(self._ring_timeout, self._fire_ring_timer, session)

    def _cancel_ring_timer(self) -> None:
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None

    def _fire_ring_timer(self, session: CallSession) -> None:
        self._ring_timer = None
        if self._session is not session:
            return
        task = asyncio.get_running_loop().create_task(self._ring_expired(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _ring_expired(self, session: CallSession) -> None:
        if self._session is not session:
            return
        if session.phase == CallPhase.DIALING:
            logger.info("No answer from %s", session.remote_id)
            self._send(EventType.END, session.remote_id, call_id=session.call_id)
            await self._teardown(session, CallStatus.NO_ANSWER, phase=CallPhase.FAILED)
        elif session.phase == CallPhase.RINGING:
            assert session.invite is not None
            logger.info("Missed call %s from %s", session.invite.call_id, session.remote_id)
            self._send(EventType.REJECT, session.remote_id, call_id=session.invite.call_id)
            await self._teardown(session, CallStatus.IDLE, phase=CallPhase.FAILED)
