"""Websocket client side of the signaling relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from peercall.errors import SignalingProtocolError
from peercall.signaling.events import (
    REGISTERED,
    SignalingEvent,
    build_register,
    decode_inbound,
    encode_outbound,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[SignalingEvent], Awaitable[None]]

REGISTER_TIMEOUT = 10.0


class SignalingChannel:
    """Registered connection to the relay for one local user.

    Outbound sends are fire-and-forget: ``send`` schedules the write and
    returns immediately, and a failed write is logged, never raised. Inbound
    frames are decoded and handed, one at a time and in arrival order, to
    the single subscribed handler.
    """

    def __init__(
        self,
        url: str,
        user_id: str,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.user_id = user_id
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._handler: EventHandler | None = None
        self._send_tasks: set[asyncio.Task[None]] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def subscribe(self, handler: EventHandler) -> None:
        if self._handler is not None and self._handler is not handler:
            logger.warning("Replacing existing signaling subscriber")
        self._handler = handler

    def unsubscribe(self) -> None:
        self._handler = None

    async def connect(self) -> None:
        """Open the websocket and register ``user_id`` with the relay."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.url, heartbeat=30.0)
        await self._ws.send_json(build_register(self.user_id))
        ack = await self._ws.receive_json(timeout=REGISTER_TIMEOUT)
        if ack.get("event") != REGISTERED:
            raise SignalingProtocolError(f"unexpected register reply: {ack!r}")
        logger.info("Registered with relay %s as %s", self.url, self.user_id)

    def send(self, event: SignalingEvent) -> None:
        frame = encode_outbound(event)
        if not self.connected:
            logger.warning("Relay not connected, dropping %s to %s", event.type, event.to_id)
            return
        task = asyncio.get_running_loop().create_task(self._write(frame))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _write(self, frame: dict[str, Any]) -> None:
        assert self._ws is not None
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError):
            logger.warning("Failed to send %s", frame.get("event"), exc_info=True)

    async def run(self) -> None:
        """Read frames until the websocket closes."""
        assert self._ws is not None, "connect() first"
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._dispatch(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Relay websocket error: %s", self._ws.exception())
        logger.info("Relay connection closed")

    async def _dispatch(self, raw: str) -> None:
        try:
            event = decode_inbound(raw, self.user_id)
        except SignalingProtocolError:
            logger.warning("Dropping malformed frame: %.200s", raw)
            return
        logger.debug("Received %s from %s (call %s)", event.type, event.from_id, event.call_id)
        if self._handler is None:
            logger.debug("No subscriber for %s, dropped", event.type)
            return
        try:
            await self._handler(event)
        except Exception:
            logger.exception("Signaling handler failed for %s", event.type)

    async def close(self) -> None:
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
