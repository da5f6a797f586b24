"""Signaling relay: aiohttp websocket router between registered users."""

from __future__ import annotations

import logging

import asyncpg
from aiohttp import WSMsgType, web

from peercall.database import record_call_event
from peercall.errors import SignalingProtocolError
from peercall.signaling.events import (
    EventType,
    SignalingEvent,
    build_registered,
    decode_outbound,
    encode_inbound,
    parse_register,
    peer_offline,
)

logger = logging.getLogger(__name__)

# ICE candidates are high-volume and carry no lifecycle meaning
_LOGGED_EVENTS = frozenset(
    {
        EventType.INVITE_OFFER,
        EventType.ANSWER,
        EventType.REJECT,
        EventType.END,
        EventType.PEER_OFFLINE,
    }
)


class Relay:
    """Registry of connected users and best-effort event delivery."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._clients: dict[str, web.WebSocketResponse] = {}
        self._pool = pool

    @property
    def online(self) -> list[str]:
        return sorted(self._clients)

    def register(
        self, user_id: str, ws: web.WebSocketResponse
    ) -> web.WebSocketResponse | None:
        """Bind *user_id* to *ws*; return the connection it replaced, if any."""
        old = self._clients.get(user_id)
        self._clients[user_id] = ws
        logger.info("Registered %s (%d online)", user_id, len(self._clients))
        if old is not None and old is not ws:
            logger.info("User %s re-registered, replacing previous connection", user_id)
            return old
        return None

    def unregister(self, user_id: str, ws: web.WebSocketResponse) -> None:
        # A replaced connection must not evict its successor
        if self._clients.get(user_id) is ws:
            del self._clients[user_id]
            logger.info("Unregistered %s (%d online)", user_id, len(self._clients))

    async def route(self, event: SignalingEvent) -> None:
        """Deliver *event* to its recipient, or answer the sender with peer-offline."""
        assert event.to_id is not None and event.from_id is not None
        target = self._clients.get(event.to_id)
        if target is None or target.closed:
            logger.info(
                "%s from %s: %s is offline", event.type, event.from_id, event.to_id
            )
            notice = peer_offline(event.to_id, event.call_id)
            notice.to_id = event.from_id
            await self._log(notice)
            sender = self._clients.get(event.from_id)
            if sender is not None and not sender.closed:
                await sender.send_json(encode_inbound(notice))
            return
        await self._log(event)
        try:
            await target.send_json(encode_inbound(event))
        except ConnectionResetError:
            logger.warning("Lost %s to %s: connection reset", event.type, event.to_id)

    async def _log(self, event: SignalingEvent) -> None:
        if self._pool is None or event.type not in _LOGGED_EVENTS:
            return
        try:
            await record_call_event(self._pool, event)
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to record %s in call log", event.type)


_relay_key = web.AppKey("relay", Relay)


async def _ws_handler(request: web.Request) -> web.WebSocketResponse:
    relay = request.app[_relay_key]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    user_id: str | None = None
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning("Websocket error: %s", ws.exception())
                continue
            if msg.type != WSMsgType.TEXT:
                continue
            if user_id is None:
                # Registration must precede any addressed event
                try:
                    user_id = parse_register(msg.data)
                except SignalingProtocolError as exc:
                    logger.warning("Unregistered client sent %.100s: %s", msg.data, exc)
                    continue
                replaced = relay.register(user_id, ws)
                await ws.send_json(build_registered(user_id))
                if replaced is not None:
                    await replaced.close()
                continue
            try:
                event = decode_outbound(msg.data, user_id)
            except SignalingProtocolError as exc:
                logger.warning("Malformed frame from %s: %s", user_id, exc)
                continue
            logger.debug("%s %s -> %s", event.type, user_id, event.to_id)
            await relay.route(event)
    finally:
        if user_id is not None:
            relay.unregister(user_id, ws)
    return ws


async def _health_handler(request: web.Request) -> web.Response:
    relay = request.app[_relay_key]
    return web.json_response({"status": "ok", "online": len(relay.online)})


def create_app(pool: asyncpg.Pool | None = None) -> web.Application:
    app = web.Application()
    app[_relay_key] = Relay(pool)
    app.router.add_get("/ws", _ws_handler)
    app.router.add_get("/health", _health_handler)
    return app


def get_relay(app: web.Application) -> Relay:
    return app[_relay_key]


async def start_relay(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Relay listening on %s:%d", host, port)
    return runner


async def stop_relay(runner: web.AppRunner) -> None:
    await runner.cleanup()
