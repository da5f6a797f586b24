"""Peercall entrypoint: run the signaling relay or a headless call endpoint."""

import argparse
import asyncio
import logging
import signal

import asyncpg
from dotenv import load_dotenv

from peercall.call.coordinator import CallCoordinator, peer_connection_factory
from peercall.call.session import CallPhase, CallSnapshot
from peercall.config import Settings
from peercall.database import run_migrations
from peercall.errors import CallError
from peercall.media import MediaAcquisition
from peercall.signaling.channel import SignalingChannel
from peercall.signaling.relay import create_app, start_relay, stop_relay

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _shutdown_event() -> asyncio.Event:
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    return shutdown


async def run_relay(settings: Settings) -> None:
    pool = None
    if settings.database_url:
        pool = await asyncpg.create_pool(settings.database_url)
        assert pool is not None
        await run_migrations(pool)

    app = create_app(pool)
    runner = await start_relay(app, settings.relay_host, settings.relay_port)

    shutdown = _shutdown_event()
    try:
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        await stop_relay(runner)
        if pool is not None:
            await pool.close()


async def run_endpoint(settings: Settings, peer: str | None) -> None:
    if not settings.user_id:
        raise SystemExit("PEERCALL_USER_ID is required")

    channel = SignalingChannel(settings.relay_url, settings.user_id)
    await channel.connect()
    media = MediaAcquisition(
        audio_device=settings.audio_device,
        audio_format=settings.audio_format,
        video_device=settings.video_device,
        video_format=settings.video_format,
    )
    coordinator = CallCoordinator(
        settings.user_id,
        channel,
        media,
        pc_factory=peer_connection_factory(settings.ice_servers()),
        want_video=settings.want_video,
        ring_timeout=settings.ring_timeout,
    )
    tasks: set[asyncio.Task[None]] = set()

    def on_change(snap: CallSnapshot) -> None:
        logger.info("[%s] %s %s", snap.phase, snap.status or "-", snap.remote_id or "")
        # Headless answering: pick up every invite
        if peer is None and snap.phase == CallPhase.RINGING and snap.incoming is not None:
            task = asyncio.create_task(_accept(coordinator, snap))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

    coordinator.add_listener(on_change)
    coordinator.attach()
    reader = asyncio.create_task(channel.run())

    shutdown = _shutdown_event()
    reader.add_done_callback(lambda _: shutdown.set())
    try:
        if peer is not None:
            await coordinator.start_call(peer)
        await shutdown.wait()
        logger.info("Shutting down...")
    except CallError as exc:
        logger.error("Call failed: %s", exc)
    finally:
        snap = coordinator.snapshot()
        if snap.in_call:
            logger.info("Hanging up call with %s", snap.remote_id)
        await coordinator.close()
        await channel.close()
        reader.cancel()


async def _accept(coordinator: CallCoordinator, snap: CallSnapshot) -> None:
    assert snap.incoming is not None
    try:
        await coordinator.accept_call(snap.incoming)
    except CallError as exc:
        logger.error("Could not accept call from %s: %s", snap.incoming.from_id, exc)


def main() -> None:
    parser = argparse.ArgumentParser(prog="peercall")
    sub = parser.add_subparsers(dest="mode", required=True)
    sub.add_parser("relay", help="run the signaling relay")
    call = sub.add_parser("call", help="call a peer and stay on the line")
    call.add_argument("peer")
    sub.add_parser("answer", help="wait for calls and accept them")
    args = parser.parse_args()

    load_dotenv()
    settings = Settings.from_env()
    if args.mode == "relay":
        asyncio.run(run_relay(settings))
    else:
        asyncio.run(run_endpoint(settings, getattr(args, "peer", None)))


if __name__ == "__main__":
    main()
