"""Environment-driven settings for the relay and call endpoints."""

from __future__ import annotations

import dataclasses
import os

DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> float | None:
    value = os.environ.get(name, "").strip()
    if not value:
        return None
    seconds = float(value)
    # Zero or negative disables the timer
    return seconds if seconds > 0 else None


@dataclasses.dataclass(frozen=True)
class IceServer:
    urls: tuple[str, ...]
    username: str | None = None
    credential: str | None = None


@dataclasses.dataclass(frozen=True)
class Settings:
    relay_url: str = "ws://localhost:8080/ws"
    relay_host: str = "0.0.0.0"
    relay_port: int = 8080
    user_id: str = ""
    stun_urls: tuple[str, ...] = DEFAULT_STUN_SERVERS
    turn_url: str | None = None
    turn_username: str | None = None
    turn_credential: str | None = None
    ring_timeout: float | None = None
    want_video: bool = True
    audio_device: str = "default"
    audio_format: str = "pulse"
    video_device: str = "/dev/video0"
    video_format: str = "v4l2"
    database_url: str | None = None

    @property
    def has_turn_server(self) -> bool:
        return all([self.turn_url, self.turn_username, self.turn_credential])

    def ice_servers(self) -> list[IceServer]:
        """STUN servers first, then TURN when fully configured."""
        servers = [IceServer(urls=(url,)) for url in self.stun_urls]
        if self.has_turn_server:
            assert self.turn_url is not None
            servers.append(
                IceServer(
                    urls=(self.turn_url,),
                    username=self.turn_username,
                    credential=self.turn_credential,
                )
            )
        return servers

    @classmethod
    def from_env(cls) -> Settings:
        stun = os.environ.get("STUN_SERVER_URLS", "")
        stun_urls = tuple(u.strip() for u in stun.split(",") if u.strip())
        return cls(
            relay_url=os.environ.get("PEERCALL_RELAY_URL", cls.relay_url),
            relay_host=os.environ.get("PEERCALL_RELAY_HOST", cls.relay_host),
            relay_port=int(os.environ.get("PEERCALL_RELAY_PORT", cls.relay_port)),
            user_id=os.environ.get("PEERCALL_USER_ID", ""),
            stun_urls=stun_urls or DEFAULT_STUN_SERVERS,
            turn_url=os.environ.get("TURN_SERVER_URL") or None,
            turn_username=os.environ.get("TURN_USERNAME") or None,
            turn_credential=os.environ.get("TURN_CREDENTIAL") or None,
            ring_timeout=_env_float("PEERCALL_RING_TIMEOUT"),
            want_video=_env_bool("PEERCALL_WANT_VIDEO", True),
            audio_device=os.environ.get("PEERCALL_AUDIO_DEVICE", cls.audio_device),
            audio_format=os.environ.get("PEERCALL_AUDIO_FORMAT", cls.audio_format),
            video_device=os.environ.get("PEERCALL_VIDEO_DEVICE", cls.video_device),
            video_format=os.environ.get("PEERCALL_VIDEO_FORMAT", cls.video_format),
            database_url=os.environ.get("DATABASE_URL") or None,
        )
