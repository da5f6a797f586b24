"""Relay call log: migration runner and call_events access."""

from __future__ import annotations

import logging
import re
from pathlib import Path

import asyncpg

from peercall.signaling.events import SignalingEvent

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"
_FILENAME_RE = re.compile(r"^(\d+)_.*\.sql$")


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version     INTEGER PRIMARY KEY,
            applied_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            filename    TEXT NOT NULL
        )
    """)


def _discover_migrations(directory: Path = _MIGRATIONS_DIR) -> list[tuple[int, Path]]:
    """Return (version, path) pairs sorted by version."""
    found: list[tuple[int, Path]] = []
    for p in directory.glob("*.sql"):
        m = _FILENAME_RE.match(p.name)
        if m:
            found.append((int(m.group(1)), p))
    found.sort(key=lambda t: t[0])
    return found


def _is_blank(sql: str) -> bool:
    return all(
        line.strip().startswith("--") or not line.strip() for line in sql.splitlines()
    )


async def run_migrations(pool: asyncpg.Pool, directory: Path = _MIGRATIONS_DIR) -> int:
    """Apply pending migrations and return the number applied."""
    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
    applied = {r["version"] for r in rows}

    count = 0
    for version, path in _discover_migrations(directory):
        if version in applied:
            continue
        sql = path.read_text().strip()
        if _is_blank(sql):
            continue
        async with pool.acquire() as conn, conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                version,
                path.name,
            )
        logger.info("Applied migration %s", path.name)
        count += 1

    if count:
        logger.info("Applied %d migration(s)", count)
    else:
        logger.info("No pending migrations")
    return count


async def record_call_event(pool: asyncpg.Pool, event: SignalingEvent) -> None:
    await pool.execute(
        "INSERT INTO call_events (event, from_user, to_user, call_id, reason)"
        " VALUES ($1, $2, $3, $4, $5)",
        event.type.value,
        event.from_id,
        event.to_id,
        event.call_id,
        event.reason,
    )


async def fetch_call_events(
    pool: asyncpg.Pool, user_id: str, limit: int = 50
) -> list[asyncpg.Record]:
    """Most recent call-log rows involving *user_id*, newest first."""
    return await pool.fetch(
        "SELECT event, from_user, to_user, call_id, reason, created_at"
        " FROM call_events WHERE from_user = $1 OR to_user = $1"
        " ORDER BY id DESC LIMIT $2",
        user_id,
        limit,
    )
