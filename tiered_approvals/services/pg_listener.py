"""
Postgres change listener: bridges NOTIFY events on ``approval_levels`` into
the in-process ChangeFeed.

The trigger installed by the migration sends a JSON payload
``{"op": "UPDATE", "client_id": "...", "id": "..."}`` on the configured
channel for every insert, update and delete.
"""

import asyncio
import json
from typing import Optional

import asyncpg
import structlog

from tiered_approvals.config import settings
from tiered_approvals.services.change_feed import EVENT_TYPES, ChangeFeed, LevelChange

logger = structlog.get_logger()


def parse_notification(payload: str) -> Optional[LevelChange]:
    """Turn a NOTIFY payload into a LevelChange; malformed payloads give None."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        logger.warning("pg_notify_payload_invalid", payload=payload)
        return None
    if not isinstance(data, dict):
        logger.warning("pg_notify_payload_invalid", payload=payload)
        return None

    event = str(data.get("op", "")).upper()
    client_id = data.get("client_id")
    if event not in EVENT_TYPES or not client_id:
        logger.warning("pg_notify_payload_invalid", payload=payload)
        return None
    level_id = data.get("id")
    return LevelChange(
        event=event,
        client_id=str(client_id),
        level_id=str(level_id) if level_id else None,
        remote=True,
    )


def _listen_dsn(url: str) -> str:
    """asyncpg wants a plain postgresql:// DSN, not the SQLAlchemy dialect URL."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


class PgChangeListener:
    def __init__(
        self,
        feed: ChangeFeed,
        dsn: Optional[str] = None,
        channel: Optional[str] = None,
    ):
        self.feed = feed
        self.dsn = _listen_dsn(dsn or settings.DATABASE_URL)
        self.channel = channel or settings.REALTIME_CHANNEL
        self._conn: Optional[asyncpg.Connection] = None
        self._tasks: set[asyncio.Task] = set()

    async def start(self):
        self._conn = await asyncpg.connect(
            self.dsn, ssl="require" if settings.DB_SSL_REQUIRED else None
        )
        await self._conn.add_listener(self.channel, self._on_notify)
        logger.info("pg_change_listener_started", channel=self.channel)

    def _on_notify(self, connection, pid, channel, payload):
        change = parse_notification(payload)
        if change is None:
            return
        task = asyncio.get_running_loop().create_task(self.feed.publish(change))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self):
        if self._conn is not None:
            await self._conn.remove_listener(self.channel, self._on_notify)
            await self._conn.close()
            self._conn = None
            logger.info("pg_change_listener_stopped", channel=self.channel)
        for task in list(self._tasks):
            task.cancel()
