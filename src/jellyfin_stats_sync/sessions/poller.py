"""Poll live sessions and record finished playbacks."""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from ..config import Config, ServerConfig
from ..database import Database
from ..jellyfin.client import JellyfinClient
from ..models import Server, TrackedSession
from .tracking import (
    build_playback_session,
    filter_valid_sessions,
    final_duration,
    format_ticks,
    new_tracked_session,
    session_key,
    update_tracked_session,
)

logger = logging.getLogger(__name__)


class SessionPoller:
    """
    Track playback sessions of every registered server between polls.

    A session that disappears from /Sessions is considered ended and is
    written to the sessions table when it played for more than a second.
    """

    def __init__(
        self,
        db: Database,
        config: Config,
        client_factory: Callable[[ServerConfig], JellyfinClient] = JellyfinClient,
    ):
        self.db = db
        self.config = config
        self.client_factory = client_factory
        self._tracked: dict[int, dict[str, TrackedSession]] = {}
        self._clients: dict[int, JellyfinClient] = {}
        self._task: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()
        self._running = False
        self._cycle_in_progress = False

    @property
    def interval(self) -> float:
        return self.config.session_poller.interval_seconds

    # ========== Lifecycle ==========

    async def start(self) -> None:
        if not self.config.session_poller.enabled:
            logger.info("Session poller disabled")
            return
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Session poller started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for cycle in list(self._cycles):
            cycle.cancel()
        if self._cycles:
            await asyncio.gather(*self._cycles, return_exceptions=True)

        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        logger.info("Session poller stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            # Ticks fire on schedule even when a cycle overruns the interval
            cycle = asyncio.create_task(self.tick())
            self._cycles.add(cycle)
            cycle.add_done_callback(self._cycles.discard)
            await asyncio.sleep(self.interval)

    async def tick(self) -> None:
        """One timer tick. Skipped while the previous cycle is still running."""
        if self._cycle_in_progress:
            logger.debug("Previous session poll still running, skipping tick")
            return
        try:
            await self.poll_once()
        except Exception as e:
            logger.exception("Error during session polling: %s", e)

    async def poll_once(self) -> None:
        """Poll every registered server once, one after the other."""
        self._cycle_in_progress = True
        try:
            for server in await self.db.list_servers():
                await self._poll_server(server)
        finally:
            self._cycle_in_progress = False

    def _client_for(self, server: Server) -> JellyfinClient:
        client = self._clients.get(server.id)
        if client is None:
            server_config = self.config.get_server(server.name) or ServerConfig(
                name=server.name, url=server.url, api_key=server.api_key
            )
            client = self.client_factory(server_config)
            self._clients[server.id] = client
        return client

    async def _poll_server(self, server: Server) -> None:
        # A failing server never blocks the servers polled after it
        try:
            sessions = await self._client_for(server).get_sessions()
            await self.process_server_sessions(server.id, sessions, server_name=server.name)
        except httpx.HTTPError as e:
            # Tracked state stays as is, sessions are not ended by a failed fetch
            logger.error("[%s] Failed to fetch sessions: %s", server.name, e)
        except Exception:
            logger.exception("[%s] Session poll failed", server.name)

    # ========== Session Processing ==========

    async def process_server_sessions(
        self,
        server_id: int,
        sessions: list[dict[str, Any]],
        now: datetime | None = None,
        server_name: str | None = None,
    ) -> None:
        """Fold one /Sessions response into the tracked state of a server."""
        now = now or datetime.now(UTC)
        label = server_name or str(server_id)
        tracked = dict(self._tracked.get(server_id, {}))

        current = {session_key(session): session for session in filter_valid_sessions(sessions)}
        new_keys = [key for key in current if key not in tracked]
        updated_keys = [key for key in current if key in tracked]
        ended_keys = [key for key in tracked if key not in current]

        for key in new_keys:
            session = new_tracked_session(current[key], now)
            tracked[key] = session
            logger.info(
                "[%s] New session: user=%s content=%s paused=%s",
                label,
                session.user_name,
                session.item_name,
                session.is_paused,
            )

        for key in updated_keys:
            previous = tracked[key]
            session = update_tracked_session(previous, current[key], now)
            tracked[key] = session
            if session.is_paused != previous.is_paused or session.play_duration > previous.play_duration + 10:
                logger.debug(
                    "[%s] Updated session: user=%s content=%s paused=%s duration=%ds position=%s",
                    label,
                    session.user_name,
                    session.item_name,
                    session.is_paused,
                    session.play_duration,
                    format_ticks(session.position_ticks),
                )

        for key in ended_keys:
            await self._end_session(server_id, label, tracked.pop(key), now)

        self._tracked[server_id] = tracked

    async def _end_session(self, server_id: int, label: str, tracked: TrackedSession, now: datetime) -> None:
        duration = final_duration(tracked, now)
        if duration <= 1:
            logger.debug("[%s] Discarding session %s (%ds)", label, tracked.session_key, duration)
            return

        try:
            user_id = tracked.user_jellyfin_id if await self.db.user_exists(tracked.user_jellyfin_id) else None
            record = build_playback_session(tracked, server_id, user_id, duration, now)
            await self.db.insert_session(record)
        except Exception:
            logger.exception("[%s] Failed to save playback session %s", label, tracked.session_key)
            return

        logger.info(
            "[%s] Ended session: user=%s content=%s duration=%ds progress=%.1f%% completed=%s",
            label,
            tracked.user_name,
            tracked.item_name,
            duration,
            record.percent_complete,
            record.completed,
        )

    # ========== Status ==========

    def get_tracked_sessions(self, server_id: int) -> dict[str, TrackedSession]:
        """Copies of the tracked sessions of a server."""
        return {key: session.model_copy(deep=True) for key, session in self._tracked.get(server_id, {}).items()}

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.session_poller.enabled,
            "interval": self.interval,
            "is_running": self._running,
            "tracked_servers": len(self._tracked),
            "total_tracked_sessions": sum(len(sessions) for sessions in self._tracked.values()),
        }
