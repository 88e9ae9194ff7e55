"""Background sweep that removes expired token records.

Validation already rejects expired records, so the sweep only keeps the
``auth_token`` table from growing; running it twice, or on two nodes at once,
is harmless. A Redis lock is still taken when Redis is available so a fleet
does not issue the same DELETE from every node.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from authlineage.logging import get_logger

if TYPE_CHECKING:
    from authlineage.service.tokens import TokenService
    from authlineage.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PURGE_LOCK_NAME = "token_purge"
PURGE_LOCK_TTL_SECONDS = 300


class PurgeScheduler:
    """Runs ``TokenService.purge_expired`` on a fixed interval."""

    def __init__(
        self,
        tokens: "TokenService",
        cache: Optional["RedisCache"] = None,
        *,
        interval_seconds: int,
    ) -> None:
        self.tokens = tokens
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("token_purge_already_running")
            return
        if self.interval_seconds <= 0:
            logger.info("token_purge_disabled", interval_seconds=self.interval_seconds)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_purge_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_purge_stopped")

    async def run_once(self) -> Optional[int]:
        """Run a single sweep; returns ``None`` when another node holds the lock."""
        owner: Optional[str] = None
        if self.cache:
            owner = await self.cache.acquire_lock(PURGE_LOCK_NAME, PURGE_LOCK_TTL_SECONDS)
            if owner is None:
                logger.info("token_purge_skipped", reason="lock_held")
                return None
        try:
            return await asyncio.to_thread(self.tokens.purge_expired)
        finally:
            if self.cache and owner:
                await self.cache.release_lock(PURGE_LOCK_NAME, owner)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "token_purge_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.interval_seconds)
