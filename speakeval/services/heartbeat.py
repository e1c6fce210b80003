"""Background renewal of a held job lock."""

import asyncio
import contextlib
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakeval.services.job_service import job_service
from speakeval.services.key_pool import KeyPoolManager

logger = logging.getLogger(__name__)


class LockHeartbeat:
    """Extends a job lock every `interval` seconds while the block runs.

    With a key pool, credential locks the job holds are renewed in the same
    transaction, so a long provider call cannot outlive its credential lock.

    Usage:
        async with LockHeartbeat(session_factory, job_id, token, 15, 300, key_pool) as heartbeat:
            ...
        if heartbeat.lost: ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: str,
        token: str,
        interval_seconds: float,
        lock_seconds: int,
        key_pool: Optional[KeyPoolManager] = None,
    ):
        self.session_factory = session_factory
        self.job_id = job_id
        self.token = token
        self.interval_seconds = interval_seconds
        self.lock_seconds = lock_seconds
        self.key_pool = key_pool
        self.lost = False
        self.beats = 0
        self._task: asyncio.Task | None = None

    async def __aenter__(self) -> "LockHeartbeat":
        self._task = asyncio.create_task(self._run(), name=f"heartbeat-{self.job_id}")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                async with self.session_factory() as db:
                    renewed = await job_service.renew_lock(db, self.job_id, self.token, self.lock_seconds)
                    if renewed and self.key_pool is not None:
                        await self.key_pool.extend_locks(db, self.job_id)
                    await db.commit()
            except Exception:
                logger.exception(f"Heartbeat for job {self.job_id} failed; retrying next interval")
                continue

            if not renewed:
                self.lost = True
                logger.warning(f"Job {self.job_id} lock lost; heartbeat stopped")
                return
            self.beats += 1
