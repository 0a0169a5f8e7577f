import asyncio
import logging
from datetime import datetime
from typing import Callable

from .errors import JobNotFound
from .interfaces import FileStorageGateway, JobStoreGateway
from .models import utcnow

logger = logging.getLogger(__name__)


class TtlReaper:
    """Deletes jobs, and their files, once ``expires_at`` has passed.

    ``sweep`` does one pass and is safe to call directly (tests do).
    ``start``/``stop`` run it on a fixed interval on the event loop, with
    the blocking pass offloaded to a worker thread.
    """

    def __init__(
        self,
        store: JobStoreGateway,
        storage: FileStorageGateway,
        *,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._storage = storage
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None

    def sweep(self) -> int:
        try:
            expired = self._store.list_expired(self._clock())
        except Exception:
            logger.exception("[TTL] Could not list expired jobs")
            return 0

        removed = 0
        for job in expired:
            try:
                self._storage.remove_job_files(job)
                self._store.delete(job.id)
            except JobNotFound:
                # Deleted by a client between listing and now.
                removed += 1
                continue
            except Exception:
                logger.exception("[TTL] Failed to delete expired job %s", job.id)
                continue
            removed += 1
            logger.info("[TTL] Deleted expired job %s", job.id)

        if removed:
            logger.info("[TTL] Cleaned %d expired job(s)", removed)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("[TTL] Sweep crashed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="ttl-reaper")
            logger.info("[TTL] Cleanup worker started (interval: %gs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
