"""Background synchronization loop.

The :class:`SyncWorker` runs :meth:`SyncEngine.sync_all` every
``sync_interval_seconds`` and whenever :meth:`SyncWorker.trigger` is called
(app start, foreground, manual request). Stopping the worker cancels the
current cycle between tables, never inside a local transaction.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from tillsync.core.settings import settings
from tillsync.db.migrations import SchemaMigrationError
from tillsync.db.transactions import TransactionError
from tillsync.services.remote import RemoteDisabledError
from tillsync.services.sync import SyncEngine, SyncError, SyncReport

# Configure logger for this module
logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0


class SyncWorker:
    """Periodically pushes and pulls every table through a :class:`SyncEngine`."""

    def __init__(self, engine: SyncEngine, interval: float | None = None) -> None:
        """Initialize the worker.

        Args:
            engine: Sync engine to drive.
            interval: Seconds between cycles; defaults to ``sync_interval_seconds``.
        """
        self.engine = engine
        self.interval = max(0.1, float(interval or settings.sync_interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self.last_report: SyncReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop; the first cycle runs immediately."""
        if not getattr(self.engine.remote, "enabled", True):
            logger.info("Remote store disabled; sync worker not started")
            return
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Sync worker started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the loop and wait for the in-flight table to finish."""
        if self._task is None:
            return
        self._stopping.set()
        self._wakeup.set()
        await self._task
        self._task = None
        logger.info("Sync worker stopped")

    def trigger(self) -> None:
        """Request a cycle as soon as the current one (if any) finishes."""
        self._wakeup.set()

    async def run_once(self) -> SyncReport:
        """Run one cycle in the caller's task, honouring :meth:`stop`."""
        self.last_report = await self.engine.sync_all(cancel=self._stopping, raise_on_error=True)
        return self.last_report

    async def _run(self) -> None:
        delay = 0.0
        while not self._stopping.is_set():
            if delay:
                await self._wait_for_wakeup(delay)
                if self._stopping.is_set():
                    return
            self._wakeup.clear()

            try:
                await self.run_once()
            except SyncError as e:
                self.last_report = e.report
                if isinstance(e.__cause__, RemoteDisabledError):
                    logger.info("Remote store disabled; sync worker exiting")
                    return
                logger.warning("SyncWorker encountered SyncError: %s", e)
                delay = min(self.interval * 4, MAX_BACKOFF_SECONDS)
                continue
            except SchemaMigrationError as e:
                logger.error("Sync worker cannot open the local store: %s", e, exc_info=True)
                return
            except (TransactionError, SQLAlchemyError) as e:
                logger.warning("SyncWorker encountered %s: %s", type(e).__name__, e)
                delay = min(self.interval * 4, MAX_BACKOFF_SECONDS)
                continue
            delay = self.interval

    async def _wait_for_wakeup(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            pass
