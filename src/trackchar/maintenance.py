"""Background backfill of missing characterization embeddings."""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from trackchar.config import Settings
from trackchar.embed import EmbeddingBackend
from trackchar.errors import DimensionMismatch
from trackchar.models import EmbeddingStatus

if TYPE_CHECKING:
    from trackchar.store import CharacterizationStore

logger = logging.getLogger(__name__)

CHECKPOINT_EVERY = 10

ProgressCallback = Callable[[int, int], None]


class MaintenanceState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


@dataclass
class PassResult:
    processed: int = 0
    failed: int = 0
    cleared: int = 0
    skipped: bool = False
    aborted: bool = False


class MaintenanceLoop:
    """Fills in missing embeddings, at most one pass at a time.

    The state lock only guards the idle/scanning switch and is never held
    while waiting on the embedding backend. A trigger that arrives while a
    pass is running is a no-op.
    """

    def __init__(
        self,
        store: "CharacterizationStore",
        backend: EmbeddingBackend,
        settings: Settings,
        interval: float | None = None,
        checkpoint_every: int = CHECKPOINT_EVERY,
    ) -> None:
        self.store = store
        self.backend = backend
        self.settings = settings
        self.interval = settings.maintenance_interval if interval is None else interval
        self.checkpoint_every = checkpoint_every
        self._state = MaintenanceState.IDLE
        self._state_lock = threading.Lock()
        self._idle = asyncio.Event()
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> MaintenanceState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _try_enter(self) -> bool:
        with self._state_lock:
            if self._state is MaintenanceState.SCANNING:
                return False
            self._state = MaintenanceState.SCANNING
            return True

    def _leave(self) -> None:
        with self._state_lock:
            self._state = MaintenanceState.IDLE
        self._idle.set()

    def _stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    async def _wait_enter(self) -> None:
        while not self._try_enter():
            self._idle.clear()
            await self._idle.wait()

    async def run_pass(self) -> PassResult:
        """One maintenance pass; clears vectors instead when embeddings are off."""
        if not self._try_enter():
            logger.debug("Maintenance pass already in progress")
            return PassResult(skipped=True)
        try:
            return await self._pass()
        finally:
            self._leave()

    async def ensure_embeddings(self) -> PassResult:
        """Like ``run_pass`` but waits out a running pass instead of skipping."""
        await self._wait_enter()
        try:
            return await self._pass()
        finally:
            self._leave()

    async def _pass(self) -> PassResult:
        if not self.settings.embeddings_active:
            cleared = self.store.clear_embeddings()
            if cleared:
                logger.info("Embeddings disabled, cleared %d records", cleared)
            await self.store.save_if_dirty()
            return PassResult(cleared=cleared)
        return await self._fill(self.store.pending_characteristics())

    async def regenerate_all(self, progress: ProgressCallback | None = None) -> PassResult:
        """Forced pass over every characteristics string lacking a usable vector.

        Waits for a running pass to finish instead of skipping, and reports
        ``progress(current, total)`` after each item. Records that already
        have embeddings are left alone.
        """
        await self._wait_enter()
        try:
            if not self.settings.embeddings_active:
                logger.info("Local embeddings are disabled, nothing to regenerate")
                return PassResult(aborted=True)
            return await self._fill(self.store.pending_characteristics(), progress)
        finally:
            self._leave()

    async def _fill(self, pending: list[str], progress: ProgressCallback | None = None) -> PassResult:
        result = PassResult()
        total = len(pending)
        if total:
            logger.info("Generating embeddings for %d characterizations", total)

        for current, text in enumerate(pending, 1):
            if self._stopping():
                logger.debug("Maintenance stopped after %d items", result.processed)
                break
            if not self.settings.embeddings_active:
                logger.info("Embeddings disabled mid-pass, stopping after %d items", result.processed)
                result.aborted = True
                return result

            outcome = await self.backend.try_compute(text)
            if outcome.status is EmbeddingStatus.UNAVAILABLE:
                result.aborted = True
                return result

            if outcome.ok:
                try:
                    self.store.propagate(text, outcome.vector)
                except DimensionMismatch as e:
                    logger.error("Discarding embedding for %r: %s", text[:60], e)
                    self.store.mark_failed(text)
                    result.failed += 1
                else:
                    result.processed += 1
                    if result.processed % self.checkpoint_every == 0:
                        await self.store.save_if_dirty()
            else:
                self.store.mark_failed(text)
                result.failed += 1

            if progress is not None:
                progress(current, total)

        await self.store.save_if_dirty()
        if total:
            logger.info(
                "Maintenance pass done: %d embedded, %d failed", result.processed, result.failed
            )
        return result

    def start(self) -> None:
        """Schedule the periodic task on the running event loop."""
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run_periodic(), name="trackchar-maintenance")

    async def stop(self) -> None:
        """Stop the periodic task; an in-flight backend call is allowed to finish."""
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None

    async def _run_periodic(self) -> None:
        first = True
        while not self._stopping():
            if not first or self.settings.embeddings_active:
                try:
                    await self.run_pass()
                except Exception:
                    logger.exception("Maintenance pass failed")
            first = False
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
