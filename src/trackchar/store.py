"""In-memory characterization store with lazy embeddings and durable flushes."""

import logging
from dataclasses import replace
from pathlib import Path

from trackchar.config import Settings
from trackchar.db import PersistenceManager, resolve_store_path
from trackchar.embed import EmbeddingBackend
from trackchar.errors import DimensionMismatch
from trackchar.maintenance import MaintenanceLoop
from trackchar.models import CharacterizationRecord, MissingReport, as_float32

logger = logging.getLogger(__name__)


class CharacterizationStore:
    """Characterization records keyed by id.

    Reads and inserts go straight to a dict; single dict operations are atomic,
    so concurrent tasks and threads never need a store-wide lock. Every
    mutation marks the store dirty and the persistence manager flushes it.

    Records are loaded from disk on construction. Call ``start()`` (or use the
    store as an async context manager) to run background embedding
    maintenance, and ``close()`` to stop it and flush pending changes.
    """

    def __init__(
        self,
        settings: Settings,
        backend: EmbeddingBackend,
        path: Path | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.persistence = PersistenceManager(path or resolve_store_path(settings.storage_root))
        self._records: dict[str, CharacterizationRecord] = self.persistence.load()
        self._dimension: int | None = None
        for record in self._records.values():
            if record.has_embedding:
                self._dimension = len(record.embedding)
                break
        self.maintenance = MaintenanceLoop(self, backend, settings)

    @property
    def path(self) -> Path:
        return self.persistence.path

    @property
    def dimension(self) -> int | None:
        """Length shared by every non-empty embedding, once one is known."""
        return self._dimension

    @property
    def is_dirty(self) -> bool:
        return self.persistence.is_dirty

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def check_dimension(self, vector: list[float]) -> None:
        """Raise DimensionMismatch unless ``vector`` fits the store."""
        if not vector:
            return
        if self._dimension is None:
            self._dimension = len(vector)
        elif len(vector) != self._dimension:
            raise DimensionMismatch(self._dimension, len(vector))

    def get(self, record_id: str) -> CharacterizationRecord | None:
        """A copy of the stored record; edits go back through ``upsert``."""
        record = self._records.get(record_id)
        return _copy(record) if record is not None else None

    def all(self) -> list[CharacterizationRecord]:
        return [_copy(r) for r in self._snapshot()]

    def _snapshot(self) -> list[CharacterizationRecord]:
        return list(self._records.values())

    def mark_dirty(self) -> None:
        self.persistence.mark_dirty()

    async def save_if_dirty(self) -> bool:
        return await self.persistence.save(self._snapshot)

    async def upsert(self, record: CharacterizationRecord, flush: bool = True) -> CharacterizationRecord:
        """Insert or replace a record, embedding its characteristics if needed.

        A failed embedding is stored as an empty vector and never fails the
        upsert. A caller-supplied vector of the wrong length raises
        DimensionMismatch.

        With ``flush=False`` the change is only marked dirty; batch writers call
        ``save_if_dirty()`` themselves.

        The caller keeps its own object; a copy of what was stored is returned.
        """
        record = _copy(record)
        if not self.settings.embeddings_active:
            record.embedding = []
        elif record.embedding is None and record.characteristics:
            result = await self.backend.try_compute(record.characteristics)
            record.embedding = result.vector if result.ok else []
            try:
                self.check_dimension(record.embedding)
            except DimensionMismatch as e:
                logger.error("Discarding embedding for %s: %s", record.id, e)
                record.embedding = []
        elif record.embedding:
            record.embedding = as_float32(record.embedding)
            self.check_dimension(record.embedding)

        self._records[record.id] = record
        self.mark_dirty()
        if flush:
            await self.save_if_dirty()
        return _copy(record)

    async def add_embeddings(self, text: str, vector: list[float]) -> None:
        """Register a bare characteristics string with a known vector."""
        vector = as_float32(vector)
        self.check_dimension(vector)
        self._records[text] = CharacterizationRecord(id=text, characteristics=text, embedding=vector)
        self.mark_dirty()
        await self.save_if_dirty()

    def propagate(self, characteristics: str, vector: list[float]) -> int:
        """Give every record sharing ``characteristics`` the same vector.

        Returns the number of records updated.
        """
        vector = as_float32(vector)
        self.check_dimension(vector)
        updated = 0
        for record in self._snapshot():
            if record.characteristics == characteristics:
                record.embedding = list(vector)
                updated += 1
        if updated:
            self.mark_dirty()
        return updated

    def mark_failed(self, characteristics: str) -> int:
        """Record a failed attempt on records that were never embedded."""
        marked = 0
        for record in self._snapshot():
            if record.characteristics == characteristics and record.embedding is None:
                record.embedding = []
                marked += 1
        if marked:
            self.mark_dirty()
        return marked

    def clear_embeddings(self) -> int:
        """Mark every embedding as failed. Returns how many records changed."""
        cleared = 0
        for record in self._snapshot():
            if record.embedding is None or record.embedding:
                record.embedding = []
                cleared += 1
        if cleared:
            self.mark_dirty()
        self._dimension = None
        return cleared

    async def disable_embeddings_and_clear(self) -> int:
        """Drop all vectors after local embeddings were switched off."""
        cleared = self.clear_embeddings()
        if cleared:
            logger.info("Cleared embeddings on %d records", cleared)
        await self.save_if_dirty()
        return cleared

    def pending_characteristics(self) -> list[str]:
        """Distinct characteristics whose records still lack a usable vector."""
        seen: dict[str, None] = {}
        for record in self._snapshot():
            if not record.needs_embedding:
                continue
            seen.setdefault(record.characteristics, None)
        return list(seen)

    def missing_embeddings_report(self, sample: int = 5) -> MissingReport:
        """Count distinct characteristics with no usable vector on any record."""
        covered: dict[str, bool] = {}
        for record in self._snapshot():
            if not record.characteristics:
                continue
            covered[record.characteristics] = covered.get(record.characteristics, False) or record.has_embedding
        missing = [text for text, ok in covered.items() if not ok]
        return MissingReport(total=len(covered), missing=len(missing), sample=missing[:sample])

    def start(self) -> None:
        if self.settings.characterization_enabled:
            self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.save_if_dirty()

    async def __aenter__(self) -> "CharacterizationStore":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

def _copy(record: CharacterizationRecord) -> CharacterizationRecord:
    embedding = list(record.embedding) if record.embedding is not None else None
    return replace(record, embedding=embedding)

