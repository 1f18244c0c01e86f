"""Parquet schema and read/write operations for the characterization file."""

import asyncio
import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from trackchar.config import APP_DIR, STORE_DIRNAME, STORE_FILENAME
from trackchar.errors import DeserializationError, PersistenceIOError
from trackchar.models import CharacterizationRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
SCHEMA_VERSION_KEY = b"trackchar.schema_version"

MAX_SAVE_ATTEMPTS = 3
SAVE_RETRY_DELAY = 0.1

RECORDS_SCHEMA = pa.schema(
    [
        pa.field("id", pa.string(), nullable=False),
        pa.field("characteristics", pa.string()),
        pa.field("embedding", pa.list_(pa.float32())),
        pa.field("artist", pa.string()),
        pa.field("title", pa.string()),
        pa.field("content_hash", pa.string()),
        pa.field("last_verified", pa.timestamp("us")),
        pa.field("needs_review", pa.bool_()),
    ],
    metadata={SCHEMA_VERSION_KEY: SCHEMA_VERSION.encode()},
)


def resolve_store_path(storage_root: Path | None) -> Path:
    """Locate the characterization file, falling back to the app directory.

    The file lives in a hidden folder under the storage root. When no root is
    configured, or it is missing or not writable, the application-private
    directory is used instead.
    """
    if storage_root is not None:
        if storage_root.is_dir():
            folder = storage_root / STORE_DIRNAME
            try:
                folder.mkdir(exist_ok=True)
                return folder / STORE_FILENAME
            except OSError as e:
                logger.warning("Cannot use storage root %s: %s", storage_root, e)
        else:
            logger.warning("Storage root %s is unavailable, using %s", storage_root, APP_DIR)
    APP_DIR.mkdir(parents=True, exist_ok=True)
    return APP_DIR / STORE_FILENAME


def _to_row(record: CharacterizationRecord) -> dict:
    return {
        "id": record.id,
        "characteristics": record.characteristics,
        "embedding": record.embedding,
        "artist": record.artist,
        "title": record.title,
        "content_hash": record.content_hash,
        "last_verified": record.last_verified,
        "needs_review": record.needs_review,
    }


def _from_row(row: dict) -> CharacterizationRecord:
    return CharacterizationRecord(
        id=row["id"],
        characteristics=row["characteristics"] or "",
        embedding=row["embedding"],
        artist=row["artist"] or "",
        title=row["title"] or "",
        content_hash=row["content_hash"] or "",
        last_verified=row["last_verified"],
        needs_review=bool(row["needs_review"]),
    )


def write_records(path: Path, records: Iterable[CharacterizationRecord]) -> None:
    """Write all records to a sibling temp file, then swap it into place."""
    table = pa.Table.from_pylist([_to_row(r) for r in records], schema=RECORDS_SCHEMA)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        pq.write_table(table, tmp)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def read_records(path: Path) -> dict[str, CharacterizationRecord]:
    """Read records keyed by id. The first row for a duplicated id wins."""
    try:
        table = pq.read_table(path)
    except (OSError, pa.ArrowException) as e:
        raise DeserializationError(f"cannot read {path}: {e}") from e

    metadata = table.schema.metadata or {}
    version = metadata.get(SCHEMA_VERSION_KEY, b"").decode()
    if version != SCHEMA_VERSION:
        raise DeserializationError(f"{path} has schema version {version!r}, expected {SCHEMA_VERSION!r}")

    missing = set(RECORDS_SCHEMA.names) - set(table.schema.names)
    if missing:
        raise DeserializationError(f"{path} is missing columns: {', '.join(sorted(missing))}")

    records: dict[str, CharacterizationRecord] = {}
    for row in table.select(RECORDS_SCHEMA.names).to_pylist():
        if not row["id"]:
            continue
        records.setdefault(row["id"], _from_row(row))
    return records


class PersistenceManager:
    """Owns the dirty flag and serializes saves of the record set."""

    def __init__(
        self,
        path: Path,
        max_attempts: int = MAX_SAVE_ATTEMPTS,
        retry_delay: float = SAVE_RETRY_DELAY,
    ) -> None:
        self.path = path
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._dirty = False
        self._gate = asyncio.Lock()

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        self._dirty = True

    def load(self) -> dict[str, CharacterizationRecord]:
        """Load the persisted records, or an empty mapping if that fails."""
        if not self.path.exists():
            return {}
        try:
            records = read_records(self.path)
        except DeserializationError as e:
            logger.warning("Starting with an empty store: %s", e)
            return {}
        logger.debug("Loaded %d records from %s", len(records), self.path)
        return records

    async def save(self, snapshot: Callable[[], list[CharacterizationRecord]]) -> bool:
        """Persist the records returned by ``snapshot`` if anything changed.

        Returns False when the write failed; the failure is logged and the
        dirty flag stays set so the next save retries the same data.
        """
        if not self._dirty:
            return True

        async with self._gate:
            if not self._dirty:
                return True
            # Cleared before the snapshot so changes made during the write
            # mark the store dirty again.
            self._dirty = False
            records = snapshot()
            try:
                await self._write_with_retries(records)
            except PersistenceIOError as e:
                self._dirty = True
                logger.error("Failed to save characterizations: %s", e)
                return False
            except (pa.ArrowException, TypeError, ValueError) as e:
                self._dirty = True
                logger.error("Failed to serialize characterizations: %s", e)
                return False
            logger.debug("Saved %d records to %s", len(records), self.path)
            return True

    async def _write_with_retries(self, records: list[CharacterizationRecord]) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.to_thread(write_records, self.path, records)
                return
            except OSError as e:
                if attempt >= self.max_attempts:
                    raise PersistenceIOError(
                        f"{self.path}: {e} (after {attempt} attempts)"
                    ) from e
                logger.debug("Save attempt %d failed (%s), retrying", attempt, e)
                await asyncio.sleep(self.retry_delay)
