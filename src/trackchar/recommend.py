"""Similarity search over characterization embeddings."""

import asyncio
import logging
import os
import re
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from trackchar.errors import DimensionMismatch
from trackchar.models import CharacterizationRecord

if TYPE_CHECKING:
    from trackchar.store import CharacterizationStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
VECTOR_MATCH_THRESHOLD = 0.90
VECTOR_MATCH_LIMIT = 15

# Checked in order, first match wins.
GENRE_PENALTIES: tuple[tuple[str, float], ...] = (
    ("classical", 0.7),
    ("opera", 0.7),
    ("baroque", 0.7),
    ("film score", 0.8),
    ("easy listening", 0.8),
    ("folk", 0.85),
    ("country", 0.85),
)
ROCK_BOOST = 1.2

_GENRE_DELIMITERS = re.compile(r'[\[\]",\n]')


class ScoredRecord(NamedTuple):
    record: CharacterizationRecord
    score: float


def cosine_sim(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def genre_token(characteristics: str) -> str:
    """First delimited segment of a characterization, lower-cased."""
    for part in _GENRE_DELIMITERS.split(characteristics):
        part = part.strip().lower()
        if part:
            return part
    return ""


def genre_weight(genre: str) -> float:
    """Multiplier applied to a candidate's similarity based on its genre."""
    weight = 1.0
    for name, penalty in GENRE_PENALTIES:
        if name in genre:
            weight *= penalty
            break
    if "rock" in genre:
        weight *= ROCK_BOOST
    return weight


def _genre_adjusted(record: CharacterizationRecord, score: float) -> float:
    return score * genre_weight(genre_token(record.characteristics))


def candidates(records: Sequence[CharacterizationRecord]) -> list[CharacterizationRecord]:
    """Records that can take part in a search: text plus a usable vector."""
    return [r for r in records if r.characteristics and r.has_embedding]


def score_candidates(
    query: Sequence[float] | np.ndarray,
    records: Sequence[CharacterizationRecord],
    adjust: Callable[[CharacterizationRecord, float], float] | None = None,
    workers: int | None = None,
) -> list[ScoredRecord]:
    """Score every record against ``query`` across a thread pool.

    Chunks come back in submission order, so equal scores keep the order of
    ``records`` after a stable sort. A record whose vector has the wrong
    length is logged and left out.
    """
    if not records:
        return []
    query_vec = np.asarray(query, dtype=np.float64)
    workers = workers or os.cpu_count() or 1
    size = max(1, -(-len(records) // workers))
    chunks = [records[i : i + size] for i in range(0, len(records), size)]

    def _score_chunk(chunk: Sequence[CharacterizationRecord]) -> list[ScoredRecord]:
        scored = []
        for record in chunk:
            try:
                score = cosine_sim(query_vec, record.embedding)
            except DimensionMismatch as e:
                logger.warning("Skipping %s - %s: %s", record.artist, record.title, e)
                continue
            if adjust is not None:
                score = adjust(record, score)
            scored.append(ScoredRecord(record, score))
        return scored

    with ThreadPoolExecutor(max_workers=min(workers, len(chunks))) as pool:
        results = list(pool.map(_score_chunk, chunks))
    return [item for chunk in results for item in chunk]


def _ranked(scored: list[ScoredRecord]) -> list[ScoredRecord]:
    return sorted(scored, key=lambda s: s.score, reverse=True)


async def find_similar(
    store: "CharacterizationStore",
    query_text: str,
    limit: int = DEFAULT_LIMIT,
) -> list[ScoredRecord]:
    """Records whose characterization is closest to ``query_text``.

    Brings embeddings up to date first so freshly added records are not
    missed. Returns an empty list when characterization is disabled, the store
    is empty or the query cannot be embedded.
    """
    if not store.settings.characterization_enabled:
        return []

    await store.maintenance.ensure_embeddings()

    pool = candidates(store.all())
    if not pool:
        return []

    query = await store.backend.try_compute(query_text)
    if not query.ok:
        logger.info("Cannot embed search query (%s)", query.status.value)
        return []

    scored = await asyncio.to_thread(score_candidates, query.vector, pool)
    return _ranked(scored)[:limit]


async def find_similar_from_vector(
    store: "CharacterizationStore",
    query_vector: Sequence[float],
) -> list[ScoredRecord]:
    """Genre-weighted matches for an existing embedding.

    Each candidate's similarity is scaled by the weight of its own leading
    genre, then only scores above 0.90 are kept, at most 15 of them.
    """
    if not store.settings.characterization_enabled:
        return []

    pool = candidates(store.all())
    if not pool or not len(query_vector):
        return []

    scored = await asyncio.to_thread(score_candidates, query_vector, pool, _genre_adjusted)
    matches = [s for s in scored if s.score > VECTOR_MATCH_THRESHOLD]
    return _ranked(matches)[:VECTOR_MATCH_LIMIT]


def records_only(results: Sequence[ScoredRecord]) -> list[CharacterizationRecord]:
    return [s.record for s in results]
