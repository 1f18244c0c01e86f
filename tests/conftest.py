"""Shared fixtures: a fake embedding provider and stores on temp paths."""

import asyncio
import hashlib
from pathlib import Path

import pytest

from trackchar.config import Settings
from trackchar.embed import EmbeddingBackend
from trackchar.store import CharacterizationStore


class FakeProvider:
    """Deterministic embeddings; records every text it is asked to embed."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        dim: int = 4,
        fail_on: set[str] | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self.dim = dim
        self.fail_on = fail_on or set()
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if text in self.fail_on:
            raise RuntimeError(f"cannot embed {text}")
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode()).digest()
        # Multiples of 1/256 survive the float32 round trip exactly
        return [(b + 1) / 256 for b in digest[: self.dim]]


@pytest.fixture
def settings() -> Settings:
    return Settings(maintenance_interval=3600.0)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "track_characteristics.parquet"


@pytest.fixture
def make_store(settings: Settings, provider: FakeProvider, store_path: Path):
    def _make(path: Path | None = None) -> CharacterizationStore:
        backend = EmbeddingBackend(provider, settings)
        return CharacterizationStore(settings, backend, path=path or store_path)

    return _make


@pytest.fixture
def store(make_store) -> CharacterizationStore:
    return make_store()
