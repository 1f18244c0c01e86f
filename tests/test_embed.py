"""Tests for the embedding backend adapter."""

import asyncio

import numpy as np
import pytest

from conftest import FakeProvider
from trackchar.config import Settings
from trackchar.embed import EmbeddingBackend, EmbeddingProvider, SentenceTransformerProvider
from trackchar.errors import BackendFailure, EmbeddingUnavailable
from trackchar.models import EmbeddingStatus


class _FakeModel:
    def __init__(self) -> None:
        self.texts: list[list[str]] = []

    def encode(self, texts: list[str], **kwargs) -> np.ndarray:
        self.texts.append(texts)
        return np.array([[0.6, 0.8, 0.0]], dtype=np.float32)


class TestTryCompute:
    @pytest.mark.asyncio
    async def test_ok(self) -> None:
        backend = EmbeddingBackend(FakeProvider(vectors={"x": [0.5, 0.5]}), Settings())
        result = await backend.try_compute("x")
        assert result.ok
        assert result.vector == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_unavailable(self) -> None:
        provider = FakeProvider()
        backend = EmbeddingBackend(provider, Settings(local_embeddings_enabled=False))
        result = await backend.try_compute("x")
        assert result.status is EmbeddingStatus.UNAVAILABLE
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_characterization_off_is_unavailable(self) -> None:
        backend = EmbeddingBackend(FakeProvider(), Settings(characterization_enabled=False))
        assert (await backend.try_compute("x")).status is EmbeddingStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failed(self) -> None:
        backend = EmbeddingBackend(FakeProvider(fail_on={"x"}), Settings())
        result = await backend.try_compute("x")
        assert result.status is EmbeddingStatus.FAILED
        assert result.vector is None

    @pytest.mark.asyncio
    async def test_empty_vector_is_failure(self) -> None:
        backend = EmbeddingBackend(FakeProvider(vectors={"x": []}), Settings())
        assert (await backend.try_compute("x")).status is EmbeddingStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_calls(self) -> None:
        provider = FakeProvider()
        backend = EmbeddingBackend(provider, Settings())
        results = await asyncio.gather(*(backend.try_compute(f"t{i}") for i in range(50)))
        assert all(r.ok for r in results)
        assert sorted(provider.calls) == sorted(f"t{i}" for i in range(50))


class TestCompute:
    @pytest.mark.asyncio
    async def test_raises_when_disabled(self) -> None:
        backend = EmbeddingBackend(FakeProvider(), Settings(local_embeddings_enabled=False))
        with pytest.raises(EmbeddingUnavailable):
            await backend.compute("x")

    @pytest.mark.asyncio
    async def test_wraps_provider_errors(self) -> None:
        backend = EmbeddingBackend(FakeProvider(fail_on={"x"}), Settings())
        with pytest.raises(BackendFailure, match="cannot embed x"):
            await backend.compute("x")


class TestSentenceTransformerProvider:
    def test_is_provider(self) -> None:
        assert isinstance(SentenceTransformerProvider(), EmbeddingProvider)

    @pytest.mark.asyncio
    async def test_embed_uses_loaded_model(self) -> None:
        provider = SentenceTransformerProvider()
        model = _FakeModel()
        provider._model = model

        vec = await provider.embed("calm piano")

        assert model.texts == [["calm piano"]]
        assert vec == pytest.approx([0.6, 0.8, 0.0])
        assert all(isinstance(v, float) for v in vec)


class TestPrecision:
    @pytest.mark.asyncio
    async def test_vectors_rounded_to_float32(self) -> None:
        backend = EmbeddingBackend(FakeProvider(vectors={"x": [0.1, 0.7]}), Settings())
        expected = np.asarray([0.1, 0.7], dtype=np.float32).tolist()
        assert (await backend.try_compute("x")).vector == expected
        assert await backend.compute("x") == expected
