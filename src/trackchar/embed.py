"""Text embeddings for characterizations using sentence-transformers."""

import asyncio
import logging
import threading
from typing import Protocol, runtime_checkable

import numpy as np

from trackchar.config import DEFAULT_MODEL, Settings
from trackchar.errors import BackendFailure, EmbeddingUnavailable
from trackchar.models import EmbeddingResult, EmbeddingStatus, as_float32

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that can turn a characterization into a vector."""

    async def embed(self, text: str) -> list[float]: ...


class SentenceTransformerProvider:
    """Local embeddings from a sentence-transformers model.

    The model is loaded on first use and shared by all callers; encoding runs
    in a worker thread so the event loop is never blocked.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, device: str | None = None) -> None:
        self.model_name = model_name
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        with self._load_lock:
            if self._model is None:
                # Lazy import: loading torch is slow and unneeded when embeddings are off
                import torch
                from sentence_transformers import SentenceTransformer

                device = self.device or ("cuda" if torch.cuda.is_available() else "cpu")
                logger.info("Loading embedding model %s on %s", self.model_name, device)
                self._model = SentenceTransformer(self.model_name, device=device)
            return self._model

    def _encode(self, text: str) -> list[float]:
        model = self._get_model()
        vec = model.encode([text], normalize_embeddings=True, show_progress_bar=False)[0]
        return np.asarray(vec, dtype=np.float32).tolist()

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._encode, text)


class EmbeddingBackend:
    """Boundary between the store and an embedding provider.

    Holds no cache and no per-call state, so any number of tasks may call it
    at once.
    """

    def __init__(self, provider: EmbeddingProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings

    async def try_compute(self, text: str) -> EmbeddingResult:
        """Embed ``text``, reporting a disabled backend or a failure as a status."""
        if not self.settings.embeddings_active:
            logger.debug("Local embeddings are disabled")
            return EmbeddingResult(EmbeddingStatus.UNAVAILABLE)
        try:
            vector = await self.provider.embed(text)
        except Exception as e:
            logger.warning("Embedding provider failed for %r: %s", text[:60], e)
            return EmbeddingResult(EmbeddingStatus.FAILED)
        if not len(vector):
            logger.warning("Embedding provider returned an empty vector for %r", text[:60])
            return EmbeddingResult(EmbeddingStatus.FAILED)
        return EmbeddingResult(EmbeddingStatus.OK, as_float32(vector))

    async def compute(self, text: str) -> list[float]:
        """Embed ``text`` or raise EmbeddingUnavailable / BackendFailure."""
        if not self.settings.embeddings_active:
            raise EmbeddingUnavailable("Local embeddings are disabled")
        try:
            vector = await self.provider.embed(text)
        except Exception as e:
            raise BackendFailure(str(e)) from e
        return as_float32(vector)
