"""Data models for track characterizations."""

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

import numpy as np


def as_float32(vector) -> list[float]:
    """Round a vector to the float32 precision it is persisted with."""
    return np.asarray(vector, dtype=np.float32).tolist()


def content_hash(artist: str, title: str) -> str:
    """Hash of artist and title used to match a record across library rescans."""
    combined = f"{artist}|{title}".lower()
    digest = hashlib.sha256(combined.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass
class CharacterizationRecord:
    id: str
    characteristics: str
    # None: never computed. []: computed and failed.
    embedding: list[float] | None = field(default=None, repr=False)
    artist: str = ""
    title: str = ""
    content_hash: str = ""
    last_verified: datetime | None = None
    needs_review: bool = False

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @property
    def embedding_failed(self) -> bool:
        return self.embedding is not None and len(self.embedding) == 0

    @property
    def needs_embedding(self) -> bool:
        """True when the record has text but no usable vector."""
        return bool(self.characteristics) and not self.has_embedding


class EmbeddingStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


class EmbeddingResult(NamedTuple):
    status: EmbeddingStatus
    vector: list[float] | None = None

    @property
    def ok(self) -> bool:
        return self.status is EmbeddingStatus.OK


class MissingReport(NamedTuple):
    total: int
    missing: int
    sample: list[str]
