"""Exceptions raised by the characterization cache."""


class TrackcharError(Exception):
    """Base class for trackchar errors."""


class EmbeddingUnavailable(TrackcharError):
    """Local embeddings are switched off in the settings."""


class BackendFailure(TrackcharError):
    """The embedding provider raised while computing a vector."""


class PersistenceIOError(TrackcharError):
    """Writing the characterization file failed after all retries."""


class DeserializationError(TrackcharError):
    """The characterization file could not be read back."""


class DimensionMismatch(TrackcharError):
    """Two embeddings of different lengths were combined."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"embedding dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
