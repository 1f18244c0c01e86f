"""Runtime settings, read from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path

APP_DIR = Path.home() / ".local" / "share" / "trackchar"
STORE_DIRNAME = ".trackchar"
STORE_FILENAME = "track_characteristics.parquet"

DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_MAINTENANCE_INTERVAL = 300.0

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class Settings:
    """Feature flags and paths.

    The store polls the flags before every embedding-sensitive operation, so
    flipping them on a live instance takes effect on the next call.
    """

    characterization_enabled: bool = True
    local_embeddings_enabled: bool = True
    storage_root: Path | None = None
    model_name: str = DEFAULT_MODEL
    maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL

    @property
    def embeddings_active(self) -> bool:
        return self.characterization_enabled and self.local_embeddings_enabled

    @classmethod
    def from_env(cls) -> "Settings":
        root = os.getenv("TRACKCHAR_STORAGE_ROOT")
        return cls(
            characterization_enabled=_env_flag("TRACKCHAR_CHARACTERIZATION", True),
            local_embeddings_enabled=_env_flag("TRACKCHAR_LOCAL_EMBEDDINGS", True),
            storage_root=Path(root).expanduser() if root else None,
            model_name=os.getenv("TRACKCHAR_MODEL", DEFAULT_MODEL),
            maintenance_interval=float(
                os.getenv("TRACKCHAR_MAINTENANCE_INTERVAL", str(DEFAULT_MAINTENANCE_INTERVAL))
            ),
        )
