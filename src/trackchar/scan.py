"""Seed characterization records from the tags of a music library."""

import hashlib
from datetime import datetime
from pathlib import Path

from mutagen import File as MutagenFile
from tqdm import tqdm

from trackchar.models import CharacterizationRecord, content_hash
from trackchar.store import CharacterizationStore

AUDIO_EXTENSIONS = {".mp3", ".flac", ".ogg", ".opus", ".m4a", ".wma", ".wav", ".aiff"}
BATCH_SIZE = 500


def _track_id(filepath: str) -> str:
    return hashlib.sha256(filepath.encode()).hexdigest()[:16]


def _get_tag(audio: MutagenFile, keys: list[str], default: str = "") -> str:
    """Extract a tag value, trying multiple key names for format compatibility."""
    for key in keys:
        val = audio.get(key)
        if val:
            # mutagen returns lists for most tag types
            if isinstance(val, list):
                return str(val[0])
            return str(val)
    return default


def build_characteristics(genre: str, album: str, year: str) -> str:
    """Genre-first description, so the genre drives similarity weighting."""
    year = year.split("-")[0].strip()
    parts = [genre.strip(), album.strip(), year]
    return ", ".join(p for p in parts if p and p != "0")


def record_from_tags(filepath: Path, audio: MutagenFile) -> CharacterizationRecord:
    artist = _get_tag(audio, ["artist", "albumartist", "performer"])
    title = _get_tag(audio, ["title"])

    # Fallback: infer artist from directory structure (Artist/Album/track.ext)
    if not artist and filepath.parent.parent.name:
        artist = filepath.parent.parent.name
    if not title:
        title = filepath.stem

    return CharacterizationRecord(
        id=_track_id(str(filepath)),
        characteristics=build_characteristics(
            _get_tag(audio, ["genre"]),
            _get_tag(audio, ["album"], filepath.parent.name),
            _get_tag(audio, ["date", "year", "originaldate"]),
        ),
        artist=artist,
        title=title,
        content_hash=content_hash(artist, title),
        last_verified=datetime.now(),
    )


def _read_tags(filepath: Path) -> "MutagenFile | None":
    try:
        return MutagenFile(str(filepath), easy=True)
    except Exception:
        return None


async def scan_library(
    store: CharacterizationStore,
    library_path: Path,
    force: bool = False,
) -> tuple[int, int]:
    """Add a record for every tagged audio file under ``library_path``.

    Files whose artist and title hash matches the stored record are skipped
    unless ``force`` is set. Returns (files_seen, records_added).
    """
    audio_files = [
        p for p in library_path.rglob("*")
        if p.suffix.lower() in AUDIO_EXTENSIONS and p.is_file()
    ]

    if not audio_files:
        raise FileNotFoundError(f"No audio files found in {library_path}")

    seen = 0
    added = 0
    for filepath in tqdm(audio_files, desc="Scanning tracks", unit="file"):
        audio = _read_tags(filepath)
        if audio is None:
            continue
        seen += 1

        record = record_from_tags(filepath, audio)
        existing = store.get(record.id)
        if not force and existing is not None and existing.content_hash == record.content_hash:
            continue

        await store.upsert(record, flush=False)
        added += 1
        if added % BATCH_SIZE == 0:
            await store.save_if_dirty()

    await store.save_if_dirty()
    return seen, added
