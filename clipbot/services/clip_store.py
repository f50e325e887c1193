"""
Clip Store - named audio files in a flat directory
"""
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from clipbot.exceptions import ClipExistsError

logger = logging.getLogger(__name__)

# Probe order matters: first match wins
SUPPORTED_EXTENSIONS = (".mp3", ".mp4", ".wav", ".ogg", ".m4a", ".flac")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class ClipInfo:
    """Stored clip metadata."""
    name: str
    path: Path
    size: int
    format: str


def sanitize(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


class ClipStore:
    """Filesystem-backed clip storage. The directory listing is the index."""

    def __init__(self, sounds_dir: Path):
        self.sounds_dir = Path(sounds_dir)
        self.sounds_dir.mkdir(parents=True, exist_ok=True)
        self._reserved: set[str] = set()

    def path_for(self, name: str, extension: str) -> Path:
        """Destination path for a new clip with the given extension."""
        return self.sounds_dir / f"{sanitize(name)}{extension.lower()}"

    def resolve_path(self, name: str) -> Path | None:
        stem = sanitize(name)
        for ext in SUPPORTED_EXTENSIONS:
            candidate = self.sounds_dir / f"{stem}{ext}"
            if candidate.is_file():
                return candidate
        return None

    def exists(self, name: str) -> bool:
        return self.resolve_path(name) is not None

    def list(self) -> list[str]:
        """Clip names in filesystem listing order."""
        try:
            entries = list(self.sounds_dir.iterdir())
        except OSError as e:
            logger.error(f"Error reading sounds directory {self.sounds_dir}: {e}")
            return []

        names: list[str] = []
        seen: set[str] = set()
        for entry in entries:
            if entry.suffix.lower() not in SUPPORTED_EXTENSIONS or not entry.is_file():
                continue
            if entry.stem in seen:
                continue
            seen.add(entry.stem)
            names.append(entry.stem)
        return names

    def delete(self, name: str) -> bool:
        if self.is_reserved(name):
            logger.warning(f"Refusing to delete {name!r} while it is being downloaded")
            return False
        path = self.resolve_path(name)
        if path is None:
            return False
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"Error deleting sound {name!r}: {e}")
            return False
        logger.info(f"Deleted sound {name!r} ({path.name})")
        return True

    def info(self, name: str) -> ClipInfo | None:
        path = self.resolve_path(name)
        if path is None:
            return None
        try:
            size = path.stat().st_size
        except OSError as e:
            logger.error(f"Error getting sound info for {name!r}: {e}")
            return None
        return ClipInfo(
            name=name,
            path=path,
            size=size,
            format=path.suffix[1:].upper(),
        )

    def is_reserved(self, name: str) -> bool:
        return sanitize(name) in self._reserved

    @contextmanager
    def reserve(self, name: str) -> Iterator[str]:
        """
        Hold a name for the duration of an acquisition.
        Raises ClipExistsError if the clip exists or is already being acquired.
        """
        stem = sanitize(name)
        if stem in self._reserved or self.exists(name):
            raise ClipExistsError(name)
        self._reserved.add(stem)
        try:
            yield stem
        finally:
            self._reserved.discard(stem)
