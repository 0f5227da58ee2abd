"""Finding the file the extractor actually produced, and removing it once.

The extractor's output name is not a stable contract: merging and audio
extraction can change the extension, so after a successful run the expected
path is only the first guess. Every file written for a request embeds the
request's correlation id, which is what the fallback scan keys on.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import ArtifactNotFound

logger = logging.getLogger("downfiles.artifacts")

CONTAINER_PRIORITY = ("mp4", "mkv", "webm")
FRAGMENT_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")
SIDE_FILE_SUFFIXES = (".json", ".description", ".vtt", ".srt", ".jpg", ".jpeg", ".png", ".webp")


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def _is_candidate(name: str) -> bool:
    lowered = name.lower()
    if any(lowered.endswith(s) or (s + ".") in lowered for s in FRAGMENT_SUFFIXES):
        return False
    return not lowered.endswith(SIDE_FILE_SUFFIXES)


def _rank(path: Path):
    ext = path.suffix.lower().lstrip(".")
    try:
        priority = CONTAINER_PRIORITY.index(ext)
    except ValueError:
        priority = len(CONTAINER_PRIORITY)
    return (priority, path.name)


def _matches(directory: Path, correlation_id: str) -> List[Path]:
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return []
    return [
        Path(entry.path)
        for entry in entries
        if correlation_id in entry.name and entry.is_file()
    ]


def rank_candidates(paths: Iterable[Path]) -> List[Path]:
    return sorted((p for p in paths if _is_candidate(p.name)), key=_rank)


def locate(expected_path: Path, correlation_id: str, directory: Optional[Path] = None) -> Path:
    """Resolve the produced artifact; only meaningful after a zero exit."""
    expected_path = Path(expected_path)
    if expected_path.is_file():
        return expected_path
    directory = Path(directory) if directory is not None else expected_path.parent
    ranked = rank_candidates(_matches(directory, correlation_id))
    if not ranked:
        raise ArtifactNotFound(
            "The extractor reported success but produced no file.",
            details=f"no file matching {correlation_id} in {directory}",
        )
    logger.info(
        "artifact_located",
        extra={
            "event": "artifact_located",
            "correlation_id": correlation_id,
            "expected": expected_path.name,
            "actual": ranked[0].name,
            "candidates": len(ranked),
        },
    )
    return ranked[0]


class TempArtifact:
    """The temporary file(s) of one request, owned by whoever holds this object."""

    def __init__(self, directory: Path, correlation_id: Optional[str] = None) -> None:
        self.directory = Path(directory)
        self.correlation_id = correlation_id or new_correlation_id()
        self.path: Optional[Path] = None
        self._lock = threading.Lock()
        self._discarded = False

    @property
    def output_template(self) -> str:
        return str(self.directory / f"{self.correlation_id}.%(ext)s")

    def expected_path(self, ext: str) -> Path:
        return self.directory / f"{self.correlation_id}.{ext}"

    @property
    def discarded(self) -> bool:
        return self._discarded

    @property
    def ext(self) -> Optional[str]:
        if self.path is None:
            return None
        return self.path.suffix.lower().lstrip(".") or None

    def resolve(self, expected_ext: str) -> Path:
        self.path = locate(self.expected_path(expected_ext), self.correlation_id, self.directory)
        return self.path

    def discard(self) -> bool:
        """Remove the artifact and any stray fragments. Runs at most once.

        Returns True for the call that performed the removal.
        """
        with self._lock:
            if self._discarded:
                return False
            self._discarded = True
        targets = set(_matches(self.directory, self.correlation_id))
        if self.path is not None:
            targets.add(self.path)
        removed = 0
        for target in targets:
            try:
                target.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove %s: %s", target, exc)
        logger.debug(
            "artifact_discarded",
            extra={"event": "artifact_discarded", "correlation_id": self.correlation_id, "removed": removed},
        )
        return True
