"""Rendition selector expressions for the extractor's ``-f`` option.

An expression is an ordered list of clauses; the extractor tries them left to
right and takes the first that matches. Clauses are kept typed until
``str(expression)`` joins them, so the fallback invariant (the last clause is
always plain ``best``) can be checked without parsing strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .errors import InvalidInput

AUTO = "auto"
PREMERGED_HEIGHT_CEILING = 720

_FORMAT_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class Stream:
    """One selector atom such as ``bestaudio[ext=m4a]`` or ``137``."""

    base: str
    filters: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.base + "".join(f"[{flt}]" for flt in self.filters)


@dataclass(frozen=True)
class Clause:
    video: Stream
    audio: Optional[Stream] = None

    @property
    def merges(self) -> bool:
        return self.audio is not None

    def __str__(self) -> str:
        if self.audio is None:
            return str(self.video)
        return f"{self.video}+{self.audio}"


UNIVERSAL_FALLBACK = Clause(Stream("best"))


class SelectorExpression:
    def __init__(self, clauses: Sequence[Clause]) -> None:
        clauses = tuple(clauses)
        if not clauses:
            raise ValueError("selector expression needs at least one clause")
        if clauses[-1] != UNIVERSAL_FALLBACK:
            raise ValueError("selector expression must end with the universal fallback")
        self.clauses: Tuple[Clause, ...] = clauses

    @property
    def merges(self) -> bool:
        return any(clause.merges for clause in self.clauses)

    def __str__(self) -> str:
        return "/".join(str(clause) for clause in self.clauses)

    def __repr__(self) -> str:
        return f"SelectorExpression({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SelectorExpression):
            return NotImplemented
        return self.clauses == other.clauses

    def __hash__(self) -> int:
        return hash(self.clauses)


class SelectorBuilder:
    """Collects clauses in priority order; duplicates keep their first slot."""

    def __init__(self) -> None:
        self._clauses: List[Clause] = []

    def add(self, video: Stream, audio: Optional[Stream] = None) -> "SelectorBuilder":
        clause = Clause(video, audio)
        if clause not in self._clauses:
            self._clauses.append(clause)
        return self

    def build(self) -> SelectorExpression:
        clauses = [c for c in self._clauses if c != UNIVERSAL_FALLBACK]
        clauses.append(UNIVERSAL_FALLBACK)
        return SelectorExpression(clauses)


def _best_audio(ext: Optional[str] = None) -> Stream:
    return Stream("bestaudio", (f"ext={ext}",) if ext else ())


def _best_video(ext: Optional[str] = None) -> Stream:
    return Stream("bestvideo", (f"ext={ext}",) if ext else ())


def _best(*filters: str) -> Stream:
    return Stream("best", tuple(filters))


def is_auto(requested_id: Optional[str]) -> bool:
    return not requested_id or requested_id.strip().lower() == AUTO


def normalize_format_id(requested_id: Optional[str]) -> Optional[str]:
    """Return a concrete rendition id, ``None`` for auto; reject selector syntax."""
    if is_auto(requested_id):
        return None
    candidate = requested_id.strip()
    if not _FORMAT_ID_RE.match(candidate):
        raise InvalidInput(f"Invalid format id: {candidate!r}")
    return candidate


def resolve(requested_id: Optional[str], is_audio: bool, transcode_capable: bool) -> SelectorExpression:
    builder = SelectorBuilder()

    if is_audio:
        # No merge is involved, so transcoder availability does not matter.
        builder.add(_best_audio("m4a")).add(_best_audio("webm")).add(_best_audio())
        return builder.build()

    format_id = normalize_format_id(requested_id)
    if format_id is not None:
        exact = Stream(format_id)
        if transcode_capable:
            builder.add(exact, _best_audio("m4a"))
            builder.add(exact, _best_audio())
            builder.add(exact)
            # Ids are not stable across sessions; the rest is a safety net.
            builder.add(_best_video("mp4"), _best_audio("m4a"))
            builder.add(_best_video(), _best_audio())
            builder.add(_best("vcodec!=none"))
        else:
            builder.add(exact)
            builder.add(_best("ext=mp4", "vcodec!=none"))
            builder.add(_best("vcodec!=none"))
        return builder.build()

    if transcode_capable:
        builder.add(_best_video("mp4"), _best_audio("m4a"))
        builder.add(_best_video(), _best_audio())
        builder.add(_best("ext=mp4"))
    else:
        builder.add(_best("ext=mp4"))
        builder.add(_best(f"height<={PREMERGED_HEIGHT_CEILING}"))
        builder.add(_best("vcodec!=none"))
    return builder.build()
