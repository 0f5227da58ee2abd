from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

DEFAULT_STEM = "downfiles"
MAX_STEM_LENGTH = 80

_RESERVED_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f\x7f]')
_WHITESPACE_RE = re.compile(r"\s+")
_EXT_RE = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class DisplayName:
    ascii: str
    unicode: str

    @property
    def encoded(self) -> str:
        """RFC 5987 ext-value for ``filename*``."""
        return "UTF-8''" + quote(self.unicode, safe="")


def _clean_stem(title: Optional[str]) -> str:
    stem = _RESERVED_RE.sub("_", title or "")
    stem = _WHITESPACE_RE.sub("_", stem).strip("._")
    return stem[:MAX_STEM_LENGTH] or DEFAULT_STEM


def _ascii_stem(stem: str) -> str:
    folded = unicodedata.normalize("NFKD", stem).encode("ascii", "ignore").decode("ascii")
    folded = folded.strip("._")
    return folded or DEFAULT_STEM


def safe_filename(title: Optional[str], ext: str) -> DisplayName:
    ext = _EXT_RE.sub("", ext or "") or "bin"
    stem = _clean_stem(title)
    return DisplayName(ascii=f"{_ascii_stem(stem)}.{ext}", unicode=f"{stem}.{ext}")


def content_disposition(name: DisplayName) -> str:
    return f'attachment; filename="{name.ascii}"; filename*={name.encoded}'
