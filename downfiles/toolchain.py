"""External collaborators: extractor/transcoder discovery and credentials.

Discovery runs once at process start. The result is read-only for the rest of
the process lifetime; the Format Selector only ever sees
``Toolchain.transcode_capable``.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import importlib.util
import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

from .config import Settings

logger = logging.getLogger("downfiles.toolchain")

LOCAL_FFMPEG_NAMES = ("ffmpeg", "ffmpeg.exe")


@dataclass(frozen=True)
class Toolchain:
    extractor_cmd: Tuple[str, ...]
    ffmpeg_path: Optional[str] = None

    @property
    def transcode_capable(self) -> bool:
        return self.ffmpeg_path is not None

    @property
    def extractor_available(self) -> bool:
        return bool(self.extractor_cmd)


def _find_extractor(override: Optional[str]) -> Tuple[str, ...]:
    if override:
        return tuple(override.split())
    found = shutil.which("yt-dlp")
    if found:
        return (found,)
    if importlib.util.find_spec("yt_dlp") is not None:
        return (sys.executable, "-m", "yt_dlp")
    return ()


def _find_ffmpeg(override: Optional[str]) -> Optional[str]:
    if override:
        path = Path(override)
        if path.is_file():
            return str(path)
        return shutil.which(override)
    here = Path(__file__).resolve().parent
    for name in LOCAL_FFMPEG_NAMES:
        local = here / name
        if local.is_file():
            return str(local)
    return shutil.which("ffmpeg")


def detect_toolchain(settings: Settings) -> Toolchain:
    toolchain = Toolchain(
        extractor_cmd=_find_extractor(settings.extractor_bin),
        ffmpeg_path=_find_ffmpeg(settings.ffmpeg_bin),
    )
    if toolchain.extractor_available:
        logger.info("Using extractor command: %s", " ".join(toolchain.extractor_cmd))
    else:
        logger.warning("yt-dlp not found; install it with: pip install yt-dlp")
    if toolchain.transcode_capable:
        logger.info("ffmpeg found at %s; merged HD downloads enabled", toolchain.ffmpeg_path)
    else:
        logger.warning("ffmpeg not found; downloads will use pre-merged streams (720p max)")
    return toolchain


class CookieCredentials:
    """Optional session cookies handed to the extractor as ``--cookies``.

    Either a cookie file path that is passed through untouched, or an opaque
    base64 blob of Netscape cookie text that is written to a private file for
    the duration of one run. Neither being configured is the common case.
    """

    def __init__(self, cookies_file: Optional[str] = None, cookies_b64: Optional[str] = None) -> None:
        self.cookies_file = cookies_file
        self._blob: Optional[bytes] = None
        if cookies_b64:
            try:
                self._blob = base64.b64decode(cookies_b64, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("DOWNFILES_COOKIES_B64 is not valid base64; ignoring credentials")
        if self.cookies_file and not os.path.isfile(self.cookies_file):
            logger.warning("Cookie file %s does not exist; ignoring it", self.cookies_file)
            self.cookies_file = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookieCredentials":
        return cls(settings.cookies_file, settings.cookies_b64)

    @property
    def present(self) -> bool:
        return bool(self.cookies_file or self._blob)

    @contextlib.asynccontextmanager
    async def materialize(self, directory: Path) -> AsyncIterator[Optional[str]]:
        if self.cookies_file:
            yield self.cookies_file
            return
        if not self._blob:
            yield None
            return
        fd, path = tempfile.mkstemp(prefix=".cookies-", suffix=".txt", dir=str(directory))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(self._blob)
            yield path
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)
