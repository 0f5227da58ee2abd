"""Supervision of one external extractor (yt-dlp) process per request.

``ExtractorProcess`` is a scoped resource: entering the context spawns the
process and starts forwarding its output line by line to caller sinks;
leaving it, for whatever reason, terminates the process (SIGTERM, then
SIGKILL after a grace period). Callers never kill processes themselves.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import re
import signal
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import anyio

from .errors import ExtractionFailed, FailureReason, truncate_details
from .metrics import EXTRACTION_SECONDS, EXTRACTIONS_TOTAL
from .platforms import platform_for_url

logger = logging.getLogger("downfiles.extractor")

LineSink = Callable[[str], None]

_READ_SIZE = 64 * 1024


class ExtractorProcess:
    def __init__(
        self,
        argv: Sequence[str],
        on_stdout: Optional[LineSink] = None,
        on_stderr: Optional[LineSink] = None,
        *,
        kill_grace: float = 5.0,
        mode: str = "fetch",
    ) -> None:
        if not argv:
            raise ValueError("extractor command is empty")
        self.argv = list(argv)
        self.mode = mode
        self.kill_grace = kill_grace
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._process: Optional[asyncio.subprocess.Process] = None
        self._readers: List[asyncio.Task] = []
        self._started_at: Optional[float] = None
        self._terminated = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def __aenter__(self) -> "ExtractorProcess":
        await self.spawn()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        with anyio.CancelScope(shield=True):
            await self.terminate()

    async def spawn(self) -> None:
        if self._process is not None:
            raise RuntimeError("extractor process already spawned")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as exc:
            EXTRACTIONS_TOTAL.labels(mode=self.mode, outcome="spawn_failed").inc()
            raise ExtractionFailed(
                FailureReason.UNCLASSIFIED,
                details=f"extractor executable not found: {self.argv[0]}",
            ) from exc
        self._started_at = time.monotonic()
        self._readers = [
            asyncio.create_task(self._pump(self._process.stdout, self._on_stdout)),
            asyncio.create_task(self._pump(self._process.stderr, self._on_stderr)),
        ]
        logger.info(
            "extractor_spawned",
            extra={"event": "extractor_spawned", "pid": self._process.pid, "mode": self.mode},
        )

    @staticmethod
    async def _pump(stream: Optional[asyncio.StreamReader], sink: Optional[LineSink]) -> None:
        # Lines can be far longer than StreamReader's readline limit
        # (--dump-json prints one line), so split by hand.
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = re.split(r"\r\n|\r|\n", pending)
            if sink:
                for line in lines:
                    sink(line)
        pending += decoder.decode(b"", final=True)
        if pending and sink:
            sink(pending)

    async def wait(self) -> int:
        """Suspend until the process exits and its output is fully drained."""
        if self._process is None:
            raise RuntimeError("extractor process not spawned")
        code = await self._process.wait()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)
        if self._started_at is not None:
            EXTRACTION_SECONDS.labels(mode=self.mode).observe(time.monotonic() - self._started_at)
            self._started_at = None
        logger.info(
            "extractor_exited",
            extra={"event": "extractor_exited", "pid": self._process.pid, "mode": self.mode, "code": code},
        )
        return code

    def _signal(self, sig: int) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            if os.name == "posix":
                # The extractor may have spawned ffmpeg; take down the group.
                os.killpg(proc.pid, sig)
            elif sig == getattr(signal, "SIGKILL", None):
                proc.kill()
            else:
                proc.terminate()

    async def terminate(self) -> None:
        """Graceful-then-forceful stop. Safe to call any number of times."""
        proc = self._process
        if proc is None:
            return
        if proc.returncode is None and not self._terminated:
            self._terminated = True
            logger.info(
                "extractor_terminating",
                extra={"event": "extractor_terminating", "pid": proc.pid, "mode": self.mode},
            )
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                logger.warning("%s (pid %s) ignored SIGTERM; killing", self.mode, proc.pid)
                self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))
                await proc.wait()
            EXTRACTIONS_TOTAL.labels(mode=self.mode, outcome="terminated").inc()
        elif proc.returncode is None:
            await proc.wait()
        for reader in self._readers:
            if not reader.done():
                reader.cancel()
        for reader in self._readers:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._readers = []


async def run(
    argv: Sequence[str],
    on_stdout: Optional[LineSink] = None,
    on_stderr: Optional[LineSink] = None,
    *,
    kill_grace: float = 5.0,
    mode: str = "fetch",
) -> int:
    async with ExtractorProcess(argv, on_stdout, on_stderr, kill_grace=kill_grace, mode=mode) as proc:
        return await proc.wait()


@dataclass(frozen=True)
class ExtractorCommand:
    """Argument builder for the two extractor modes."""

    base: Tuple[str, ...]
    socket_timeout: int
    accept_language: Optional[str] = None
    user_agent: Optional[str] = None
    cookies_path: Optional[str] = None

    def _common(self) -> List[str]:
        args = [
            *self.base,
            "--no-playlist",
            "--socket-timeout", str(self.socket_timeout),
            "--no-color",
            "--newline",
        ]
        if self.accept_language:
            args += ["--add-header", f"Accept-Language:{self.accept_language}"]
        if self.user_agent:
            args += ["--user-agent", self.user_agent]
        if self.cookies_path:
            args += ["--cookies", self.cookies_path]
        return args

    def probe(self, url: str) -> List[str]:
        return [*self._common(), "--dump-json", "--skip-download", "--", url]

    def fetch(
        self,
        url: str,
        selector: str,
        output_template: str,
        *,
        ffmpeg_path: Optional[str] = None,
        audio_only: bool = False,
    ) -> List[str]:
        args = [*self._common(), "-f", selector, "-o", output_template]
        if ffmpeg_path:
            args += ["--ffmpeg-location", ffmpeg_path]
            if audio_only:
                args += ["--extract-audio", "--audio-format", "mp3", "--audio-quality", "0"]
            else:
                args += ["--merge-output-format", "mp4"]
        return [*args, "--", url]


_FAILURE_PHRASES: Tuple[Tuple[FailureReason, Tuple[str, ...]], ...] = (
    (FailureReason.DRM_PROTECTED, (
        "drm protected",
        "drm-protected",
        "uses drm",
        "this video is drm",
        "widevine",
    )),
    (FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED, (
        "private video",
        "video is private",
        "sign in to confirm",
        "sign in to view",
        "login required",
        "requires authentication",
        "log in to",
        "members-only",
        "use --cookies",
        "account cookies",
    )),
    (FailureReason.REGION_RESTRICTED, (
        "not available in your country",
        "geo restricted",
        "geo-restricted",
        "georestricted",
        "blocked it in your country",
        "made this video available in your country",
        "not available from your location",
        "not available in your region",
    )),
    (FailureReason.FORMAT_UNAVAILABLE, (
        "requested format is not available",
        "no video formats found",
        "format not available",
    )),
    (FailureReason.TIMEOUT, (
        "timed out",
        "timeout",
    )),
)


def _match(text: str) -> FailureReason:
    lowered = text.lower()
    for reason, phrases in _FAILURE_PHRASES:
        if any(phrase in lowered for phrase in phrases):
            return reason
    return FailureReason.UNCLASSIFIED


def classify(stderr: str) -> FailureReason:
    """Reason for a failed run, judged by the ``ERROR:`` lines when there are any.

    Warnings (skipped DRM formats, retried timeouts) are routine noise and
    only count when the extractor printed no error line at all.
    """
    lines = (stderr or "").splitlines()
    errors = [line for line in lines if line.lstrip().startswith("ERROR:")]
    if errors:
        return _match("\n".join(errors))
    return _match(stderr or "")


def failure_from_exit(code: int, stderr: str, detail_limit: int) -> ExtractionFailed:
    reason = classify(stderr)
    return ExtractionFailed(reason, details=truncate_details(stderr, detail_limit), exit_code=code)


_PROGRESS_RE = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")


def parse_progress(line: str) -> Optional[float]:
    match = _PROGRESS_RE.match(line.strip())
    if not match:
        return None
    return min(100.0, float(match.group(1)))


@dataclass(frozen=True)
class FormatCandidate:
    format_id: str
    ext: Optional[str]
    resolution: str
    filesize: Optional[int] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    fps: Optional[float] = None
    tbr: Optional[float] = None
    note: str = ""
    height: int = field(default=0, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("height", None)
        return data


@dataclass(frozen=True)
class ProbeResult:
    title: Optional[str]
    thumbnail: Optional[str]
    duration: Optional[float]
    uploader: Optional[str]
    platform: Optional[str]
    webpage_url: Optional[str]
    formats: Tuple[FormatCandidate, ...]
    best_format: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "uploader": self.uploader,
            "platform": self.platform,
            "webpage_url": self.webpage_url,
            "formats": [candidate.to_dict() for candidate in self.formats],
            "best_format": self.best_format,
        }


_RES_HEIGHT_RE = re.compile(r"(?:\d+x)?(\d+)p?$")

AUDIO_LABEL = "audio"
UNKNOWN_LABEL = "unknown"


def _height_of(fmt: Dict[str, Any]) -> int:
    height = fmt.get("height")
    if isinstance(height, (int, float)) and height > 0:
        return int(height)
    resolution = fmt.get("resolution")
    if isinstance(resolution, str):
        match = _RES_HEIGHT_RE.search(resolution.strip())
        if match:
            return int(match.group(1))
    return 0


def _candidate(fmt: Dict[str, Any]) -> FormatCandidate:
    vcodec = fmt.get("vcodec")
    height = _height_of(fmt) if vcodec != "none" else 0
    if height:
        label, sort_height = f"{height}p", height
    elif vcodec == "none":
        label, sort_height = AUDIO_LABEL, 0
    else:
        label, sort_height = UNKNOWN_LABEL, -1
    return FormatCandidate(
        format_id=str(fmt.get("format_id")),
        ext=fmt.get("ext"),
        resolution=label,
        filesize=fmt.get("filesize") or fmt.get("filesize_approx") or None,
        vcodec=vcodec,
        acodec=fmt.get("acodec"),
        fps=fmt.get("fps") or None,
        tbr=fmt.get("tbr") or None,
        note=fmt.get("format_note") or "",
        height=sort_height,
    )


def select_candidates(formats: Sequence[Dict[str, Any]]) -> Tuple[FormatCandidate, ...]:
    """One candidate per resolution label, best first, strictly descending."""
    renderable = [
        f for f in formats or []
        if isinstance(f, dict) and f.get("format_id") is not None
        and (f.get("vcodec") != "none" or f.get("acodec") != "none")
    ]
    candidates = [_candidate(f) for f in renderable]

    def _rank(c: FormatCandidate):
        has_both = c.vcodec not in (None, "none") and c.acodec not in (None, "none")
        return (-c.height, not has_both, -(c.tbr or 0.0), c.format_id)

    seen = set()
    unique: List[FormatCandidate] = []
    for candidate in sorted(candidates, key=_rank):
        if candidate.resolution in seen:
            continue
        seen.add(candidate.resolution)
        unique.append(candidate)
    return tuple(unique)


def parse_probe(output: str, url: str) -> ProbeResult:
    try:
        info = json.loads(output)
    except (TypeError, ValueError) as exc:
        raise ExtractionFailed(FailureReason.UNCLASSIFIED, details="Failed to parse video info") from exc
    if not isinstance(info, dict):
        raise ExtractionFailed(FailureReason.UNCLASSIFIED, details="Failed to parse video info")
    return ProbeResult(
        title=info.get("title"),
        thumbnail=info.get("thumbnail"),
        duration=info.get("duration"),
        uploader=info.get("uploader") or info.get("channel"),
        platform=info.get("extractor_key") or platform_for_url(url),
        webpage_url=info.get("webpage_url") or url,
        formats=select_candidates(info.get("formats") or []),
        best_format=info.get("format_id"),
    )
