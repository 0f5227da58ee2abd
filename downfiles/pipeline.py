"""Request orchestration: selector, extractor run, artifact reconciliation.

``Pipeline.fetch`` is the one code path shared by the synchronous download
endpoint and by background jobs. The steps are strictly ordered (resolve,
spawn, wait, reconcile) and any failure along the way discards whatever the
extractor left behind before the error propagates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional
from urllib.parse import urlparse

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from . import formats
from .artifacts import TempArtifact
from .config import Settings
from .errors import (
    Cancelled,
    DownfilesError,
    ExtractionFailed,
    FailureReason,
    InvalidInput,
    InvalidTransition,
)
from .extractor import (
    ExtractorCommand,
    ExtractorProcess,
    ProbeResult,
    failure_from_exit,
    parse_probe,
    parse_progress,
    run,
)
from .jobs import JobRegistry, JobStatus
from .metrics import EXTRACTIONS_TOTAL
from .toolchain import CookieCredentials, Toolchain

logger = logging.getLogger("downfiles.pipeline")

ProgressSink = Callable[[float], None]
DisconnectCheck = Callable[[], Awaitable[bool]]

_STDERR_TAIL_LINES = 200


@dataclass(frozen=True)
class ExtractionRequest:
    url: str
    format_id: Optional[str] = None
    audio_only: bool = False
    title: Optional[str] = None


@dataclass
class FetchResult:
    artifact: TempArtifact
    process: ExtractorProcess
    selector: str


def validate_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    if not url:
        raise InvalidInput("URL is required.")
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise InvalidInput("URL is not valid.") from exc
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInput("Only http(s) URLs are supported.")
    return url


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionFailed) and exc.failure is FailureReason.TIMEOUT


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        toolchain: Toolchain,
        credentials: Optional[CookieCredentials] = None,
    ) -> None:
        self.settings = settings
        self.toolchain = toolchain
        self.credentials = credentials or CookieCredentials()
        self.retry_wait = wait_exponential(multiplier=1, min=1, max=10)

    def _command(self, socket_timeout: int, cookies_path: Optional[str]) -> ExtractorCommand:
        if not self.toolchain.extractor_available:
            raise ExtractionFailed(FailureReason.UNCLASSIFIED, details="yt-dlp is not installed")
        return ExtractorCommand(
            base=self.toolchain.extractor_cmd,
            socket_timeout=socket_timeout,
            accept_language=self.settings.accept_language,
            user_agent=self.settings.user_agent,
            cookies_path=cookies_path,
        )

    def expected_ext(self, audio_only: bool) -> str:
        if audio_only and self.toolchain.transcode_capable:
            return "mp3"
        return "mp4"

    async def probe(self, url: str) -> ProbeResult:
        url = validate_url(url)
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_timeout),
            stop=stop_after_attempt(max(1, self.settings.probe_retries)),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying probe of %s (attempt %s)", url, attempt.retry_state.attempt_number)
                return await self._probe_once(url)
        raise ExtractionFailed(FailureReason.UNCLASSIFIED)  # pragma: no cover

    async def _probe_once(self, url: str) -> ProbeResult:
        stdout: List[str] = []
        stderr: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self.settings.ensure_dirs()
        async with self.credentials.materialize(self.settings.temp_root) as cookies:
            argv = self._command(self.settings.probe_socket_timeout, cookies).probe(url)
            code = await run(argv, stdout.append, stderr.append, kill_grace=self.settings.kill_grace, mode="probe")
        if code != 0:
            EXTRACTIONS_TOTAL.labels(mode="probe", outcome="failed").inc()
            raise failure_from_exit(code, "\n".join(stderr), self.settings.error_detail_limit)
        document = next((line for line in stdout if line.lstrip().startswith("{")), "\n".join(stdout))
        result = parse_probe(document, url)
        EXTRACTIONS_TOTAL.labels(mode="probe", outcome="ok").inc()
        return result

    async def fetch(
        self,
        request: ExtractionRequest,
        on_progress: Optional[ProgressSink] = None,
        disconnected: Optional[DisconnectCheck] = None,
    ) -> FetchResult:
        url = validate_url(request.url)
        selector = str(formats.resolve(request.format_id, request.audio_only, self.toolchain.transcode_capable))
        self.settings.ensure_dirs()
        artifact = TempArtifact(self.settings.temp_root)
        stderr: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        def _on_stdout(line: str) -> None:
            pct = parse_progress(line)
            if pct is not None and on_progress is not None:
                on_progress(pct)

        def _on_stderr(line: str) -> None:
            stderr.append(line)
            logger.debug("[%s] %s", artifact.correlation_id, line)

        try:
            async with self.credentials.materialize(self.settings.temp_root) as cookies:
                argv = self._command(self.settings.fetch_socket_timeout, cookies).fetch(
                    url,
                    selector,
                    artifact.output_template,
                    ffmpeg_path=self.toolchain.ffmpeg_path,
                    audio_only=request.audio_only,
                )
                process = ExtractorProcess(
                    argv,
                    _on_stdout,
                    _on_stderr,
                    kill_grace=self.settings.kill_grace,
                    mode="fetch",
                )
                async with process:
                    code = await self._wait(process, artifact, disconnected)
            if code != 0:
                EXTRACTIONS_TOTAL.labels(mode="fetch", outcome="failed").inc()
                raise failure_from_exit(code, "\n".join(stderr), self.settings.error_detail_limit)
            artifact.resolve(self.expected_ext(request.audio_only))
        except BaseException:
            artifact.discard()
            raise
        EXTRACTIONS_TOTAL.labels(mode="fetch", outcome="ok").inc()
        return FetchResult(artifact=artifact, process=process, selector=selector)

    async def _wait(
        self,
        process: ExtractorProcess,
        artifact: TempArtifact,
        disconnected: Optional[DisconnectCheck],
    ) -> int:
        if disconnected is None:
            return await process.wait()
        waiter = asyncio.ensure_future(process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=self.settings.disconnect_poll)
                if waiter in done:
                    return waiter.result()
                if await disconnected():
                    logger.info(
                        "client_disconnected",
                        extra={
                            "event": "client_disconnected",
                            "correlation_id": artifact.correlation_id,
                            "pid": process.pid,
                        },
                    )
                    EXTRACTIONS_TOTAL.labels(mode="fetch", outcome="cancelled").inc()
                    raise Cancelled()
        finally:
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter


class JobRunner:
    """Runs one background task per job and keeps the registry current."""

    def __init__(self, pipeline: Pipeline, registry: JobRegistry) -> None:
        self.pipeline = pipeline
        self.registry = registry
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def active(self) -> int:
        return len(self._tasks)

    def start(self, request: ExtractionRequest) -> str:
        job_id = self.registry.create(
            request.url,
            format_id=request.format_id,
            audio_only=request.audio_only,
            title=request.title,
        )
        task = asyncio.create_task(self._run(job_id, request), name=f"downfiles-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        return job_id

    async def _run(self, job_id: str, request: ExtractionRequest) -> None:
        try:
            result = await self.pipeline.fetch(
                request,
                on_progress=lambda pct: self.registry.set_progress(job_id, pct),
            )
        except asyncio.CancelledError:
            with contextlib.suppress(InvalidTransition):
                self.registry.set_status(
                    job_id, JobStatus.FAILED, error=DownfilesError("The job was cancelled.")
                )
            raise
        except DownfilesError as exc:
            self.registry.set_status(job_id, JobStatus.FAILED, error=exc)
            return
        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            self.registry.set_status(
                job_id,
                JobStatus.FAILED,
                error=ExtractionFailed(FailureReason.UNCLASSIFIED, details=str(exc)),
            )
            return
        self.registry.complete(job_id, result.artifact)

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is None and self.registry.ttl_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep(interval), name="downfiles-job-sweeper")

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.registry.evict_expired()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.registry.discard_all()
