"""FastAPI application for the downfiles service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, field_validator
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from . import __version__, formats
from .config import Settings, _parse_bool, configure_logging
from .delivery import Delivery
from .errors import Cancelled, DownfilesError, InvalidInput
from .jobs import JobRegistry
from .metrics import REQUESTS_TOTAL, render
from .pipeline import ExtractionRequest, JobRunner, Pipeline, validate_url
from .toolchain import CookieCredentials, Toolchain, detect_toolchain

logger = logging.getLogger("downfiles.main")


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return bool(_parse_bool(str(value)))


class InfoRequest(BaseModel):
    url: Optional[str] = None


class DownloadRequest(BaseModel):
    url: Optional[str] = None
    format_id: Optional[str] = None
    audio_only: bool = False
    title: Optional[str] = None

    @field_validator("audio_only", mode="before")
    @classmethod
    def _coerce_audio_only(cls, value: Any) -> bool:
        return _flag(value)

    def to_extraction(self) -> ExtractionRequest:
        url = validate_url(self.url)
        format_id = formats.normalize_format_id(self.format_id)
        return ExtractionRequest(
            url=url,
            format_id=format_id,
            audio_only=bool(self.audio_only),
            title=(self.title or "").strip() or None,
        )


class RequestMetricsMiddleware:
    """Counts responses per route template and status code.

    A request abandoned by its client ends here with ``Cancelled``; it is
    counted as ``cancelled`` and nothing at all is sent back.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        status = {"code": None}

        async def _send(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, _send)
        except Cancelled:
            status["code"] = "cancelled"
        finally:
            route = scope.get("route")
            REQUESTS_TOTAL.labels(
                endpoint=getattr(route, "path", "unmatched"),
                status=str(status["code"] or "none"),
            ).inc()


def _extractor_version() -> Optional[str]:
    try:
        return version("yt-dlp")
    except PackageNotFoundError:
        return None


def create_app(
    settings: Optional[Settings] = None,
    toolchain: Optional[Toolchain] = None,
    registry: Optional[JobRegistry] = None,
    credentials: Optional[CookieCredentials] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        settings.ensure_dirs()
        chain = toolchain or detect_toolchain(settings)
        jobs = registry if registry is not None else JobRegistry(ttl_seconds=settings.job_ttl_seconds)
        cookies = credentials or CookieCredentials.from_settings(settings)
        if cookies.present:
            logger.info("Session cookies configured for the extractor")
        pipeline = Pipeline(settings, chain, cookies)
        runner = JobRunner(pipeline, jobs)
        runner.start_sweeper(settings.job_sweep_interval)

        app.state.settings = settings
        app.state.toolchain = chain
        app.state.registry = jobs
        app.state.pipeline = pipeline
        app.state.runner = runner
        logger.info("downfiles started; temp root %s", settings.temp_root)
        try:
            yield
        finally:
            logger.info("downfiles shutting down; cancelling %d job(s)", runner.active)
            await runner.shutdown()

    app = FastAPI(title="downfiles", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Content-Length"],
    )
    app.add_middleware(RequestMetricsMiddleware)

    @app.exception_handler(DownfilesError)
    async def _downfiles_error(request: Request, exc: DownfilesError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.details)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidInput("Request body is not valid.", details=str(exc.errors()))
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    @app.get("/healthz")
    async def healthz(request: Request) -> Dict[str, Any]:
        chain: Toolchain = request.app.state.toolchain
        return {
            "ok": True,
            "extractor": chain.extractor_available,
            "extractor_version": _extractor_version(),
            "transcoder": chain.transcode_capable,
            "jobs": len(request.app.state.registry),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        payload, content_type = render()
        return Response(content=payload, media_type=content_type)

    @app.post("/api/info")
    async def info(body: InfoRequest, request: Request) -> Dict[str, Any]:
        pipeline: Pipeline = request.app.state.pipeline
        result = await pipeline.probe(body.url)
        return result.to_dict()

    async def _download(request: Request, params: DownloadRequest):
        extraction = params.to_extraction()
        pipeline: Pipeline = request.app.state.pipeline
        result = await pipeline.fetch(extraction, disconnected=request.is_disconnected)
        delivery = await Delivery.open(
            result.artifact,
            extraction.title,
            extraction.audio_only,
            process=result.process,
            chunk_size=settings.chunk_size,
        )
        return delivery.response()

    @app.get("/api/download")
    async def download_get(
        request: Request,
        url: Optional[str] = None,
        format_id: Optional[str] = None,
        audio_only: Optional[str] = None,
        title: Optional[str] = None,
    ):
        params = DownloadRequest(url=url, format_id=format_id, audio_only=audio_only, title=title)
        return await _download(request, params)

    @app.post("/api/download")
    async def download_post(body: DownloadRequest, request: Request):
        return await _download(request, body)

    @app.post("/api/download-link")
    async def download_link(body: DownloadRequest, request: Request) -> Dict[str, Any]:
        runner: JobRunner = request.app.state.runner
        job_id = runner.start(body.to_extraction())
        return {
            "jobId": job_id,
            "statusUrl": f"/api/status/{job_id}",
            "downloadUrl": f"/api/stream/{job_id}",
        }

    @app.get("/api/status/{job_id}")
    async def job_status(job_id: str, request: Request) -> Dict[str, Any]:
        registry: JobRegistry = request.app.state.registry
        job = registry.require(job_id)
        payload = job.to_dict()
        payload["jobId"] = payload.pop("id")
        payload["downloadUrl"] = f"/api/stream/{job_id}"
        return payload

    @app.get("/api/stream/{job_id}")
    async def stream_job(job_id: str, request: Request):
        registry: JobRegistry = request.app.state.registry
        job = registry.require(job_id)
        artifact = registry.claim(job_id)
        delivery = await Delivery.open(artifact, job.title, job.audio_only, chunk_size=settings.chunk_size)
        return delivery.response()

    return app


app = create_app()
