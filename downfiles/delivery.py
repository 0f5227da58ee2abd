"""Streaming an artifact to the client and removing it afterwards.

``Delivery.open`` does everything that can still fail with a proper error
response (locating, stat-ing and opening the file). Once the response has
started, failures can only be logged. Cleanup (closing the handle, stopping
the owning extractor process, discarding the artifact) runs from
``ArtifactResponse.__call__`` so that it happens on completion, on read
errors and when the client disconnects mid-stream.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import AsyncIterator, Dict, Optional

import aiofiles
import anyio
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from .artifacts import TempArtifact
from .errors import ArtifactNotFound, DeliveryReadError
from .extractor import ExtractorProcess
from .filenames import content_disposition, safe_filename
from .metrics import BYTES_DELIVERED

logger = logging.getLogger("downfiles.delivery")

DEFAULT_CHUNK_SIZE = 256 * 1024

VIDEO_TYPES = {
    "mp4": "video/mp4",
    "m4v": "video/mp4",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "flv": "video/x-flv",
    "3gp": "video/3gpp",
    "ts": "video/mp2t",
}
AUDIO_TYPES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "webm": "audio/webm",
    "opus": "audio/ogg",
    "ogg": "audio/ogg",
    "oga": "audio/ogg",
    "flac": "audio/flac",
    "wav": "audio/wav",
}


def content_type_for(ext: Optional[str], audio_only: bool) -> str:
    ext = (ext or "").lower()
    if audio_only:
        return AUDIO_TYPES.get(ext) or VIDEO_TYPES.get(ext) or "application/octet-stream"
    if ext in VIDEO_TYPES:
        return VIDEO_TYPES[ext]
    return AUDIO_TYPES.get(ext, "application/octet-stream")


class Delivery:
    def __init__(
        self,
        artifact: TempArtifact,
        handle,
        size: int,
        display_title: Optional[str],
        audio_only: bool,
        *,
        process: Optional[ExtractorProcess] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.artifact = artifact
        self.size = size
        self.audio_only = audio_only
        self.process = process
        self.chunk_size = chunk_size
        self.media_type = content_type_for(artifact.ext, audio_only)
        self.filename = safe_filename(display_title, artifact.ext or "bin")
        self.bytes_sent = 0
        self.completed = False
        self.read_failed = False
        self._handle = handle
        self._closed = False

    @classmethod
    async def open(
        cls,
        artifact: TempArtifact,
        display_title: Optional[str],
        audio_only: bool,
        *,
        process: Optional[ExtractorProcess] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> "Delivery":
        if artifact.path is None:
            artifact.discard()
            raise ArtifactNotFound("No artifact to deliver.")
        try:
            size = os.stat(artifact.path).st_size
            handle = await aiofiles.open(artifact.path, "rb")
        except OSError as exc:
            if process is not None:
                await process.terminate()
            artifact.discard()
            raise DeliveryReadError("The downloaded file could not be read.", details=str(exc)) from exc
        return cls(
            artifact,
            handle,
            size,
            display_title,
            audio_only,
            process=process,
            chunk_size=chunk_size,
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Disposition": content_disposition(self.filename),
            "Content-Length": str(self.size),
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
        }

    async def stream(self) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await self._handle.read(self.chunk_size)
                except (OSError, ValueError) as exc:
                    # Headers are already on the wire; all we can do is stop.
                    self.read_failed = True
                    logger.error(
                        "delivery_read_error",
                        extra={
                            "event": "delivery_read_error",
                            "correlation_id": self.artifact.correlation_id,
                            "bytes_sent": self.bytes_sent,
                            "error": str(exc),
                        },
                    )
                    return
                if not chunk:
                    break
                yield chunk
                self.bytes_sent += len(chunk)
                BYTES_DELIVERED.inc(len(chunk))
            self.completed = True
            logger.info(
                "delivery_complete",
                extra={
                    "event": "delivery_complete",
                    "correlation_id": self.artifact.correlation_id,
                    "bytes_sent": self.bytes_sent,
                },
            )
        finally:
            with anyio.CancelScope(shield=True):
                await self.close()

    async def close(self) -> None:
        """Release everything this delivery owns. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if not self.completed and not self.read_failed:
            logger.info(
                "client_disconnected",
                extra={
                    "event": "client_disconnected",
                    "correlation_id": self.artifact.correlation_id,
                    "bytes_sent": self.bytes_sent,
                },
            )
        try:
            await self._handle.close()
        except (OSError, ValueError) as exc:
            logger.debug("Closing %s failed: %s", self.artifact.path, exc)
        finally:
            if self.process is not None:
                await self.process.terminate()
            self.artifact.discard()

    def response(self) -> "ArtifactResponse":
        return ArtifactResponse(self)


class ArtifactResponse(StreamingResponse):
    def __init__(self, delivery: Delivery) -> None:
        super().__init__(
            delivery.stream(),
            status_code=200,
            headers=delivery.headers,
            media_type=delivery.media_type,
            background=BackgroundTask(delivery.artifact.discard),
        )
        self.delivery = delivery

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (asyncio.CancelledError, OSError):
            logger.debug("Response for %s interrupted", self.delivery.artifact.correlation_id)
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await self.delivery.close()
