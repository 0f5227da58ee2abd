from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return None


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(os.environ.get(name, default))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    try:
        value = float(os.environ.get(name, default))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_str(name: str) -> Optional[str]:
    value = (os.environ.get(name) or "").strip()
    return value or None


def _default_temp_root() -> Path:
    return Path(tempfile.gettempdir()) / "downfiles"


@dataclass(frozen=True)
class Settings:
    temp_root: Path = field(default_factory=_default_temp_root)
    extractor_bin: Optional[str] = None
    ffmpeg_bin: Optional[str] = None
    probe_socket_timeout: int = 30
    fetch_socket_timeout: int = 60
    probe_retries: int = 2
    kill_grace: float = 5.0
    chunk_size: int = 256 * 1024
    disconnect_poll: float = 0.5
    job_ttl_seconds: int = 3600
    job_sweep_interval: float = 60.0
    error_detail_limit: int = 2000
    accept_language: Optional[str] = "en-US,en;q=0.9"
    user_agent: Optional[str] = None
    cookies_file: Optional[str] = None
    cookies_b64: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        temp_root = _env_str("DOWNFILES_TEMP_ROOT")
        origins = os.environ.get("DOWNFILES_CORS_ORIGINS", "*")
        return cls(
            temp_root=Path(temp_root) if temp_root else _default_temp_root(),
            extractor_bin=_env_str("DOWNFILES_EXTRACTOR_BIN"),
            ffmpeg_bin=_env_str("DOWNFILES_FFMPEG_BIN"),
            probe_socket_timeout=_env_int("DOWNFILES_PROBE_SOCKET_TIMEOUT", 30, minimum=1),
            fetch_socket_timeout=_env_int("DOWNFILES_FETCH_SOCKET_TIMEOUT", 60, minimum=1),
            probe_retries=_env_int("DOWNFILES_PROBE_RETRIES", 2, minimum=1),
            kill_grace=_env_float("DOWNFILES_KILL_GRACE", 5.0, minimum=0.0),
            chunk_size=_env_int("DOWNFILES_CHUNK_SIZE", 256 * 1024, minimum=1024),
            disconnect_poll=_env_float("DOWNFILES_DISCONNECT_POLL", 0.5, minimum=0.05),
            job_ttl_seconds=_env_int("DOWNFILES_JOB_TTL_SECONDS", 3600, minimum=0),
            job_sweep_interval=_env_float("DOWNFILES_JOB_SWEEP_INTERVAL", 60.0, minimum=1.0),
            error_detail_limit=_env_int("DOWNFILES_ERROR_DETAIL_LIMIT", 2000, minimum=0),
            accept_language=_env_str("DOWNFILES_ACCEPT_LANGUAGE") or "en-US,en;q=0.9",
            user_agent=_env_str("DOWNFILES_USER_AGENT"),
            cookies_file=_env_str("DOWNFILES_COOKIES_FILE"),
            cookies_b64=_env_str("DOWNFILES_COOKIES_B64"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            host=os.environ.get("DOWNFILES_HOST", "0.0.0.0"),
            port=_env_int("DOWNFILES_PORT", 3000, minimum=1),
            log_level=(os.environ.get("DOWNFILES_LOG_LEVEL") or "INFO").upper(),
        )

    def ensure_dirs(self) -> None:
        self.temp_root.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("downfiles").setLevel(level)
