from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable

import pytest
from tenacity import wait_none

from downfiles.config import Settings
from downfiles.pipeline import Pipeline
from downfiles.toolchain import Toolchain

FAKE_EXTRACTOR = Path(__file__).with_name("fake_extractor.py")


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        temp_root=tmp_path / "work",
        kill_grace=1.0,
        disconnect_poll=0.05,
        probe_retries=3,
        chunk_size=4,
        job_sweep_interval=1.0,
    )


@pytest.fixture
def toolchain() -> Toolchain:
    return Toolchain(extractor_cmd=(sys.executable, str(FAKE_EXTRACTOR)))


@pytest.fixture
def pipeline(settings: Settings, toolchain: Toolchain) -> Pipeline:
    pipe = Pipeline(settings, toolchain)
    pipe.retry_wait = wait_none()
    return pipe


@pytest.fixture
def fake_extractor(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    """Select the stand-in extractor's behaviour for child processes."""

    def _configure(mode: str = "ok", **env: object) -> None:
        monkeypatch.setenv("FAKE_EXTRACTOR_MODE", mode)
        for key, value in env.items():
            monkeypatch.setenv(f"FAKE_EXTRACTOR_{key.upper()}", str(value))

    _configure()
    return _configure
