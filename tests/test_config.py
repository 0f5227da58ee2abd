import base64
from pathlib import Path

import pytest

from downfiles.config import Settings, _parse_bool
from downfiles.toolchain import CookieCredentials, Toolchain, detect_toolchain


@pytest.mark.parametrize(
    "raw, expected",
    [("1", True), ("YES", True), (" on ", True), ("0", False), ("off", False), ("maybe", None), (None, None)],
)
def test_parse_bool(raw, expected):
    assert _parse_bool(raw) is expected


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("DOWNFILES_TEMP_ROOT", str(tmp_path / "t"))
    monkeypatch.setenv("DOWNFILES_PROBE_RETRIES", "4")
    monkeypatch.setenv("DOWNFILES_KILL_GRACE", "not-a-number")
    monkeypatch.setenv("DOWNFILES_JOB_TTL_SECONDS", "0")
    monkeypatch.setenv("DOWNFILES_CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("DOWNFILES_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.temp_root == tmp_path / "t"
    assert settings.probe_retries == 4
    assert settings.kill_grace == 5.0
    assert settings.job_ttl_seconds == 0
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.log_level == "DEBUG"
    assert settings.fetch_socket_timeout == 60

    settings.ensure_dirs()
    assert settings.temp_root.is_dir()


def test_toolchain_overrides(tmp_path: Path):
    ffmpeg = tmp_path / "ffmpeg"
    ffmpeg.write_text("")
    settings = Settings(temp_root=tmp_path, extractor_bin="python3 -m yt_dlp", ffmpeg_bin=str(ffmpeg))
    toolchain = detect_toolchain(settings)
    assert toolchain.extractor_cmd == ("python3", "-m", "yt_dlp")
    assert toolchain.ffmpeg_path == str(ffmpeg)
    assert toolchain.transcode_capable


def test_missing_transcoder_means_not_capable(tmp_path: Path):
    settings = Settings(temp_root=tmp_path, extractor_bin="yt-dlp", ffmpeg_bin=str(tmp_path / "no-ffmpeg"))
    assert not detect_toolchain(settings).transcode_capable
    assert not Toolchain(extractor_cmd=()).extractor_available


class TestCookieCredentials:
    @pytest.mark.asyncio
    async def test_absent(self, tmp_path: Path):
        credentials = CookieCredentials()
        assert not credentials.present
        async with credentials.materialize(tmp_path) as path:
            assert path is None

    @pytest.mark.asyncio
    async def test_file_is_passed_through(self, tmp_path: Path):
        cookies = tmp_path / "cookies.txt"
        cookies.write_text("# Netscape HTTP Cookie File\n")
        credentials = CookieCredentials(cookies_file=str(cookies))
        async with credentials.materialize(tmp_path) as path:
            assert path == str(cookies)
        assert cookies.exists()

    @pytest.mark.asyncio
    async def test_blob_is_materialized_privately(self, tmp_path: Path):
        blob = base64.b64encode(b"# Netscape HTTP Cookie File\n").decode()
        credentials = CookieCredentials(cookies_b64=blob)
        assert credentials.present
        async with credentials.materialize(tmp_path) as path:
            assert Path(path).read_bytes() == b"# Netscape HTTP Cookie File\n"
        assert not Path(path).exists()

    def test_bad_material_is_ignored(self, tmp_path: Path):
        assert not CookieCredentials(cookies_b64="%%%not base64").present
        assert not CookieCredentials(cookies_file=str(tmp_path / "missing.txt")).present
