import asyncio
import json
import sys
from pathlib import Path

import pytest

from downfiles.errors import ExtractionFailed, FailureReason
from downfiles.extractor import (
    ExtractorCommand,
    ExtractorProcess,
    classify,
    failure_from_exit,
    parse_probe,
    parse_progress,
    run,
    select_candidates,
)

from .conftest import FAKE_EXTRACTOR, pid_alive

SAMPLE_INFO = {
    "title": "Sample Clip",
    "channel": "Example Channel",
    "extractor_key": "Youtube",
    "format_id": "137+140",
    "formats": [
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2", "tbr": 129},
        {"format_id": "18", "ext": "mp4", "height": 360, "vcodec": "avc1", "acodec": "mp4a", "tbr": 500},
        {"format_id": "134", "ext": "mp4", "height": 360, "vcodec": "avc1", "acodec": "none", "tbr": 600},
        {"format_id": "137", "ext": "mp4", "height": 1080, "vcodec": "avc1", "acodec": "none", "tbr": 4000},
        {"format_id": "248", "ext": "webm", "height": 1080, "vcodec": "vp9", "acodec": "none", "tbr": 3000},
        {"format_id": "22", "ext": "mp4", "height": 720, "vcodec": "avc1", "acodec": "mp4a", "tbr": 1500},
        {"format_id": "sb0", "ext": "mhtml", "vcodec": "none", "acodec": "none"},
    ],
}


class TestClassify:
    def test_drm_phrase_is_drm_protected(self):
        stderr = "ERROR: [generic] This video is DRM protected"
        assert classify(stderr) is FailureReason.DRM_PROTECTED

    def test_drm_wins_over_later_categories(self):
        stderr = "ERROR: Private video. Sign in if you've been granted access. The video is DRM protected"
        assert classify(stderr) is FailureReason.DRM_PROTECTED

    @pytest.mark.parametrize(
        "stderr, reason",
        [
            ("ERROR: [youtube] abc: Private video. Sign in if you've been granted access", FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED),
            ("ERROR: Sign in to confirm your age", FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED),
            ("ERROR: The uploader has not made this video available in your country", FailureReason.REGION_RESTRICTED),
            ("ERROR: This video is not available from your location due to geo restriction", FailureReason.REGION_RESTRICTED),
            ("ERROR: [youtube] abc: Requested format is not available", FailureReason.FORMAT_UNAVAILABLE),
            ("ERROR: Unable to download webpage: The read operation timed out", FailureReason.TIMEOUT),
            ("ERROR: Unsupported URL: https://example.com", FailureReason.UNCLASSIFIED),
            ("", FailureReason.UNCLASSIFIED),
        ],
    )
    def test_phrases(self, stderr, reason):
        assert classify(stderr) is reason

    def test_drm_warning_does_not_mask_private_error(self):
        stderr = (
            "WARNING: [youtube] abc: Some web client https formats have been skipped as they are DRM protected.\n"
            "ERROR: [youtube] abc: Private video. Sign in if you've been granted access to this video"
        )
        assert classify(stderr) is FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED

    def test_drm_warning_does_not_mask_region_error(self):
        stderr = (
            "WARNING: [youtube] abc: Some tv client https formats have been skipped as they are DRM protected.\n"
            "ERROR: [youtube] abc: The uploader has not made this video available in your country"
        )
        assert classify(stderr) is FailureReason.REGION_RESTRICTED

    def test_retry_warning_does_not_make_a_timeout(self):
        stderr = (
            "WARNING: [generic] Unable to download webpage: The read operation timed out. Retrying (1/3)...\n"
            "ERROR: [generic] Unable to download webpage: HTTP Error 404: Not Found"
        )
        assert classify(stderr) is FailureReason.UNCLASSIFIED

    def test_warnings_count_without_error_lines(self):
        stderr = "WARNING: [youtube] abc: formats have been skipped as they are DRM protected"
        assert classify(stderr) is FailureReason.DRM_PROTECTED

    def test_failure_from_exit_keeps_stderr_tail(self):
        stderr = "noise " * 100 + "ERROR: Requested format is not available"
        error = failure_from_exit(1, stderr, 40)
        assert error.failure is FailureReason.FORMAT_UNAVAILABLE
        assert error.status_code == 422
        assert error.exit_code == 1
        assert error.details.startswith("...")
        assert error.details.endswith("format is not available")
        assert len(error.details) == 43


def test_parse_progress():
    assert parse_progress("[download]  42.3% of 10.00MiB at 1.00MiB/s ETA 00:05") == 42.3
    assert parse_progress("[download] 100% of 10.00MiB") == 100.0
    assert parse_progress("[download] Destination: x.mp4") is None
    assert parse_progress("[Merger] Merging formats") is None


def test_candidates_are_unique_and_strictly_descending():
    candidates = select_candidates(SAMPLE_INFO["formats"])
    assert [c.resolution for c in candidates] == ["1080p", "720p", "360p", "audio"]
    assert [c.format_id for c in candidates] == ["137", "22", "18", "140"]
    heights = [c.height for c in candidates]
    assert heights == sorted(set(heights), reverse=True)


def test_parse_probe_fills_fallbacks():
    result = parse_probe(json.dumps(SAMPLE_INFO), "https://youtu.be/sample")
    assert result.title == "Sample Clip"
    assert result.uploader == "Example Channel"
    assert result.platform == "Youtube"
    assert result.webpage_url == "https://youtu.be/sample"
    assert result.best_format == "137+140"
    payload = result.to_dict()
    assert "height" not in payload["formats"][0]


def test_parse_probe_uses_domain_when_extractor_unnamed():
    info = dict(SAMPLE_INFO, extractor_key=None)
    assert parse_probe(json.dumps(info), "https://vimeo.com/123").platform == "vimeo"


def test_parse_probe_rejects_garbage():
    with pytest.raises(ExtractionFailed) as excinfo:
        parse_probe("not json", "https://example.com/v")
    assert excinfo.value.failure is FailureReason.UNCLASSIFIED
    assert excinfo.value.status_code == 502


class TestExtractorCommand:
    def test_probe_args(self):
        cmd = ExtractorCommand(base=("yt-dlp",), socket_timeout=30, accept_language="en-US", cookies_path="/c.txt")
        argv = cmd.probe("https://example.com/v")
        assert argv[0] == "yt-dlp"
        assert argv[-2:] == ["--", "https://example.com/v"]
        assert "--dump-json" in argv and "--skip-download" in argv
        assert argv[argv.index("--socket-timeout") + 1] == "30"
        assert argv[argv.index("--cookies") + 1] == "/c.txt"
        assert "Accept-Language:en-US" in argv

    def test_fetch_with_transcoder_merges_to_mp4(self):
        cmd = ExtractorCommand(base=("yt-dlp",), socket_timeout=60)
        argv = cmd.fetch("https://e.com/v", "best", "/tmp/x.%(ext)s", ffmpeg_path="/usr/bin/ffmpeg")
        assert argv[argv.index("-f") + 1] == "best"
        assert argv[argv.index("-o") + 1] == "/tmp/x.%(ext)s"
        assert argv[argv.index("--ffmpeg-location") + 1] == "/usr/bin/ffmpeg"
        assert argv[argv.index("--merge-output-format") + 1] == "mp4"
        assert "--extract-audio" not in argv
        assert "--cookies" not in argv

    def test_fetch_audio_with_transcoder_extracts_mp3(self):
        cmd = ExtractorCommand(base=("yt-dlp",), socket_timeout=60)
        argv = cmd.fetch("https://e.com/v", "bestaudio", "/tmp/x.%(ext)s", ffmpeg_path="ffmpeg", audio_only=True)
        assert argv[argv.index("--audio-format") + 1] == "mp3"
        assert "--merge-output-format" not in argv

    def test_fetch_without_transcoder_has_no_postprocessing(self):
        cmd = ExtractorCommand(base=("yt-dlp",), socket_timeout=60)
        argv = cmd.fetch("https://e.com/v", "best", "/tmp/x.%(ext)s", audio_only=True)
        assert "--ffmpeg-location" not in argv
        assert "--extract-audio" not in argv


class TestExtractorProcess:
    @pytest.mark.asyncio
    async def test_run_forwards_lines(self, fake_extractor):
        out, err = [], []
        code = await run(
            [sys.executable, str(FAKE_EXTRACTOR), "--dump-json", "--", "https://e.com/v"],
            out.append,
            err.append,
            mode="probe",
        )
        assert code == 0
        assert json.loads(out[0])["title"] == "Sample Clip"
        assert err == ["WARNING: sample warning"]

    @pytest.mark.asyncio
    async def test_long_lines_are_not_truncated(self):
        out = []
        code = await run([sys.executable, "-c", "print('x' * 200000)"], out.append)
        assert code == 0
        assert out == ["x" * 200000]

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_reported(self, fake_extractor):
        fake_extractor("fail", stderr="ERROR: This video is DRM protected")
        err = []
        code = await run([sys.executable, str(FAKE_EXTRACTOR)], None, err.append)
        assert code == 1
        assert classify("\n".join(err)) is FailureReason.DRM_PROTECTED

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path):
        with pytest.raises(ExtractionFailed) as excinfo:
            await run([str(tmp_path / "no-such-extractor")])
        assert excinfo.value.failure is FailureReason.UNCLASSIFIED

    @pytest.mark.asyncio
    async def test_leaving_context_terminates(self, fake_extractor, tmp_path: Path):
        fake_extractor("hang")
        progress = []
        async with ExtractorProcess(
            [sys.executable, str(FAKE_EXTRACTOR)],
            lambda line: progress.append(parse_progress(line)),
            kill_grace=1.0,
        ) as proc:
            for _ in range(100):
                if progress:
                    break
                await asyncio.sleep(0.05)
            pid = proc.pid
            assert proc.running
        assert progress == [5.0]
        assert not proc.running
        assert not pid_alive(pid)

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self, fake_extractor, tmp_path: Path):
        pidfile = tmp_path / "pid"
        fake_extractor("stubborn", pidfile=pidfile)
        proc = ExtractorProcess([sys.executable, str(FAKE_EXTRACTOR)], kill_grace=0.3)
        await proc.spawn()
        for _ in range(100):
            if pidfile.exists() and pidfile.read_text():
                break
            await asyncio.sleep(0.05)
        await proc.terminate()
        assert proc.returncode is not None
        assert not pid_alive(proc.pid)
        await proc.terminate()
