"""Tests for the ffmpeg adapter: profiles, preconditions, failures, cancellation."""

import os
import subprocess
import threading

import pytest

from conftest import fake_ffmpeg
from render_service.cancellation import CancellationToken
from render_service.config import settings
from render_service.errors import (
    InputNotFoundError,
    InvalidOptionsError,
    TranscodeCancelled,
    TranscodeError,
    UnsupportedFormatError,
)
from render_service.transcode import ffmpeg
from render_service.transcode.ffmpeg import (
    FrameEncoder,
    build_transcode_command,
    concise_diagnostic,
    convert_file,
    resolve_options,
    transcode,
)
from render_service.transcode.profiles import SUPPORTED_FORMATS, TranscodeOptions


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "input.mp4"
    path.write_bytes(b"not really a video")
    return str(path)


@pytest.fixture
def no_spawn(monkeypatch):
    """Fail the test if anything tries to start a process."""
    calls = []

    def fake_popen(*args, **kwargs):
        calls.append(args)
        raise AssertionError("Popen must not be called")

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    return calls


class TestProfiles:
    """Tests for per-format argument building."""

    def test_supported_formats(self):
        assert SUPPORTED_FORMATS == ("mp4", "webm", "gif")

    def test_mp4_defaults(self, input_file):
        argv = build_transcode_command(input_file, "out.mp4", "mp4", TranscodeOptions())
        assert argv[0] == settings.ffmpeg_path
        assert argv[argv.index("-c:v") + 1] == "libx264"
        assert argv[argv.index("-preset") + 1] == "medium"
        assert argv[argv.index("-crf") + 1] == "23"
        assert argv[argv.index("-pix_fmt") + 1] == "yuv420p"
        assert argv[argv.index("-c:a") + 1] == "aac"
        assert argv[argv.index("-movflags") + 1] == "+faststart"
        assert argv[-1] == "out.mp4"

    def test_mp4_options_override_defaults(self, input_file):
        options = TranscodeOptions(preset="slow", crf=18)
        argv = build_transcode_command(input_file, "out.mp4", "mp4", options)
        assert argv[argv.index("-preset") + 1] == "slow"
        assert argv[argv.index("-crf") + 1] == "18"

    def test_webm_profile(self, input_file):
        argv = build_transcode_command(input_file, "out.webm", "webm", TranscodeOptions())
        assert argv[argv.index("-c:v") + 1] == "libvpx-vp9"
        assert argv[argv.index("-crf") + 1] == "30"
        assert argv[argv.index("-b:v") + 1] == "0"
        assert argv[argv.index("-c:a") + 1] == "libopus"

    def test_gif_profile(self, input_file):
        argv = build_transcode_command(
            input_file, "out.gif", "gif", TranscodeOptions(fps=12, width=320)
        )
        assert argv[argv.index("-vf") + 1] == "fps=12,scale=320:-1:flags=lanczos"
        assert argv[argv.index("-loop") + 1] == "0"

    def test_argv_is_a_list_of_strings(self, input_file):
        argv = build_transcode_command(input_file, "out; rm -rf /", "mp4", TranscodeOptions())
        assert all(isinstance(arg, str) for arg in argv)
        assert argv[-1] == "out; rm -rf /"


class TestPreconditions:
    """Preconditions fail before any process is spawned."""

    def test_unsupported_format(self, input_file, tmp_path, no_spawn):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            transcode(input_file, str(tmp_path / "out.avi"), "avi")
        assert exc_info.value.format == "avi"
        assert exc_info.value.supported == ["mp4", "webm", "gif"]
        assert no_spawn == []

    def test_missing_input(self, tmp_path, no_spawn):
        with pytest.raises(InputNotFoundError):
            transcode(str(tmp_path / "missing.mp4"), str(tmp_path / "out.mp4"), "mp4")
        assert no_spawn == []

    def test_invalid_options(self, input_file, tmp_path, no_spawn):
        with pytest.raises(InvalidOptionsError):
            transcode(input_file, str(tmp_path / "out.mp4"), "mp4", {"crf": 99})
        assert no_spawn == []

    def test_preset_rejected_for_gif(self):
        with pytest.raises(InvalidOptionsError) as exc_info:
            resolve_options("gif", {"preset": "fast"})
        assert "preset is only valid for mp4, not gif" in exc_info.value.errors

    def test_convert_file_unsupported_format(self, input_file, tmp_path, no_spawn):
        with pytest.raises(UnsupportedFormatError):
            convert_file(input_file, "mkv", None, str(tmp_path))
        assert no_spawn == []


class TestProcessFailures:
    """Behavior against a stand-in ffmpeg executable."""

    def test_nonzero_exit_keeps_stderr_verbatim(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, """
            echo "input.mp4: Invalid data found when processing input" >&2
            exit 1
        """)
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        output = tmp_path / "out.mp4"

        with pytest.raises(TranscodeError) as exc_info:
            transcode(input_file, str(output), "mp4")

        assert exc_info.value.returncode == 1
        assert "Invalid data found when processing input" in exc_info.value.diagnostic
        assert not output.exists()

    def test_partial_output_removed(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, """
            for last; do :; done
            echo partial > "$last"
            echo "Conversion failed!" >&2
            exit 1
        """)
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        output = tmp_path / "out.webm"

        with pytest.raises(TranscodeError):
            transcode(input_file, str(output), "webm")
        assert not output.exists()

    def test_success_reports_output(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, """
            for last; do :; done
            echo "frame=1 time=00:00:01.00" >&2
            echo video > "$last"
            exit 0
        """)
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        output = tmp_path / "out.gif"
        fractions = []

        result = transcode(
            input_file, str(output), "gif", on_progress=fractions.append, duration=2.0
        )

        assert result.output_path == str(output)
        assert result.format == "gif"
        assert output.read_text().strip() == "video"
        assert fractions == [pytest.approx(0.5)]

    def test_empty_output_is_failure(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, """
            for last; do :; done
            : > "$last"
            exit 0
        """)
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        with pytest.raises(TranscodeError):
            transcode(input_file, str(tmp_path / "out.mp4"), "mp4")

    def test_binary_not_found(self, input_file, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "ffmpeg_path", str(tmp_path / "no-such-ffmpeg"))
        with pytest.raises(TranscodeError) as exc_info:
            transcode(input_file, str(tmp_path / "out.mp4"), "mp4")
        assert "FFmpeg not found" in exc_info.value.diagnostic

    def test_cancellation_kills_process(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, """
            for last; do :; done
            echo partial > "$last"
            exec sleep 30
        """)
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        output = tmp_path / "out.mp4"
        token = CancellationToken()
        timer = threading.Timer(0.3, token.cancel)
        timer.start()
        try:
            with pytest.raises(TranscodeCancelled):
                transcode(input_file, str(output), "mp4", token=token)
        finally:
            timer.cancel()
        assert not output.exists()

    def test_watchdog_expiry(self, input_file, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, "exec sleep 30\n")
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        monkeypatch.setattr(settings, "transcode_timeout_seconds", 0.3)
        with pytest.raises(TranscodeError) as exc_info:
            transcode(input_file, str(tmp_path / "out.mp4"), "mp4")
        assert "time budget" in exc_info.value.diagnostic


class TestFrameEncoder:
    """Tests for the streaming frame encoder."""

    def test_command_without_audio(self, tmp_path):
        encoder = FrameEncoder(160, 120, 10, str(tmp_path / "out.mp4"))
        argv = encoder.command()
        assert argv[argv.index("-f") + 1] == "rawvideo"
        assert argv[argv.index("-pix_fmt") + 1] == "rgba"
        assert argv[argv.index("-s") + 1] == "160x120"
        assert argv[argv.index("-r") + 1] == "10"
        assert "pipe:0" in argv
        assert "-shortest" not in argv

    def test_command_with_audio(self, tmp_path):
        encoder = FrameEncoder(160, 120, 10, str(tmp_path / "out.mp4"), audio_path="a.mp3")
        argv = encoder.command()
        assert argv.count("-i") == 2
        assert "a.mp3" in argv
        assert "1:a" in argv
        assert "-shortest" in argv

    def test_cancelled_write_aborts(self, tmp_path, monkeypatch):
        fake = fake_ffmpeg(tmp_path, "exec cat > /dev/null\n")
        monkeypatch.setattr(settings, "ffmpeg_path", fake)
        token = CancellationToken()
        output = tmp_path / "out.mp4"

        with FrameEncoder(100, 100, 10, str(output), token=token) as encoder:
            encoder.write_frame(b"\x00" * 100 * 100 * 4)
            token.cancel()
            with pytest.raises(TranscodeCancelled):
                encoder.write_frame(b"\x00" * 100 * 100 * 4)
        assert not output.exists()


class TestConciseDiagnostic:
    """Client-facing summaries of ffmpeg stderr."""

    def test_last_non_empty_line(self):
        exc = TranscodeError("frame=1\nbad things happened\n\n  \n", 1)
        assert concise_diagnostic(exc) == "bad things happened"

    def test_absolute_directories_removed(self):
        exc = TranscodeError("/srv/media/uploads/in.mp4: Invalid data found when processing input", 1)
        assert concise_diagnostic(exc) == "in.mp4: Invalid data found when processing input"

    def test_given_paths_removed(self):
        exc = TranscodeError("Could not write output/.work/abc/final.gif", 1)
        assert concise_diagnostic(exc, "output") == "Could not write .work/abc/final.gif"

    def test_ratio_and_options_untouched(self):
        exc = TranscodeError("Invalid size 16/9 for -vf scale=iw/2:-2", 1)
        assert concise_diagnostic(exc) == "Invalid size 16/9 for -vf scale=iw/2:-2"

    def test_empty_stderr_falls_back_to_exit_code(self):
        assert concise_diagnostic(TranscodeError("", 137)) == "exit code 137"

    def test_long_lines_truncated(self):
        detail = concise_diagnostic(TranscodeError("x" * 500, 1), limit=50)
        assert len(detail) == 50
        assert detail.endswith("...")


class TestVersionLookup:
    def test_missing_binary(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "ffmpeg_path", str(tmp_path / "absent"))
        assert ffmpeg.ffmpeg_version() is None

    @pytest.mark.requires_ffmpeg
    def test_real_binary(self):
        version = ffmpeg.ffmpeg_version()
        assert version is not None
        assert "ffmpeg" in version.lower()
