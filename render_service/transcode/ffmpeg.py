"""FFmpeg adapter.

Two entry points:
- ``transcode``: convert an existing file into one of the delivery formats.
- ``FrameEncoder``: stream raw RGBA frames into ffmpeg to build the
  intermediate H.264 file a render starts from.

Design rules:
- Argument vectors only, never a shell
- stderr is drained on a background thread and kept verbatim
- Non-zero exit or a signal = failure, and the partial output is removed
- Cancellation kills the process (SIGTERM, then SIGKILL) before returning
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from render_service.cancellation import CancellationToken
from render_service.config import settings
from render_service.errors import (
    InputNotFoundError,
    InvalidOptionsError,
    TranscodeCancelled,
    TranscodeError,
    UnsupportedFormatError,
)
from render_service.transcode.profiles import (
    PROFILES,
    SUPPORTED_FORMATS,
    TranscodeOptions,
    check_options,
    format_validation_errors,
    parse_options,
)

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
# Leading directories of an absolute path; the basename is kept
_DIR_PREFIX_RE = re.compile(r"(?<![\w.])/(?:[^/\s:'\"]+/)+")
_MAX_DIAGNOSTIC_CHARS = 200

# How often the wait loop checks for cancellation / watchdog expiry
_POLL_SECONDS = 0.1
_TERMINATE_GRACE_SECONDS = 5

ProgressFn = Callable[[float], None]


@dataclass
class TranscodeResult:
    output_path: str
    format: str
    elapsed_seconds: float


def concise_diagnostic(exc: TranscodeError, *paths: str, limit: int = _MAX_DIAGNOSTIC_CHARS) -> str:
    """Last meaningful stderr line, safe to show to a client.

    ``paths`` (scratch or output dirs, possibly relative) are removed first,
    then any remaining absolute path is cut down to its basename.
    """
    lines = [line.strip() for line in exc.diagnostic.splitlines() if line.strip()]
    detail = lines[-1] if lines else f"exit code {exc.returncode}"
    for path in paths:
        if path:
            detail = detail.replace(path + os.sep, "").replace(path, "")
    detail = _DIR_PREFIX_RE.sub("", detail)
    if len(detail) > limit:
        detail = detail[: limit - 3] + "..."
    return detail


class _StderrDrain(threading.Thread):
    """Reads a process's stderr until EOF, keeping the full text."""

    def __init__(self, stream, on_time: Optional[Callable[[float], None]] = None):
        super().__init__(daemon=True)
        self._stream = stream
        self._on_time = on_time
        self._chunks: List[str] = []

    def run(self) -> None:
        while True:
            chunk = self._stream.read1(4096)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self._chunks.append(text)
            if self._on_time is not None:
                matches = _TIME_RE.findall(text)
                if matches:
                    hours, minutes, seconds = matches[-1]
                    self._on_time(int(hours) * 3600 + int(minutes) * 60 + float(seconds))

    @property
    def text(self) -> str:
        return "".join(self._chunks)


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM, then SIGKILL if the process does not exit in time."""
    if proc.poll() is not None:
        return
    logger.info("[FFmpeg] Sending SIGTERM to PID %s", proc.pid)
    try:
        proc.terminate()
        try:
            proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("[FFmpeg] PID %s did not terminate, sending SIGKILL", proc.pid)
            proc.kill()
            proc.wait()
    except ProcessLookupError:
        pass


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _spawn(argv: List[str], stdin=None) -> subprocess.Popen:
    logger.debug("[FFmpeg] Executing: %s", argv)
    try:
        return subprocess.Popen(
            argv,
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise TranscodeError(
            "FFmpeg not found. Install ffmpeg and add it to your PATH.", None
        ) from exc


def _wait(
    proc: subprocess.Popen,
    drain: _StderrDrain,
    token: Optional[CancellationToken],
    timeout: Optional[float],
) -> int:
    """Block until the process exits, killing it on cancel or watchdog expiry."""
    started = time.monotonic()
    while True:
        try:
            returncode = proc.wait(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            pass
        if token is not None and token.cancelled:
            _terminate(proc)
            drain.join()
            raise TranscodeCancelled("Transcoding cancelled")
        if timeout is not None and time.monotonic() - started > timeout:
            _terminate(proc)
            drain.join()
            raise TranscodeError(
                f"Transcoder exceeded its time budget of {timeout:g}s\n{drain.text}", None
            )
    drain.join()
    return returncode


def resolve_options(
    fmt: str, options: Union[TranscodeOptions, dict, None]
) -> TranscodeOptions:
    """Check ``fmt`` and ``options`` before any process is started."""
    if fmt not in PROFILES:
        raise UnsupportedFormatError(fmt, SUPPORTED_FORMATS)
    if not isinstance(options, TranscodeOptions):
        try:
            options = parse_options(options)
        except ValidationError as exc:
            raise InvalidOptionsError(format_validation_errors(exc)) from exc
    errors = check_options(fmt, options)
    if errors:
        raise InvalidOptionsError(errors)
    return options


def build_transcode_command(
    input_path: str, output_path: str, fmt: str, options: TranscodeOptions
) -> List[str]:
    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i", input_path,
        *PROFILES[fmt](options),
        output_path,
    ]


def transcode(
    input_path: str,
    output_path: str,
    fmt: str,
    options: Union[TranscodeOptions, dict, None] = None,
    token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressFn] = None,
    duration: Optional[float] = None,
) -> TranscodeResult:
    """Convert ``input_path`` into ``fmt`` at ``output_path``.

    Raises:
        UnsupportedFormatError / InvalidOptionsError / InputNotFoundError:
            precondition failures, raised before ffmpeg is started.
        TranscodeError: ffmpeg exited abnormally; ``diagnostic`` is its stderr.
        TranscodeCancelled: ``token`` was cancelled and ffmpeg was killed.
    """
    options = resolve_options(fmt, options)
    if not os.path.isfile(input_path):
        raise InputNotFoundError(input_path)

    on_time = None
    if on_progress is not None and duration:
        def on_time(seconds: float) -> None:
            on_progress(min(1.0, max(0.0, seconds / duration)))

    argv = build_transcode_command(input_path, output_path, fmt, options)
    started = time.monotonic()
    proc = _spawn(argv)
    drain = _StderrDrain(proc.stderr, on_time=on_time)
    drain.start()

    try:
        returncode = _wait(proc, drain, token, settings.transcode_timeout_seconds)
    except (TranscodeCancelled, TranscodeError):
        _remove_quietly(output_path)
        raise

    if returncode != 0:
        _remove_quietly(output_path)
        logger.warning("[FFmpeg] %s transcode failed (exit %s): %s", fmt, returncode, drain.text[-2000:])
        raise TranscodeError(drain.text, returncode)
    if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
        _remove_quietly(output_path)
        raise TranscodeError(drain.text or "Output file was not created", returncode)

    elapsed = time.monotonic() - started
    logger.info("[FFmpeg] Transcoded to %s in %.1fs", fmt, elapsed)
    return TranscodeResult(output_path=output_path, format=fmt, elapsed_seconds=elapsed)


def convert_file(
    input_path: str,
    fmt: str,
    options: Union[TranscodeOptions, dict, None] = None,
    output_dir: Optional[str] = None,
) -> TranscodeResult:
    """Standalone conversion: writes ``<uuid>.<fmt>`` into ``output_dir``
    (the configured output dir by default)."""
    options = resolve_options(fmt, options)
    output_dir = output_dir or settings.output_dir
    if not os.path.isfile(input_path):
        raise InputNotFoundError(input_path)
    os.makedirs(output_dir, exist_ok=True)
    output_path = os.path.join(os.path.abspath(output_dir), f"{uuid.uuid4()}.{fmt}")
    return transcode(input_path, output_path, fmt, options)


class FrameEncoder:
    """Streams raw RGBA frames into ffmpeg, producing an H.264 file.

    Usage:
        with FrameEncoder(w, h, fps, out_path, audio_path, token) as encoder:
            for frame in frames:
                encoder.write_frame(frame)
            encoder.finish()

    Leaving the block without ``finish()`` kills ffmpeg and removes the output.
    """

    def __init__(
        self,
        width: int,
        height: int,
        fps: int,
        output_path: str,
        audio_path: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        crf: Optional[int] = None,
    ):
        self.width = width
        self.height = height
        self.fps = fps
        self.output_path = output_path
        self.audio_path = audio_path
        self._token = token
        self._crf = settings.intermediate_crf if crf is None else crf
        self._proc: Optional[subprocess.Popen] = None
        self._drain: Optional[_StderrDrain] = None
        self._finished = False

    def command(self) -> List[str]:
        argv = [
            settings.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-s", f"{self.width}x{self.height}",
            "-r", str(self.fps),
            "-i", "pipe:0",
        ]
        if self.audio_path:
            argv += ["-i", self.audio_path]
        argv += [
            # yuv420p needs even dimensions
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", str(self._crf),
            "-pix_fmt", "yuv420p",
            "-map", "0:v",
        ]
        if self.audio_path:
            argv += ["-c:a", "aac", "-b:a", "192k", "-map", "1:a", "-shortest"]
        argv += ["-movflags", "+faststart", self.output_path]
        return argv

    def start(self) -> "FrameEncoder":
        self._proc = _spawn(self.command(), stdin=subprocess.PIPE)
        self._drain = _StderrDrain(self._proc.stderr)
        self._drain.start()
        return self

    def write_frame(self, frame: bytes) -> None:
        if self._proc is None or self._finished:
            raise RuntimeError("Encoder not started or already finished")
        if self._token is not None and self._token.cancelled:
            self.abort()
            raise TranscodeCancelled("Encoding cancelled")
        try:
            self._proc.stdin.write(frame)
        except (BrokenPipeError, OSError) as exc:
            # ffmpeg died; its stderr says why
            self._proc.wait()
            self._drain.join()
            self._finished = True
            _remove_quietly(self.output_path)
            raise TranscodeError(self._drain.text, self._proc.returncode) from exc

    def finish(self) -> str:
        if self._proc is None:
            raise RuntimeError("Encoder not started")
        try:
            self._proc.stdin.close()
        except (BrokenPipeError, OSError):
            pass
        try:
            returncode = _wait(self._proc, self._drain, self._token, settings.transcode_timeout_seconds)
        except (TranscodeCancelled, TranscodeError):
            self._finished = True
            _remove_quietly(self.output_path)
            raise
        self._finished = True
        if returncode != 0:
            _remove_quietly(self.output_path)
            logger.warning("[FFmpeg] Frame encoder failed (exit %s): %s", returncode, self._drain.text[-2000:])
            raise TranscodeError(self._drain.text, returncode)
        return self.output_path

    def abort(self) -> None:
        """Kill ffmpeg and discard whatever it wrote."""
        if self._proc is None or self._finished:
            return
        self._finished = True
        try:
            self._proc.stdin.close()
        except (BrokenPipeError, OSError):
            pass
        _terminate(self._proc)
        if self._drain is not None:
            self._drain.join()
        _remove_quietly(self.output_path)

    def __enter__(self) -> "FrameEncoder":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._finished:
            self.abort()


def ffmpeg_version() -> Optional[str]:
    """First line of ``ffmpeg -version``, or None when ffmpeg is unavailable."""
    if shutil.which(settings.ffmpeg_path) is None and not os.path.isfile(settings.ffmpeg_path):
        return None
    try:
        completed = subprocess.run(
            [settings.ffmpeg_path, "-version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if completed.returncode != 0:
        return None
    lines = completed.stdout.splitlines()
    return lines[0].strip() if lines else "ffmpeg"
