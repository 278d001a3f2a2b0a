"""Per-format ffmpeg invocation profiles.

Each supported delivery format maps to a function that builds the ffmpeg
argument vector for it. Arguments are always passed as a list, never through
a shell.
"""

from typing import Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from render_service.config import settings

X264Preset = Literal[
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
]


class TranscodeOptions(BaseModel):
    """Quality/size knobs. Unset fields fall back to the configured defaults."""
    preset: Optional[X264Preset] = None
    crf: Optional[int] = Field(default=None, ge=0, le=63)
    fps: Optional[int] = Field(default=None, ge=1, le=60)
    width: Optional[int] = Field(default=None, ge=16, le=4096)

    model_config = {"extra": "forbid", "frozen": True}


def _mp4_args(options: TranscodeOptions) -> List[str]:
    return [
        "-c:v", "libx264",
        "-preset", options.preset or settings.mp4_preset,
        "-crf", str(options.crf if options.crf is not None else settings.mp4_crf),
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", "192k",
        "-movflags", "+faststart",
    ]


def _webm_args(options: TranscodeOptions) -> List[str]:
    return [
        "-c:v", "libvpx-vp9",
        "-crf", str(options.crf if options.crf is not None else settings.webm_crf),
        "-b:v", "0",
        "-c:a", "libopus",
    ]


def _gif_args(options: TranscodeOptions) -> List[str]:
    fps = options.fps or settings.gif_fps
    width = options.width or settings.gif_width
    return [
        "-vf", f"fps={fps},scale={width}:-1:flags=lanczos",
        "-loop", "0",
    ]


PROFILES: Dict[str, Callable[[TranscodeOptions], List[str]]] = {
    "mp4": _mp4_args,
    "webm": _webm_args,
    "gif": _gif_args,
}

SUPPORTED_FORMATS = tuple(PROFILES)


def check_options(fmt: str, options: TranscodeOptions) -> List[str]:
    """Format-specific range checks beyond the model's own bounds."""
    errors = []
    if fmt == "mp4" and options.crf is not None and options.crf > 51:
        errors.append("crf for mp4 must be 0-51")
    if fmt != "mp4" and options.preset is not None:
        errors.append(f"preset is only valid for mp4, not {fmt}")
    if fmt != "gif" and (options.fps is not None or options.width is not None):
        errors.append(f"fps/width are only valid for gif, not {fmt}")
    return errors


def parse_options(raw: Optional[dict]) -> TranscodeOptions:
    """Build TranscodeOptions from a plain dict.

    Raises pydantic's ValidationError on bad input; callers translate it.
    """
    return TranscodeOptions.model_validate(raw or {})


def format_error(err: dict) -> str:
    """One pydantic error as ``dotted.loc: message``."""
    loc = ".".join(str(x) for x in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def format_validation_errors(exc: ValidationError) -> List[str]:
    return [format_error(err) for err in exc.errors()]
