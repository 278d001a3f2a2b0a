"""Recipe validation.

``validate_recipe`` is pure: it inspects the submitted payload and reports
every problem it finds instead of stopping at the first one. It does not
touch the filesystem; a local media path that turns out to be missing is a
render-time failure, not a validation error.
"""

import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from pydantic import ValidationError

from render_service.errors import RecipeValidationError
from render_service.recipes import sources
from render_service.recipes.models import Recipe
from render_service.transcode.profiles import (
    SUPPORTED_FORMATS,
    check_options,
    format_error,
    format_validation_errors,
    parse_options,
)

# Bounds on meta fields: (min, max) inclusive
META_LIMITS = {
    "fps": (1, 60),
    "width": (100, 4096),
    "height": (100, 4096),
    "duration": (1, 600),
}

# Only the first few malformed frames are listed individually
MAX_FRAME_ERRORS = 5

_EFFECT_FIELDS = {
    "breathing": ("scale",),
    "chromatic_aberration": ("intensity",),
    "film_grain": ("amount",),
    "vignette": ("strength",),
}

_AUDIO_MAPPING_FIELDS = (
    "global_gain",
    "low_base_gain",
    "low_dyn_gain",
    "mid_base_gain",
    "mid_dyn_gain",
    "high_base_gain",
    "high_dyn_gain",
)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _get(obj: Mapping, name: str) -> Any:
    """Look up ``name`` by snake_case key, then by its camelCase alias."""
    if name in obj:
        return obj[name]
    return obj.get(_camel(name))


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _check_meta(meta: Any, errors: List[str]) -> None:
    if not isinstance(meta, Mapping):
        errors.append("Missing meta")
        return

    for name, (low, high) in META_LIMITS.items():
        value = _get(meta, name)
        label = name.capitalize() if name != "fps" else "FPS"
        if value is None:
            errors.append(f"Missing meta.{name}")
        elif not _is_number(value):
            errors.append(f"meta.{name} must be a number")
        elif value < low or value > high:
            errors.append(f"{label} must be {low}-{high}")

    for name in ("fps", "width", "height"):
        value = _get(meta, name)
        if _is_number(value) and value != int(value):
            errors.append(f"meta.{name} must be an integer")

    total = _get(meta, "total_frames")
    if total is None:
        errors.append("Missing meta.totalFrames")
    elif not _is_number(total) or total != int(total) or total < 1:
        errors.append("meta.totalFrames must be a positive integer")
    else:
        duration = _get(meta, "duration")
        fps = _get(meta, "fps")
        if _is_number(duration) and _is_number(fps) and duration > 0 and fps > 0:
            # allow one second of slack for rounding on the client
            if total > duration * fps + fps:
                errors.append("meta.totalFrames exceeds duration * fps")

    title = _get(meta, "title")
    if title is not None and not isinstance(title, str):
        errors.append("meta.title must be a string")


def _check_image(image: Any, errors: List[str]) -> None:
    source = _get(image, "source") if isinstance(image, Mapping) else None
    if not source or not isinstance(source, str):
        errors.append("Missing image data")
        return
    if sources.is_remote(source):
        errors.append("image.source must be a data URI or local path, not a URL")
        return
    mime = sources.data_uri_mime(source)
    if mime is not None:
        if mime not in sources.IMAGE_MIME_TYPES:
            errors.append(f"Unsupported image type: {mime}")
    elif sources.extension_of(source) not in sources.IMAGE_EXTENSIONS:
        errors.append(
            f"Unsupported image file extension: {sources.extension_of(source) or '(none)'}"
        )


def _check_audio(audio: Any, errors: List[str]) -> None:
    if audio is None:
        return
    if not isinstance(audio, Mapping):
        errors.append("audio must be an object")
        return
    source = _get(audio, "source")
    if not source:
        # an empty audio block means a silent render
        return
    if not isinstance(source, str):
        errors.append("audio.source must be a string")
        return
    if sources.is_remote(source):
        errors.append("audio.source must be a data URI or local path, not a URL")
        return
    mime = sources.data_uri_mime(source)
    if mime is not None:
        if mime not in sources.AUDIO_MIME_TYPES:
            errors.append(f"Unsupported audio type: {mime}")
    elif sources.extension_of(source) not in sources.AUDIO_EXTENSIONS:
        errors.append(
            f"Unsupported audio file extension: {sources.extension_of(source) or '(none)'}"
        )


def _check_frames(frames: Any, errors: List[str]) -> None:
    if not frames:
        errors.append("Missing frames")
        return
    if not isinstance(frames, list):
        errors.append("frames must be a list")
        return

    bad = []
    for index, frame in enumerate(frames):
        if not isinstance(frame, Mapping):
            bad.append(f"frames[{index}] must be an object")
            continue
        for band in ("low", "mid", "high"):
            value = frame.get(band, 0)
            if not _is_number(value) or value < 0 or value > 1:
                bad.append(f"frames[{index}].{band} must be a number in 0-1")
                break

    errors.extend(bad[:MAX_FRAME_ERRORS])
    if len(bad) > MAX_FRAME_ERRORS:
        errors.append(f"...and {len(bad) - MAX_FRAME_ERRORS} more invalid frames")


def _check_effects(effects: Any, errors: List[str]) -> None:
    if effects is None:
        return
    if not isinstance(effects, Mapping):
        errors.append("effects must be an object")
        return

    for effect, fields in _EFFECT_FIELDS.items():
        block = _get(effects, effect)
        if block is None:
            continue
        if not isinstance(block, Mapping):
            errors.append(f"effects.{effect} must be an object")
            continue
        for name in fields:
            value = block.get(name)
            if value is None:
                continue
            if not _is_number(value) or value < 0:
                errors.append(f"effects.{effect}.{name} must be a non-negative number")

    mapping = _get(effects, "audio_mapping")
    if mapping is not None:
        if not isinstance(mapping, Mapping):
            errors.append("effects.audioMapping must be an object")
            return
        for name in _AUDIO_MAPPING_FIELDS:
            value = _get(mapping, name)
            if value is None:
                continue
            if not _is_number(value) or value < 0:
                errors.append(
                    f"effects.audioMapping.{_camel(name)} must be a non-negative number"
                )


def _check_output(output: Any, errors: List[str]) -> None:
    if output is None:
        return
    if not isinstance(output, Mapping):
        errors.append("output must be an object")
        return

    fmt = output.get("format", "mp4")
    if fmt not in SUPPORTED_FORMATS:
        errors.append(
            f"Unsupported output format: {fmt}. Supported: {', '.join(SUPPORTED_FORMATS)}"
        )
        return

    raw_options = output.get("options")
    if raw_options is not None and not isinstance(raw_options, Mapping):
        errors.append("output.options must be an object")
        return
    try:
        options = parse_options(dict(raw_options or {}))
    except ValidationError as exc:
        errors.extend(f"output.options.{msg}" for msg in format_validation_errors(exc))
        return
    errors.extend(f"output.options: {msg}" for msg in check_options(fmt, options))


def _check_version(version: Any, errors: List[str]) -> None:
    if not version:
        errors.append("Missing version")


# Top-level recipe key -> its hand-written checks
_SECTIONS = (
    ("version", _check_version),
    ("meta", _check_meta),
    ("image", _check_image),
    ("audio", _check_audio),
    ("frames", _check_frames),
    ("effects", _check_effects),
    ("output", _check_output),
)


def validate_recipe(recipe: Any) -> ValidationResult:
    """Check a submitted recipe payload. Returns every violation found.

    The range and format checks above run first. The payload is then checked
    against the Recipe model for type problems; model errors are reported for
    every section the checks above found no fault in, so ``valid`` is True
    exactly when ``parse_recipe`` would succeed.
    """
    if not isinstance(recipe, Mapping):
        return ValidationResult(valid=False, errors=["Recipe must be an object"])

    errors: List[str] = []
    faulty = set()
    for key, check in _SECTIONS:
        found: List[str] = []
        check(recipe.get(key), found)
        if found:
            faulty.add(key)
            errors.extend(found)

    try:
        Recipe.model_validate(recipe)
    except ValidationError as exc:
        for err in exc.errors():
            loc = err.get("loc") or ("",)
            if str(loc[0]) not in faulty:
                errors.append(format_error(err))

    return ValidationResult(valid=not errors, errors=errors)


def parse_recipe(payload: Any) -> Recipe:
    """Validate and build an immutable Recipe.

    Raises RecipeValidationError listing every violation.
    """
    result = validate_recipe(payload)
    if not result.valid:
        raise RecipeValidationError(result.errors)
    return Recipe.model_validate(payload)
