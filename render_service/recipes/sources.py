"""Helpers for recipe media references (data URIs and local paths)."""

import base64
import binascii
import os
import re
from typing import Optional, Tuple

_DATA_URI_RE = re.compile(r"^data:([^;,]+)(;base64)?,", re.IGNORECASE)

IMAGE_MIME_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}

AUDIO_MIME_TYPES = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/wave": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
    "audio/aac": ".aac",
    "audio/m4a": ".m4a",
    "audio/mp4": ".m4a",
    "audio/webm": ".webm",
}
AUDIO_EXTENSIONS = set(AUDIO_MIME_TYPES.values())


def is_remote(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def data_uri_mime(source: str) -> Optional[str]:
    """Return the mime type of a data URI, or None if ``source`` is not one."""
    match = _DATA_URI_RE.match(source)
    return match.group(1).lower() if match else None


def decode_data_uri(source: str) -> Tuple[str, bytes]:
    """Split a base64 data URI into (mime, payload bytes).

    Raises ValueError when the URI is malformed or not base64.
    """
    match = _DATA_URI_RE.match(source)
    if not match or not match.group(2):
        raise ValueError("not a base64 data URI")
    try:
        payload = base64.b64decode(source[match.end():], validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    return match.group(1).lower(), payload


def extension_of(source: str) -> str:
    return os.path.splitext(source)[1].lower()
