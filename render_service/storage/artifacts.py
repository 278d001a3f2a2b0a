"""Artifact store: the output directory finished renders are written to.

Layout:
    <base>/<title>-<YYYYmmddHHMMSS>.<ext>   finished artifacts
    <base>/.work/<job_id>/                  per-job scratch, removed after the job
"""

import logging
import os
import re
import shutil
import time
import unicodedata
from datetime import datetime
from typing import Optional

from render_service.config import settings

logger = logging.getLogger(__name__)

WORK_DIR_NAME = ".work"

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".gif": "image/gif",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
}


def sanitize_title(title: Optional[str]) -> str:
    """ASCII-fold and snake-case a title for use in a file name."""
    raw = (title or "export").strip().lower()
    folded = unicodedata.normalize("NFKD", raw).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "_", folded).strip("_")
    return slug or "export"


class ArtifactStore:
    """Owns path conventions for the output directory, with TTL-based cleanup."""

    def __init__(self, base_dir: Optional[str] = None, ttl_hours: int = 24):
        self._base_dir = os.path.abspath(base_dir or settings.output_dir)
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def work_dir(self, job_id: str) -> str:
        """Get or create the scratch directory for a job."""
        path = os.path.join(self._base_dir, WORK_DIR_NAME, job_id)
        os.makedirs(path, exist_ok=True)
        return path

    def remove_work_dir(self, job_id: str) -> None:
        shutil.rmtree(os.path.join(self._base_dir, WORK_DIR_NAME, job_id), ignore_errors=True)

    def final_path_for(
        self,
        title: Optional[str],
        fmt: str,
        job_id: str,
        when: Optional[datetime] = None,
    ) -> str:
        """Reserve a free artifact path: ``<title>-<stamp>.<fmt>``.

        On collision the first six characters of the job id are appended,
        then the whole id. The name is claimed by creating an empty file
        with O_EXCL, so concurrent jobs never receive the same path;
        ``commit`` replaces the placeholder.
        """
        stamp = (when or datetime.now()).strftime("%Y%m%d%H%M%S")
        base = f"{sanitize_title(title)}-{stamp}"
        candidates = (base, f"{base}-{job_id[:6]}", f"{base}-{job_id}", job_id)
        for candidate in candidates:
            path = os.path.join(self._base_dir, f"{candidate}.{fmt}")
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                continue
            os.close(fd)
            return path
        raise FileExistsError(f"No free artifact name for job {job_id}")

    def commit(self, source: str, destination: str) -> str:
        """Move a finished file from scratch into the store atomically."""
        os.replace(source, destination)
        return destination

    def discard(self, path: Optional[str]) -> None:
        if not path:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def resolve_download(self, filename: str) -> Optional[str]:
        """Map a bare file name to an existing artifact path, or None.

        Anything that is not a plain file name directly inside the store
        (separators, ``..``, the scratch dir) is rejected.
        """
        if not filename or filename != os.path.basename(filename) or filename.startswith("."):
            return None
        path = os.path.join(self._base_dir, filename)
        return path if os.path.isfile(path) else None

    @staticmethod
    def content_type(filename: str) -> str:
        return CONTENT_TYPES.get(os.path.splitext(filename)[1].lower(), "application/octet-stream")

    def cleanup_expired(self) -> int:
        """Remove artifacts and stale scratch dirs older than TTL. Returns count removed."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            path = os.path.join(self._base_dir, entry)
            if entry == WORK_DIR_NAME or not os.path.isfile(path):
                continue
            if now - os.path.getmtime(path) > self._ttl_seconds:
                self.discard(path)
                removed += 1

        work_root = os.path.join(self._base_dir, WORK_DIR_NAME)
        if os.path.isdir(work_root):
            for entry in os.listdir(work_root):
                path = os.path.join(work_root, entry)
                if os.path.isdir(path) and now - os.path.getmtime(path) > self._ttl_seconds:
                    shutil.rmtree(path, ignore_errors=True)
                    removed += 1
        if removed:
            logger.info("Removed %d expired artifact(s)", removed)
        return removed
