"""
Pytest fixtures for render service tests.

CI/CD Note:
Tests that spawn a real ffmpeg are marked with @pytest.mark.requires_ffmpeg
and skipped automatically when no ffmpeg binary is on PATH.
Run `pytest -m "not requires_ffmpeg"` to skip them explicitly.
"""

import base64
import copy
import io
import shutil
import stat
import textwrap
import threading

import pytest
from PIL import Image

from render_service.cancellation import CancellationToken
from render_service.jobs.models import JobRecord, JobStatus
from render_service.render.renderer import RenderOutcome
from render_service.storage.artifacts import ArtifactStore

FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as spawning a real ffmpeg process (skipped when absent)",
    )


def pytest_collection_modifyitems(config, items):
    if FFMPEG_AVAILABLE:
        return
    skip = pytest.mark.skip(reason="ffmpeg not available on PATH")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


def fake_ffmpeg(directory, script: str) -> str:
    """Write an executable shell script to stand in for ffmpeg."""
    path = directory / "fake-ffmpeg"
    path.write_text("#!/bin/sh\n" + textwrap.dedent(script))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


# Consumes piped frames, reports progress and writes its last argument
WORKING_FFMPEG = """
    for last; do :; done
    cat > /dev/null
    echo "frame=10 time=00:00:01.00" >&2
    echo video > "$last"
"""


def png_data_uri(width: int = 64, height: int = 48, color=(200, 40, 90)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def make_recipe(**overrides) -> dict:
    """A small, valid recipe in the browser's camelCase shape."""
    recipe = {
        "version": "1.0",
        "meta": {
            "duration": 1,
            "fps": 10,
            "width": 160,
            "height": 120,
            "totalFrames": 10,
            "title": "Test Track",
        },
        "image": {"source": png_data_uri()},
        "frames": [
            {"low": 0.1 * i, "mid": 0.05 * i, "high": 0.02 * i} for i in range(10)
        ],
        "output": {"format": "mp4"},
    }
    for key, value in overrides.items():
        recipe[key] = value
    return recipe


@pytest.fixture
def recipe() -> dict:
    return copy.deepcopy(make_recipe())


@pytest.fixture
def store(tmp_path) -> ArtifactStore:
    return ArtifactStore(str(tmp_path / "output"))


class FakeRenderer:
    """Stands in for Renderer in queue tests.

    Each job blocks until ``release(job_id)`` (or ``release_all()``) is
    called, or until it is cancelled. Records the order jobs started in.
    """

    def __init__(self, store: ArtifactStore = None, outcome_status=JobStatus.COMPLETED):
        self.store = store
        self.outcome_status = outcome_status
        self.started = []
        self.ignore_cancel = False
        self._lock = threading.Lock()
        self._gates = {}
        self._started_event = threading.Condition(self._lock)

    def _gate(self, job_id: str) -> threading.Event:
        with self._lock:
            return self._gates.setdefault(job_id, threading.Event())

    def release(self, job_id: str) -> None:
        self._gate(job_id).set()

    def release_all(self) -> None:
        with self._lock:
            gates = list(self._gates.values())
        for gate in gates:
            gate.set()

    def wait_started(self, count: int, timeout: float = 5.0) -> bool:
        with self._started_event:
            return self._started_event.wait_for(lambda: len(self.started) >= count, timeout)

    def execute(self, job: JobRecord, token: CancellationToken) -> RenderOutcome:
        gate = self._gate(job.id)
        with self._started_event:
            self.started.append(job.id)
            self._started_event.notify_all()

        job.update_progress(10, eta=5, stage="Rendering frames")
        while not gate.wait(0.01):
            if token.cancelled and not self.ignore_cancel:
                return RenderOutcome(status=JobStatus.CANCELLED)

        if self.outcome_status is JobStatus.COMPLETED:
            path = None
            if self.store is not None:
                path = self.store.final_path_for("fake", "mp4", job.id)
                with open(path, "wb") as fh:
                    fh.write(b"\x00" * 16)
            else:
                path = f"/nonexistent/{job.id}.mp4"
            return RenderOutcome(status=JobStatus.COMPLETED, output_path=path)
        return RenderOutcome(status=self.outcome_status, error="Encoding failed: boom")
