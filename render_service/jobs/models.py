"""Job record data model for async render processing."""

import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, PrivateAttr

from render_service.errors import InvalidTransitionError
from render_service.recipes.models import Recipe


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobRecord(BaseModel):
    """Tracks the lifecycle of one render job.

    Writers go through the methods below, which hold the per-job lock.
    Readers outside the queue get copies from ``snapshot()``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipe: Recipe
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    eta: Optional[int] = None
    stage: str = ""
    error: Optional[str] = None
    output_path: Optional[str] = None
    output_format: str = "mp4"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    position: Optional[int] = None

    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _transition(self, target: JobStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def mark_running(self) -> None:
        with self._lock:
            self._transition(JobStatus.RUNNING)
            self.started_at = datetime.utcnow()
            self.stage = "Starting render"

    def mark_completed(self, output_path: str) -> None:
        with self._lock:
            self._transition(JobStatus.COMPLETED)
            self.output_path = output_path
            self.progress = 100
            self.eta = 0
            self.stage = "Render complete"
            self.completed_at = datetime.utcnow()

    def mark_failed(self, error: str) -> None:
        with self._lock:
            self._transition(JobStatus.FAILED)
            self.error = error
            self.eta = None
            self.stage = "Render failed"
            self.completed_at = datetime.utcnow()

    def mark_cancelled(self) -> None:
        with self._lock:
            self._transition(JobStatus.CANCELLED)
            self.eta = None
            self.stage = "Cancelled by user"
            self.completed_at = datetime.utcnow()

    def update_progress(
        self,
        percent: float,
        eta: Optional[float] = None,
        stage: Optional[str] = None,
    ) -> int:
        """Record progress; never moves backwards. Returns the stored value."""
        with self._lock:
            if self.status is not JobStatus.RUNNING:
                return self.progress
            value = int(max(0, min(100, percent)))
            if value > self.progress:
                self.progress = value
            if eta is not None:
                self.eta = max(0, int(round(eta)))
            if stage:
                self.stage = stage
            return self.progress

    def snapshot(self, position: Optional[int] = None) -> "JobRecord":
        """Consistent read-only copy of the current state."""
        with self._lock:
            copy = self.model_copy()
        copy.position = position
        return copy
