"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Optional

from render_service.jobs.models import JobRecord


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time job counts; every job appears in exactly one bucket."""
    queued: int
    running: int
    completed: int
    failed: int
    cancelled: int
    capacity: int

    def to_dict(self) -> dict:
        return asdict(self)


class JobDispatcher(ABC):
    """Abstract interface for render job dispatching."""

    @abstractmethod
    async def submit(self, recipe: Any) -> str:
        """Validate and enqueue a recipe. Returns job_id.

        Raises RecipeValidationError without creating a job when invalid.
        """
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        """Snapshot of a job, or None if the id is unknown."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Request cancellation. False means there was nothing to cancel."""
        ...

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start background loops)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
