"""In-process render queue.

Jobs are admitted unconditionally and promoted to running in arrival order
while fewer than ``max_concurrent`` are running. Rendering happens on a
worker thread pool sized to the ceiling, so the event loop stays free to
answer submit/status/cancel/stats calls.

One lock guards the pending FIFO, the running set and every status change;
slot accounting and promotion therefore happen as a single step. Progress
writes from worker threads only take the per-job lock.

State is in memory only: a restart loses queued and running jobs.
"""

import asyncio
import logging
import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from render_service.cancellation import CancellationToken
from render_service.config import settings
from render_service.jobs.dispatcher import JobDispatcher, QueueStats
from render_service.jobs.models import JobRecord, JobStatus
from render_service.recipes.models import Recipe
from render_service.recipes.validator import parse_recipe
from render_service.render.renderer import RenderOutcome, Renderer

logger = logging.getLogger(__name__)


class RenderQueue(JobDispatcher):
    """FIFO render queue with a fixed concurrency ceiling."""

    def __init__(
        self,
        renderer: Renderer,
        max_concurrent: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        cleanup_interval_seconds: Optional[int] = None,
        on_sweep: Optional[Callable[[], Any]] = None,
    ):
        """
        renderer: object with ``execute(job, token) -> RenderOutcome``.
            Called on a worker thread, exactly once per promoted job.
        on_sweep: extra housekeeping run by the retention sweeper
            (e.g. artifact TTL cleanup).
        """
        max_concurrent = settings.max_concurrent if max_concurrent is None else max_concurrent
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self._renderer = renderer
        self._max_concurrent = max_concurrent
        self._retention_seconds = (
            settings.job_retention_seconds if retention_seconds is None else retention_seconds
        )
        self._cleanup_interval = (
            settings.cleanup_interval_seconds
            if cleanup_interval_seconds is None
            else cleanup_interval_seconds
        )
        self._on_sweep = on_sweep

        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self._pending: Deque[str] = deque()
        self._running: Dict[str, CancellationToken] = {}
        self._cancel_requested: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}

        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="render"
        )
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def capacity(self) -> int:
        return self._max_concurrent

    # ------------------------------------------------------------------
    # Control plane
    # ------------------------------------------------------------------

    async def submit(self, recipe: Any) -> str:
        if isinstance(recipe, Recipe):
            recipe = recipe.model_dump()
        parsed = parse_recipe(recipe)

        job = JobRecord(recipe=parsed, output_format=parsed.output.format)
        with self._lock:
            self._jobs[job.id] = job
            self._pending.append(job.id)
            position = len(self._pending)
        logger.info("Job %s queued (position %d)", job.id, position)

        self._pump()
        return job.id

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            position = None
            if job.status is JobStatus.QUEUED:
                position = self._pending.index(job_id) + 1
        return job.snapshot(position)

    async def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False

            if job.status is JobStatus.QUEUED:
                self._pending.remove(job_id)
                job.mark_cancelled()
                was_running = False
            else:
                if job_id in self._cancel_requested:
                    return False
                self._cancel_requested.add(job_id)
                self._running[job_id].cancel()
                was_running = True

        if was_running:
            logger.info("Job %s cancellation requested", job_id)
        else:
            logger.info("Job %s cancelled before start", job_id)
        return True

    async def get_stats(self) -> QueueStats:
        return self.stats()

    def stats(self) -> QueueStats:
        with self._lock:
            return self._count_locked()

    def _count_locked(self) -> QueueStats:
        """Tally jobs by status. Caller holds ``self._lock``."""
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return QueueStats(
            queued=counts[JobStatus.QUEUED],
            running=counts[JobStatus.RUNNING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            capacity=self._max_concurrent,
        )

    def snapshot(self, limit_completed: int = 20) -> Dict[str, Any]:
        """Queue overview: pending in order, running, most recent finished."""
        with self._lock:
            pending = [
                self._jobs[job_id].snapshot(position=index + 1)
                for index, job_id in enumerate(self._pending)
            ]
            running = [self._jobs[job_id].snapshot() for job_id in self._running]
            finished = [job.snapshot() for job in self._jobs.values() if job.is_terminal]
            stats = self._count_locked()
        finished.sort(key=lambda j: j.completed_at or datetime.min, reverse=True)
        return {
            "stats": stats.to_dict(),
            "pending": pending,
            "active": running,
            "completed": finished[:limit_completed],
        }

    def cleanup(self, max_age_seconds: Optional[int] = None) -> int:
        """Evict finished jobs older than ``max_age_seconds``. Returns count evicted."""
        max_age = self._retention_seconds if max_age_seconds is None else max_age_seconds
        cutoff = datetime.utcnow() - timedelta(seconds=max_age)
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info("Evicted %d finished job(s)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        with self._lock:
            while self._pending:
                self._jobs[self._pending.popleft()].mark_cancelled()
            for job_id, token in self._running.items():
                self._cancel_requested.add(job_id)
                token.cancel()
            tasks: List[asyncio.Task] = list(self._tasks.values())

        if tasks:
            logger.info("Waiting for %d running job(s) to stop", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=True)

    async def _sweep_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup()
            if self._on_sweep is not None:
                try:
                    await loop.run_in_executor(None, self._on_sweep)
                except Exception:
                    logger.exception("Sweep hook failed")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        """Promote queued jobs, oldest first, while slots are free."""
        loop = asyncio.get_running_loop()
        promoted = []
        with self._lock:
            while self._pending and len(self._running) < self._max_concurrent:
                job_id = self._pending.popleft()
                job = self._jobs[job_id]
                job.mark_running()
                token = CancellationToken()
                self._running[job_id] = token
                self._tasks[job_id] = loop.create_task(self._run(job, token))
                promoted.append(job_id)
        for job_id in promoted:
            logger.info("Job %s running", job_id)

    async def _run(self, job: JobRecord, token: CancellationToken) -> None:
        loop = asyncio.get_running_loop()
        try:
            outcome = await loop.run_in_executor(
                self._executor, self._renderer.execute, job, token
            )
        except Exception:
            logger.exception("Renderer raised on job %s", job.id)
            outcome = RenderOutcome(status=JobStatus.FAILED, error="Internal render error")

        self._finish(job, outcome)
        self._pump()

    def _finish(self, job: JobRecord, outcome: RenderOutcome) -> None:
        """Apply the terminal transition and free the slot in one step."""
        with self._lock:
            cancel_requested = job.id in self._cancel_requested
            self._cancel_requested.discard(job.id)
            self._running.pop(job.id, None)
            self._tasks.pop(job.id, None)

            if cancel_requested or outcome.status is JobStatus.CANCELLED:
                # the caller was told this job is cancelled; drop any late artifact
                if outcome.output_path:
                    _discard(outcome.output_path)
                job.mark_cancelled()
            elif outcome.status is JobStatus.COMPLETED and outcome.output_path:
                job.mark_completed(outcome.output_path)
            else:
                job.mark_failed(outcome.error or "Render failed")

        if job.status is JobStatus.FAILED:
            logger.warning("Job %s failed: %s", job.id, job.error)
        else:
            logger.info("Job %s %s", job.id, job.status.value)


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
