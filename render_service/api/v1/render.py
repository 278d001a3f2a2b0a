"""Render job API: submit recipes, poll status, cancel, inspect the queue."""

import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from render_service.errors import RecipeValidationError
from render_service.jobs.models import JobRecord, JobStatus

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Render queue not initialized")
    return _dispatcher


class RenderSubmitRequest(BaseModel):
    recipe: Any = None


class RenderSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    eta: Optional[int] = None
    stage: str = ""
    error: Optional[str] = None
    output_path: Optional[str] = None
    output_format: str
    download_url: Optional[str] = None
    position: Optional[int] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class CancelResponse(BaseModel):
    job_id: str
    status: str


def download_url_for(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return f"/api/v1/download/{os.path.basename(path)}"


def job_to_response(job: JobRecord) -> JobStatusResponse:
    completed = job.status is JobStatus.COMPLETED
    return JobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        progress=job.progress,
        eta=job.eta,
        stage=job.stage,
        error=job.error,
        output_path=job.output_path if completed else None,
        output_format=job.output_format,
        download_url=download_url_for(job.output_path) if completed else None,
        position=job.position,
        created_at=job.created_at.isoformat(),
        started_at=job.started_at.isoformat() if job.started_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
    )


@router.post("/render", response_model=RenderSubmitResponse)
async def submit_render(request: RenderSubmitRequest):
    """Validate a recipe and queue it for rendering."""
    dispatcher = _require_dispatcher()
    try:
        job_id = await dispatcher.submit(request.recipe)
    except RecipeValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid recipe", "details": exc.errors},
        )
    return RenderSubmitResponse(
        job_id=job_id,
        status=JobStatus.QUEUED.value,
        message="Render queued. Poll GET /api/v1/render/{job_id} for status.",
    )


@router.get("/render/{job_id}", response_model=JobStatusResponse)
async def get_render_status(job_id: str):
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_to_response(job)


@router.post("/render/{job_id}/cancel", response_model=CancelResponse)
async def cancel_render(job_id: str):
    dispatcher = _require_dispatcher()
    if not await dispatcher.cancel(job_id):
        raise HTTPException(status_code=404, detail="Job not found or already completed")
    return CancelResponse(job_id=job_id, status=JobStatus.CANCELLED.value)


@router.get("/render")
async def get_queue():
    """Queue overview: pending jobs in order, running jobs, recent finished jobs."""
    dispatcher = _require_dispatcher()
    snapshot = dispatcher.snapshot()
    sections: Dict[str, List[dict]] = {
        key: [job_to_response(job).model_dump() for job in snapshot[key]]
        for key in ("pending", "active", "completed")
    }
    return {"stats": snapshot["stats"], **sections}
