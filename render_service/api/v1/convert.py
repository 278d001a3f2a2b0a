"""Standalone conversion of an existing video file, plus ffmpeg availability."""

import os
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from render_service.errors import (
    InputNotFoundError,
    InvalidOptionsError,
    TranscodeError,
    UnsupportedFormatError,
)
from render_service.transcode.ffmpeg import concise_diagnostic, convert_file, ffmpeg_version

router = APIRouter()

_store = None


def set_store(store):
    global _store
    _store = store


class ConvertRequest(BaseModel):
    input_path: str
    format: str
    options: Optional[dict] = None


class ConvertResponse(BaseModel):
    job_id: str
    format: str
    path: str
    download_url: str


@router.post("/convert", response_model=ConvertResponse)
async def convert(request: ConvertRequest):
    """Transcode a file already on disk into mp4, webm or gif.

    Runs synchronously from the caller's point of view; ffmpeg runs on the
    threadpool so the event loop stays responsive.
    """
    if _store is None:
        raise HTTPException(status_code=503, detail="Artifact store not initialized")

    try:
        result = await run_in_threadpool(
            convert_file, request.input_path, request.format, request.options, _store.base_dir
        )
    except UnsupportedFormatError as exc:
        return JSONResponse(
            status_code=400,
            content={"error": f"Unsupported format: {exc.format}", "supported": exc.supported},
        )
    except InvalidOptionsError as exc:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid options", "details": exc.errors},
        )
    except InputNotFoundError:
        raise HTTPException(status_code=404, detail="Input file not found")
    except TranscodeError as exc:
        detail = concise_diagnostic(exc, os.path.dirname(request.input_path), _store.base_dir)
        raise HTTPException(status_code=500, detail=f"Conversion failed: {detail}")

    filename = os.path.basename(result.output_path)
    return ConvertResponse(
        job_id=os.path.splitext(filename)[0],
        format=result.format,
        path=result.output_path,
        download_url=f"/api/v1/download/{filename}",
    )


@router.get("/ffmpeg")
async def ffmpeg_info():
    version = await run_in_threadpool(ffmpeg_version)
    return {"available": version is not None, "version": version}
