"""Artifact download by file name."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

router = APIRouter()

# Set by main.py during lifespan
_store = None


def set_store(store):
    global _store
    _store = store


@router.get("/download/{filename}")
async def download_artifact(filename: str):
    """Stream a finished artifact with a content type derived from its extension."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Artifact store not initialized")

    path = _store.resolve_download(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type=_store.content_type(filename), filename=filename)
