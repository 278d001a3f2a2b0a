"""Service status: queue counters and effective configuration."""

from fastapi import APIRouter, HTTPException

from render_service.config import settings

router = APIRouter()

_dispatcher = None
_store = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_store(store):
    global _store
    _store = store


@router.get("/status")
async def get_service_status():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Render queue not initialized")

    stats = await _dispatcher.get_stats()
    return {
        "queue": stats.to_dict(),
        "config": {
            "max_concurrent": stats.capacity,
            "output_dir": _store.base_dir if _store is not None else settings.output_dir,
        },
    }
