"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from render_service.api.v1.health import router as health_router
from render_service.api.v1.render import router as render_router
from render_service.api.v1.status import router as status_router
from render_service.api.v1.download import router as download_router
from render_service.api.v1.convert import router as convert_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(render_router, tags=["render"])
v1_router.include_router(status_router, tags=["status"])
v1_router.include_router(download_router, tags=["download"])
v1_router.include_router(convert_router, tags=["convert"])
