"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "render-service",
        "python_version": sys.version,
        "platform": platform.platform(),
    }
