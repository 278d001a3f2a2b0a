"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Artifact storage
    output_dir: str = "./output"
    artifact_ttl_hours: int = 24

    # Scheduling
    max_concurrent: int = 1
    progress_interval_frames: int = 30

    # Job retention (terminal jobs are evicted from memory after this)
    job_retention_seconds: int = 3600
    cleanup_interval_seconds: int = 600

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    transcode_timeout_seconds: Optional[float] = None  # watchdog, off by default
    intermediate_crf: int = 18

    # Per-format defaults
    mp4_preset: str = "medium"
    mp4_crf: int = 23
    webm_crf: int = 30
    gif_fps: int = 15
    gif_width: int = 480

    # Service
    port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "RTV_"}


settings = Settings()
