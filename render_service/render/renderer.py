"""Render worker: turns one job's recipe into a finished artifact.

Runs on a queue worker thread. Steps, each preceded by a cancellation
checkpoint:

    1. prepare the job's scratch dir
    2. decode the cover image and write the audio track to scratch
    3. stream composited frames into ffmpeg -> intermediate H.264
    4. transcode the intermediate into the requested delivery format
    5. move the result into the artifact store under its final name

``execute`` never raises; every failure becomes a ``failed`` outcome whose
message is safe to show to clients. Full detail goes to the log.
"""

import io
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from render_service.cancellation import CancellationToken
from render_service.config import settings
from render_service.errors import (
    InputNotFoundError,
    InvalidInputError,
    RenderCancelled,
    TranscodeError,
)
from render_service.jobs.models import JobRecord, JobStatus
from render_service.recipes.models import AudioSource, Recipe
from render_service.recipes.sources import AUDIO_MIME_TYPES, decode_data_uri
from render_service.render.audio_mapping import AudioReactor
from render_service.render.frames import FrameCompositor
from render_service.storage.artifacts import ArtifactStore
from render_service.transcode.ffmpeg import FrameEncoder, concise_diagnostic, transcode

logger = logging.getLogger(__name__)

# Share of the progress bar spent on each phase
RENDER_SHARE = 85
TRANSCODE_SHARE = 14


@dataclass
class RenderOutcome:
    status: JobStatus
    output_path: Optional[str] = None
    error: Optional[str] = None


def _checkpoint(token: CancellationToken) -> None:
    if token.cancelled:
        raise RenderCancelled("Render cancelled")


class Renderer:
    """Executes render jobs against an artifact store."""

    def __init__(self, store: ArtifactStore, progress_interval: Optional[int] = None):
        self.store = store
        self.progress_interval = max(
            1, settings.progress_interval_frames if progress_interval is None else progress_interval
        )

    def execute(self, job: JobRecord, token: CancellationToken) -> RenderOutcome:
        work_dir = None
        try:
            _checkpoint(token)
            work_dir = self.store.work_dir(job.id)
            output_path = self._render(job, token, work_dir)
            return RenderOutcome(status=JobStatus.COMPLETED, output_path=output_path)
        except RenderCancelled:
            logger.info("Job %s stopped at a cancellation checkpoint", job.id)
            return RenderOutcome(status=JobStatus.CANCELLED)
        except InputNotFoundError as exc:
            logger.warning("Job %s: input missing: %s", job.id, exc.path)
            name = os.path.basename(exc.path) or "input"
            return RenderOutcome(status=JobStatus.FAILED, error=f"Input file not found: {name}")
        except InvalidInputError as exc:
            logger.warning("Job %s: unusable input: %s", job.id, exc)
            return RenderOutcome(status=JobStatus.FAILED, error=str(exc))
        except TranscodeError as exc:
            logger.error(
                "Job %s: ffmpeg failed (exit %s):\n%s", job.id, exc.returncode, exc.diagnostic
            )
            detail = concise_diagnostic(exc, work_dir or "", self.store.base_dir)
            return RenderOutcome(status=JobStatus.FAILED, error=f"Encoding failed: {detail}")
        except Exception:
            logger.exception("Job %s: unexpected render error", job.id)
            return RenderOutcome(status=JobStatus.FAILED, error="Internal render error")
        finally:
            self.store.remove_work_dir(job.id)

    # ------------------------------------------------------------------

    def _render(self, job: JobRecord, token: CancellationToken, work_dir: str) -> str:
        recipe = job.recipe
        meta = recipe.meta

        job.update_progress(0, stage="Loading inputs")
        image = self._load_image(recipe)
        _checkpoint(token)
        audio_path = self._stage_audio(recipe.audio, work_dir)
        _checkpoint(token)

        intermediate = os.path.join(work_dir, "intermediate.mp4")
        self._encode_frames(job, token, recipe, image, intermediate, audio_path)
        _checkpoint(token)

        fmt = recipe.output.format
        staged = os.path.join(work_dir, f"final.{fmt}")
        job.update_progress(RENDER_SHARE, stage=f"Encoding {fmt.upper()}")
        started = time.monotonic()

        def on_transcode(fraction: float) -> None:
            elapsed = time.monotonic() - started
            eta = elapsed / fraction * (1 - fraction) if fraction > 0 else None
            job.update_progress(RENDER_SHARE + fraction * TRANSCODE_SHARE, eta=eta)

        transcode(
            intermediate,
            staged,
            fmt,
            recipe.output.options,
            token=token,
            on_progress=on_transcode,
            duration=meta.total_frames / meta.fps,
        )
        _checkpoint(token)

        final_path = self.store.final_path_for(meta.title, fmt, job.id)
        try:
            self.store.commit(staged, final_path)
        except OSError:
            self.store.discard(final_path)
            raise
        job.update_progress(RENDER_SHARE + TRANSCODE_SHARE, eta=0, stage="Finalizing")
        logger.info("Job %s wrote %s", job.id, os.path.basename(final_path))
        return final_path

    def _encode_frames(
        self,
        job: JobRecord,
        token: CancellationToken,
        recipe: Recipe,
        image: Image.Image,
        output_path: str,
        audio_path: Optional[str],
    ) -> None:
        meta = recipe.meta
        total = meta.total_frames
        compositor = FrameCompositor(meta.width, meta.height, image)
        reactor = AudioReactor(recipe.effects.audio_mapping)

        job.update_progress(0, stage="Rendering frames")
        started = time.monotonic()
        with FrameEncoder(meta.width, meta.height, meta.fps, output_path, audio_path, token) as encoder:
            for index in range(total):
                _checkpoint(token)
                drive = reactor.map(recipe.frame_at(index))
                encoder.write_frame(compositor.render(index / meta.fps, drive, recipe.effects))

                done = index + 1
                if done % self.progress_interval == 0 or done == total:
                    elapsed = time.monotonic() - started
                    rate = done / elapsed if elapsed > 0 else 0.0
                    eta = (total - done) / rate if rate > 0 else None
                    job.update_progress(
                        done / total * RENDER_SHARE,
                        eta=eta,
                        stage=f"Rendering frame {done}/{total}",
                    )
            encoder.finish()
        logger.info(
            "Job %s rendered %d frames in %.1fs", job.id, total, time.monotonic() - started
        )

    @staticmethod
    def _load_image(recipe: Recipe) -> Image.Image:
        source = recipe.image.source
        if source.startswith("data:"):
            try:
                _, payload = decode_data_uri(source)
            except ValueError as exc:
                raise InvalidInputError("Could not decode image data") from exc
            stream = io.BytesIO(payload)
        else:
            if not os.path.isfile(source):
                raise InputNotFoundError(source)
            stream = source

        try:
            with Image.open(stream) as opened:
                opened.load()
                return opened.convert("RGBA")
        except (UnidentifiedImageError, OSError) as exc:
            raise InvalidInputError("Could not decode image") from exc

    @staticmethod
    def _stage_audio(audio: Optional[AudioSource], work_dir: str) -> Optional[str]:
        """Make the audio track available as a file; None when there is none."""
        if audio is None or not audio.source:
            return None
        source = audio.source
        if not source.startswith("data:"):
            if not os.path.isfile(source):
                raise InputNotFoundError(source)
            return source

        try:
            mime, payload = decode_data_uri(source)
        except ValueError as exc:
            raise InvalidInputError("Could not decode audio data") from exc
        if not payload:
            return None
        ext = AUDIO_MIME_TYPES.get(mime, ".bin")
        path = os.path.join(work_dir, f"audio{ext}")
        with open(path, "wb") as fh:
            fh.write(payload)
        return path
