"""Exception taxonomy for the render service.

Validation and not-found errors are raised synchronously to the caller.
Execution failures never propagate out of the queue; they are recorded on
the job record and observed by polling.
"""

from typing import List, Optional, Sequence


class RenderServiceError(Exception):
    """Base class for all render service errors."""


class RecipeValidationError(RenderServiceError):
    """A submitted recipe failed validation. Carries every violation found."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid recipe: " + "; ".join(self.errors))


class InvalidTransitionError(RenderServiceError):
    """Illegal job state change (e.g. leaving a terminal state)."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot transition {current} -> {target}")


class UnsupportedFormatError(RenderServiceError):
    def __init__(self, fmt: str, supported: Sequence[str]):
        self.format = fmt
        self.supported = list(supported)
        super().__init__(
            f"Unsupported format: {fmt}. Supported: {', '.join(self.supported)}"
        )


class InvalidOptionsError(RenderServiceError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid transcode options: " + "; ".join(self.errors))


class InputNotFoundError(RenderServiceError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Input file not found: {path}")


class TranscodeError(RenderServiceError):
    """The external transcoder exited abnormally.

    ``diagnostic`` holds the process's stderr verbatim.
    """

    def __init__(self, diagnostic: str, returncode: Optional[int] = None):
        self.diagnostic = diagnostic
        self.returncode = returncode
        super().__init__(f"FFmpeg exited with code {returncode}: {diagnostic[-500:]}")


class InvalidInputError(RenderServiceError):
    """An input exists but cannot be used (e.g. an undecodable image)."""


class RenderCancelled(RenderServiceError):
    """Raised at a renderer checkpoint once cancellation has been requested."""


class TranscodeCancelled(RenderCancelled):
    """The transcoder process was killed because cancellation was requested."""
