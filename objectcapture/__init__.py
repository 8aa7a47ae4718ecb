"""Object Capture: turns an ordered photo sequence into a packaged 3D scene."""

from .errors import (
    CancellationError,
    CaptureError,
    ObjectCaptureError,
    ProcessingError,
    StateError,
    ValidationError,
)
from .quality import check_photo_quality

__all__ = [
    "ObjectCaptureError",
    "ValidationError",
    "CaptureError",
    "StateError",
    "ProcessingError",
    "CancellationError",
    "check_photo_quality",
]
