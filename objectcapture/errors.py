"""Error taxonomy for the capture-to-reconstruction pipeline.

Every error carries a machine-readable ``kind`` and a human-readable
``detail``. ``ERROR_DEFINITIONS`` holds the user-facing message and
suggestion for each kind.
"""
from __future__ import annotations

# Validation
INSUFFICIENT_PHOTOS = "INSUFFICIENT_PHOTOS"
TOO_MANY_PHOTOS = "TOO_MANY_PHOTOS"
UNSUPPORTED_FILE_FORMAT = "UNSUPPORTED_FILE_FORMAT"
# Capture
STORAGE_FAILURE = "STORAGE_FAILURE"
# State machine misuse
ALREADY_STARTED = "ALREADY_STARTED"
NOT_CAPTURING = "NOT_CAPTURING"
SESSION_NOT_READY = "SESSION_NOT_READY"
JOB_ALREADY_ACTIVE = "JOB_ALREADY_ACTIVE"
UNKNOWN_JOB = "UNKNOWN_JOB"
# Processing
RECONSTRUCTION_FAILED = "RECONSTRUCTION_FAILED"
STREAM_ENDED = "STREAM_ENDED"
CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
# Cancellation
ACKNOWLEDGED = "ACKNOWLEDGED"

ERROR_DEFINITIONS = {
    INSUFFICIENT_PHOTOS: {
        "message": "Not enough photos",
        "suggestion": "Capture more photos from different angles (20-200 recommended)",
    },
    TOO_MANY_PHOTOS: {
        "message": "Too many photos for one capture session",
        "suggestion": "Finish the session or raise the configured maximum",
    },
    UNSUPPORTED_FILE_FORMAT: {
        "message": "Unsupported image format",
        "suggestion": "Use JPG, PNG, HEIC, HEIF, TIFF or WebP images",
    },
    STORAGE_FAILURE: {
        "message": "Could not save the captured photo",
        "suggestion": "Check disk space and permissions",
    },
    ALREADY_STARTED: {
        "message": "Capture session already started",
        "suggestion": "Reset the session before starting a new capture",
    },
    NOT_CAPTURING: {
        "message": "Capture session is not capturing",
        "suggestion": "Start the session before adding photos",
    },
    SESSION_NOT_READY: {
        "message": "Capture session is not ready for reconstruction",
        "suggestion": "Finish the capture session before submitting",
    },
    JOB_ALREADY_ACTIVE: {
        "message": "A reconstruction is already running for this session",
        "suggestion": "Wait for it to finish or cancel it first",
    },
    UNKNOWN_JOB: {
        "message": "Unknown reconstruction job",
        "suggestion": "Check the job id; released jobs are forgotten",
    },
    RECONSTRUCTION_FAILED: {
        "message": "3D reconstruction failed",
        "suggestion": "Try different photos, better lighting or a lower detail level",
    },
    STREAM_ENDED: {
        "message": "Reconstruction engine stopped without a result",
        "suggestion": "Resubmit the capture",
    },
    CAPABILITY_UNAVAILABLE: {
        "message": "Reconstruction engine is not available",
        "suggestion": "Install the photogrammetry tool and check the configured command",
    },
    ACKNOWLEDGED: {
        "message": "Reconstruction was cancelled",
        "suggestion": "Resubmit when ready",
    },
}

SUPPORTED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".heic", ".heif", ".tif", ".tiff", ".webp"}


class ObjectCaptureError(Exception):
    """Base class for every error surfaced to the calling layer."""

    category = "ObjectCaptureError"

    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail or ERROR_DEFINITIONS.get(kind, {}).get("message", kind)
        super().__init__(f"{self.category}.{kind}: {self.detail}")

    @property
    def message(self) -> str:
        return ERROR_DEFINITIONS.get(self.kind, {}).get("message", self.detail)

    @property
    def suggestion(self) -> str:
        return ERROR_DEFINITIONS.get(self.kind, {}).get("suggestion", "")

    def to_dict(self) -> dict:
        return {
            "type": "error",
            "category": self.category,
            "errorCode": self.kind,
            "message": self.message,
            "suggestion": self.suggestion,
            "detail": self.detail,
        }

    def __eq__(self, other):
        if not isinstance(other, ObjectCaptureError):
            return NotImplemented
        return (self.category, self.kind, self.detail) == (other.category, other.kind, other.detail)

    def __hash__(self):
        return hash((self.category, self.kind, self.detail))


class ValidationError(ObjectCaptureError):
    category = "ValidationError"


class CaptureError(ObjectCaptureError):
    category = "CaptureError"


class StateError(ObjectCaptureError):
    category = "StateError"


class ProcessingError(ObjectCaptureError):
    category = "ProcessingError"


class CancellationError(ObjectCaptureError):
    """A requested and acknowledged cancellation. Informational, not a failure."""

    category = "CancellationError"

    def __init__(self, kind: str = ACKNOWLEDGED, detail: str = ""):
        super().__init__(kind, detail)
