"""
Capture session data model
"""
from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union
from uuid import uuid4
import logging

from config import config_value
from objectcapture.errors import (
    ALREADY_STARTED,
    INSUFFICIENT_PHOTOS,
    NOT_CAPTURING,
    STORAGE_FAILURE,
    SUPPORTED_IMAGE_EXTENSIONS,
    TOO_MANY_PHOTOS,
    UNSUPPORTED_FILE_FORMAT,
    CaptureError,
    StateError,
    ValidationError,
)
from objectcapture.quality import check_photo_quality

logger = logging.getLogger(__name__)

SESSION_DIR_PREFIX = "capture-session-"
PHOTOS_DIR_NAME = "photos"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionState(Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    READY = "ready"


@dataclass(frozen=True)
class PhotoCapture:
    """One persisted photograph of a capture session."""

    photo_id: str
    file_reference: Path
    sequence_index: int
    captured_at: datetime

    def to_dict(self) -> dict:
        return {
            "photoId": self.photo_id,
            "fileReference": str(self.file_reference),
            "sequenceIndex": self.sequence_index,
            "capturedAt": self.captured_at.isoformat(),
        }


class CaptureSession:
    """Accumulates photographs for one reconstruction attempt.

    Photos are append-only while capturing and live in a session-scoped
    temporary directory with sequentially indexed names
    (``capture_0001.jpg``, ``capture_0002.jpg``, ...). Only :meth:`reset`
    removes them.

    The session is single-writer: concurrent :meth:`add_photo` calls need
    external serialization.
    """

    def __init__(self, config=None, session_id: Optional[str] = None):
        """Initialize capture session

        Args:
            config: Application config (supports ``config.get(key, default)``). May be ``None``.
            session_id: Explicit id; a UUID is generated when omitted.
        """
        self.config = config
        self.session_id = session_id or str(uuid4())
        self.state = SessionState.IDLE
        self._photos: List[PhotoCapture] = []
        self._session_dir: Optional[Path] = None
        self._reset_listeners: List[Callable[["CaptureSession"], None]] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def photos(self) -> Tuple[PhotoCapture, ...]:
        """Immutable view of the captured photos, in sequence order."""
        return tuple(self._photos)

    @property
    def photo_count(self) -> int:
        return len(self._photos)

    @property
    def session_dir(self) -> Optional[Path]:
        return self._session_dir

    @property
    def photos_dir(self) -> Optional[Path]:
        if self._session_dir is None:
            return None
        return self._session_dir / PHOTOS_DIR_NAME

    @property
    def minimum_photo_count(self) -> int:
        return max(1, int(config_value(self.config, "capture.minimum_photo_count", 1)))

    @property
    def maximum_photo_count(self) -> Optional[int]:
        value = config_value(self.config, "capture.maximum_photo_count")
        return int(value) if value is not None else None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def start(self):
        """Begin capturing: ``IDLE -> CAPTURING``.

        Raises:
            StateError: ``ALREADY_STARTED`` if the session is not idle.
        """
        if self.state is not SessionState.IDLE:
            raise StateError(ALREADY_STARTED, f"Session {self.session_id} is {self.state.value}")

        temp_root = config_value(self.config, "capture.temp_dir")
        if temp_root:
            Path(temp_root).mkdir(parents=True, exist_ok=True)
        self._session_dir = Path(
            tempfile.mkdtemp(prefix=f"{SESSION_DIR_PREFIX}{self.session_id[:8]}-", dir=temp_root)
        )
        self.photos_dir.mkdir(exist_ok=True)
        self.state = SessionState.CAPTURING
        logger.info(f"Capture session {self.session_id} started in {self._session_dir}")

    def add_photo(self, image: Union[bytes, bytearray, Path, str], extension: Optional[str] = None) -> PhotoCapture:
        """Persist one photograph and append it to the session.

        Args:
            image: Encoded image bytes, or a path to an existing image file.
            extension: File extension used for byte input (defaults to
                ``capture.default_extension``). Ignored for paths.

        Returns:
            The new :class:`PhotoCapture`.

        Raises:
            StateError: ``NOT_CAPTURING`` outside the capturing state.
            ValidationError: ``UNSUPPORTED_FILE_FORMAT`` or ``TOO_MANY_PHOTOS``.
            CaptureError: ``STORAGE_FAILURE`` if the photo could not be written.
        """
        if self.state is not SessionState.CAPTURING:
            raise StateError(NOT_CAPTURING, f"Cannot add photos while {self.state.value}")

        maximum = self.maximum_photo_count
        if maximum is not None and len(self._photos) >= maximum:
            raise ValidationError(TOO_MANY_PHOTOS, f"Session already holds {len(self._photos)} of {maximum} photos")

        if isinstance(image, (bytes, bytearray)):
            suffix = (extension or config_value(self.config, "capture.default_extension", ".jpg")).lower()
            if not suffix.startswith("."):
                suffix = f".{suffix}"
            source_path = None
        else:
            source_path = Path(image)
            suffix = source_path.suffix.lower()

        if suffix not in SUPPORTED_IMAGE_EXTENSIONS:
            raise ValidationError(
                UNSUPPORTED_FILE_FORMAT,
                f"Unsupported image type: {suffix or '(none)'}. "
                f"Supported: {', '.join(sorted(SUPPORTED_IMAGE_EXTENSIONS))}",
            )

        sequence_index = len(self._photos)
        dest_path = self.photos_dir / f"capture_{sequence_index + 1:04d}{suffix}"
        partial_path = dest_path.with_name(dest_path.name + ".part")

        try:
            if source_path is not None:
                shutil.copyfile(source_path, partial_path)
            else:
                with open(partial_path, "wb") as f:
                    f.write(image)
            os.replace(partial_path, dest_path)
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            logger.error(f"Failed to store photo {sequence_index + 1} for session {self.session_id}: {e}")
            raise CaptureError(STORAGE_FAILURE, str(e)) from e

        photo = PhotoCapture(
            photo_id=str(uuid4()),
            file_reference=dest_path,
            sequence_index=sequence_index,
            captured_at=_now(),
        )
        self._photos.append(photo)
        logger.debug(f"Added photo {dest_path.name} to session {self.session_id}")
        return photo

    def finish(self):
        """Close capturing: ``CAPTURING -> READY``.

        Raises:
            StateError: ``NOT_CAPTURING`` outside the capturing state.
            ValidationError: ``INSUFFICIENT_PHOTOS`` below the configured minimum;
                the session stays capturing.
        """
        if self.state is not SessionState.CAPTURING:
            raise StateError(NOT_CAPTURING, f"Cannot finish while {self.state.value}")

        count = len(self._photos)
        minimum = self.minimum_photo_count
        if count < minimum:
            raise ValidationError(INSUFFICIENT_PHOTOS, f"{count} photo(s) captured; at least {minimum} required")

        recommended_min = config_value(self.config, "capture.recommended_min_photos", 20)
        recommended_max = config_value(self.config, "capture.recommended_max_photos", 200)
        if not recommended_min <= count <= recommended_max:
            logger.warning(
                f"Session {self.session_id} finished with {count} photos; "
                f"{recommended_min}-{recommended_max} recommended"
            )

        self.state = SessionState.READY
        logger.info(f"Capture session {self.session_id} ready with {count} photos")

    def reset(self):
        """Return to ``IDLE`` from any state, deleting every temporary photo.

        Reset listeners run first so associated jobs can be cancelled and
        released before the photo files disappear.
        """
        for listener in list(self._reset_listeners):
            listener(self)

        if self._session_dir is not None:
            shutil.rmtree(self._session_dir, ignore_errors=True)
            if self._session_dir.exists():
                logger.warning(f"Could not fully remove session directory {self._session_dir}")

        removed = len(self._photos)
        self._photos = []
        self._session_dir = None
        self.state = SessionState.IDLE
        logger.info(f"Capture session {self.session_id} reset ({removed} photo(s) removed)")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def add_reset_listener(self, listener: Callable[["CaptureSession"], None]):
        """Register *listener* to be called with this session at the start of :meth:`reset`."""
        if listener not in self._reset_listeners:
            self._reset_listeners.append(listener)

    def snapshot(self) -> Tuple[PhotoCapture, ...]:
        """Frozen photo set handed to a reconstruction job."""
        return tuple(self._photos)

    def check_quality(self) -> List[dict]:
        """Run resolution and blur checks over the captured photos."""
        return check_photo_quality(
            [photo.file_reference for photo in self._photos],
            min_dimension=int(config_value(self.config, "quality.min_dimension", 512)),
            blur_threshold=float(config_value(self.config, "quality.blur_threshold", 100.0)),
        )

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "sessionDir": str(self._session_dir) if self._session_dir else None,
            "photos": [photo.to_dict() for photo in self._photos],
        }
