"""
Abstract base class for reconstruction capabilities.

A capability is the black-box photogrammetry engine. Given an ordered photo
set and a detail level it produces an ordered stream of events:
:class:`ProgressEvent`, then exactly one of :class:`CompletedEvent`,
:class:`ErrorEvent` or :class:`CancelledEvent`. Cancellation is cooperative:
:meth:`BaseCapability.cancel` only records the request and the stream
acknowledges it with a :class:`CancelledEvent` (or another terminal event).
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

logger = logging.getLogger(__name__)


class DetailLevel(Enum):
    """Output density / processing cost policy passed to the capability."""

    PREVIEW = "preview"
    REDUCED = "reduced"
    MEDIUM = "medium"
    FULL = "full"
    RAW = "raw"

    @classmethod
    def parse(cls, value) -> "DetailLevel":
        """Accept a :class:`DetailLevel` or its case-insensitive string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(level.value for level in cls)
            raise ValueError(f"Unknown detail level {value!r}; expected one of: {choices}") from None


class AssetFormat(Enum):
    """Format tag of a packaged 3D scene."""

    USDZ = "usdz"
    GLB = "glb"
    GLTF = "gltf"
    OBJ = "obj"

    @classmethod
    def from_path(cls, path: Path) -> "AssetFormat":
        suffix = Path(path).suffix.lower().lstrip(".")
        try:
            return cls(suffix)
        except ValueError:
            raise ValueError(f"Unrecognised 3D scene format: {Path(path).name}") from None


@dataclass(frozen=True)
class Asset:
    """A completed, packaged 3D scene (geometry, materials, optional animation)."""

    file_reference: Path
    format: AssetFormat
    size_bytes: int
    detail_level: Optional[DetailLevel] = None

    @classmethod
    def from_file(
        cls,
        path: Path,
        detail_level: Optional[DetailLevel] = None,
        asset_format: Optional[AssetFormat] = None,
    ) -> "Asset":
        path = Path(path)
        return cls(
            file_reference=path,
            format=asset_format or AssetFormat.from_path(path),
            size_bytes=path.stat().st_size,
            detail_level=detail_level,
        )

    def to_dict(self) -> dict:
        return {
            "fileReference": str(self.file_reference),
            "format": self.format.value,
            "sizeBytes": self.size_bytes,
            "detailLevel": self.detail_level.value if self.detail_level else None,
        }


@dataclass(frozen=True)
class ProgressEvent:
    fraction: float


@dataclass(frozen=True)
class CompletedEvent:
    asset: Asset


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    detail: str = ""


@dataclass(frozen=True)
class CancelledEvent:
    pass


CapabilityEvent = Union[ProgressEvent, CompletedEvent, ErrorEvent, CancelledEvent]
TERMINAL_EVENT_TYPES = (CompletedEvent, ErrorEvent, CancelledEvent)


class BaseCapability(ABC):
    """Abstract base class for reconstruction engines.

    Subclasses implement :meth:`can_run`, :meth:`process` and
    :meth:`get_capability_name`. Cancellation requests are tracked per
    operation id; :meth:`process` implementations poll :meth:`is_cancelled`.
    """

    def __init__(self, config=None):
        """Initialise capability.

        Args:
            config: Application configuration object (supports ``config.get(key, default)``).
        """
        self.config = config
        self._cancelled_operation_ids: set = set()
        self._cancel_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation bookkeeping
    # ------------------------------------------------------------------

    def cancel(self, operation_id: str) -> None:
        """Request cooperative cancellation of *operation_id*."""
        if not operation_id:
            return
        with self._cancel_lock:
            self._cancelled_operation_ids.add(operation_id)
        logger.info("%s: cancellation requested for %s", self.get_capability_name(), operation_id)

    def is_cancelled(self, operation_id: str) -> bool:
        with self._cancel_lock:
            return operation_id in self._cancelled_operation_ids

    def clear_cancelled(self, operation_id: str) -> None:
        """Forget a cancel request; called when the stream ends and again once the job is terminal."""
        with self._cancel_lock:
            self._cancelled_operation_ids.discard(operation_id)

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def can_run(self) -> tuple:
        """Check whether this capability can run on the current system.

        Returns:
            ``(can_run: bool, reason: str)``
        """

    @abstractmethod
    def process(
        self,
        photo_set: Sequence,
        detail_level: DetailLevel,
        output_dir: Path,
        operation_id: str,
    ) -> Iterator[CapabilityEvent]:
        """Reconstruct *photo_set* and stream events.

        Args:
            photo_set: Ordered photo captures (objects with a ``file_reference`` path).
            detail_level: Requested output detail.
            output_dir: Job workspace; all artifacts go here.
            operation_id: Identifier used for :meth:`cancel`.

        Yields:
            Progress events followed by one terminal event.
        """

    @abstractmethod
    def get_capability_name(self) -> str:
        """Return a human-readable capability name."""
