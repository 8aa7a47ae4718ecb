"""
Scripted capability: a deterministic stand-in for a photogrammetry engine.

Replays a fixed progress script and then a forced outcome. A successful run
writes a real (tiny) GLB scene with trimesh so downstream consumers see a
loadable packaged asset.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np
import trimesh

from core.reconstruction.base_capability import (
    Asset,
    AssetFormat,
    BaseCapability,
    CancelledEvent,
    CapabilityEvent,
    CompletedEvent,
    DetailLevel,
    ErrorEvent,
    ProgressEvent,
)
from objectcapture.errors import RECONSTRUCTION_FAILED

logger = logging.getLogger(__name__)

OUTCOME_COMPLETE = "complete"
OUTCOME_ERROR = "error"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_END = "end"
OUTCOME_RAISE = "raise"
OUTCOMES = (OUTCOME_COMPLETE, OUTCOME_ERROR, OUTCOME_CANCELLED, OUTCOME_END, OUTCOME_RAISE)

DEFAULT_PROGRESS_SCRIPT = (0.10, 0.55)
DEFAULT_ASSET_NAME = "reconstructed_model.glb"

# Box subdivisions per detail level; keeps output size proportional to detail.
_SUBDIVISIONS = {
    DetailLevel.PREVIEW: 0,
    DetailLevel.REDUCED: 1,
    DetailLevel.MEDIUM: 2,
    DetailLevel.FULL: 3,
    DetailLevel.RAW: 3,
}


class ScriptedCapability(BaseCapability):
    """Deterministic capability used by tests and dry runs.

    Args:
        config: Optional configuration object.
        progress_script: Progress fractions emitted in order, unmodified
            (out-of-range and decreasing values are passed through).
        outcome: One of ``complete``, ``error``, ``cancelled``, ``end``
            (stream stops without a terminal event) or ``raise`` (the
            stream raises ``RuntimeError``).
        asset_name: File name of the scene written on completion.
        error_kind / error_detail: Payload of the forced :class:`ErrorEvent`.
        hold: When given, the stream waits for this event after the progress
            script and before the outcome.
        honours_cancellation: When ``False`` the stream ignores cancel
            requests and always delivers its scripted outcome.
        step_delay: Seconds slept between events.
    """

    def __init__(
        self,
        config=None,
        progress_script: Iterable[float] = DEFAULT_PROGRESS_SCRIPT,
        outcome: str = OUTCOME_COMPLETE,
        asset_name: str = DEFAULT_ASSET_NAME,
        error_kind: str = RECONSTRUCTION_FAILED,
        error_detail: str = "Scripted reconstruction failure",
        hold: Optional[threading.Event] = None,
        hold_timeout: float = 10.0,
        honours_cancellation: bool = True,
        step_delay: float = 0.0,
    ):
        super().__init__(config)
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown scripted outcome {outcome!r}")
        self.progress_script = tuple(progress_script)
        self.outcome = outcome
        self.asset_name = asset_name
        self.error_kind = error_kind
        self.error_detail = error_detail
        self.hold = hold
        self.hold_timeout = hold_timeout
        self.honours_cancellation = honours_cancellation
        self.step_delay = step_delay
        self.calls = []
        self.started = threading.Event()

    def can_run(self) -> tuple:
        return True, "Ready"

    def get_capability_name(self) -> str:
        return "Scripted"

    def process(
        self,
        photo_set: Sequence,
        detail_level: DetailLevel,
        output_dir: Path,
        operation_id: str,
    ) -> Iterator[CapabilityEvent]:
        self.calls.append((tuple(photo_set), detail_level, Path(output_dir), operation_id))
        self.started.set()
        try:
            for fraction in self.progress_script:
                if self._should_stop(operation_id):
                    yield CancelledEvent()
                    return
                yield ProgressEvent(fraction)
                if self.step_delay:
                    time.sleep(self.step_delay)

            if self.hold is not None and not self.hold.wait(self.hold_timeout):
                logger.warning("Scripted hold timed out after %.1fs", self.hold_timeout)

            if self._should_stop(operation_id):
                yield CancelledEvent()
                return

            if self.outcome == OUTCOME_COMPLETE:
                yield CompletedEvent(self._write_scene(Path(output_dir), detail_level, len(photo_set)))
            elif self.outcome == OUTCOME_ERROR:
                yield ErrorEvent(self.error_kind, self.error_detail)
            elif self.outcome == OUTCOME_CANCELLED:
                yield CancelledEvent()
            elif self.outcome == OUTCOME_RAISE:
                raise RuntimeError(self.error_detail)
        finally:
            self.clear_cancelled(operation_id)

    def _should_stop(self, operation_id: str) -> bool:
        return self.honours_cancellation and self.is_cancelled(operation_id)

    def _write_scene(self, output_dir: Path, detail_level: DetailLevel, photo_count: int) -> Asset:
        """Export a subdivided, vertex-coloured box as a binary glTF scene."""
        output_dir.mkdir(parents=True, exist_ok=True)
        mesh = trimesh.creation.box(extents=(1.0, 1.0, 1.0))
        for _ in range(_SUBDIVISIONS.get(detail_level, 1)):
            mesh = mesh.subdivide()
        shade = np.clip(photo_count / 200.0, 0.0, 1.0)
        colours = np.tile(np.array([255 * shade, 128, 255 * (1 - shade), 255], dtype=np.uint8), (len(mesh.vertices), 1))
        mesh.visual.vertex_colors = colours
        scene = trimesh.Scene(mesh)

        target = output_dir / self.asset_name
        target.write_bytes(scene.export(file_type="glb"))
        logger.info("Scripted scene written: %s (%d faces)", target, len(mesh.faces))
        return Asset.from_file(target, detail_level=detail_level, asset_format=AssetFormat.GLB)
