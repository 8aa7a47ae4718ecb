"""
Capture pipeline lifecycle management
"""
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
import logging

from config import config_value
from core.asset_handoff import AssetHandoff
from core.capture_session import CaptureSession, PhotoCapture, SessionState
from core.job_observer import JobSnapshot, JobState
from core.reconstruction.base_capability import Asset, BaseCapability
from core.reconstruction.capabilities import CommandLineCapability, ScriptedCapability
from core.reconstruction_coordinator import ReconstructionCoordinator

logger = logging.getLogger(__name__)

CAPABILITY_REGISTRY = {
    "command_line": CommandLineCapability,
    "scripted": ScriptedCapability,
}


def create_capability(config=None, name: Optional[str] = None) -> BaseCapability:
    """Instantiate the capability named *name* (default ``capability.name``)."""
    name = name or config_value(config, "capability.name", "command_line")
    try:
        capability_cls = CAPABILITY_REGISTRY[name]
    except KeyError:
        raise ValueError(
            f"Unknown capability {name!r}; expected one of: {', '.join(sorted(CAPABILITY_REGISTRY))}"
        ) from None
    return capability_cls(config)


class PipelineState(Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    READY = "ready"
    RECONSTRUCTING = "reconstructing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_JOB_TO_PIPELINE_STATE = {
    JobState.QUEUED: PipelineState.RECONSTRUCTING,
    JobState.RECONSTRUCTING: PipelineState.RECONSTRUCTING,
    JobState.COMPLETED: PipelineState.COMPLETED,
    JobState.FAILED: PipelineState.FAILED,
    JobState.CANCELLED: PipelineState.CANCELLED,
}


class CapturePipeline:
    """Wires one capture session to a coordinator and asset handoff.

    ``IDLE -> CAPTURING -> READY -> RECONSTRUCTING -> {COMPLETED, FAILED,
    CANCELLED} -> (reset) -> IDLE``
    """

    def __init__(
        self,
        config=None,
        capability: Optional[BaseCapability] = None,
        work_dir: Optional[Path] = None,
    ):
        """Initialize capture pipeline

        Args:
            config: Application config. May be ``None``.
            capability: Reconstruction engine; built from ``capability.name`` if omitted.
            work_dir: Root for job workspaces.
        """
        self.config = config
        self.capability = capability or create_capability(config)
        self.coordinator = ReconstructionCoordinator(self.capability, config, work_dir=work_dir)
        self.handoff = AssetHandoff(self.coordinator)
        self.session = CaptureSession(config)
        self.handoff.bind_session(self.session)
        self.current_job_id: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        if self.session.state is SessionState.IDLE:
            return PipelineState.IDLE
        if self.session.state is SessionState.CAPTURING:
            return PipelineState.CAPTURING
        if self.current_job_id is None or not self.coordinator.has_job(self.current_job_id):
            return PipelineState.READY
        return _JOB_TO_PIPELINE_STATE[self.coordinator.job(self.current_job_id).state]

    def start(self):
        self.session.start()

    def add_photo(self, image, extension: Optional[str] = None) -> PhotoCapture:
        return self.session.add_photo(image, extension=extension)

    def finish(self):
        self.session.finish()

    def reconstruct(
        self,
        detail_level=None,
        on_update: Optional[Callable[[JobSnapshot], None]] = None,
    ) -> str:
        """Submit the finished session; returns the job id."""
        job_id = self.coordinator.submit(self.session, detail_level, on_update=on_update)
        self.current_job_id = job_id
        return job_id

    def cancel(self) -> bool:
        if self.current_job_id is None:
            logger.warning("No reconstruction to cancel")
            return False
        return self.coordinator.cancel(self.current_job_id)

    def wait(self, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        if self.current_job_id is None:
            return None
        return self.coordinator.wait(self.current_job_id, timeout)

    def completed_asset(self) -> Optional[Asset]:
        if self.current_job_id is None:
            return None
        return self.handoff.completed_asset(self.current_job_id)

    def reset(self):
        """Cancel and release any jobs, delete temporary photos, return to ``IDLE``."""
        self.session.reset()
        self.current_job_id = None
        logger.info("Capture pipeline reset")
