"""
Command-line capability.

Runs an external photogrammetry executable (for example Apple's
``HelloPhotogrammetry`` sample, which takes an input folder, an output scene
path and a detail level) as a subprocess. Progress is parsed from its output
stream; cancellation terminates the process and is acknowledged with a
:class:`CancelledEvent`.
"""

import collections
import logging
import re
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from config import config_value
from core.reconstruction.base_capability import (
    Asset,
    BaseCapability,
    CancelledEvent,
    CapabilityEvent,
    CompletedEvent,
    DetailLevel,
    ErrorEvent,
    ProgressEvent,
)
from objectcapture.errors import CAPABILITY_UNAVAILABLE, RECONSTRUCTION_FAILED

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 20


class CommandLineCapability(BaseCapability):
    """Photogrammetry engine driven through an external CLI.

    The command is an argument template; ``{input_dir}``, ``{output_path}``
    and ``{detail}`` are substituted per job. Photos are symlinked into
    ``<output_dir>/input`` so the tool sees exactly the submitted snapshot.
    """

    def __init__(
        self,
        config=None,
        command: Optional[List[str]] = None,
        progress_pattern: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        output_name: Optional[str] = None,
    ):
        super().__init__(config)
        self.command = list(command or config_value(config, "capability.command"))
        self.progress_pattern = re.compile(
            progress_pattern or config_value(config, "capability.progress_pattern"),
            re.IGNORECASE,
        )
        self.timeout_seconds = float(timeout_seconds or config_value(config, "capability.timeout_seconds", 3600))
        self.output_name = output_name or config_value(config, "reconstruction.output_name")
        self._processes: Dict[str, subprocess.Popen] = {}
        self._process_lock = threading.Lock()

    # ------------------------------------------------------------------
    # BaseCapability interface
    # ------------------------------------------------------------------

    def can_run(self) -> tuple:
        if not self.command:
            return False, "No photogrammetry command configured"
        executable = self.command[0]
        if shutil.which(executable) is None:
            return False, f"Photogrammetry executable not found on PATH: {executable}"
        return True, "Ready"

    def get_capability_name(self) -> str:
        return f"Command line ({self.command[0] if self.command else 'unconfigured'})"

    def cancel(self, operation_id: str) -> None:
        super().cancel(operation_id)
        with self._process_lock:
            proc = self._processes.get(operation_id)
        if proc is not None and proc.poll() is None:
            logger.info("Terminating photogrammetry process %d for %s", proc.pid, operation_id)
            proc.terminate()

    def process(
        self,
        photo_set: Sequence,
        detail_level: DetailLevel,
        output_dir: Path,
        operation_id: str,
    ) -> Iterator[CapabilityEvent]:
        output_dir = Path(output_dir)
        try:
            if self.is_cancelled(operation_id):
                yield CancelledEvent()
                return

            input_dir = self._link_inputs(photo_set, output_dir / "input")
            output_path = output_dir / self.output_name
            args = self._build_args(input_dir, output_path, detail_level)
            logger.debug("Running: %s", " ".join(args))

            try:
                proc = subprocess.Popen(
                    args,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    bufsize=1,
                )
            except (FileNotFoundError, PermissionError) as exc:
                yield ErrorEvent(CAPABILITY_UNAVAILABLE, f"Could not start {args[0]}: {exc}")
                return

            with self._process_lock:
                self._processes[operation_id] = proc
            timed_out = threading.Event()

            def _kill_on_timeout():
                timed_out.set()
                proc.kill()

            timer = threading.Timer(self.timeout_seconds, _kill_on_timeout)
            timer.daemon = True
            timer.start()

            tail = collections.deque(maxlen=_OUTPUT_TAIL_LINES)
            try:
                # A cancel issued before registration above would miss the process.
                if self.is_cancelled(operation_id):
                    proc.terminate()
                for line in proc.stdout:
                    line = line.rstrip()
                    if not line:
                        continue
                    tail.append(line)
                    fraction = self._parse_progress(line)
                    if fraction is not None and not self.is_cancelled(operation_id):
                        yield ProgressEvent(fraction)
                returncode = proc.wait()
            finally:
                timer.cancel()
                with self._process_lock:
                    self._processes.pop(operation_id, None)
                if proc.stdout is not None:
                    proc.stdout.close()

            if self.is_cancelled(operation_id):
                yield CancelledEvent()
            elif timed_out.is_set():
                yield ErrorEvent(
                    RECONSTRUCTION_FAILED,
                    f"{args[0]} timed out after {self.timeout_seconds:.0f}s",
                )
            elif returncode != 0:
                snippet = "\n".join(tail) or "(no output)"
                yield ErrorEvent(RECONSTRUCTION_FAILED, f"{args[0]} failed (exit {returncode}): {snippet[:500]}")
            elif not output_path.exists():
                yield ErrorEvent(RECONSTRUCTION_FAILED, f"{args[0]} produced no scene at {output_path}")
            else:
                yield CompletedEvent(Asset.from_file(output_path, detail_level=detail_level))
        finally:
            self.clear_cancelled(operation_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _link_inputs(self, photo_set: Sequence, input_dir: Path) -> Path:
        """Symlink every photo of the snapshot into *input_dir*, preserving order in the names."""
        input_dir.mkdir(parents=True, exist_ok=True)
        for photo in photo_set:
            source = Path(photo.file_reference)
            link = input_dir / source.name
            if not link.exists():
                link.symlink_to(source.resolve())
        return input_dir

    def _build_args(self, input_dir: Path, output_path: Path, detail_level: DetailLevel) -> List[str]:
        values = {
            "input_dir": str(input_dir),
            "output_path": str(output_path),
            "detail": detail_level.value,
        }
        return [part.format(**values) for part in self.command]

    def _parse_progress(self, line: str) -> Optional[float]:
        match = self.progress_pattern.search(line)
        if not match:
            return None
        try:
            value = float(match.group(1))
        except (IndexError, ValueError):
            return None
        # Tools that report percentages
        if value > 1.0 and "%" in line:
            value /= 100.0
        return value
