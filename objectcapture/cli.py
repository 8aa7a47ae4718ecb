from __future__ import annotations

import argparse
import json
import shutil
import sys
from pathlib import Path

from config import Config
from core.capture_pipeline import CAPABILITY_REGISTRY, CapturePipeline, create_capability
from core.job_observer import JobState
from objectcapture.errors import ObjectCaptureError
from objectcapture.quality import BLUR_VARIANCE_THRESHOLD, MIN_IMAGE_DIMENSION, check_photo_quality

DETAIL_CHOICES = ("preview", "reduced", "medium", "full", "raw")


def _emit(message: dict) -> None:
    print(json.dumps(message), flush=True)


def _load_config(args) -> Config:
    config = Config(str(args.config)) if args.config else Config()
    if getattr(args, "min_photos", None) is not None:
        config.set("capture.minimum_photo_count", args.min_photos)
    if getattr(args, "work_dir", None) is not None:
        config.set("reconstruction.work_dir", str(args.work_dir))
    return config


def _reconstruct(args) -> int:
    config = _load_config(args)
    capability = create_capability(config, args.capability)
    pipeline = CapturePipeline(config, capability=capability)

    try:
        pipeline.start()
        for image in args.images:
            photo = pipeline.add_photo(image)
            _emit({"type": "photo", **photo.to_dict()})
        pipeline.finish()
        job_id = pipeline.reconstruct(args.detail, on_update=lambda snapshot: _emit(snapshot.to_dict()))
    except ObjectCaptureError as exc:
        _emit(exc.to_dict())
        pipeline.reset()
        return 1

    try:
        final = pipeline.wait(args.timeout)
    except KeyboardInterrupt:
        pipeline.cancel()
        final = pipeline.wait(args.timeout)

    if final is None or not final.is_terminal:
        _emit({"type": "error", "errorCode": "TIMEOUT", "message": f"Job {job_id} did not finish in time"})
        pipeline.cancel()
        pipeline.reset()
        return 1

    exit_code = 1
    if final.state is JobState.COMPLETED:
        asset = pipeline.completed_asset()
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(asset.file_reference, args.output)
            _emit({"type": "success", "command": "reconstruct", "outputPath": str(args.output), "asset": asset.to_dict()})
        else:
            pipeline.handoff.retain(job_id)
            _emit({"type": "success", "command": "reconstruct", "outputPath": str(asset.file_reference), "asset": asset.to_dict()})
        exit_code = 0

    pipeline.reset()
    return exit_code


def _check_photos(args) -> int:
    warnings = check_photo_quality(args.images, min_dimension=args.min_dimension, blur_threshold=args.blur_threshold)
    _emit({"type": "success", "command": "check_photos", "warnings": warnings})
    return 0


def _check_environment(args) -> int:
    config = _load_config(args)
    capability = create_capability(config, args.capability)
    can_run, reason = capability.can_run()
    _emit({
        "type": "success",
        "command": "check_environment",
        "python": {"version": sys.version.split()[0], "executable": sys.executable},
        "capability": {
            "name": capability.get_capability_name(),
            "canRun": can_run,
            "reason": reason,
        },
    })
    return 0 if can_run else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Object Capture: photos to a packaged 3D scene")
    sub = parser.add_subparsers(dest="action", required=True)

    reconstruct_cmd = sub.add_parser("reconstruct", help="Capture photos and reconstruct a 3D scene")
    reconstruct_cmd.add_argument("images", nargs="+", type=Path)
    reconstruct_cmd.add_argument("--detail", choices=DETAIL_CHOICES)
    reconstruct_cmd.add_argument("--min-photos", type=int)
    reconstruct_cmd.add_argument("--capability", choices=sorted(CAPABILITY_REGISTRY))
    reconstruct_cmd.add_argument("--work-dir", type=Path)
    reconstruct_cmd.add_argument("--output", type=Path, help="Copy the finished scene here")
    reconstruct_cmd.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the job")
    reconstruct_cmd.add_argument("--config", type=Path)

    check_photos_cmd = sub.add_parser("check-photos", help="Report resolution and blur warnings")
    check_photos_cmd.add_argument("images", nargs="+", type=Path)
    check_photos_cmd.add_argument("--min-dimension", type=int, default=MIN_IMAGE_DIMENSION)
    check_photos_cmd.add_argument("--blur-threshold", type=float, default=BLUR_VARIANCE_THRESHOLD)

    check_env_cmd = sub.add_parser("check-environment", help="Check whether the capability can run")
    check_env_cmd.add_argument("--capability", choices=sorted(CAPABILITY_REGISTRY))
    check_env_cmd.add_argument("--config", type=Path)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.action == "reconstruct":
        return _reconstruct(args)
    if args.action == "check-photos":
        return _check_photos(args)
    return _check_environment(args)


if __name__ == "__main__":
    raise SystemExit(main())
