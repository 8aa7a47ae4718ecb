"""Pre-flight photo quality checks: resolution and blur detection."""
from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

MIN_IMAGE_DIMENSION = 512
BLUR_VARIANCE_THRESHOLD = 100.0

_HEIF_REGISTERED = False


def _ensure_heif_support() -> None:
    """Register the pillow-heif opener so Pillow can read HEIC/HEIF captures."""
    global _HEIF_REGISTERED
    if _HEIF_REGISTERED:
        return
    import pillow_heif

    pillow_heif.register_heif_opener()
    _HEIF_REGISTERED = True


def laplacian_variance(image: Image.Image) -> float:
    """Variance of the 4-neighbour discrete Laplacian of *image* in greyscale.

    Low values indicate a blurry photo.
    """
    arr = np.array(image.convert("L"), dtype=np.float64)
    if arr.shape[0] < 3 or arr.shape[1] < 3:
        return 0.0
    laplacian = (
        arr[:-2, 1:-1] + arr[2:, 1:-1] + arr[1:-1, :-2] + arr[1:-1, 2:] - 4 * arr[1:-1, 1:-1]
    )
    return float(np.var(laplacian))


def check_photo_quality(
    photo_paths: list,
    min_dimension: int = MIN_IMAGE_DIMENSION,
    blur_threshold: float = BLUR_VARIANCE_THRESHOLD,
) -> list[dict]:
    """Flag photos that are likely to hurt reconstruction.

    Returns a list of warning dicts with *path*, *issue*, *detail* and
    *suggestion* keys. Warnings never block capture.
    """
    warnings: list[dict] = []
    _ensure_heif_support()

    for photo_path in photo_paths:
        path = str(Path(photo_path))
        try:
            with Image.open(path) as img:
                w, h = img.size
                if w < min_dimension or h < min_dimension:
                    warnings.append({
                        "path": path,
                        "issue": "low_resolution",
                        "detail": f"Photo is {w}x{h}; minimum recommended is {min_dimension}x{min_dimension}",
                        "suggestion": "Move closer or use a higher camera resolution",
                    })
                variance = laplacian_variance(img)
                if variance < blur_threshold:
                    warnings.append({
                        "path": path,
                        "issue": "blurry",
                        "detail": f"Laplacian variance {variance:.1f} is below threshold {blur_threshold:g}",
                        "suggestion": "Hold the camera steady and keep the object in focus",
                    })
        except (OSError, ValueError):
            warnings.append({
                "path": path,
                "issue": "unreadable",
                "detail": "Could not open image file",
                "suggestion": "Ensure the file is a valid image",
            })

    if warnings:
        logger.info("Photo quality check produced %d warning(s)", len(warnings))
    return warnings
