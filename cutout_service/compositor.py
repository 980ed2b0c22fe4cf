"""
Apply a refined mask to the alpha channel and encode the result.

The output is straight (non-premultiplied) alpha: RGB values are copied
unchanged, including under fully transparent pixels.
"""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .preprocessing import validate_mask, validate_pixels
from .refinement import RefinementPlan, remap_alpha

logger = logging.getLogger(__name__)


def composite(
    pixels: np.ndarray, mask: np.ndarray, plan: Optional[RefinementPlan] = None
) -> np.ndarray:
    """
    Copy of `pixels` whose alpha is `round(alpha * f(mask))`.

    `f` is the alpha remap of `plan` (linear with a 0.1 cutoff by default).
    """
    h, w = validate_pixels(pixels)
    validate_mask(mask, (h, w))
    plan = plan or RefinementPlan()
    factor = remap_alpha(
        mask,
        quality_mode=plan.quality_mode,
        decisive=plan.decisive,
        foreground_threshold=plan.foreground_threshold,
        opaque_threshold=plan.opaque_threshold,
    )
    out = pixels.copy()
    alpha = pixels[..., 3].astype(np.float32) * factor
    out[..., 3] = np.clip(np.rint(alpha), 0, 255).astype(np.uint8)

    logger.debug(
        "composite: transparent=%.2f%% opaque=%.2f%%",
        100.0 * float((out[..., 3] == 0).mean()),
        100.0 * float((out[..., 3] == 255).mean()),
    )
    return out


def encode_png(rgba: np.ndarray) -> bytes:
    """Encode an RGBA buffer as PNG bytes."""
    validate_pixels(rgba)
    buf = BytesIO()
    Image.fromarray(rgba).save(buf, format="PNG")
    return buf.getvalue()


def uncertain_band(mask: np.ndarray, low: float = 0.1, high: float = 0.9) -> np.ndarray:
    return (mask > low) & (mask < high)


def maybe_dump_debug(pixels: np.ndarray, mask: np.ndarray, debug_dir: Path) -> None:
    """Write the mask and a red overlay of its uncertain band; failures only warn."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        mask_path = debug_dir / "mask.png"
        overlay_path = debug_dir / "band_overlay.png"

        mask_u8 = np.clip(mask * 255.0, 0, 255).astype(np.uint8)
        cv2.imwrite(str(mask_path), mask_u8)

        overlay = pixels[..., :3].copy()
        overlay[uncertain_band(mask)] = [255, 0, 0]  # uncertain band in red (RGB)
        cv2.imwrite(str(overlay_path), cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
        logger.debug("composite: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("composite: failed to write debug outputs: %s", exc)
