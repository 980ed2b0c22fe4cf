"""
Flood-fill ("magic wand") mask builder.

Background grows from border seeds through 4-connected pixels whose color
stays within `tolerance` of the seed's own color. Pixels already claimed by
an earlier seed are never revisited, so the whole pass is bounded by the
number of pixels.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional, Tuple

import cv2
import numpy as np

from .features import color_distance_map
from .options import FloodFillOptions
from .preprocessing import to_rgb, validate_pixels

logger = logging.getLogger(__name__)

VISITED = 1
REACH_MARK = 2


def iter_seeds(h: int, w: int, seed_mode: str) -> Iterator[Tuple[int, int]]:
    """Yield (y, x) seeds: the four corners, or every border pixel."""
    if seed_mode == "corners":
        yield from ((0, 0), (0, w - 1), (h - 1, 0), (h - 1, w - 1))
        return
    for x in range(w):
        yield 0, x
        yield h - 1, x
    for y in range(h):
        yield y, 0
        yield y, w - 1


def _reach(
    rgb: np.ndarray, flood_mask: np.ndarray, seed: Tuple[int, int], tolerance: float
) -> Tuple[int, int, int, int]:
    """
    Bounding rect (x, y, w, h) of the pixels a seed can possibly reach.

    A per-channel range fill covers a superset of the Euclidean ball, so the
    exact fill never leaves this rect. Its marks are left in `flood_mask` with
    value 2 and must be cleared by the caller.
    """
    y, x = seed
    diff = (float(tolerance),) * 3
    flags = 4 | cv2.FLOODFILL_FIXED_RANGE | cv2.FLOODFILL_MASK_ONLY | (REACH_MARK << 8)
    _, _, _, rect = cv2.floodFill(rgb, flood_mask, (int(x), int(y)), 0, diff, diff, flags)
    return rect


def _flood(
    rgb: np.ndarray, flood_mask: np.ndarray, seed: Tuple[int, int], tolerance: float
) -> None:
    """
    Mark the background reached from `seed` in `flood_mask` (in place).

    Work is limited to the reachable rect, so each fill costs its own area and
    not the whole image.
    """
    rx, ry, rw, rh = _reach(rgb, flood_mask, seed, tolerance)
    local = flood_mask[ry : ry + rh + 2, rx : rx + rw + 2].copy()
    local[local == REACH_MARK] = 0

    y, x = seed
    window = rgb[ry : ry + rh, rx : rx + rw]
    candidate = (color_distance_map(window, rgb[y, x]) <= tolerance).astype(np.uint8)
    flags = 4 | cv2.FLOODFILL_MASK_ONLY | (VISITED << 8)
    cv2.floodFill(candidate, local, (int(x - rx), int(y - ry)), 0, 0, 0, flags)

    flood_mask[ry + 1 : ry + rh + 1, rx + 1 : rx + rw + 1] = local[1:-1, 1:-1]


def build_flood_fill_mask(
    pixels: np.ndarray, options: Optional[FloodFillOptions] = None
) -> np.ndarray:
    """Mask with 0 on flood-filled background and 1 elsewhere."""
    options = options or FloodFillOptions()
    h, w = validate_pixels(pixels)
    rgb = np.ascontiguousarray(to_rgb(pixels))
    # One (h+2, w+2) mask for the whole pass; claimed pixels block later seeds.
    flood_mask = np.zeros((h + 2, w + 2), dtype=np.uint8)
    fills = 0

    for y, x in iter_seeds(h, w, options.seed_mode):
        if flood_mask[y + 1, x + 1]:
            continue
        _flood(rgb, flood_mask, (y, x), options.tolerance)
        fills += 1

    visited = flood_mask[1:-1, 1:-1] > 0
    mask = np.where(visited, 0.0, 1.0).astype(np.float32)
    logger.debug(
        "flood_fill: %d fills from %s seeds, background=%.2f%%",
        fills,
        options.seed_mode,
        100.0 * float(visited.mean()) if visited.size else 0.0,
    )
    return mask
