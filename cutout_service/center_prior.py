"""
Center-prior mask builder, a lightweight GrabCut-style approximation.

The central box is assumed to be subject and the frame around it background.
Each iteration re-labels interior pixels by comparing their color with the
mean color of their foreground and background 8-neighbors.
"""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from .options import CenterPriorOptions
from .preprocessing import validate_pixels

logger = logging.getLogger(__name__)

_RING = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.float32)


def initial_center_mask(h: int, w: int, foreground_fraction: float) -> np.ndarray:
    """1 inside the centered box covering `foreground_fraction` of each side."""
    ys = np.arange(h, dtype=np.float32)[:, None]
    xs = np.arange(w, dtype=np.float32)[None, :]
    inside = (np.abs(xs - w / 2.0) < w * foreground_fraction / 2.0) & (
        np.abs(ys - h / 2.0) < h * foreground_fraction / 2.0
    )
    return inside.astype(np.float32)


def _neighbor_sum(values: np.ndarray) -> np.ndarray:
    return cv2.filter2D(values, cv2.CV_32F, _RING, borderType=cv2.BORDER_CONSTANT)


def optimize_boundary(rgb: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """One synchronous relabeling pass; the 1-pixel frame is left unchanged."""
    h, w = mask.shape
    if h < 3 or w < 3:
        return mask.copy()
    fg_count = _neighbor_sum(mask)
    bg_count = _neighbor_sum(1.0 - mask)

    fg_mean = np.empty_like(rgb)
    bg_mean = np.empty_like(rgb)
    for c in range(3):
        channel = rgb[..., c]
        fg_mean[..., c] = _neighbor_sum(channel * mask) / np.maximum(fg_count, 1.0)
        bg_mean[..., c] = _neighbor_sum(channel * (1.0 - mask)) / np.maximum(bg_count, 1.0)

    fg_dist = np.sqrt(((rgb - fg_mean) ** 2).sum(axis=-1))
    bg_dist = np.sqrt(((rgb - bg_mean) ** 2).sum(axis=-1))

    mixed = (fg_count > 0) & (bg_count > 0)
    mixed[0, :] = mixed[-1, :] = False
    mixed[:, 0] = mixed[:, -1] = False
    out = mask.copy()
    out[mixed] = (fg_dist[mixed] < bg_dist[mixed]).astype(np.float32)
    return out


def build_center_prior_mask(
    pixels: np.ndarray, options: Optional[CenterPriorOptions] = None
) -> np.ndarray:
    """Binary mask (1 = subject) seeded from the image center."""
    options = options or CenterPriorOptions()
    h, w = validate_pixels(pixels)
    rgb = pixels[..., :3].astype(np.float32)
    mask = initial_center_mask(h, w, options.foreground_fraction)
    for _ in range(options.iterations):
        mask = optimize_boundary(rgb, mask)
    logger.debug("center_prior: foreground=%.2f%% after %d passes", 100.0 * float(mask.mean()), options.iterations)
    return mask
