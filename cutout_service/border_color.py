"""
Border-sampled color-distance mask builder.

Background colors are inferred from samples along the image border. A pixel
is background when it is close to one of those colors, sits on a flat
(low-edge) area and does not match a dominant subject color.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .features import (
    compute_edge_map,
    detect_border_colors,
    detect_dominant_colors,
    distances_to_colors,
)
from .options import BorderColorOptions
from .preprocessing import to_rgb, validate_pixels

logger = logging.getLogger(__name__)


def _subject_colors(
    pixels: np.ndarray, background: np.ndarray, options: BorderColorOptions
) -> np.ndarray:
    """Dominant interior colors that are not themselves background colors."""
    dominant = detect_dominant_colors(pixels, sample_stride=4, k=5, border_margin=0.1)
    if dominant.shape[0] == 0 or background.shape[0] == 0:
        return dominant
    # A background that reaches into the interior would otherwise be
    # protected as a subject color.
    nearest_bg = distances_to_colors(dominant, background).min(axis=1)
    return dominant[nearest_bg >= options.color_threshold]


def build_border_color_mask(
    pixels: np.ndarray, options: Optional[BorderColorOptions] = None
) -> np.ndarray:
    """Binary foreground mask (1 = subject) from border color distances."""
    options = options or BorderColorOptions()
    h, w = validate_pixels(pixels)
    rgb = to_rgb(pixels)

    background = detect_border_colors(
        pixels, sample_count=options.border_sample_count, k=options.border_clusters
    )
    edges = compute_edge_map(pixels)
    subject = _subject_colors(pixels, background, options)

    bg_distance = distances_to_colors(rgb, background).min(axis=-1)
    near_background = bg_distance < options.color_threshold
    flat = edges < options.edge_threshold
    if subject.shape[0] > 0:
        near_subject = distances_to_colors(rgb, subject).min(axis=-1) < options.foreground_color_threshold
    else:
        near_subject = np.zeros((h, w), dtype=bool)

    is_background = near_background & flat & ~near_subject
    mask = np.where(is_background, 0.0, 1.0).astype(np.float32)
    logger.debug(
        "border_color: %d background colors, %d subject colors, background=%.2f%%",
        background.shape[0],
        subject.shape[0],
        100.0 * float(is_background.mean()),
    )
    return mask
