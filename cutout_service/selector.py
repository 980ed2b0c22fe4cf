"""
Feature-driven choice between the heuristic mask builders.

Border samples estimate how uniform the background is; the distance between
the mean border color and the mean center color estimates subject/background
separation. A uniform border picks flood fill, high separation picks the
border-color builder, and everything else goes to region growing.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

import numpy as np

from . import config
from .preprocessing import to_rgb, validate_pixels

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageFeatures:
    edge_variance: float
    center_variance: float
    contrast: float


def color_spread(colors: np.ndarray) -> float:
    """Root mean squared distance of `colors` (n, 3) from their mean color."""
    if colors.shape[0] == 0:
        return 0.0
    mean = colors.mean(axis=0)
    return float(np.sqrt(((colors - mean) ** 2).sum(axis=1).mean()))


def sample_border(rgb: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
    """Colors of `count` random pixels on the outermost rows and columns."""
    h, w = rgb.shape[:2]
    sides = rng.integers(0, 4, size=count)
    along_x = rng.integers(0, w, size=count)
    along_y = rng.integers(0, h, size=count)
    ys = np.select([sides == 0, sides == 1], [0, h - 1], default=along_y)
    xs = np.select([sides == 2, sides == 3], [0, w - 1], default=along_x)
    return rgb[ys, xs].astype(np.float32)


def sample_center(rgb: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
    """Colors of `count` random pixels in the central 40% x 40% box."""
    h, w = rgb.shape[:2]
    xs = np.floor(w * 0.3 + rng.random(count) * w * 0.4).astype(np.int64)
    ys = np.floor(h * 0.3 + rng.random(count) * h * 0.4).astype(np.int64)
    return rgb[np.clip(ys, 0, h - 1), np.clip(xs, 0, w - 1)].astype(np.float32)


def analyze_features(
    pixels: np.ndarray, settings: Optional[config.Settings] = None
) -> ImageFeatures:
    settings = settings or config.get_settings()
    validate_pixels(pixels)
    rgb = to_rgb(pixels)
    rng = np.random.default_rng(settings.selector_seed)
    border = sample_border(rgb, settings.selector_sample_count, rng)
    center = sample_center(rgb, settings.selector_sample_count, rng)

    contrast = 0.0
    if border.shape[0] and center.shape[0]:
        contrast = float(np.linalg.norm(border.mean(axis=0) - center.mean(axis=0)))
    return ImageFeatures(
        edge_variance=color_spread(border),
        center_variance=color_spread(center),
        contrast=contrast,
    )


def select_strategy(pixels: np.ndarray, settings: Optional[config.Settings] = None) -> str:
    """Name of the heuristic builder best suited to `pixels`."""
    settings = settings or config.get_settings()
    features = analyze_features(pixels, settings)
    if features.edge_variance < settings.selector_uniform_variance:
        strategy = "flood_fill"
    elif features.contrast > settings.selector_high_contrast:
        strategy = "border_color"
    else:
        strategy = "region_growing"
    logger.info(
        "selected %s (edge_variance=%.1f, contrast=%.1f)",
        strategy,
        features.edge_variance,
        features.contrast,
    )
    return strategy
