"""
Region-growing ("universal") mask builder for complex backgrounds.

The image is contrast-enhanced, edges are fused from Sobel and a simplified
Canny, colors are clustered, and regions are grown from every border pixel
toward pixels close to the seed's cluster color and away from strong edges.
The largest border-touching regions are then classified as background.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Set

import cv2
import numpy as np

from .features import (
    compute_fused_edge_map,
    detect_dominant_colors,
    distances_to_colors,
    enhance_contrast,
)
from .flood_fill import iter_seeds
from .options import RegionGrowingOptions
from .preprocessing import to_rgb, validate_pixels

logger = logging.getLogger(__name__)

UNASSIGNED = -1


@dataclass
class RegionStats:
    sizes: Dict[int, int]
    border_regions: List[int]


def grow_regions(
    pixels: np.ndarray,
    clusters: np.ndarray,
    edges: np.ndarray,
    color_limit: float = 50.0,
    edge_limit: float = 0.3,
) -> np.ndarray:
    """
    Region Map (`int32[H, W]`, -1 = unassigned) grown from border seeds.

    A seed takes the cluster nearest to its own color; its region spreads
    through 4-connected, still unassigned pixels closer than `color_limit`
    to that cluster and with edge strength below `edge_limit`.
    """
    h, w = validate_pixels(pixels)
    rgb = to_rgb(pixels)
    regions = np.full((h, w), UNASSIGNED, dtype=np.int32)
    if clusters.shape[0] == 0:
        return regions

    distances = distances_to_colors(rgb, clusters)  # (H, W, k)
    nearest = np.argmin(distances, axis=-1)
    flat = edges < edge_limit
    eligible = [
        ((distances[..., c] < color_limit) & flat).astype(np.uint8) for c in range(clusters.shape[0])
    ]

    # Shared by every fill: assigned pixels (1) block later regions, fresh
    # fills are marked 2 and relabeled inside their bounding rect only.
    assigned = np.zeros((h + 2, w + 2), dtype=np.uint8)
    flags = 4 | cv2.FLOODFILL_MASK_ONLY | (2 << 8)
    region_id = 0
    for y, x in iter_seeds(h, w, "border"):
        if assigned[y + 1, x + 1]:
            continue
        cluster = int(nearest[y, x])
        if not eligible[cluster][y, x]:
            continue
        _, _, _, (rx, ry, rw, rh) = cv2.floodFill(
            eligible[cluster], assigned, (int(x), int(y)), 0, 0, 0, flags
        )
        window = assigned[ry + 1 : ry + rh + 1, rx + 1 : rx + rw + 1]
        fresh = window == 2
        regions[ry : ry + rh, rx : rx + rw][fresh] = region_id
        window[fresh] = 1
        region_id += 1

    logger.debug("region growing: %d border regions", region_id)
    return regions


def region_stats(regions: np.ndarray) -> RegionStats:
    ids, counts = np.unique(regions[regions != UNASSIGNED], return_counts=True)
    sizes = {int(i): int(c) for i, c in zip(ids, counts)}
    frame = np.concatenate([regions[0], regions[-1], regions[:, 0], regions[:, -1]])
    border: List[int] = []
    seen: Set[int] = set()
    for rid in frame.tolist():
        if rid != UNASSIGNED and rid not in seen:
            seen.add(rid)
            border.append(rid)
    return RegionStats(sizes=sizes, border_regions=border)


def classify_background(
    regions: np.ndarray, options: Optional[RegionGrowingOptions] = None
) -> Set[int]:
    """
    Region ids treated as background.

    The largest border region counts only if it exceeds
    `total * min_region_factor * (1 - sensitivity)`. Other border regions join
    it when larger than `largest * (secondary_base + sensitivity * secondary_gain)`.
    No qualifying region means no background.
    """
    options = options or RegionGrowingOptions()
    stats = region_stats(regions)
    total = regions.size
    sensitivity = options.sensitivity
    min_size = total * options.min_region_factor * (1.0 - sensitivity)

    primary = UNASSIGNED
    primary_size = 0
    for rid in stats.border_regions:
        size = stats.sizes.get(rid, 0)
        if size > primary_size and size > min_size:
            primary, primary_size = rid, size
    if primary == UNASSIGNED:
        logger.debug("region growing: no border region above %.1f pixels", min_size)
        return set()

    background = {primary}
    secondary_size = primary_size * (
        options.secondary_region_base + sensitivity * options.secondary_region_gain
    )
    for rid in stats.border_regions:
        if rid != primary and stats.sizes.get(rid, 0) > secondary_size:
            background.add(rid)
    return background


def build_region_growing_mask(
    pixels: np.ndarray, options: Optional[RegionGrowingOptions] = None
) -> np.ndarray:
    """Mask with 0 on background regions and 1 elsewhere."""
    options = options or RegionGrowingOptions()
    validate_pixels(pixels)

    enhanced = enhance_contrast(pixels, options.contrast_boost)
    edges = compute_fused_edge_map(enhanced)
    clusters = detect_dominant_colors(
        enhanced, sample_stride=4, k=options.cluster_count, border_margin=0.0
    )
    regions = grow_regions(
        enhanced,
        clusters,
        edges,
        color_limit=options.color_distance_limit,
        edge_limit=options.edge_limit,
    )
    background = classify_background(regions, options)

    if background:
        is_background = np.isin(regions, np.fromiter(background, dtype=np.int32))
    else:
        is_background = np.zeros(regions.shape, dtype=bool)
    mask = np.where(is_background, 0.0, 1.0).astype(np.float32)
    logger.debug(
        "region_growing: %d clusters, %d background regions, background=%.2f%%",
        clusters.shape[0],
        len(background),
        100.0 * float(is_background.mean()),
    )
    return mask
