"""
Color and edge feature extractors.

Pure functions over a Pixel Buffer (`uint8[H, W, 4]`). They never mutate
their input and are deterministic: k-means is seeded from the first `k`
distinct samples instead of random centroids.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import cv2
import numpy as np

from .preprocessing import validate_pixels

logger = logging.getLogger(__name__)

# Largest possible RGB distance, sqrt(3 * 255^2) rounded as in the similarity scale.
MAX_RGB_DISTANCE = 442.0


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Unweighted grayscale (r + g + b) / 3 as float32."""
    rgb = pixels[..., :3].astype(np.float32)
    return rgb.sum(axis=2) / 3.0


def keep_border(out: np.ndarray, src: np.ndarray, radius: int) -> np.ndarray:
    """Copy the `radius`-thick frame of `src` into `out` (in place)."""
    if radius <= 0:
        return out
    h, w = out.shape[:2]
    r_y = min(radius, h)
    r_x = min(radius, w)
    out[:r_y] = src[:r_y]
    out[h - r_y :] = src[h - r_y :]
    out[:, :r_x] = src[:, :r_x]
    out[:, w - r_x :] = src[:, w - r_x :]
    return out


def gaussian_kernel(radius: int) -> np.ndarray:
    """Normalized (2r+1)^2 Gaussian kernel with sigma = r / 3."""
    if radius <= 0:
        return np.ones((1, 1), dtype=np.float32)
    sigma = radius / 3.0
    coords = np.arange(-radius, radius + 1, dtype=np.float64)
    yy, xx = np.meshgrid(coords, coords, indexing="ij")
    kernel = np.exp(-(xx * xx + yy * yy) / (2.0 * sigma * sigma))
    kernel /= kernel.sum()
    return kernel.astype(np.float32)


def compute_edge_map(pixels: np.ndarray) -> np.ndarray:
    """
    Sobel gradient magnitude of the luminance, divided by 255 and clamped to [0, 1].

    The 1-pixel frame has no full 3x3 neighborhood and is left at 0.
    """
    h, w = validate_pixels(pixels)
    edges = np.zeros((h, w), dtype=np.float32)
    if h < 3 or w < 3:
        return edges
    gray = luminance(pixels)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = np.sqrt(gx * gx + gy * gy) / 255.0
    edges[1:-1, 1:-1] = magnitude[1:-1, 1:-1]
    return np.clip(edges, 0.0, 1.0)


def compute_gradient_edge_map(pixels: np.ndarray) -> np.ndarray:
    """
    Simplified Canny: forward-difference gradient of a radius-1 Gaussian blur.

    No non-maximum suppression or hysteresis; only the blurred gradient
    magnitude, scaled like `compute_edge_map`.
    """
    h, w = validate_pixels(pixels)
    edges = np.zeros((h, w), dtype=np.float32)
    if h < 3 or w < 3:
        return edges
    gray = luminance(pixels)
    blurred = cv2.filter2D(gray, cv2.CV_32F, gaussian_kernel(1), borderType=cv2.BORDER_REPLICATE)
    keep_border(blurred, gray, 1)

    center = blurred[1:-1, 1:-1]
    dx = blurred[1:-1, 2:] - center
    dy = blurred[2:, 1:-1] - center
    edges[1:-1, 1:-1] = np.sqrt(dx * dx + dy * dy) / 255.0
    return np.clip(edges, 0.0, 1.0)


def compute_fused_edge_map(pixels: np.ndarray, gradient_weight: float = 0.8) -> np.ndarray:
    """max(Sobel, weight * simplified Canny)."""
    sobel = compute_edge_map(pixels)
    gradient = compute_gradient_edge_map(pixels)
    return np.maximum(sobel, gradient * np.float32(gradient_weight))


def enhance_contrast(pixels: np.ndarray, factor: float) -> np.ndarray:
    """Stretch HSL lightness around 0.5 by `factor`; alpha is preserved."""
    validate_pixels(pixels)
    rgb = pixels[..., :3].astype(np.float32) / 255.0
    hls = cv2.cvtColor(rgb, cv2.COLOR_RGB2HLS)
    hls[..., 1] = np.clip((hls[..., 1] - 0.5) * factor + 0.5, 0.0, 1.0)
    out_rgb = cv2.cvtColor(hls, cv2.COLOR_HLS2RGB)
    out = pixels.copy()
    out[..., :3] = np.clip(np.floor(out_rgb * 255.0 + 0.5), 0, 255).astype(np.uint8)
    return out


def color_distance_map(rgb: np.ndarray, color) -> np.ndarray:
    """Per-pixel Euclidean RGB distance to a single color."""
    diff = rgb.astype(np.float32) - np.asarray(color, dtype=np.float32)
    return np.sqrt((diff * diff).sum(axis=-1))


def distances_to_colors(rgb: np.ndarray, colors: np.ndarray) -> np.ndarray:
    """Distances of every pixel to every color; shape (..., k)."""
    diff = rgb.astype(np.float32)[..., None, :] - np.asarray(colors, dtype=np.float32)
    return np.sqrt((diff * diff).sum(axis=-1))


def _distinct_in_order(samples: np.ndarray) -> np.ndarray:
    _, first_idx = np.unique(samples, axis=0, return_index=True)
    return samples[np.sort(first_idx)]


def kmeans_colors(samples: np.ndarray, k: int, iterations: int = 10) -> np.ndarray:
    """
    Cluster RGB samples into at most `k` colors.

    Centroids start at the first `k` distinct samples. A centroid that loses
    all its members keeps its previous position. Returns float32 (k', 3)
    with integer-valued centroids.
    """
    samples = np.asarray(samples, dtype=np.float32).reshape(-1, 3)
    if samples.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.float32)
    distinct = _distinct_in_order(samples)
    if distinct.shape[0] <= k:
        return distinct.copy()

    centroids = distinct[:k].copy()
    for _ in range(iterations):
        assignments = np.argmin(distances_to_colors(samples, centroids), axis=1)
        updated = centroids.copy()
        for i in range(k):
            members = samples[assignments == i]
            if members.shape[0] > 0:
                updated[i] = np.floor(members.mean(axis=0) + 0.5)
        if np.array_equal(updated, centroids):
            break
        centroids = updated
    return centroids


def _border_points(h: int, w: int, sample_count: int) -> List[Tuple[int, int]]:
    """Corners first, then evenly spaced points interleaved over the four edges."""
    points = [(0, 0), (0, w - 1), (h - 1, 0), (h - 1, w - 1)]
    remaining = max(sample_count - len(points), 0)
    per_side = [remaining // 4 + (1 if s < remaining % 4 else 0) for s in range(4)]
    for j in range(max(per_side)):
        for side in range(4):
            n = per_side[side]
            if j >= n:
                continue
            t = (j + 1) / (n + 1)
            if side == 0:
                points.append((0, int(t * (w - 1))))
            elif side == 1:
                points.append((int(t * (h - 1)), w - 1))
            elif side == 2:
                points.append((h - 1, int(t * (w - 1))))
            else:
                points.append((int(t * (h - 1)), 0))
    return points[:sample_count]


def quantize_colors(colors: np.ndarray, bucket: int) -> np.ndarray:
    """Snap colors to the center of their `bucket`-wide cell."""
    if bucket <= 1:
        return colors.astype(np.float32)
    q = np.floor(colors.astype(np.float32) / bucket) * bucket + bucket // 2
    return np.clip(q, 0, 255)


def detect_border_colors(
    pixels: np.ndarray,
    sample_count: int = 50,
    k: int = 3,
    iterations: int = 5,
    bucket: int = 8,
) -> np.ndarray:
    """Background color candidates from border samples, as a cluster set."""
    h, w = validate_pixels(pixels)
    points = _border_points(h, w, sample_count)
    ys = np.array([p[0] for p in points])
    xs = np.array([p[1] for p in points])
    samples = quantize_colors(pixels[ys, xs, :3], bucket)
    clusters = kmeans_colors(samples, k, iterations)
    logger.debug("border colors: %d samples -> %s", len(points), clusters.tolist())
    return clusters


def detect_dominant_colors(
    pixels: np.ndarray,
    sample_stride: int = 4,
    k: int = 5,
    border_margin: float = 0.1,
    iterations: int = 10,
) -> np.ndarray:
    """
    Subject-relevant colors from a strided sample of the whole image.

    `border_margin` (fraction of min(w, h)) excludes a frame around the
    image to bias the clusters toward foreground colors; 0 samples everything.
    """
    h, w = validate_pixels(pixels)
    margin = int(min(w, h) * border_margin)
    region = pixels
    if margin > 0 and h > 2 * margin and w > 2 * margin:
        region = pixels[margin : h - margin, margin : w - margin]
    flat = region[..., :3].reshape(-1, 3)
    samples = flat[:: max(sample_stride, 1)]
    return kmeans_colors(samples, k, iterations)
