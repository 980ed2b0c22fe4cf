"""
Mask refinement engine shared by every mask builder.

Each stage takes a full-size float32 mask and returns a new one; values are
clamped to [0, 1] after every stage. Neighborhood stages state their
border convention explicitly through `border_mode`:

 - "clip": the window is cut to the image, only in-bounds pixels count,
 - "keep": pixels closer than the radius to the border retain their input value,
 - "zero": pixels closer than the radius to the border are left at 0.

A `RefinementPlan` is an ordered list of named stages plus the alpha
remapping parameters the compositor applies afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from . import config
from .cancellation import CancellationToken
from .errors import InvalidImageError
from .features import MAX_RGB_DISTANCE, gaussian_kernel, keep_border, luminance
from .options import BORDER_MODES, ExternalMaskOptions, ProcessingOptions
from .preprocessing import validate_mask

logger = logging.getLogger(__name__)

OPAQUE_THRESHOLD = 0.95
# High quality keeps the m ** 0.8 feather up to here.
HIGH_QUALITY_OPAQUE_THRESHOLD = 0.98


def clamp(mask: np.ndarray) -> np.ndarray:
    """Clamp to [0, 1] as float32, mapping NaN to 0."""
    out = np.nan_to_num(np.asarray(mask, dtype=np.float32), nan=0.0, posinf=1.0, neginf=0.0)
    return np.clip(out, 0.0, 1.0)


def _check_border_mode(border_mode: str) -> None:
    if border_mode not in BORDER_MODES:
        raise ValueError(f"border_mode must be one of {'|'.join(BORDER_MODES)}")


def _apply_border(out: np.ndarray, src: np.ndarray, radius: int, border_mode: str) -> np.ndarray:
    if border_mode == "keep":
        return keep_border(out, src, radius)
    if border_mode == "zero":
        return keep_border(out, np.zeros_like(src), radius)
    return out


def binarize(mask: np.ndarray, threshold: float) -> np.ndarray:
    """1 where mask > threshold, else 0."""
    return (mask > threshold).astype(np.float32)


def _square_kernel(radius: int) -> np.ndarray:
    return np.ones((2 * radius + 1, 2 * radius + 1), dtype=np.uint8)


def erode(mask: np.ndarray, radius: int, border_mode: str = "clip") -> np.ndarray:
    """Minimum over the (2r+1)^2 window."""
    _check_border_mode(border_mode)
    mask = clamp(mask)
    if radius <= 0:
        return mask.copy()
    # The default constant border of cv2.erode never wins the minimum, which is
    # the same as cutting the window to the image.
    out = cv2.erode(mask, _square_kernel(radius))
    return _apply_border(out, mask, radius, border_mode)


def dilate(mask: np.ndarray, radius: int, border_mode: str = "clip") -> np.ndarray:
    """Maximum over the (2r+1)^2 window."""
    _check_border_mode(border_mode)
    mask = clamp(mask)
    if radius <= 0:
        return mask.copy()
    out = cv2.dilate(mask, _square_kernel(radius))
    return _apply_border(out, mask, radius, border_mode)


def open_mask(mask: np.ndarray, radius: int, border_mode: str = "clip") -> np.ndarray:
    """Erode then dilate: removes foreground specks smaller than the window."""
    return dilate(erode(mask, radius, border_mode), radius, border_mode)


def close_mask(mask: np.ndarray, radius: int, border_mode: str = "clip") -> np.ndarray:
    """Dilate then erode: fills background holes smaller than the window."""
    return erode(dilate(mask, radius, border_mode), radius, border_mode)


def median_filter(mask: np.ndarray, passes: int = 1, border_mode: str = "keep") -> np.ndarray:
    """
    3x3 median, applied `passes` times.

    On binary masks this is a majority vote. With "clip" the frame pixels
    use replicated edge values.
    """
    _check_border_mode(border_mode)
    out = clamp(mask)
    for _ in range(max(passes, 0)):
        src = out
        out = cv2.medianBlur(src, 3)
        out = _apply_border(out, src, 1, border_mode)
    return out


def gaussian_smooth(mask: np.ndarray, radius: int, border_mode: str = "keep") -> np.ndarray:
    """
    Convolve with the normalized (2r+1)^2 Gaussian (sigma = r / 3).

    "clip" renormalizes the weights that fall inside the image so every
    pixel is smoothed.
    """
    _check_border_mode(border_mode)
    mask = clamp(mask)
    if radius <= 0:
        return mask.copy()
    kernel = gaussian_kernel(radius)
    if border_mode == "clip":
        weighted = cv2.filter2D(mask, cv2.CV_32F, kernel, borderType=cv2.BORDER_CONSTANT)
        weights = cv2.filter2D(
            np.ones_like(mask), cv2.CV_32F, kernel, borderType=cv2.BORDER_CONSTANT
        )
        return np.where(weights > 0, weighted / np.maximum(weights, 1e-12), mask).astype(np.float32)
    out = cv2.filter2D(mask, cv2.CV_32F, kernel, borderType=cv2.BORDER_REPLICATE)
    return _apply_border(out, mask, radius, border_mode)


def box_smooth(mask: np.ndarray) -> np.ndarray:
    """3x3 mean; the 1-pixel frame keeps its value."""
    mask = clamp(mask)
    out = cv2.blur(mask, (3, 3))
    return keep_border(out, mask, 1)


def remap_alpha(
    mask: np.ndarray,
    quality_mode: str = "balanced",
    decisive: bool = False,
    foreground_threshold: float = 0.1,
    opaque_threshold: float = OPAQUE_THRESHOLD,
) -> np.ndarray:
    """
    Map mask values to alpha factors.

    Below `foreground_threshold` is fully transparent, at or above
    `opaque_threshold` is opaque. In between:
     - decisive: (m / 0.3) ** 2.2 under the 0.3 knee, then a 1.08 slope toward 1,
     - high quality: m ** 0.8 for a softer feather,
     - otherwise linear.
    """
    m = clamp(mask)
    if decisive:
        knee = 0.3
        low = np.power(m / knee, 2.2)
        high = np.minimum(1.0, knee + (m - knee) * 1.08)
        mid = np.where(m < knee, low, high)
    elif quality_mode == "high":
        mid = np.power(m, 0.8)
    else:
        mid = m
    out = np.where(m >= opaque_threshold, 1.0, mid)
    out = np.where(m < foreground_threshold, 0.0, out)
    return clamp(out)


def decisive_sharpen(mask: np.ndarray, mask_threshold: float) -> np.ndarray:
    """
    Push uncertain values toward a clean cut.

    Values under max(0.15, 0.6 * threshold) drop to 0, values above 0.8 rise
    to 1 and the rest follow a 1.8 power curve. Interior pixels still in
    (0.1, 0.9) then move 0.3 toward background or 0.2 toward foreground,
    whichever side dominates their 8-neighborhood.
    """
    m = clamp(mask)
    low = max(0.15, mask_threshold * 0.6)
    span = max(0.8 - low, 1e-6)
    normalized = np.clip((m - low) / span, 0.0, 1.0)
    processed = np.where(m < low, 0.0, np.where(m > 0.8, 1.0, np.power(normalized, 1.8)))
    processed = processed.astype(np.float32)

    h, w = processed.shape
    if h < 3 or w < 3:
        return processed
    ring = np.ones((3, 3), dtype=np.float32)
    ring[1, 1] = 0.0
    bg_count = cv2.filter2D(
        (processed < 0.2).astype(np.float32), cv2.CV_32F, ring, borderType=cv2.BORDER_CONSTANT
    )
    fg_count = cv2.filter2D(
        (processed > 0.8).astype(np.float32), cv2.CV_32F, ring, borderType=cv2.BORDER_CONSTANT
    )
    uncertain = (processed > 0.1) & (processed < 0.9)
    refined = processed.copy()
    toward_bg = uncertain & (bg_count > fg_count)
    toward_fg = uncertain & (fg_count > bg_count)
    refined[toward_bg] = np.maximum(0.0, processed[toward_bg] - 0.3)
    refined[toward_fg] = np.minimum(1.0, processed[toward_fg] + 0.2)
    return keep_border(refined, processed, 1)


def protect_fine_detail(
    mask: np.ndarray,
    pixels: np.ndarray,
    region_fraction: float = 0.4,
    brightness_threshold: float = 80.0,
    min_value: float = 0.3,
    neighbor_value: float = 0.7,
    min_neighbors: int = 8,
    floor: float = 0.8,
) -> np.ndarray:
    """
    Keep dark, low-contrast detail such as hair from being erased.

    Inside the top `region_fraction` of the image, a dark pixel whose mask is
    already above `min_value` is raised to at least `floor` when its 5x5
    window holds `min_neighbors` or more confident foreground pixels.
    """
    m = clamp(mask)
    validate_mask(m, pixels.shape[:2])
    h = m.shape[0]
    rows = int(h * region_fraction)
    if rows <= 0:
        return m
    confident = (m > neighbor_value).astype(np.float32)
    counts = cv2.filter2D(
        confident, cv2.CV_32F, np.ones((5, 5), dtype=np.float32), borderType=cv2.BORDER_CONSTANT
    )
    dark = luminance(pixels) < brightness_threshold
    candidate = dark & (m > min_value) & (counts >= min_neighbors - 0.5)
    candidate[rows:] = False
    out = m.copy()
    out[candidate] = np.maximum(out[candidate], floor)
    logger.debug("fine-detail protection raised %d pixels", int(candidate.sum()))
    return out


def refine_edges_by_color(
    mask: np.ndarray,
    pixels: np.ndarray,
    radius: int = 2,
    step: float = 0.2,
    similarity: float = 0.7,
) -> np.ndarray:
    """
    Nudge uncertain pixels (0.2 < m < 0.8) toward the side they resemble.

    Within the radius window, count confident foreground (> 0.7) and
    background (< 0.3) neighbors and how many of each have a color
    similarity above `similarity`. The pixel moves by `step` toward the
    side with the larger similar fraction. Pixels within `radius` of the
    border are left unchanged.
    """
    m = clamp(mask)
    validate_mask(m, pixels.shape[:2])
    h, w = m.shape
    if radius <= 0 or h <= 2 * radius or w <= 2 * radius:
        return m

    rgb = pixels[..., :3].astype(np.float32)
    inner = (slice(radius, h - radius), slice(radius, w - radius))
    center_rgb = rgb[inner]
    total_fg = np.zeros(center_rgb.shape[:2], dtype=np.float32)
    total_bg = np.zeros_like(total_fg)
    similar_fg = np.zeros_like(total_fg)
    similar_bg = np.zeros_like(total_fg)
    max_distance = (1.0 - similarity) * MAX_RGB_DISTANCE

    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            if dy == 0 and dx == 0:
                continue
            window = (slice(radius + dy, h - radius + dy), slice(radius + dx, w - radius + dx))
            neighbor_mask = m[window]
            diff = rgb[window] - center_rgb
            close = np.sqrt((diff * diff).sum(axis=-1)) < max_distance
            fg = neighbor_mask > 0.7
            bg = neighbor_mask < 0.3
            total_fg += fg
            total_bg += bg
            similar_fg += fg & close
            similar_bg += bg & close

    center = m[inner]
    uncertain = (center > 0.2) & (center < 0.8) & (total_fg > 0) & (total_bg > 0)
    fg_ratio = similar_fg / np.maximum(total_fg, 1.0)
    bg_ratio = similar_bg / np.maximum(total_bg, 1.0)
    updated = center.copy()
    raise_px = uncertain & (fg_ratio > bg_ratio)
    lower_px = uncertain & (bg_ratio > fg_ratio)
    updated[raise_px] = np.minimum(1.0, center[raise_px] + step)
    updated[lower_px] = np.maximum(0.0, center[lower_px] - step)

    out = m.copy()
    out[inner] = updated
    return out


def fuse_masks(
    primary: np.ndarray,
    secondary: np.ndarray,
    primary_weight: float = 0.7,
    secondary_weight: float = 0.3,
    disagreement: float = 0.5,
) -> np.ndarray:
    """Weighted blend; where the masks disagree by more than `disagreement`, average them."""
    a = clamp(primary)
    b = clamp(secondary)
    validate_mask(b, a.shape)
    fused = a * primary_weight + b * secondary_weight
    fused = np.where(np.abs(a - b) > disagreement, 0.5 * a + 0.5 * b, fused)
    return clamp(fused)


def keep_largest_component(mask: np.ndarray, threshold: float = 0.05) -> np.ndarray:
    """Zero out all but the largest 8-connected component above threshold."""
    m = clamp(mask)
    binary = (m > threshold).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)
    if num_labels <= 2:
        return m
    largest_label = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
    logger.debug("largest component %d of %d kept", largest_label, num_labels - 1)
    return np.where(labels == largest_label, m, 0.0).astype(np.float32)


def portrait_enhance(mask: np.ndarray, max_smooth_pixels: int = 1_000_000) -> np.ndarray:
    """Light erode/dilate cleanup, plus box smoothing on images that are not too large."""
    out = erode(mask, 1, "clip")
    out = dilate(out, 2, "clip")
    if out.size > max_smooth_pixels:
        return out
    return box_smooth(out)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

StageFn = Callable[..., np.ndarray]

STAGES: Dict[str, StageFn] = {
    "binarize": binarize,
    "erode": erode,
    "dilate": dilate,
    "open": open_mask,
    "close": close_mask,
    "median": median_filter,
    "gaussian": gaussian_smooth,
    "box": box_smooth,
    "decisive": decisive_sharpen,
    "protect_detail": protect_fine_detail,
    "edge_color": refine_edges_by_color,
    "largest_component": keep_largest_component,
    "portrait": portrait_enhance,
}

# Stages whose function takes the Pixel Buffer as second argument.
PIXEL_STAGES = frozenset({"protect_detail", "edge_color"})


@dataclass(frozen=True)
class RefinementStep:
    name: str
    params: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.name not in STAGES:
            raise ValueError(f"unknown refinement stage '{self.name}'")


@dataclass(frozen=True)
class RefinementPlan:
    steps: Tuple[RefinementStep, ...] = ()
    quality_mode: str = "balanced"
    decisive: bool = False
    foreground_threshold: float = 0.1
    opaque_threshold: float = OPAQUE_THRESHOLD

    def names(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self.steps)


def apply_plan(
    mask: np.ndarray,
    plan: RefinementPlan,
    pixels: Optional[np.ndarray] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> np.ndarray:
    """Run every stage of `plan` in order, clamping after each one."""
    if pixels is not None:
        validate_mask(mask, pixels.shape[:2])
    out = clamp(mask)
    shape = out.shape
    for step in plan.steps:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(f"refinement:{step.name}")
        fn = STAGES[step.name]
        if step.name in PIXEL_STAGES:
            if pixels is None:
                raise InvalidImageError(f"stage '{step.name}' needs the pixel buffer")
            out = fn(out, pixels, **step.params)
        else:
            out = fn(out, **step.params)
        out = clamp(out)
        if out.shape != shape:
            raise InvalidImageError(f"stage '{step.name}' changed mask shape to {out.shape}")
        logger.debug("refine %s%s: mean=%.4f", step.name, step.params or "", float(out.mean()))
    return out


def _opaque_threshold(quality_mode: str, default: float) -> float:
    return HIGH_QUALITY_OPAQUE_THRESHOLD if quality_mode == "high" else default


def _heuristic_plan(
    options: ProcessingOptions,
    noise_passes: int,
    open_radius: int,
    close_radius: int,
    smooth_radius: int,
    foreground_threshold: float,
    opaque_threshold: float = OPAQUE_THRESHOLD,
) -> RefinementPlan:
    border_mode = options.border_mode or "keep"
    passes = options.noise_reduction_passes if options.noise_reduction_passes is not None else noise_passes
    radius = options.edge_smooth_radius if options.edge_smooth_radius is not None else smooth_radius

    steps = []
    if passes > 0:
        steps.append(RefinementStep("median", {"passes": passes, "border_mode": border_mode}))
    if open_radius > 0:
        steps.append(RefinementStep("open", {"radius": open_radius, "border_mode": border_mode}))
    if close_radius > 0:
        steps.append(RefinementStep("close", {"radius": close_radius, "border_mode": border_mode}))
    if options.hair_preservation:
        steps.append(RefinementStep("protect_detail"))
    if options.keep_largest_component:
        steps.append(RefinementStep("largest_component"))
    if radius > 0:
        steps.append(RefinementStep("gaussian", {"radius": radius, "border_mode": border_mode}))

    threshold = options.foreground_threshold
    return RefinementPlan(
        steps=tuple(steps),
        quality_mode=options.quality_mode,
        decisive=options.decisive,
        foreground_threshold=foreground_threshold if threshold is None else threshold,
        opaque_threshold=_opaque_threshold(options.quality_mode, opaque_threshold),
    )


def _external_plan(
    options: ExternalMaskOptions, pixel_count: int, settings: config.Settings
) -> RefinementPlan:
    border_mode = options.border_mode or "clip"
    quality = options.quality_mode
    radius = options.edge_smooth_radius if options.edge_smooth_radius is not None else 2

    steps = []
    if options.hair_preservation:
        steps.append(RefinementStep("protect_detail"))
    if options.enable_enhancement and quality != "fast":
        edge_radius = 3 if quality == "high" else 2
        steps.append(RefinementStep("edge_color", {"radius": edge_radius}))
    steps.append(RefinementStep("binarize", {"threshold": options.mask_threshold}))
    steps.append(RefinementStep("open", {"radius": 2, "border_mode": border_mode}))
    steps.append(RefinementStep("close", {"radius": 3, "border_mode": border_mode}))
    if options.decisive:
        steps.append(RefinementStep("decisive", {"mask_threshold": options.mask_threshold}))
    if options.enable_enhancement:
        steps.append(RefinementStep("portrait"))
        if quality == "high" and pixel_count < settings.large_image_pixels:
            steps.append(
                RefinementStep("gaussian", {"radius": min(radius + 1, 3), "border_mode": border_mode})
            )
    if options.noise_reduction_passes:
        steps.append(
            RefinementStep("median", {"passes": options.noise_reduction_passes, "border_mode": "keep"})
        )
    if options.keep_largest_component:
        steps.append(RefinementStep("largest_component"))
    if radius > 0:
        steps.append(RefinementStep("gaussian", {"radius": radius, "border_mode": border_mode}))

    threshold = options.foreground_threshold
    return RefinementPlan(
        steps=tuple(steps),
        quality_mode=quality,
        decisive=options.decisive,
        foreground_threshold=0.55 if threshold is None else threshold,
        opaque_threshold=_opaque_threshold(quality, OPAQUE_THRESHOLD),
    )


def plan_for_strategy(
    strategy: str,
    options: ProcessingOptions,
    pixel_count: int,
    settings: Optional[config.Settings] = None,
) -> RefinementPlan:
    """Default refinement plan for the builder that produced the mask."""
    settings = settings or config.get_settings()
    if strategy == "learned":
        if not isinstance(options, ExternalMaskOptions):
            options = ExternalMaskOptions()
        return _external_plan(options, pixel_count, settings)
    if strategy == "flood_fill":
        # Flood-filled masks are clean binary regions; refinement would only erode corners.
        return _heuristic_plan(options, 0, 0, 0, 0, foreground_threshold=0.5)
    if strategy == "border_color":
        return _heuristic_plan(options, 3, 1, 1, 1, foreground_threshold=0.1)
    if strategy == "region_growing":
        return _heuristic_plan(options, 2, 2, 3, 3, foreground_threshold=0.1, opaque_threshold=0.9)
    if strategy == "center_prior":
        return _heuristic_plan(options, 0, 0, 1, 0, foreground_threshold=0.5)
    raise ValueError(f"no refinement plan for strategy '{strategy}'")
