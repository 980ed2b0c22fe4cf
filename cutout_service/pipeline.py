"""
High-level cutout pipeline.

`run_pipeline` is the main entry point used by the HTTP API, the batch helper
and the local CLI. Orchestration stays linear:
pixels in -> mask builder -> refinement plan -> compositor -> RGBA out.

The learned path (external segmenter) is the only long-latency step; it runs
under a timeout and falls back once to the automatic heuristic selection when
it fails in a recoverable way. Cancellation is checked between stages.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from . import config
from .border_color import build_border_color_mask
from .cancellation import CancellationToken
from .center_prior import build_center_prior_mask
from .compositor import composite, encode_png, maybe_dump_debug
from .errors import RECOVERABLE_ERRORS, SegmentationTimeoutError, SegmenterUnavailableError
from .external_mask import adapt_detections
from .flood_fill import build_flood_fill_mask
from .options import (
    BorderColorOptions,
    ExternalMaskOptions,
    FloodFillOptions,
    ProcessingOptions,
    coerce_options,
)
from .preprocessing import decode_image_bytes, validate_mask, validate_pixels
from .refinement import RefinementPlan, apply_plan, fuse_masks, plan_for_strategy
from .region_growing import build_region_growing_mask
from .segmenter import ExternalSegmenter
from .selector import select_strategy

logger = logging.getLogger(__name__)

HEURISTIC_BUILDERS: Dict[str, Callable[..., np.ndarray]] = {
    "flood_fill": build_flood_fill_mask,
    "border_color": build_border_color_mask,
    "region_growing": build_region_growing_mask,
    "center_prior": build_center_prior_mask,
}


@dataclass
class CutoutResult:
    pixels: np.ndarray
    mask: np.ndarray
    strategy: str
    degraded: bool = False
    notice: Optional[str] = None

    def to_png_bytes(self) -> bytes:
        return encode_png(self.pixels)


def _check(cancel_token: Optional[CancellationToken], stage: str) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled(stage)


def resolve_strategy(
    strategy: Optional[str], pixels: np.ndarray, settings: Optional[config.Settings] = None
) -> str:
    """Validate `strategy` and replace `auto` with the selector's choice."""
    settings = settings or config.get_settings()
    strategy = strategy or settings.default_strategy
    if strategy not in config.STRATEGIES:
        raise ValueError(f"strategy must be one of {'|'.join(config.STRATEGIES)}")
    if strategy == "auto":
        return select_strategy(pixels, settings)
    return strategy


def options_for_selected(
    strategy: str, options: Optional[ProcessingOptions], settings: config.Settings
) -> ProcessingOptions:
    """
    Options for a builder chosen by the selector.

    Flood fill picked automatically uses the selector's own tolerance unless
    the caller passed explicit `FloodFillOptions`.
    """
    coerced = coerce_options(strategy, options)
    if strategy == "flood_fill" and not isinstance(options, FloodFillOptions):
        coerced = replace(coerced, tolerance=settings.selector_flood_tolerance)
    return coerced


def build_mask(
    strategy: str,
    pixels: np.ndarray,
    options: Optional[ProcessingOptions] = None,
    settings: Optional[config.Settings] = None,
) -> np.ndarray:
    """Raw mask from a heuristic builder (`auto` resolves through the selector)."""
    settings = settings or config.get_settings()
    requested = strategy or settings.default_strategy
    strategy = resolve_strategy(requested, pixels, settings)
    if requested == "auto":
        options = options_for_selected(strategy, options, settings)
    builder = HEURISTIC_BUILDERS.get(strategy)
    if builder is None:
        raise ValueError(f"'{strategy}' is not a heuristic builder; use build_learned_mask")
    mask = builder(pixels, coerce_options(strategy, options))
    validate_mask(mask, pixels.shape[:2])
    return mask


def refine_for_strategy(
    strategy: str,
    mask: np.ndarray,
    pixels: np.ndarray,
    options: Optional[ProcessingOptions] = None,
    settings: Optional[config.Settings] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> Tuple[np.ndarray, RefinementPlan]:
    """Apply the default refinement plan of `strategy`; returns (mask, plan)."""
    options = coerce_options(strategy, options)
    plan = plan_for_strategy(strategy, options, mask.size, settings)
    logger.debug("refinement plan for %s: %s", strategy, ", ".join(plan.names()) or "(none)")
    return apply_plan(mask, plan, pixels=pixels, cancel_token=cancel_token), plan


async def build_learned_mask(
    pixels: np.ndarray,
    segmenter: Optional[ExternalSegmenter],
    options: Optional[ExternalMaskOptions] = None,
    settings: Optional[config.Settings] = None,
) -> np.ndarray:
    """
    Normalized mask from the external segmenter.

    Raises:
        SegmenterUnavailableError: no ready segmenter was supplied.
        SegmentationTimeoutError: the segmenter exceeded the configured timeout.
        MaskDecodeError / NoSubjectDetectedError: unusable segmenter output.
    """
    settings = settings or config.get_settings()
    options = options or ExternalMaskOptions()
    h, w = validate_pixels(pixels)
    if segmenter is None or not segmenter.is_ready:
        raise SegmenterUnavailableError("no initialized external segmenter")

    timeout = settings.segmenter_timeout_seconds
    try:
        detections = await asyncio.wait_for(segmenter.segment(pixels), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise SegmentationTimeoutError(f"segmenter did not answer within {timeout:.1f}s") from exc

    mask = adapt_detections(
        detections,
        w,
        h,
        invert_mean=settings.mask_inversion_mean,
        invert_sample_size=settings.mask_inversion_sample_size,
    )
    if options.fuse_with_heuristic:
        heuristic = build_border_color_mask(pixels, BorderColorOptions())
        mask = fuse_masks(mask, heuristic, options.model_weight, options.heuristic_weight)
    logger.debug("learned mask: mean=%.4f", float(mask.mean()))
    return mask


def _fallback_options(options: Optional[ProcessingOptions]) -> Optional[ProcessingOptions]:
    """Common options worth keeping when the learned path is abandoned."""
    if options is None:
        return None
    return ProcessingOptions(
        quality_mode=options.quality_mode,
        noise_reduction_passes=options.noise_reduction_passes,
        aggressive_mode=options.aggressive_mode,
        hair_preservation=options.hair_preservation,
        keep_largest_component=options.keep_largest_component,
        border_mode=options.border_mode,
    )


async def run_pipeline(
    pixels: np.ndarray,
    strategy: Optional[str] = "auto",
    options: Optional[ProcessingOptions] = None,
    segmenter: Optional[ExternalSegmenter] = None,
    cancel_token: Optional[CancellationToken] = None,
    settings: Optional[config.Settings] = None,
) -> CutoutResult:
    """
    Full pipeline from a Pixel Buffer to a composited RGBA buffer.

    Raises:
        InvalidImageError: malformed pixels.
        PipelineCancelledError: `cancel_token` was cancelled between stages.
        SegmentationError: any non-recoverable builder failure.
        ValueError: unknown strategy or invalid options.
    """
    settings = settings or config.get_settings()
    validate_pixels(pixels)
    strategy = strategy or settings.default_strategy
    if strategy not in config.STRATEGIES:
        raise ValueError(f"strategy must be one of {'|'.join(config.STRATEGIES)}")

    degraded = False
    notice: Optional[str] = None
    mask: Optional[np.ndarray] = None

    _check(cancel_token, "builder")
    if strategy == "learned":
        try:
            learned_options = coerce_options("learned", options)
            mask = await build_learned_mask(pixels, segmenter, learned_options, settings)
        except RECOVERABLE_ERRORS as exc:
            logger.warning("learned segmentation failed (%s: %s); falling back", type(exc).__name__, exc)
            degraded = True
            notice = f"Learned segmentation unavailable ({exc}); used a heuristic cutout instead."
            strategy = "auto"
            options = _fallback_options(options)

    if mask is None:
        requested = strategy
        strategy = await asyncio.to_thread(resolve_strategy, strategy, pixels, settings)
        if requested == "auto":
            options = options_for_selected(strategy, options, settings)
        _check(cancel_token, f"builder:{strategy}")
        mask = await asyncio.to_thread(build_mask, strategy, pixels, options, settings)

    _check(cancel_token, "refinement")
    refined, plan = await asyncio.to_thread(
        refine_for_strategy, strategy, mask, pixels, options, settings, cancel_token
    )

    _check(cancel_token, "composite")
    out = await asyncio.to_thread(composite, pixels, refined, plan)
    if settings.debug:
        await asyncio.to_thread(maybe_dump_debug, pixels, refined, Path(settings.debug_output_dir))

    logger.info("cutout done: strategy=%s degraded=%s", strategy, degraded)
    return CutoutResult(pixels=out, mask=refined, strategy=strategy, degraded=degraded, notice=notice)


async def process_image_bytes(
    image_bytes: bytes,
    strategy: Optional[str] = "auto",
    options: Optional[ProcessingOptions] = None,
    segmenter: Optional[ExternalSegmenter] = None,
    cancel_token: Optional[CancellationToken] = None,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """Decode -> pipeline -> PNG bytes."""
    pixels = await asyncio.to_thread(decode_image_bytes, image_bytes)
    result = await run_pipeline(pixels, strategy, options, segmenter, cancel_token, settings)
    return await asyncio.to_thread(result.to_png_bytes)
