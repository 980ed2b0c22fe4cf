"""
Processing options for mask builders and the refinement engine.

Each record is immutable for the duration of one call. Fields left as
`None` fall back to the defaults of the builder that consumes them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import QUALITY_MODES

BORDER_MODES = ("keep", "clip", "zero")
SEED_MODES = ("corners", "border")


@dataclass(frozen=True)
class ProcessingOptions:
    quality_mode: str = "balanced"
    edge_smooth_radius: Optional[int] = None
    noise_reduction_passes: Optional[int] = None
    foreground_threshold: Optional[float] = None  # alpha cutoff, 0..1
    aggressive_mode: bool = False
    hair_preservation: bool = False
    keep_largest_component: bool = False
    border_mode: Optional[str] = None  # morphology border convention

    def __post_init__(self) -> None:
        if self.quality_mode not in QUALITY_MODES:
            raise ValueError(f"quality_mode must be one of {'|'.join(QUALITY_MODES)}")
        if self.edge_smooth_radius is not None and self.edge_smooth_radius < 0:
            raise ValueError("edge_smooth_radius must be >= 0")
        if self.noise_reduction_passes is not None and self.noise_reduction_passes < 0:
            raise ValueError("noise_reduction_passes must be >= 0")
        if self.foreground_threshold is not None and not 0.0 <= self.foreground_threshold <= 1.0:
            raise ValueError("foreground_threshold must be within [0, 1]")
        if self.border_mode is not None and self.border_mode not in BORDER_MODES:
            raise ValueError(f"border_mode must be one of {'|'.join(BORDER_MODES)}")

    @property
    def decisive(self) -> bool:
        """True when the sharp, mac-like alpha transition is requested."""
        return self.aggressive_mode or self.quality_mode == "mac_like"


@dataclass(frozen=True)
class BorderColorOptions(ProcessingOptions):
    color_threshold: float = 45.0
    edge_threshold: float = 0.15
    foreground_color_threshold: float = 40.0
    border_sample_count: int = 50
    border_clusters: int = 3

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.color_threshold < 0:
            raise ValueError("color_threshold must be >= 0")
        if self.border_sample_count < 4:
            raise ValueError("border_sample_count must be >= 4")


@dataclass(frozen=True)
class FloodFillOptions(ProcessingOptions):
    tolerance: float = 30.0
    seed_mode: str = "corners"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.tolerance < 0:
            raise ValueError("tolerance must be >= 0")
        if self.seed_mode not in SEED_MODES:
            raise ValueError(f"seed_mode must be one of {'|'.join(SEED_MODES)}")


@dataclass(frozen=True)
class RegionGrowingOptions(ProcessingOptions):
    sensitivity: float = 0.8
    contrast_boost: float = 1.2
    cluster_count: int = 8
    color_distance_limit: float = 50.0
    edge_limit: float = 0.3
    # Empirical background-size factors, kept configurable for calibration.
    min_region_factor: float = 0.1
    secondary_region_base: float = 0.3
    secondary_region_gain: float = 0.4

    def __post_init__(self) -> None:
        super().__post_init__()
        if not 0.0 <= self.sensitivity <= 1.0:
            raise ValueError("sensitivity must be within [0, 1]")
        if self.contrast_boost <= 0:
            raise ValueError("contrast_boost must be > 0")
        if self.cluster_count < 1:
            raise ValueError("cluster_count must be >= 1")


@dataclass(frozen=True)
class CenterPriorOptions(ProcessingOptions):
    foreground_fraction: float = 0.7
    iterations: int = 3

    def __post_init__(self) -> None:
        super().__post_init__()
        if not 0.0 < self.foreground_fraction <= 1.0:
            raise ValueError("foreground_fraction must be within (0, 1]")
        if self.iterations < 0:
            raise ValueError("iterations must be >= 0")


@dataclass(frozen=True)
class ExternalMaskOptions(ProcessingOptions):
    mask_threshold: float = 0.65
    foreground_threshold: Optional[float] = 0.55
    edge_smooth_radius: Optional[int] = 2
    enable_enhancement: bool = False
    fuse_with_heuristic: bool = False
    model_weight: float = 0.7
    heuristic_weight: float = 0.3

    def __post_init__(self) -> None:
        super().__post_init__()
        if not 0.0 <= self.mask_threshold <= 1.0:
            raise ValueError("mask_threshold must be within [0, 1]")
        if self.model_weight < 0 or self.heuristic_weight < 0:
            raise ValueError("fusion weights must be >= 0")

    @classmethod
    def mac_like(cls) -> "ExternalMaskOptions":
        """Decisive cutout: low thresholds, aggressive remap."""
        return cls(
            quality_mode="mac_like",
            mask_threshold=0.25,
            foreground_threshold=0.08,
            edge_smooth_radius=2,
            enable_enhancement=True,
            aggressive_mode=True,
        )

    @classmethod
    def enhanced(cls) -> "ExternalMaskOptions":
        return cls(
            quality_mode="balanced",
            mask_threshold=0.65,
            foreground_threshold=0.55,
            edge_smooth_radius=2,
            enable_enhancement=True,
        )


OPTIONS_BY_STRATEGY = {
    "border_color": BorderColorOptions,
    "flood_fill": FloodFillOptions,
    "region_growing": RegionGrowingOptions,
    "center_prior": CenterPriorOptions,
    "learned": ExternalMaskOptions,
}


def coerce_options(strategy: str, options: Optional[ProcessingOptions]) -> ProcessingOptions:
    """
    Return options of the record type `strategy` expects.

    Common fields of a generic `ProcessingOptions` are carried over so a
    caller can set quality mode or smoothing once and still get the
    builder-specific defaults.
    """
    option_cls = OPTIONS_BY_STRATEGY.get(strategy, ProcessingOptions)
    if options is None:
        return option_cls()
    if isinstance(options, option_cls):
        return options
    common = {
        name: getattr(options, name)
        for name in ProcessingOptions.__dataclass_fields__
        if getattr(options, name) is not None
    }
    return option_cls(**common)
