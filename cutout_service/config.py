"""
Configuration loader for the cutout service.

Environment variables are centralized here to keep the rest of the code
focused on mask construction and to make operational tuning clear. The
empirically tuned constants (mask inversion, strategy selection) live here
so they can be recalibrated against a real corpus without code changes.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QUALITY_MODES = ("fast", "balanced", "high", "mac_like")
STRATEGIES = ("auto", "flood_fill", "border_color", "region_growing", "center_prior", "learned")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # External segmenter + preprocessing
    segmenter_model_path: Optional[Path] = None
    segmenter_max_long_edge: int = 1024
    segmenter_max_long_edge_high_quality: int = 1536
    segmenter_timeout_seconds: float = 30.0

    default_quality_mode: str = "balanced"
    default_strategy: str = "auto"

    # External mask normalization
    mask_inversion_mean: float = 0.7
    mask_inversion_sample_size: int = 1000

    # Strategy selection
    selector_uniform_variance: float = 30.0
    selector_high_contrast: float = 80.0
    selector_sample_count: int = 100
    selector_seed: int = 0
    # Flood-fill tolerance used when the selector picks flood fill
    selector_flood_tolerance: float = 25.0

    # Optional refinement stages are skipped above this many pixels
    large_image_pixels: int = 500_000

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None

    # API
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/cutout_debug")

    @field_validator("default_quality_mode")
    @classmethod
    def validate_quality_mode(cls, v: str) -> str:
        if v not in QUALITY_MODES:
            raise ValueError("DEFAULT_QUALITY_MODE must be one of fast|balanced|high|mac_like")
        return v

    @field_validator("default_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        if v not in STRATEGIES:
            raise ValueError(f"DEFAULT_STRATEGY must be one of {'|'.join(STRATEGIES)}")
        return v

    @field_validator("mask_inversion_mean")
    @classmethod
    def validate_inversion_mean(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("MASK_INVERSION_MEAN must lie strictly between 0 and 1")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def quality_to_long_edge(quality_mode: str, settings: Optional[Settings] = None) -> int:
    """
    Translate a quality string into the segmenter resize target for the longest edge.

    Higher values give finer detail at the cost of speed/memory.
    """
    settings = settings or get_settings()
    if quality_mode in ("high", "mac_like"):
        return settings.segmenter_max_long_edge_high_quality
    return settings.segmenter_max_long_edge
