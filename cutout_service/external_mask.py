"""
Normalization of external segmenter output into the [0, 1] mask contract.

Segmenters hand back masks in several native shapes. Instead of probing
objects at runtime, every detection is one of three tagged variants:

 - `FlatFloatArray`: numeric per-pixel probabilities, optionally with their
   own width/height when produced at a lower resolution,
 - `EncodedBitmap`: an encoded image (PNG, WebP, ...) carrying the mask in
   one of its channels,
 - `ChannelGuessRequired`: already decoded samples (`uint8[H, W, C]`) whose
   data-bearing channel is unknown.

After extraction the mask is inverted when a sample of its values averages
above the inversion threshold, on the assumption that it encodes background
rather than foreground confidence.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import MaskDecodeError, NoSubjectDetectedError

logger = logging.getLogger(__name__)

DEFAULT_INVERSION_MEAN = 0.7
DEFAULT_INVERSION_SAMPLE = 1000

# Alpha first, then red, then green.
CHANNEL_PROBE_ORDER = (3, 0, 1)


@dataclass(frozen=True)
class FlatFloatArray:
    values: np.ndarray
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class EncodedBitmap:
    data: bytes


@dataclass(frozen=True)
class ChannelGuessRequired:
    samples: np.ndarray


RawMask = Union[FlatFloatArray, EncodedBitmap, ChannelGuessRequired]


def _resize(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    if mask.shape == (height, width):
        return mask
    return cv2.resize(mask, (width, height), interpolation=cv2.INTER_LINEAR)


def _scale_values(values: np.ndarray) -> np.ndarray:
    """
    Bring mask data to [0, 1].

    Integer data is 0..255 and gets scaled; float data already holds
    probabilities and is only clamped, so a slight overshoot stays opaque.
    """
    if values.size == 0:
        raise MaskDecodeError("external mask is empty")
    if np.issubdtype(values.dtype, np.integer) or values.dtype == np.bool_:
        return values.astype(np.float32) / (1.0 if values.dtype == np.bool_ else 255.0)
    out = values.astype(np.float32)
    if not np.all(np.isfinite(out)):
        raise MaskDecodeError("external mask contains non-finite values")
    return np.clip(out, 0.0, 1.0)


def _from_flat(raw: FlatFloatArray, width: int, height: int) -> np.ndarray:
    values = np.asarray(raw.values)
    if raw.width is not None and raw.height is not None:
        if values.size != raw.width * raw.height:
            raise MaskDecodeError(
                f"flat mask holds {values.size} values, expected {raw.width}x{raw.height}"
            )
        mask = _scale_values(values.reshape(raw.height, raw.width))
        return _resize(mask, width, height)
    if values.size != width * height:
        raise MaskDecodeError(f"flat mask holds {values.size} values, expected {width * height}")
    return _scale_values(values.reshape(height, width))


def pick_channel(samples: np.ndarray) -> Tuple[np.ndarray, str]:
    """
    Extract the data-bearing channel of decoded mask samples.

    The first channel in probe order holding any value strictly between
    0 and 255 wins; when every channel is binary the luminance is used.
    """
    if samples.ndim == 2:
        return samples.astype(np.float32) / 255.0, "gray"
    if samples.ndim != 3 or samples.shape[2] == 0:
        raise MaskDecodeError(f"cannot interpret mask samples of shape {samples.shape}")
    channels = samples.shape[2]
    names = {0: "red", 1: "green", 3: "alpha"}
    for ch in CHANNEL_PROBE_ORDER:
        if ch >= channels:
            continue
        values = samples[..., ch]
        if np.any((values > 0) & (values < 255)):
            return values.astype(np.float32) / 255.0, names[ch]
    rgb = samples[..., : min(channels, 3)].astype(np.float32)
    return rgb.mean(axis=-1) / 255.0, "luminance"


def _from_samples(samples: np.ndarray, width: int, height: int) -> np.ndarray:
    samples = np.asarray(samples)
    if samples.size == 0:
        raise MaskDecodeError("mask samples are empty")
    if samples.dtype != np.uint8:
        samples = np.clip(samples, 0, 255).astype(np.uint8)
    mask, channel = pick_channel(samples)
    logger.debug("external mask: using %s channel", channel)
    return _resize(mask, width, height)


def _from_bitmap(raw: EncodedBitmap, width: int, height: int) -> np.ndarray:
    if not raw.data:
        raise MaskDecodeError("encoded mask bitmap is empty")
    try:
        image = Image.open(BytesIO(raw.data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise MaskDecodeError("encoded mask bitmap could not be decoded") from exc
    samples = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    return _from_samples(samples, width, height)


def maybe_invert(
    mask: np.ndarray,
    mean_threshold: float = DEFAULT_INVERSION_MEAN,
    sample_size: int = DEFAULT_INVERSION_SAMPLE,
) -> Tuple[np.ndarray, bool]:
    """Invert when evenly spaced samples average above `mean_threshold`."""
    flat = mask.reshape(-1)
    count = min(sample_size, flat.size)
    if count <= 0:
        return mask, False
    idx = np.linspace(0, flat.size - 1, num=count).astype(np.int64)
    mean = float(flat[idx].mean())
    if mean > mean_threshold:
        logger.debug("external mask: sample mean %.3f > %.2f, inverting", mean, mean_threshold)
        return (1.0 - mask).astype(np.float32), True
    return mask, False


def normalize_external_mask(
    raw: RawMask,
    width: int,
    height: int,
    invert_mean: float = DEFAULT_INVERSION_MEAN,
    invert_sample_size: int = DEFAULT_INVERSION_SAMPLE,
) -> np.ndarray:
    """Dense float32 (height, width) foreground mask in [0, 1]."""
    if width <= 0 or height <= 0:
        raise MaskDecodeError(f"invalid target size {width}x{height}")
    if isinstance(raw, FlatFloatArray):
        mask = _from_flat(raw, width, height)
    elif isinstance(raw, EncodedBitmap):
        mask = _from_bitmap(raw, width, height)
    elif isinstance(raw, ChannelGuessRequired):
        mask = _from_samples(raw.samples, width, height)
    else:
        raise MaskDecodeError(f"unsupported external mask type {type(raw).__name__}")

    mask = np.clip(mask.astype(np.float32), 0.0, 1.0)
    mask, _ = maybe_invert(mask, invert_mean, invert_sample_size)
    return np.ascontiguousarray(mask, dtype=np.float32)


def adapt_detections(
    detections: Sequence[RawMask],
    width: int,
    height: int,
    invert_mean: float = DEFAULT_INVERSION_MEAN,
    invert_sample_size: int = DEFAULT_INVERSION_SAMPLE,
) -> np.ndarray:
    """Normalize the first detected subject; zero detections is an error."""
    if not detections:
        raise NoSubjectDetectedError("external segmenter detected no subject")
    if len(detections) > 1:
        logger.debug("external segmenter returned %d subjects, using the first", len(detections))
    return normalize_external_mask(detections[0], width, height, invert_mean, invert_sample_size)
