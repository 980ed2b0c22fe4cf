"""
Image decoding, buffer validation and segmenter input preparation.

Pixel Buffers are dense `uint8[H, W, 4]` RGBA arrays and Masks are
`float32[H, W]` arrays. Every component that accepts both checks that
their dimensions agree before touching any pixel.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import math
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError
import torch

from .errors import InvalidImageError


@dataclass
class SegmenterInput:
    tensor: torch.Tensor
    orig_size: Tuple[int, int]  # (width, height)
    resized_size: Tuple[int, int]


def decode_image_bytes(image_bytes: bytes) -> np.ndarray:
    """Decode JPEG/PNG/WebP bytes into an RGBA Pixel Buffer."""
    if not image_bytes:
        raise InvalidImageError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError("Invalid image data") from exc
    pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8).copy()
    validate_pixels(pixels)
    return pixels


def validate_pixels(pixels: np.ndarray) -> Tuple[int, int]:
    """Return (height, width) of a Pixel Buffer, rejecting malformed ones."""
    if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] != 4:
        shape = getattr(pixels, "shape", None)
        raise InvalidImageError(f"Pixel buffer must be HxWx4, got {shape}")
    if pixels.dtype != np.uint8:
        raise InvalidImageError(f"Pixel buffer must be uint8, got {pixels.dtype}")
    h, w = pixels.shape[:2]
    if h * w == 0:
        raise InvalidImageError("Image has zero area")
    return h, w


def validate_mask(mask: np.ndarray, shape: Tuple[int, int]) -> None:
    """Ensure a mask is 2-D and matches the (height, width) it is paired with."""
    if not isinstance(mask, np.ndarray) or mask.ndim != 2:
        raise InvalidImageError(f"Mask must be 2-D, got {getattr(mask, 'shape', None)}")
    if mask.shape != tuple(shape):
        raise InvalidImageError(f"Mask shape {mask.shape} does not match image shape {tuple(shape)}")


def to_rgb(pixels: np.ndarray) -> np.ndarray:
    """Drop the alpha channel; returns a view."""
    return pixels[..., :3]


def _compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    new_w = int(width * scale)
    new_h = int(height * scale)
    # Encoder/decoder networks expect dimensions divisible by 32.
    new_w = max(32, math.ceil(new_w / 32) * 32)
    new_h = max(32, math.ceil(new_h / 32) * 32)
    return new_w, new_h


def prepare_segmenter_input(
    pixels: np.ndarray, max_long_edge: int, device: torch.device
) -> SegmenterInput:
    """
    Resize the longest edge to `max_long_edge` and normalize to [-1, 1].

    Resizing on the long edge keeps subjects large enough for fine detail
    while keeping inference fast.
    """
    h, w = validate_pixels(pixels)
    new_w, new_h = _compute_resize_dims(w, h, max_long_edge)

    image = Image.fromarray(np.ascontiguousarray(pixels[..., :3]))
    if (new_w, new_h) != (w, h):
        image = image.resize((new_w, new_h), Image.BILINEAR)

    im_np = np.asarray(image).astype("float32") / 255.0
    im_np = (im_np - 0.5) / 0.5
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    tensor = torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(device)
    return SegmenterInput(tensor=tensor, orig_size=(w, h), resized_size=(new_w, new_h))
