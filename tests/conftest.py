from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from cutout_service import config


def make_pixels(h, w, color, alpha=255):
    pixels = np.zeros((h, w, 4), dtype=np.uint8)
    pixels[..., :3] = color
    pixels[..., 3] = alpha
    return pixels


def png_bytes(pixels):
    buf = BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def settings():
    return config.Settings(_env_file=None)


@pytest.fixture
def uniform_pixels():
    return make_pixels(10, 10, (120, 130, 140))


@pytest.fixture
def red_pixels():
    return make_pixels(4, 4, (255, 0, 0))


@pytest.fixture
def blue_square():
    """50x50 white image with a solid blue 20x20 square in the middle."""
    pixels = make_pixels(50, 50, (255, 255, 255))
    pixels[15:35, 15:35, :3] = (0, 0, 255)
    return pixels


@pytest.fixture
def blue_square_mask():
    mask = np.zeros((50, 50), dtype=np.float32)
    mask[15:35, 15:35] = 1.0
    return mask


@pytest.fixture
def noise_pixels():
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(32, 32, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    return pixels


@pytest.fixture
def split_pixels():
    """Dark left half, gray right half, white center block."""
    pixels = make_pixels(60, 60, (0, 0, 0))
    pixels[:, 30:, :3] = (60, 60, 60)
    pixels[15:45, 15:45, :3] = (255, 255, 255)
    return pixels
