from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from cutout_service.compositor import composite, encode_png, maybe_dump_debug
from cutout_service.errors import InvalidImageError
from cutout_service.refinement import RefinementPlan


def test_full_mask_leaves_pixels_unchanged(red_pixels):
    out = composite(red_pixels, np.ones((4, 4), dtype=np.float32))
    assert np.array_equal(out, red_pixels)
    assert out is not red_pixels


def test_empty_mask_clears_alpha_only(red_pixels):
    out = composite(red_pixels, np.zeros((4, 4), dtype=np.float32))
    assert np.all(out[..., 3] == 0)
    assert np.all(out[..., 0] == 255)
    assert np.all(out[..., 1:3] == 0)


def test_partial_alpha_is_scaled(red_pixels):
    pixels = red_pixels.copy()
    pixels[..., 3] = 200
    out = composite(pixels, np.full((4, 4), 0.6, dtype=np.float32))
    assert np.all(out[..., 3] == 120)
    full = composite(pixels, np.ones((4, 4), dtype=np.float32))
    assert np.all(full[..., 3] == 200)


def test_plan_thresholds_apply(red_pixels):
    plan = RefinementPlan(foreground_threshold=0.7)
    out = composite(red_pixels, np.full((4, 4), 0.6, dtype=np.float32), plan)
    assert np.all(out[..., 3] == 0)


def test_mismatched_mask_is_rejected(red_pixels):
    with pytest.raises(InvalidImageError):
        composite(red_pixels, np.ones((4, 5), dtype=np.float32))


def test_encode_png_round_trips(red_pixels):
    data = encode_png(red_pixels)
    decoded = np.asarray(Image.open(BytesIO(data)).convert("RGBA"))
    assert np.array_equal(decoded, red_pixels)


def test_debug_dump_writes_files(tmp_path, blue_square, blue_square_mask):
    maybe_dump_debug(blue_square, blue_square_mask * 0.5, tmp_path / "dbg")
    assert (tmp_path / "dbg" / "mask.png").exists()
    assert (tmp_path / "dbg" / "band_overlay.png").exists()


def test_debug_dump_failure_is_not_raised(tmp_path, blue_square, blue_square_mask):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    maybe_dump_debug(blue_square, blue_square_mask, blocker / "dbg")
