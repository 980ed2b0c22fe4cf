from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from cutout_service.errors import MaskDecodeError, NoSubjectDetectedError
from cutout_service.external_mask import (
    ChannelGuessRequired,
    EncodedBitmap,
    FlatFloatArray,
    adapt_detections,
    maybe_invert,
    normalize_external_mask,
    pick_channel,
)


def _encode(image):
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def _gradient(h, w):
    return np.tile(np.linspace(10, 200, w).astype(np.uint8), (h, 1))


def test_flat_array_of_exact_length_is_copied():
    values = np.linspace(0.0, 0.6, 12, dtype=np.float32)
    mask = normalize_external_mask(FlatFloatArray(values), width=4, height=3)
    assert mask.shape == (3, 4)
    assert np.allclose(mask.reshape(-1), values)


def test_flat_uint8_is_scaled():
    values = np.array([0, 51, 255, 0], dtype=np.uint8)
    mask = normalize_external_mask(FlatFloatArray(values), width=2, height=2)
    assert np.allclose(mask, [[0.0, 0.2], [1.0, 0.0]])


def test_float_overshoot_is_clamped_not_rescaled():
    values = np.zeros((10, 10), dtype=np.float32)
    values[3:7, 3:7] = 1.02
    values[0, 0] = -0.05
    mask = normalize_external_mask(FlatFloatArray(values, width=10, height=10), width=10, height=10)
    assert mask[3:7, 3:7].min() > 0.9
    assert mask.max() == pytest.approx(1.0)
    assert mask.min() == 0.0


def test_flat_array_with_own_size_is_resized():
    values = np.zeros((5, 5), dtype=np.float32)
    mask = normalize_external_mask(FlatFloatArray(values, width=5, height=5), width=20, height=10)
    assert mask.shape == (10, 20)


def test_flat_array_with_wrong_length_fails():
    with pytest.raises(MaskDecodeError):
        normalize_external_mask(FlatFloatArray(np.zeros(7)), width=2, height=2)


def test_non_finite_values_fail():
    values = np.array([0.1, np.nan, 0.2, 0.3], dtype=np.float32)
    with pytest.raises(MaskDecodeError):
        normalize_external_mask(FlatFloatArray(values), width=2, height=2)


def test_bitmap_prefers_alpha_channel():
    rgba = np.zeros((6, 8, 4), dtype=np.uint8)
    rgba[..., 3] = _gradient(6, 8)
    mask = normalize_external_mask(EncodedBitmap(_encode(Image.fromarray(rgba))), width=8, height=6)
    assert np.allclose(mask, rgba[..., 3] / 255.0, atol=1e-6)


def test_bitmap_grayscale_uses_red_channel():
    gray = _gradient(6, 8)
    mask = normalize_external_mask(EncodedBitmap(_encode(Image.fromarray(gray))), width=8, height=6)
    assert np.allclose(mask, gray / 255.0, atol=1e-6)


def test_bitmap_is_resized_to_target():
    gray = _gradient(6, 8)
    mask = normalize_external_mask(EncodedBitmap(_encode(Image.fromarray(gray))), width=16, height=12)
    assert mask.shape == (12, 16)


def test_binary_channels_fall_back_to_luminance():
    samples = np.zeros((4, 4, 4), dtype=np.uint8)
    samples[..., 3] = 255
    samples[:2, :, 0] = 255
    values, channel = pick_channel(samples)
    assert channel == "luminance"
    assert np.allclose(values[:2], 1.0 / 3.0)
    assert np.allclose(values[2:], 0.0)


def test_channel_guess_uses_green_when_red_is_binary():
    samples = np.zeros((4, 4, 4), dtype=np.uint8)
    samples[..., 3] = 255
    samples[..., 1] = 128
    mask = normalize_external_mask(ChannelGuessRequired(samples), width=4, height=4)
    assert np.allclose(mask, 128 / 255.0)


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_undecodable_bitmap_fails(data):
    with pytest.raises(MaskDecodeError):
        normalize_external_mask(EncodedBitmap(data), width=4, height=4)


def test_unknown_raw_type_fails():
    with pytest.raises(MaskDecodeError):
        normalize_external_mask([0.1, 0.2], width=2, height=1)


def test_mostly_bright_mask_is_inverted():
    values = np.full((100, 100), 0.9, dtype=np.float32)
    values[:5, :] = 0.1  # 5% minority
    minority = float((values < 0.5).mean())
    mask = normalize_external_mask(FlatFloatArray(values.reshape(-1)), width=100, height=100)
    assert np.allclose(mask[:5], 0.9)
    assert np.allclose(mask[5:], 0.1)
    assert float((mask > 0.5).mean()) == pytest.approx(minority)


def test_mostly_dark_mask_is_not_inverted():
    values = np.full((10, 10), 0.2, dtype=np.float32)
    out, inverted = maybe_invert(values)
    assert not inverted
    assert np.array_equal(out, values)


def test_inversion_threshold_is_configurable():
    values = np.full((10, 10), 0.6, dtype=np.float32)
    mask = normalize_external_mask(FlatFloatArray(values.reshape(-1)), 10, 10, invert_mean=0.5)
    assert np.allclose(mask, 0.4)


def test_zero_detections_is_no_subject():
    with pytest.raises(NoSubjectDetectedError) as info:
        adapt_detections([], width=4, height=4)
    assert isinstance(info.value, MaskDecodeError)


def test_first_detection_is_used():
    first = FlatFloatArray(np.full(4, 0.2, dtype=np.float32))
    second = FlatFloatArray(np.full(4, 0.4, dtype=np.float32))
    mask = adapt_detections([first, second], width=2, height=2)
    assert np.allclose(mask, 0.2)
