import numpy as np

from cutout_service import config
from cutout_service.selector import analyze_features, color_spread, sample_border, select_strategy


def test_uniform_border_selects_flood_fill(blue_square, settings):
    features = analyze_features(blue_square, settings)
    assert features.edge_variance == 0.0
    assert features.contrast > 0.0
    assert select_strategy(blue_square, settings) == "flood_fill"


def test_high_contrast_selects_border_color(split_pixels, settings):
    features = analyze_features(split_pixels, settings)
    assert features.edge_variance >= settings.selector_uniform_variance
    assert features.contrast > settings.selector_high_contrast
    assert select_strategy(split_pixels, settings) == "border_color"


def test_complex_image_selects_region_growing(noise_pixels, settings):
    assert select_strategy(noise_pixels, settings) == "region_growing"


def test_thresholds_come_from_settings(noise_pixels):
    relaxed = config.Settings(_env_file=None, selector_uniform_variance=1000.0)
    assert select_strategy(noise_pixels, relaxed) == "flood_fill"


def test_selection_is_reproducible(noise_pixels, settings):
    assert analyze_features(noise_pixels, settings) == analyze_features(noise_pixels, settings)


def test_border_samples_lie_on_the_frame():
    rgb = np.zeros((20, 30, 3), dtype=np.uint8)
    rgb[0, :] = 1
    rgb[-1, :] = 1
    rgb[:, 0] = 1
    rgb[:, -1] = 1
    samples = sample_border(rgb, 200, np.random.default_rng(0))
    assert samples.shape == (200, 3)
    assert np.all(samples == 1)


def test_color_spread_of_empty_and_constant_sets():
    assert color_spread(np.zeros((0, 3), dtype=np.float32)) == 0.0
    assert color_spread(np.full((5, 3), 42.0, dtype=np.float32)) == 0.0
