import numpy as np
import pytest

from cutout_service import refinement
from cutout_service.cancellation import CancellationToken
from cutout_service.errors import InvalidImageError, PipelineCancelledError
from cutout_service.options import ExternalMaskOptions, ProcessingOptions
from cutout_service.refinement import RefinementPlan, RefinementStep

from conftest import make_pixels


@pytest.fixture
def random_mask():
    return np.random.default_rng(11).random((24, 24)).astype(np.float32)


def _speck(size=9):
    mask = np.zeros((size, size), dtype=np.float32)
    mask[size // 2, size // 2] = 1.0
    return mask


def _hole(size=9):
    return 1.0 - _speck(size)


def test_clamp_handles_nan_and_range():
    out = refinement.clamp(np.array([[np.nan, -1.0, 0.5, 7.0]]))
    assert out.dtype == np.float32
    assert out.tolist() == [[0.0, 0.0, 0.5, 1.0]]


def test_binarize_is_idempotent(random_mask):
    once = refinement.binarize(random_mask, 0.4)
    twice = refinement.binarize(once, 0.4)
    assert np.array_equal(once, twice)
    assert set(np.unique(once).tolist()) <= {0.0, 1.0}


def test_open_removes_speck_and_close_fills_hole():
    assert np.all(refinement.open_mask(_speck(), 1) == 0.0)
    assert np.all(refinement.close_mask(_hole(), 1) == 1.0)


def test_open_never_increases_and_close_never_decreases(random_mask):
    opened = refinement.open_mask(random_mask, 2)
    closed = refinement.close_mask(random_mask, 2)
    assert np.all(opened <= random_mask + 1e-6)
    assert np.all(closed >= random_mask - 1e-6)


def test_erode_dilate_radius_zero_is_identity(random_mask):
    assert np.array_equal(refinement.erode(random_mask, 0), random_mask)
    assert np.array_equal(refinement.dilate(random_mask, 0), random_mask)


def test_erode_border_modes():
    mask = np.ones((7, 7), dtype=np.float32)
    mask[3, 3] = 0.0
    clipped = refinement.erode(mask, 1, "clip")
    kept = refinement.erode(mask, 1, "keep")
    zeroed = refinement.erode(mask, 1, "zero")
    assert clipped[0, 0] == 1.0
    assert kept[0, 0] == 1.0
    assert zeroed[0, 0] == 0.0
    assert clipped[2, 2] == 0.0
    with pytest.raises(ValueError):
        refinement.erode(mask, 1, "wrap")


def test_median_filter_removes_isolated_values():
    assert np.all(refinement.median_filter(_speck(), passes=1, border_mode="clip") == 0.0)
    assert np.array_equal(refinement.median_filter(_speck(), passes=0), _speck())


def test_gaussian_smooth_preserves_constant_masks():
    mask = np.full((12, 12), 0.6, dtype=np.float32)
    for mode in ("keep", "clip"):
        assert np.allclose(refinement.gaussian_smooth(mask, 3, mode), 0.6, atol=1e-5)


def test_gaussian_smooth_keep_leaves_frame(random_mask):
    out = refinement.gaussian_smooth(random_mask, 2, "keep")
    assert np.array_equal(out[:2], random_mask[:2])
    assert np.array_equal(out[:, -2:], random_mask[:, -2:])


def test_box_smooth_keeps_frame(random_mask):
    out = refinement.box_smooth(random_mask)
    assert np.array_equal(out[0], random_mask[0])
    assert np.isclose(out[5, 5], random_mask[4:7, 4:7].mean(), atol=1e-5)


def test_remap_alpha_linear():
    mask = np.array([[0.05, 0.5, 0.97]], dtype=np.float32)
    out = refinement.remap_alpha(mask, foreground_threshold=0.1)
    assert np.allclose(out, [[0.0, 0.5, 1.0]])


def test_remap_alpha_decisive_and_high():
    mask = np.array([[0.15, 0.5]], dtype=np.float32)
    decisive = refinement.remap_alpha(mask, decisive=True, foreground_threshold=0.1)
    assert np.isclose(decisive[0, 0], 0.5 ** 2.2, atol=1e-5)
    assert np.isclose(decisive[0, 1], 0.3 + 0.2 * 1.08, atol=1e-5)
    high = refinement.remap_alpha(mask, quality_mode="high", foreground_threshold=0.1)
    assert np.isclose(high[0, 1], 0.5 ** 0.8, atol=1e-5)


def test_decisive_sharpen_pushes_extremes(random_mask):
    out = refinement.decisive_sharpen(random_mask, mask_threshold=0.25)
    assert np.all(out[random_mask < 0.15] == 0.0)
    assert np.all(out[random_mask > 0.8] >= 0.9)
    assert out.min() >= 0.0 and out.max() <= 1.0


def test_protect_fine_detail_raises_dark_pixels_in_top_region():
    pixels = make_pixels(20, 20, (10, 10, 10))
    mask = np.full((20, 20), 0.9, dtype=np.float32)
    mask[3, 3] = 0.5
    mask[15, 15] = 0.5
    out = refinement.protect_fine_detail(mask, pixels)
    assert out[3, 3] == pytest.approx(0.8)
    assert out[15, 15] == pytest.approx(0.5)


def test_protect_fine_detail_ignores_bright_pixels():
    pixels = make_pixels(20, 20, (200, 200, 200))
    mask = np.full((20, 20), 0.9, dtype=np.float32)
    mask[3, 3] = 0.5
    out = refinement.protect_fine_detail(mask, pixels)
    assert out[3, 3] == pytest.approx(0.5)


def test_refine_edges_by_color_moves_toward_similar_side():
    pixels = make_pixels(10, 10, (255, 0, 0))
    pixels[:, 5:, :3] = (0, 0, 255)
    mask = np.zeros((10, 10), dtype=np.float32)
    mask[:, :5] = 1.0
    mask[5, 3] = 0.5
    mask[5, 6] = 0.5
    out = refinement.refine_edges_by_color(mask, pixels, radius=2)
    assert out[5, 3] == pytest.approx(0.7)
    assert out[5, 6] == pytest.approx(0.3)


def test_fuse_masks_weights_and_disagreement():
    a = np.array([[1.0, 0.8]], dtype=np.float32)
    b = np.array([[0.0, 0.6]], dtype=np.float32)
    out = refinement.fuse_masks(a, b)
    assert np.allclose(out, [[0.5, 0.74]])
    with pytest.raises(InvalidImageError):
        refinement.fuse_masks(a, np.zeros((2, 2), dtype=np.float32))


def test_keep_largest_component():
    mask = np.zeros((12, 12), dtype=np.float32)
    mask[1:4, 1:4] = 1.0
    mask[8:10, 8:10] = 0.6
    out = refinement.keep_largest_component(mask)
    assert np.all(out[1:4, 1:4] == 1.0)
    assert np.all(out[8:10, 8:10] == 0.0)


def test_portrait_enhance_range_and_shape(random_mask):
    out = refinement.portrait_enhance(random_mask)
    assert out.shape == random_mask.shape
    assert out.min() >= 0.0 and out.max() <= 1.0


@pytest.mark.parametrize("name", sorted(refinement.STAGES))
def test_every_stage_keeps_range_and_shape(name, random_mask):
    pixels = make_pixels(24, 24, (40, 40, 40))
    params = {"binarize": {"threshold": 0.5}, "decisive": {"mask_threshold": 0.5}}
    params.update({n: {"radius": 1} for n in ("erode", "dilate", "open", "close", "gaussian")})
    plan = RefinementPlan(steps=(RefinementStep(name, params.get(name, {})),))
    first = refinement.apply_plan(random_mask * 3.0 - 1.0, plan, pixels=pixels)
    second = refinement.apply_plan(random_mask * 3.0 - 1.0, plan, pixels=pixels)
    assert first.shape == random_mask.shape
    assert first.min() >= 0.0 and first.max() <= 1.0
    assert np.array_equal(first, second)


def test_unknown_stage_is_rejected():
    with pytest.raises(ValueError):
        RefinementStep("sharpen")


def test_apply_plan_requires_pixels_for_color_stages(random_mask):
    plan = RefinementPlan(steps=(RefinementStep("edge_color"),))
    with pytest.raises(InvalidImageError):
        refinement.apply_plan(random_mask, plan)


def test_apply_plan_rejects_mismatched_pixels(random_mask):
    plan = RefinementPlan(steps=(RefinementStep("median"),))
    with pytest.raises(InvalidImageError):
        refinement.apply_plan(random_mask, plan, pixels=make_pixels(10, 10, (0, 0, 0)))


def test_apply_plan_checks_cancellation(random_mask):
    token = CancellationToken()
    token.cancel()
    plan = RefinementPlan(steps=(RefinementStep("median"),))
    with pytest.raises(PipelineCancelledError):
        refinement.apply_plan(random_mask, plan, cancel_token=token)


def test_plans_per_strategy(settings):
    assert refinement.plan_for_strategy("flood_fill", ProcessingOptions(), 100, settings).steps == ()
    border = refinement.plan_for_strategy("border_color", ProcessingOptions(), 100, settings)
    assert border.names() == ("median", "open", "close", "gaussian")
    learned = refinement.plan_for_strategy("learned", ExternalMaskOptions(), 100, settings)
    assert learned.names()[:3] == ("binarize", "open", "close")
    assert learned.foreground_threshold == pytest.approx(0.55)
    with pytest.raises(ValueError):
        refinement.plan_for_strategy("magic", ProcessingOptions(), 100, settings)


def test_plan_honours_common_options(settings):
    options = ProcessingOptions(
        edge_smooth_radius=0,
        noise_reduction_passes=0,
        keep_largest_component=True,
        hair_preservation=True,
        foreground_threshold=0.3,
    )
    plan = refinement.plan_for_strategy("region_growing", options, 100, settings)
    assert plan.names() == ("open", "close", "protect_detail", "largest_component")
    assert plan.foreground_threshold == pytest.approx(0.3)


def test_mac_like_plan_is_decisive(settings):
    plan = refinement.plan_for_strategy("learned", ExternalMaskOptions.mac_like(), 100, settings)
    assert plan.decisive
    assert "decisive" in plan.names()
    assert "edge_color" in plan.names()
    assert "portrait" in plan.names()


@pytest.mark.parametrize("strategy", ["border_color", "region_growing", "learned"])
def test_high_quality_plans_feather_up_to_098(settings, strategy):
    options = ExternalMaskOptions if strategy == "learned" else ProcessingOptions
    plan = refinement.plan_for_strategy(strategy, options(quality_mode="high"), 100, settings)
    assert plan.opaque_threshold == pytest.approx(0.98)
    mask = np.full((4, 4), 0.96, dtype=np.float32)
    out = refinement.remap_alpha(
        mask, plan.quality_mode, plan.decisive, plan.foreground_threshold, plan.opaque_threshold
    )
    assert np.allclose(out, 0.96**0.8, atol=1e-5)
    assert out.max() < 1.0


def test_other_quality_modes_keep_their_opaque_threshold(settings):
    border = refinement.plan_for_strategy("border_color", ProcessingOptions(), 100, settings)
    region = refinement.plan_for_strategy("region_growing", ProcessingOptions(), 100, settings)
    learned = refinement.plan_for_strategy("learned", ExternalMaskOptions(), 100, settings)
    assert border.opaque_threshold == pytest.approx(0.95)
    assert region.opaque_threshold == pytest.approx(0.9)
    assert learned.opaque_threshold == pytest.approx(0.95)
