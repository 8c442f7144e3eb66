"""Tests for the metric engine."""

import numpy as np
import pytest

from fidelity.config import MetricSettings
from fidelity.errors import DimensionMismatchError, InvalidRegionError
from fidelity.loader import from_array
from fidelity.metrics import (
    compare,
    compute_ssim,
    coverage_mask,
    delta_e_ciede2000,
    delta_e_map,
    is_gross_mismatch,
    masked_ssim,
    measure_region,
    measure_uncovered,
    phash_distance,
    pixel_diff_percent,
    sample_color,
)
from fidelity.models import ColorSample, Region
from fidelity.segmenter import crop_region

from conftest import rectangle_image

WHITE = np.array([255, 255, 255])


class TestSSIM:
    """Tests for compute_ssim()."""

    def test_identical_is_one(self, design_image) -> None:
        """Identical images have SSIM 1."""
        assert compute_ssim(design_image.pixels, design_image.pixels) == pytest.approx(1.0)

    def test_different_is_lower(self, design_image, shifted_image) -> None:
        """Moved rectangle lowers SSIM below 1."""
        value = compute_ssim(design_image.pixels, shifted_image.pixels)
        assert 0.0 <= value < 1.0

    def test_tiny_image_uses_global_window(self) -> None:
        """Images smaller than three pixels fall back to a single window."""
        a = np.zeros((2, 2, 3), dtype=np.uint8)
        assert compute_ssim(a, a) == pytest.approx(1.0)

    def test_black_against_white_is_near_zero(self) -> None:
        """Opposite flat images have SSIM close to 0."""
        a = np.zeros((20, 20, 3), dtype=np.uint8)
        b = np.full((20, 20, 3), 255, dtype=np.uint8)
        assert compute_ssim(a, b) < 0.01


class TestPixelDiff:
    """Tests for pixel_diff_percent()."""

    def test_identical(self, design_image) -> None:
        """Identical images have no differing pixels."""
        assert pixel_diff_percent(design_image.pixels, design_image.pixels) == 0.0

    def test_recolored_rectangle(self, design_image, recolored_image) -> None:
        """Recoloured rectangle counts all of its pixels."""
        # 100x40 of 400x200 pixels
        assert pixel_diff_percent(design_image.pixels, recolored_image.pixels) == pytest.approx(5.0)

    def test_shifted_rectangle(self, design_image, shifted_image) -> None:
        """Shifted rectangle counts only the uncovered and newly covered slivers."""
        # Two 20x40 slivers
        assert pixel_diff_percent(design_image.pixels, shifted_image.pixels) == pytest.approx(2.0)

    def test_noise_below_fuzz_ignored(self) -> None:
        """Deltas under the fuzz threshold are not counted."""
        a = np.full((10, 10, 3), 100, dtype=np.uint8)
        b = np.full((10, 10, 3), 103, dtype=np.uint8)
        assert pixel_diff_percent(a, b, fuzz_threshold=0.02) == 0.0
        assert pixel_diff_percent(a, b, fuzz_threshold=0.0) == 100.0


class TestPerceptualHash:
    """Tests for phash_distance() and the gross-mismatch rule."""

    def test_identical_distance_zero(self, design_image) -> None:
        """Identical images have hash distance 0."""
        assert phash_distance(design_image.pixels, design_image.pixels) == 0

    def test_gross_mismatch_needs_both_signals(self) -> None:
        """Gross mismatch needs both a large hash distance and a low SSIM."""
        settings = MetricSettings(phash_gross_threshold=20, gross_mismatch_ssim=0.9)
        assert is_gross_mismatch(30, 0.5, settings)
        assert not is_gross_mismatch(30, 0.95, settings)
        assert not is_gross_mismatch(20, 0.5, settings)


class TestColor:
    """Tests for CIEDE2000 colour differences."""

    def test_same_colour_is_zero(self) -> None:
        """Same colour has ΔE00 0."""
        values = delta_e_ciede2000([[12, 200, 90]], [[12, 200, 90]])
        assert values[0] == pytest.approx(0.0, abs=1e-9)

    def test_black_white(self) -> None:
        """Black against white is ΔE00 100."""
        assert delta_e_ciede2000([[0, 0, 0]], [[255, 255, 255]])[0] == pytest.approx(100, abs=1)

    def test_near_black_is_low(self) -> None:
        """#080808 against black falls in the Low tier."""
        value = delta_e_ciede2000([[0, 0, 0]], [[8, 8, 8]])[0]
        assert 1.0 < value < 2.0

    def test_dark_gray_exceeds_medium(self) -> None:
        """#1A1A1A against black is above the Medium tier."""
        value = delta_e_ciede2000([[0, 0, 0]], [[0x1A, 0x1A, 0x1A]])[0]
        assert value > 3.5

    def test_delta_e_map_shape(self, design_image, recolored_image) -> None:
        """Per-pixel map has the image shape and is non-zero only on the rectangle."""
        de = delta_e_map(design_image, recolored_image)
        assert de.shape == (200, 400)
        assert de[0, 0] == pytest.approx(0.0, abs=1e-9)
        assert de[100, 200] > 3.5

    def test_sample_color_patch_mean(self, design_image) -> None:
        """Sample colour is the mean of the patch around the point."""
        color = sample_color(design_image.pixels, ColorSample("corner", 150, 80, radius=1))
        # 2x2 of the 3x3 patch lies inside the rectangle
        assert color == pytest.approx([255 * 5 / 9] * 3)

    def test_sample_outside_image(self, design_image) -> None:
        """Sample outside the image raises InvalidRegionError."""
        with pytest.raises(InvalidRegionError):
            sample_color(design_image.pixels, ColorSample("ghost", 400, 10))


class TestMeasureRegion:
    """Tests for measure_region()."""

    def test_shifted_region(self, design_image, shifted_image) -> None:
        """Shifted element reports its offset and a mask mismatch."""
        region = crop_region(design_image, shifted_image, Region(150, 80, 120, 40, "r"))
        rm = measure_region(region, WHITE, WHITE)
        assert rm.offset_x == 20
        assert rm.offset_y == 0
        assert rm.width_delta == 0
        assert rm.height_delta == 0
        assert rm.mask_mismatch == pytest.approx(1 / 3)
        assert rm.delta_e == pytest.approx(0.0, abs=1e-6)
        assert rm.pixel_diff_percent == pytest.approx(100 / 3)
        assert rm.ssim < 0.9

    def test_recolored_region(self, design_image, recolored_image) -> None:
        """Recoloured element keeps its shape and reports its ΔE00."""
        region = crop_region(design_image, recolored_image, Region(150, 80, 100, 40, "r"))
        rm = measure_region(region, WHITE, WHITE)
        assert rm.mask_mismatch == 0.0
        assert rm.delta_e > 3.5
        assert rm.offset_x == 0
        assert rm.design_coverage == 1.0

    def test_missing_element(self, design_image) -> None:
        """Element absent from the implementation has zero coverage there."""
        blank = rectangle_image(rect=None)
        region = crop_region(design_image, blank, Region(150, 80, 100, 40, "r"))
        rm = measure_region(region, WHITE, WHITE)
        assert rm.design_coverage == 1.0
        assert rm.implementation_coverage == 0.0
        assert rm.delta_e is None
        assert rm.offset_x is None

    def test_region_without_crops(self) -> None:
        """Region without cropped pixels raises InvalidRegionError."""
        with pytest.raises(InvalidRegionError):
            measure_region(Region(0, 0, 5, 5, "bare"), WHITE, WHITE)


class TestUncovered:
    """Tests for the metrics of pixels outside the region boxes."""

    def test_coverage_mask_clamps_boxes(self) -> None:
        """Boxes reaching past the image are clipped to it."""
        mask = coverage_mask((10, 20, 3), [Region(-5, 2, 10, 3, "a"), Region(15, 8, 10, 10, "b")])
        assert mask.shape == (10, 20)
        assert mask[2:5, 0:5].all()
        assert mask[8:10, 15:20].all()
        assert np.count_nonzero(mask) == 15 + 10

    def test_full_mask_matches_compute_ssim(self, design_image, shifted_image) -> None:
        """Averaging over every pixel gives the plain SSIM."""
        mask = np.ones((200, 400), dtype=bool)
        expected = compute_ssim(design_image.pixels, shifted_image.pixels)
        value = masked_ssim(design_image.pixels, shifted_image.pixels, mask)
        assert value == pytest.approx(expected)

    def test_empty_mask_is_one(self, design_image, shifted_image) -> None:
        """No selected pixel means nothing differs."""
        mask = np.zeros((200, 400), dtype=bool)
        assert masked_ssim(design_image.pixels, shifted_image.pixels, mask) == 1.0

    def test_change_inside_box_leaves_outside_clean(self, design_image, recolored_image) -> None:
        """A recolour inside the box does not leak into its surroundings."""
        ssim, diff, mismatch = measure_uncovered(
            design_image.pixels,
            recolored_image.pixels,
            [Region(150, 80, 100, 40, "rect")],
            WHITE,
            WHITE,
        )
        assert ssim == pytest.approx(1.0)
        assert diff == 0.0
        assert mismatch == 0.0

    def test_change_outside_box_is_measured(self, design_image, extra_block_image) -> None:
        """A block added outside the box shows up in the uncovered metrics."""
        ssim, diff, mismatch = measure_uncovered(
            design_image.pixels,
            extra_block_image.pixels,
            [Region(150, 80, 100, 40, "rect")],
            WHITE,
            WHITE,
        )
        assert ssim < 0.90
        assert diff == pytest.approx(180 * 110 / (400 * 200 - 100 * 40) * 100)
        assert mismatch == 1.0

    def test_fully_covered_image(self, design_image, shifted_image) -> None:
        """A box covering the whole image leaves nothing to measure."""
        result = measure_uncovered(
            design_image.pixels, shifted_image.pixels, [Region(0, 0, 400, 200, "all")], WHITE, WHITE
        )
        assert result == (1.0, 0.0, 0.0)


class TestCompare:
    """Tests for compare()."""

    def test_identical(self, design_image) -> None:
        """Identical images give perfect metrics."""
        result = compare(design_image, design_image)
        assert result.ssim == pytest.approx(1.0)
        assert result.pixel_diff_percent == 0.0
        assert result.phash_distance == 0
        assert result.color_delta_e["background"] == pytest.approx(0.0, abs=1e-9)
        assert result.regions == {}

    def test_region_and_sample_keys(self, design_image, recolored_image) -> None:
        """Colour values are keyed by background, sample id and region."""
        region = crop_region(design_image, recolored_image, Region(150, 80, 100, 40, "rect"))
        result = compare(
            design_image,
            recolored_image,
            samples=[ColorSample("fill", 200, 100)],
            regions=[region],
        )
        assert set(result.color_delta_e) == {"background", "fill", "region:rect"}
        assert result.color_delta_e["fill"] == pytest.approx(result.color_delta_e["region:rect"])
        assert "rect" in result.regions

    def test_uncovered_defaults_to_whole_image(self, design_image, shifted_image) -> None:
        """Without regions the uncovered metrics are the image-wide ones."""
        result = compare(design_image, shifted_image)
        assert result.uncovered_ssim == pytest.approx(result.ssim)
        assert result.uncovered_pixel_diff_percent == pytest.approx(result.pixel_diff_percent)

    def test_uncovered_excludes_regions(self, design_image, extra_block_image) -> None:
        """The region box is left out of the uncovered metrics."""
        region = crop_region(design_image, extra_block_image, Region(150, 80, 100, 40, "rect"))
        result = compare(design_image, extra_block_image, regions=[region])
        assert result.regions["rect"].pixel_diff_percent == 0.0
        assert result.uncovered_pixel_diff_percent > result.pixel_diff_percent > 5

    def test_parallel_matches_sequential(self, design_image, shifted_image) -> None:
        """Thread-pool and sequential runs give equal results."""
        parallel = compare(design_image, shifted_image, settings=MetricSettings(parallel=True))
        sequential = compare(design_image, shifted_image, settings=MetricSettings(parallel=False))
        assert parallel == sequential

    def test_dimension_mismatch(self, design_image) -> None:
        """Images of different sizes raise DimensionMismatchError."""
        with pytest.raises(DimensionMismatchError):
            compare(design_image, rectangle_image(size=(100, 100)))

    def test_short_circuit_skips_regions(self, design_image) -> None:
        """Gross mismatch skips per-region metrics when short-circuiting."""
        rng = np.random.default_rng(7)
        noise = from_array(rng.integers(0, 256, size=(200, 400, 3), dtype=np.uint8))
        region = crop_region(design_image, noise, Region(150, 80, 100, 40, "rect"))
        settings = MetricSettings(
            phash_gross_threshold=0,
            gross_mismatch_ssim=1.0,
            short_circuit_on_gross_mismatch=True,
        )
        result = compare(design_image, noise, regions=[region], settings=settings)
        assert result.regions == {}
        assert result.phash_distance > 0
