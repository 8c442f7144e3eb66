"""Metric engine.

Computes four independent measurements for an image pair of equal size:

* **SSIM**: local-window structural similarity over luminance, combining
  luminance, contrast and structure with equal weight.  It tolerates the
  anti-aliasing and rendering noise that a naive pixel diff over-penalizes.
* **Pixel-diff %**: share of pixels whose largest channel delta exceeds a
  fuzz threshold (default 2 % of the channel range), which absorbs uniform
  anti-aliasing noise.
* **Perceptual hash distance**: Hamming distance between DCT-based
  fingerprints; a cheap gross-mismatch check.
* **CIEDE2000 ΔE**: sRGB is converted to CIE LAB and compared with the full
  CIEDE2000 formula at explicit sample points, per region (average
  foreground colour) and for the background.  Euclidean RGB distance is
  never used because it does not track perceived colour difference.

SSIM and the pixel diff are also measured over the pixels that no region box
covers, so a change outside the measured regions is never lost.

The global computations are pure functions over read-only buffers and run
concurrently on a thread pool; :func:`compare` joins on all of them before
building the result.
"""

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import imagehash
import numpy as np
from PIL import Image
from skimage.color import deltaE_ciede2000, rgb2lab
from skimage.metrics import structural_similarity

from fidelity.config import MetricSettings
from fidelity.errors import DimensionMismatchError, InvalidRegionError
from fidelity.models import ColorSample, ImageData, MetricResult, Region, RegionMetrics
from fidelity.segmenter import dilate_mask, estimate_background, foreground_mask

# SSIM stabilisation constants for an 8-bit dynamic range (K1=0.01, K2=0.03).
_C1 = (0.01 * 255) ** 2
_C2 = (0.03 * 255) ** 2


def _luminance(pixels: np.ndarray) -> np.ndarray:
    """ITU-R BT.601 luma as float64, the same weights Pillow uses for mode ``L``."""
    rgb = pixels.astype(np.float64)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def _global_ssim(a: np.ndarray, b: np.ndarray) -> float:
    """SSIM over a single window covering the whole array."""
    mu_a = a.mean()
    mu_b = b.mean()
    var_a = ((a - mu_a) ** 2).mean()
    var_b = ((b - mu_b) ** 2).mean()
    cov = ((a - mu_a) * (b - mu_b)).mean()
    numerator = (2 * mu_a * mu_b + _C1) * (2 * cov + _C2)
    denominator = (mu_a**2 + mu_b**2 + _C1) * (var_a + var_b + _C2)
    return float(numerator / denominator)


def compute_ssim(a: np.ndarray, b: np.ndarray, window: int = 7) -> float:
    """Mean local-window SSIM between two RGB arrays, clamped to ``[0, 1]``.

    The window shrinks to the largest odd size that fits small inputs;
    inputs narrower than three pixels use a single global window.

    Args:
        a: ``(H, W, 3)`` array.
        b: ``(H, W, 3)`` array with the same shape.
        window: Side of the square uniform window (odd).

    Returns:
        SSIM value, 1.0 for identical inputs.
    """
    luma_a = _luminance(a)
    luma_b = _luminance(b)

    win = _fit_window(window, luma_a.shape)
    if win < 3:
        value = _global_ssim(luma_a, luma_b)
    else:
        value = structural_similarity(
            luma_a,
            luma_b,
            win_size=win,
            data_range=255.0,
            gaussian_weights=False,
        )
    return float(np.clip(value, 0.0, 1.0))


def _fit_window(window: int, shape: tuple[int, ...]) -> int:
    win = min(window, *shape)
    if win % 2 == 0:
        win -= 1
    return win


def masked_ssim(a: np.ndarray, b: np.ndarray, mask: np.ndarray, window: int = 7) -> float:
    """Mean local-window SSIM over the pixels selected by ``mask``.

    Pixels whose window would reach past the image border are left out, as
    :func:`compute_ssim` does, so an all-true mask gives the same value.

    Args:
        a: ``(H, W, 3)`` array.
        b: ``(H, W, 3)`` array with the same shape.
        mask: ``(H, W)`` boolean array of the pixels to average.
        window: Side of the square uniform window (odd).

    Returns:
        SSIM value in ``[0, 1]``; 1.0 when no pixel is selected.
    """
    luma_a = _luminance(a)
    luma_b = _luminance(b)

    win = _fit_window(window, luma_a.shape)
    if win < 3:
        if not mask.any():
            return 1.0
        value = _global_ssim(luma_a[mask], luma_b[mask])
        return float(np.clip(value, 0.0, 1.0))

    _, ssim_map = structural_similarity(
        luma_a,
        luma_b,
        win_size=win,
        data_range=255.0,
        gaussian_weights=False,
        full=True,
    )
    pad = (win - 1) // 2
    interior = np.zeros(mask.shape, dtype=bool)
    interior[pad : mask.shape[0] - pad, pad : mask.shape[1] - pad] = True
    selected = mask & interior
    if not selected.any():
        return 1.0
    return float(np.clip(ssim_map[selected].mean(), 0.0, 1.0))


def pixel_diff_percent(a: np.ndarray, b: np.ndarray, fuzz_threshold: float = 0.02) -> float:
    """Percentage of pixels whose largest channel delta exceeds the fuzz threshold.

    Args:
        a: ``(H, W, 3)`` array.
        b: ``(H, W, 3)`` array with the same shape.
        fuzz_threshold: Tolerated delta as a fraction of the 0-255 range.

    Returns:
        Value in ``[0, 100]``.
    """
    return float(_changed_pixels(a, b, fuzz_threshold).mean() * 100)


def _changed_pixels(a: np.ndarray, b: np.ndarray, fuzz_threshold: float) -> np.ndarray:
    delta = np.abs(a.astype(np.int16) - b.astype(np.int16)).max(axis=2)
    return delta > fuzz_threshold * 255


def phash_distance(a: np.ndarray, b: np.ndarray, hash_size: int = 8) -> int:
    """Hamming distance between the DCT perceptual hashes of two arrays."""
    hash_a = imagehash.phash(Image.fromarray(np.ascontiguousarray(a)), hash_size=hash_size)
    hash_b = imagehash.phash(Image.fromarray(np.ascontiguousarray(b)), hash_size=hash_size)
    return int(hash_a - hash_b)


def is_gross_mismatch(phash: int, ssim: float, settings: MetricSettings | None = None) -> bool:
    """Whether a pair is grossly different (wrong screen, missing layout).

    Requires both a hash distance above ``phash_gross_threshold`` and a
    global SSIM below ``gross_mismatch_ssim``.
    """
    settings = settings or MetricSettings()
    return phash > settings.phash_gross_threshold and ssim < settings.gross_mismatch_ssim


def rgb_to_lab(colors: np.ndarray) -> np.ndarray:
    """Convert ``(N, 3)`` sRGB colours in the 0-255 range to CIE LAB (D65)."""
    rgb = np.asarray(colors, dtype=np.float64).reshape(-1, 1, 3) / 255.0
    return rgb2lab(rgb).reshape(-1, 3)


def delta_e_ciede2000(colors_a: np.ndarray, colors_b: np.ndarray) -> np.ndarray:
    """CIEDE2000 colour difference between two ``(N, 3)`` sRGB colour arrays."""
    lab_a = rgb_to_lab(colors_a)
    lab_b = rgb_to_lab(colors_b)
    return np.asarray(deltaE_ciede2000(lab_a, lab_b, channel_axis=-1), dtype=np.float64)


def delta_e_map(design: ImageData, implementation: ImageData) -> np.ndarray:
    """Per-pixel CIEDE2000 map of two equally sized images.

    Raises:
        DimensionMismatchError: If the images have different sizes.
    """
    _require_same_size(design, implementation)
    values = delta_e_ciede2000(
        design.pixels.reshape(-1, 3), implementation.pixels.reshape(-1, 3)
    )
    return values.reshape(design.height, design.width)


def sample_color(pixels: np.ndarray, sample: ColorSample) -> np.ndarray:
    """Average colour of the square patch around a sample point.

    The patch is clamped to the image.

    Raises:
        InvalidRegionError: If the sample centre lies outside the image.
    """
    h, w = pixels.shape[:2]
    if not (0 <= sample.x < w and 0 <= sample.y < h):
        msg = f"Colour sample {sample.sample_id!r} at ({sample.x}, {sample.y}) is outside {w}x{h}"
        raise InvalidRegionError(msg)
    r = max(sample.radius, 0)
    patch = pixels[max(sample.y - r, 0) : sample.y + r + 1, max(sample.x - r, 0) : sample.x + r + 1]
    return patch.reshape(-1, 3).astype(np.float64).mean(axis=0)


def _foreground_bbox(mask: np.ndarray) -> tuple[int, int, int, int]:
    """``(left, top, width, height)`` of the true pixels of a non-empty mask."""
    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    return int(cols[0]), int(rows[0]), int(cols[-1] - cols[0] + 1), int(rows[-1] - rows[0] + 1)


def measure_region(
    region: Region,
    design_background: np.ndarray,
    implementation_background: np.ndarray,
    settings: MetricSettings | None = None,
) -> RegionMetrics:
    """Measure one cropped region.

    Args:
        region: Region carrying both crops.
        design_background: Background colour of the design image.
        implementation_background: Background colour of the implementation.
        settings: Metric parameters.

    Returns:
        :class:`RegionMetrics` for the region.

    Raises:
        InvalidRegionError: If the region carries no crops.
    """
    settings = settings or MetricSettings()
    design = region.design_pixels
    impl = region.implementation_pixels
    if design is None or impl is None:
        msg = f"Region {region.label!r} has no cropped pixel data"
        raise InvalidRegionError(msg)

    design_mask = foreground_mask(design, design_background, settings.contrast_threshold)
    impl_mask = foreground_mask(impl, implementation_background, settings.contrast_threshold)
    union = int(np.count_nonzero(design_mask | impl_mask))
    mismatch = int(np.count_nonzero(design_mask ^ impl_mask)) / union if union else 0.0

    delta_e: float | None = None
    offset_x = offset_y = width_delta = height_delta = None
    if design_mask.any() and impl_mask.any():
        colors = np.stack(
            [
                design[design_mask].astype(np.float64).mean(axis=0),
                impl[impl_mask].astype(np.float64).mean(axis=0),
            ]
        )
        delta_e = float(delta_e_ciede2000(colors[:1], colors[1:])[0])

        dx, dy, dw, dh = _foreground_bbox(design_mask)
        ix, iy, iw, ih = _foreground_bbox(impl_mask)
        offset_x, offset_y = ix - dx, iy - dy
        width_delta, height_delta = iw - dw, ih - dh
    elif not design_mask.any() and not impl_mask.any():
        # Flat area in both crops: compare the plain average colours.
        colors = np.stack(
            [
                design.reshape(-1, 3).astype(np.float64).mean(axis=0),
                impl.reshape(-1, 3).astype(np.float64).mean(axis=0),
            ]
        )
        delta_e = float(delta_e_ciede2000(colors[:1], colors[1:])[0])

    return RegionMetrics(
        label=region.label,
        ssim=compute_ssim(design, impl, settings.ssim_window),
        pixel_diff_percent=pixel_diff_percent(design, impl, settings.fuzz_threshold),
        mask_mismatch=float(mismatch),
        delta_e=delta_e,
        offset_x=offset_x,
        offset_y=offset_y,
        width_delta=width_delta,
        height_delta=height_delta,
        design_coverage=float(design_mask.mean()),
        implementation_coverage=float(impl_mask.mean()),
    )


def _sample_delta_e(
    design: np.ndarray,
    implementation: np.ndarray,
    samples: list[ColorSample],
    design_background: np.ndarray,
    implementation_background: np.ndarray,
) -> dict[str, float]:
    ids = ["background"]
    colors_a = [design_background.astype(np.float64)]
    colors_b = [implementation_background.astype(np.float64)]
    for sample in samples:
        ids.append(sample.sample_id)
        colors_a.append(sample_color(design, sample))
        colors_b.append(sample_color(implementation, sample))
    values = delta_e_ciede2000(np.stack(colors_a), np.stack(colors_b))
    return {sample_id: float(v) for sample_id, v in zip(ids, values, strict=True)}


def _measure_regions(
    regions: list[Region],
    design_background: np.ndarray,
    implementation_background: np.ndarray,
    settings: MetricSettings,
) -> dict[str, RegionMetrics]:
    return {
        region.label: measure_region(
            region, design_background, implementation_background, settings
        )
        for region in regions
    }


def coverage_mask(shape: tuple[int, ...], regions: list[Region]) -> np.ndarray:
    """Boolean ``(H, W)`` mask of the pixels inside any of the region boxes."""
    covered = np.zeros(shape[:2], dtype=bool)
    for region in regions:
        x0, y0 = max(region.x, 0), max(region.y, 0)
        covered[y0 : region.y + region.height, x0 : region.x + region.width] = True
    return covered


def measure_uncovered(
    design: np.ndarray,
    implementation: np.ndarray,
    regions: list[Region],
    design_background: np.ndarray,
    implementation_background: np.ndarray,
    settings: MetricSettings | None = None,
) -> tuple[float, float, float]:
    """Measure the pixels that no region box covers.

    SSIM leaves out pixels whose window overlaps a region, so a change
    inside a region does not leak into its surroundings.

    Returns:
        ``(ssim, pixel_diff_percent, mask_mismatch)`` over the uncovered
        pixels.  The pixel diff is relative to the uncovered pixel count.
    """
    settings = settings or MetricSettings()
    covered = coverage_mask(design.shape, regions)
    outside = ~covered
    if not outside.any():
        return 1.0, 0.0, 0.0

    pad = (_fit_window(settings.ssim_window, design.shape[:2]) - 1) // 2
    ssim = masked_ssim(
        design, implementation, ~dilate_mask(covered, pad), settings.ssim_window
    )

    changed = _changed_pixels(design, implementation, settings.fuzz_threshold)
    diff = float(np.count_nonzero(changed & outside) / np.count_nonzero(outside) * 100)

    design_mask = foreground_mask(design, design_background, settings.contrast_threshold)
    impl_mask = foreground_mask(
        implementation, implementation_background, settings.contrast_threshold
    )
    union = int(np.count_nonzero((design_mask | impl_mask) & outside))
    mismatch = (
        int(np.count_nonzero((design_mask ^ impl_mask) & outside)) / union if union else 0.0
    )
    return ssim, diff, float(mismatch)


def _require_same_size(design: ImageData, implementation: ImageData) -> None:
    if design.size != implementation.size:
        msg = (
            f"Images must have equal dimensions: design {design.width}x{design.height}, "
            f"implementation {implementation.width}x{implementation.height}"
        )
        raise DimensionMismatchError(msg)


def compare(
    design: ImageData,
    implementation: ImageData,
    samples: list[ColorSample] | None = None,
    regions: list[Region] | None = None,
    settings: MetricSettings | None = None,
) -> MetricResult:
    """Compute all metrics for an image pair.

    Args:
        design: Reference design image.
        implementation: Implementation screenshot with the same dimensions.
        samples: Explicit colour sample points.
        regions: Cropped regions to measure individually.
        settings: Metric parameters.

    Returns:
        :class:`MetricResult` with global metrics, per-sample ΔE00 values
        (``background``, explicit sample ids and ``region:<label>``),
        per-region metrics and the uncovered-area metrics.

    Raises:
        DimensionMismatchError: If the images have different sizes.
        InvalidRegionError: If a colour sample lies outside the images.
    """
    _require_same_size(design, implementation)
    settings = settings or MetricSettings()
    samples = samples or []
    regions = regions or []

    a = design.pixels
    b = implementation.pixels
    design_bg = estimate_background(a)
    impl_bg = estimate_background(b)

    tasks: dict[str, tuple[Callable[..., Any], tuple[Any, ...]]] = {
        "ssim": (compute_ssim, (a, b, settings.ssim_window)),
        "pixel_diff": (pixel_diff_percent, (a, b, settings.fuzz_threshold)),
        "phash": (phash_distance, (a, b, settings.phash_size)),
        "color": (_sample_delta_e, (a, b, samples, design_bg, impl_bg)),
    }

    results: dict[str, Any] = {}
    if settings.short_circuit_on_gross_mismatch and regions:
        # Gross mismatch: per-region analysis would only restate it.
        results["phash"] = phash_distance(a, b, settings.phash_size)
        results["ssim"] = compute_ssim(a, b, settings.ssim_window)
        del tasks["phash"], tasks["ssim"]
        if is_gross_mismatch(results["phash"], results["ssim"], settings):
            regions = []

    tasks["regions"] = (_measure_regions, (regions, design_bg, impl_bg, settings))
    tasks["uncovered"] = (measure_uncovered, (a, b, regions, design_bg, impl_bg, settings))

    if settings.parallel:
        with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
            futures = {name: pool.submit(fn, *args) for name, (fn, args) in tasks.items()}
            results.update({name: future.result() for name, future in futures.items()})
    else:
        results.update({name: fn(*args) for name, (fn, args) in tasks.items()})

    color_delta_e: dict[str, float] = dict(results["color"])
    region_metrics: dict[str, RegionMetrics] = results["regions"]
    for label, rm in region_metrics.items():
        if rm.delta_e is not None:
            color_delta_e[f"region:{label}"] = rm.delta_e
    uncovered_ssim, uncovered_diff, uncovered_mismatch = results["uncovered"]

    return MetricResult(
        ssim=results["ssim"],
        pixel_diff_percent=results["pixel_diff"],
        phash_distance=results["phash"],
        color_delta_e=color_delta_e,
        regions=region_metrics,
        uncovered_ssim=uncovered_ssim,
        uncovered_pixel_diff_percent=uncovered_diff,
        uncovered_mask_mismatch=uncovered_mismatch,
    )
