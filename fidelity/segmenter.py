"""Region segmentation.

Decomposes an image pair into comparable sub-regions.  Regions come from one
of two sources:

1. Boxes supplied by a layout-introspection collaborator.  These always take
   precedence and are the reliable path.
2. Best-effort auto-detection when no boxes are supplied.  The background
   colour of each image is estimated from its border, pixels that contrast
   with it form a foreground mask, and the union of both masks is dilated so
   that nearby edges (the glyphs of one text line, the parts of an icon)
   cluster into one connected component.  Each component's bounding box
   becomes a region.

Every region carries the matching crops of both images.  Crops are clamped
to the image bounds; a box with zero area or no overlap with the image is
skipped and reported as a "region skipped" note without aborting the rest of
the comparison.
"""

import numpy as np
from skimage.measure import label as label_components
from skimage.measure import regionprops

from fidelity.cancellation import CancellationToken, check_cancelled
from fidelity.config import MetricSettings
from fidelity.errors import DimensionMismatchError, InvalidRegionError
from fidelity.models import Category, Discrepancy, ImageData, Region, Severity


def estimate_background(pixels: np.ndarray) -> np.ndarray:
    """Estimate the background colour as the most common border colour.

    Args:
        pixels: ``(H, W, 3)`` image array.

    Returns:
        ``int16`` array of three channel values.
    """
    border = np.concatenate(
        [pixels[0, :], pixels[-1, :], pixels[:, 0], pixels[:, -1]],
        axis=0,
    )
    colors, counts = np.unique(border, axis=0, return_counts=True)
    return colors[int(np.argmax(counts))].astype(np.int16)


def foreground_mask(pixels: np.ndarray, background: np.ndarray, threshold: int) -> np.ndarray:
    """Mark pixels whose largest channel delta from the background exceeds ``threshold``."""
    delta = np.abs(pixels.astype(np.int16) - np.asarray(background, dtype=np.int16))
    return delta.max(axis=2) > threshold


def dilate_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Dilate a boolean mask with a square footprint of side ``2 * radius + 1``.

    Uses an integral image (summed area table) so the cost does not depend
    on the radius.
    """
    if radius <= 0:
        return mask.copy()

    h, w = mask.shape
    k = 2 * radius + 1
    padded = np.pad(mask.astype(np.int64), radius)
    integral = np.zeros((h + k, w + k), dtype=np.int64)
    integral[1:, 1:] = np.cumsum(np.cumsum(padded, axis=0), axis=1)

    window_sums = (
        integral[k : k + h, k : k + w]
        - integral[:h, k : k + w]
        - integral[k : k + h, :w]
        + integral[:h, :w]
    )
    return window_sums > 0


def crop_region(
    design: ImageData,
    implementation: ImageData,
    box: Region,
    cancel_token: CancellationToken | None = None,
) -> Region:
    """Crop a box from both images, clamping it to the image bounds.

    Args:
        design: Design image.
        implementation: Implementation image with the same dimensions.
        box: Requested box; its crops, if any, are ignored.
        cancel_token: Optional token checked before cropping.

    Returns:
        A new :class:`Region` holding the clamped box and both crops.

    Raises:
        InvalidRegionError: If the box has zero area or does not overlap the
            image at all.
        OperationCancelledError: If the token was cancelled.
    """
    check_cancelled(cancel_token, f"crop of region {box.label!r}")

    if box.width <= 0 or box.height <= 0:
        msg = f"Region {box.label!r} has zero area ({box.width}x{box.height})"
        raise InvalidRegionError(msg)

    x0 = max(box.x, 0)
    y0 = max(box.y, 0)
    x1 = min(box.x + box.width, design.width)
    y1 = min(box.y + box.height, design.height)
    if x1 <= x0 or y1 <= y0:
        msg = (
            f"Region {box.label!r} at ({box.x}, {box.y}, {box.width}x{box.height}) "
            f"lies outside the {design.width}x{design.height} image"
        )
        raise InvalidRegionError(msg)

    return Region(
        x=x0,
        y=y0,
        width=x1 - x0,
        height=y1 - y0,
        label=box.label,
        design_pixels=design.pixels[y0:y1, x0:x1],
        implementation_pixels=implementation.pixels[y0:y1, x0:x1],
    )


def detect_regions(
    design: ImageData,
    implementation: ImageData,
    settings: MetricSettings | None = None,
) -> list[Region]:
    """Auto-detect comparable regions from foreground contrast.

    Args:
        design: Design image.
        implementation: Implementation image with the same dimensions.
        settings: Contrast, clustering and size limits.

    Returns:
        Region boxes (without crops) ordered top-to-bottom, left-to-right and
        labelled ``region-1``, ``region-2``...
    """
    settings = settings or MetricSettings()

    design_mask = foreground_mask(
        design.pixels, estimate_background(design.pixels), settings.contrast_threshold
    )
    impl_mask = foreground_mask(
        implementation.pixels,
        estimate_background(implementation.pixels),
        settings.contrast_threshold,
    )
    union = design_mask | impl_mask
    if not union.any():
        return []

    clustered = dilate_mask(union, settings.merge_distance)
    labels = label_components(clustered, connectivity=2)
    # Keep labels only on real foreground so bounding boxes are not inflated
    # by the dilation.
    props = [
        p
        for p in regionprops(np.where(union, labels, 0))
        if p.area >= settings.min_region_area
    ]
    props.sort(key=lambda p: p.area, reverse=True)
    props = props[: settings.max_regions]

    boxes = []
    for p in props:
        min_row, min_col, max_row, max_col = p.bbox
        boxes.append((min_row, min_col, max_row - min_row, max_col - min_col))
    boxes.sort()

    return [
        Region(x=int(col), y=int(row), width=int(w), height=int(h), label=f"region-{i}")
        for i, (row, col, h, w) in enumerate(boxes, start=1)
    ]


def parse_region_boxes(data: list | dict) -> list[Region]:
    """Parse region boxes from the JSON structure of a regions file.

    Accepts either a bare list of boxes or ``{"regions": [...]}``.

    Raises:
        ValueError: If the structure or a box is malformed.
    """
    if isinstance(data, dict):
        if "regions" not in data:
            msg = "Regions document must be a list or have a 'regions' field"
            raise ValueError(msg)
        data = data["regions"]
    if not isinstance(data, list):
        msg = f"Regions must be a list, got {type(data).__name__}"
        raise ValueError(msg)
    return [Region.from_dict(item) for item in data]


def _unique_labels(boxes: list[Region]) -> list[Region]:
    seen: dict[str, int] = {}
    result = []
    for i, box in enumerate(boxes, start=1):
        name = box.label or f"region-{i}"
        if name in seen:
            seen[name] += 1
            name = f"{name}-{seen[name]}"
        else:
            seen[name] = 1
        result.append(Region(box.x, box.y, box.width, box.height, name))
    return result


def segment(
    design: ImageData,
    implementation: ImageData,
    boxes: list[Region] | None = None,
    settings: MetricSettings | None = None,
    cancel_token: CancellationToken | None = None,
) -> tuple[list[Region], list[Discrepancy]]:
    """Decompose an image pair into cropped regions.

    Args:
        design: Design image.
        implementation: Implementation image with the same dimensions.
        boxes: Externally supplied boxes.  When given (even empty) they are
            used as-is and auto-detection is skipped.
        settings: Auto-detection parameters.
        cancel_token: Optional token checked before each crop.

    Returns:
        ``(regions, notes)``: the cropped regions and one Medium-severity
        "region skipped" note per rejected box.

    Raises:
        DimensionMismatchError: If the images have different sizes.
        OperationCancelledError: If the token was cancelled.
    """
    if design.size != implementation.size:
        msg = (
            f"Cannot segment images of different sizes: design {design.size}, "
            f"implementation {implementation.size}"
        )
        raise DimensionMismatchError(msg)

    if boxes is None:
        candidates = detect_regions(design, implementation, settings)
    else:
        candidates = _unique_labels(boxes)

    regions: list[Region] = []
    notes: list[Discrepancy] = []
    for box in candidates:
        try:
            regions.append(crop_region(design, implementation, box, cancel_token))
        except InvalidRegionError as e:
            notes.append(
                Discrepancy(
                    category=Category.STRUCTURE,
                    severity=Severity.MEDIUM,
                    signal="region_skipped",
                    measured=f"{box.x},{box.y},{box.width}x{box.height}",
                    expected=f"box within {design.width}x{design.height}",
                    fix_category="verify-region-box",
                    description=f"Region skipped: {e}",
                )
            )

    return regions, notes
