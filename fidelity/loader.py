"""Image loading and normalization.

Images are decoded with Pillow into immutable ``uint8`` RGB buffers.
Transparent images are flattened onto a white background, which is what a
screenshot of the same content would show.

Normalization brings the implementation screenshot to the design's
dimensions so that every metric can work pixel-for-pixel; the original size
mismatch is kept as a structural discrepancy.
"""

import io
from pathlib import Path
from typing import BinaryIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from fidelity.cancellation import CancellationToken, check_cancelled
from fidelity.errors import ImageLoadError
from fidelity.models import Category, Discrepancy, ImageData, Severity

ImageSource = str | Path | bytes | bytearray | BinaryIO


def _flatten(img: Image.Image) -> Image.Image:
    """Convert any Pillow mode to RGB, compositing alpha over white."""
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        rgb_img = Image.new("RGB", rgba.size, (255, 255, 255))
        rgb_img.paste(rgba, mask=rgba.split()[3])
        return rgb_img
    return img.convert("RGB")


def load(source: ImageSource, cancel_token: CancellationToken | None = None) -> ImageData:
    """Load an image from a path, a byte buffer or a binary file object.

    Args:
        source: File path, raw encoded bytes or an open binary stream.
        cancel_token: Optional token checked before decoding starts.

    Returns:
        Immutable RGB image.

    Raises:
        ImageLoadError: If the input is missing, unreadable, corrupt or has
            zero width or height.
        OperationCancelledError: If the token was cancelled.
    """
    check_cancelled(cancel_token, "image load")

    if isinstance(source, bytes | bytearray):
        if not source:
            msg = "Cannot load image from an empty byte buffer"
            raise ImageLoadError(msg)
        label = "<bytes>"
        stream: str | Path | BinaryIO = io.BytesIO(source)
    elif isinstance(source, str | Path):
        label = str(source)
        stream = Path(source)
        if not stream.is_file():
            msg = f"Image file not found: {source}"
            raise ImageLoadError(msg)
        if stream.stat().st_size == 0:
            msg = f"Image file is empty: {source}"
            raise ImageLoadError(msg)
    else:
        label = str(getattr(source, "name", "<stream>"))
        stream = source

    try:
        with Image.open(stream) as img:
            img.load()
            rgb = _flatten(img)
            pixels = np.array(rgb, dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        msg = f"Failed to decode image {label}: {e}"
        raise ImageLoadError(msg) from e

    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        msg = f"Image {label} has zero size"
        raise ImageLoadError(msg)

    return ImageData(pixels=pixels, source=label)


def from_array(pixels: np.ndarray, source: str = "<memory>") -> ImageData:
    """Wrap an in-memory array as an immutable image.

    Grayscale ``(H, W)`` and RGBA ``(H, W, 4)`` arrays are converted the same
    way :func:`load` converts decoded files.

    Raises:
        ImageLoadError: If the array is empty or has an unsupported shape.
    """
    if pixels.size == 0:
        msg = f"Image {source} has zero size"
        raise ImageLoadError(msg)
    try:
        img = Image.fromarray(np.ascontiguousarray(pixels).astype(np.uint8))
    except (TypeError, ValueError) as e:
        msg = f"Unsupported pixel array for {source}: shape {pixels.shape}"
        raise ImageLoadError(msg) from e
    return ImageData(pixels=np.array(_flatten(img), dtype=np.uint8), source=source)


def to_pil(image: ImageData) -> Image.Image:
    """Return a Pillow copy of an image."""
    return Image.fromarray(np.array(image.pixels))


def normalize(
    design: ImageData,
    implementation: ImageData,
) -> tuple[ImageData, ImageData, list[Discrepancy]]:
    """Bring the implementation image to the design's dimensions.

    When the sizes already match both images are returned unchanged.
    Otherwise the implementation is resized with Lanczos resampling and a
    High-severity structural discrepancy records the original mismatch.

    Args:
        design: Reference design image.
        implementation: Implementation screenshot.

    Returns:
        ``(design, implementation, discrepancies)`` where ``discrepancies``
        is empty or holds the single dimension-mismatch finding.
    """
    if design.size == implementation.size:
        return design, implementation, []

    resized = to_pil(implementation).resize(design.size, Image.Resampling.LANCZOS)
    normalized = ImageData(
        pixels=np.array(resized, dtype=np.uint8),
        source=implementation.source,
    )

    dw = implementation.width - design.width
    dh = implementation.height - design.height
    finding = Discrepancy(
        category=Category.STRUCTURE,
        severity=Severity.HIGH,
        signal="dimensions",
        measured=f"{implementation.width}x{implementation.height}",
        expected=f"{design.width}x{design.height}",
        delta=float(max(abs(dw), abs(dh))),
        fix_category="match-canvas-size",
        description=(
            f"Implementation is {implementation.width}x{implementation.height} px, "
            f"design is {design.width}x{design.height} px; "
            "the implementation was resized before comparison"
        ),
    )
    return design, normalized, [finding]


def describe(image: ImageData) -> dict[str, int | str | tuple[int, int]]:
    """Get basic information about an image.

    Returns:
        Dictionary with source, dimensions and channel depth
    """
    return {
        "source": image.source,
        "dimensions": image.size,
        "width": image.width,
        "height": image.height,
        "channels": image.channels,
    }
