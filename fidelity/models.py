"""Data model shared by every stage of the comparison.

All records are plain dataclasses.  Records that leave the engine (metrics,
discrepancies, scores, iteration state) carry ``to_dict``/``from_dict``
helpers so that a serialized report parses back to an equal object.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import numpy as np


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(UTC).isoformat()


class Category(str, Enum):
    """Kind of difference a discrepancy describes."""

    COLOR = "color"
    SPACING = "spacing"
    TYPOGRAPHY = "typography"
    STRUCTURE = "structure"
    EFFECTS = "effects"


class Severity(str, Enum):
    """Severity tier, ordered from harmless to blocking."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def worst(cls, severities: "list[Severity]") -> "Severity":
        """Return the most severe tier, or ``NONE`` for an empty list."""
        if not severities:
            return cls.NONE
        return max(severities, key=lambda s: s.rank)


class IterationStatus(str, Enum):
    """Status of the refinement loop."""

    RUNNING = "running"
    CONVERGED = "converged"
    STALLED = "stalled"
    ESCALATED = "escalated"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"

    @property
    def terminal(self) -> bool:
        return self is not IterationStatus.RUNNING


@dataclass(frozen=True, eq=False)
class ImageData:
    """Immutable RGB pixel buffer.

    Attributes:
        pixels: ``uint8`` array of shape ``(H, W, 3)``.  The array is made
            read-only on construction.
        source: Where the image came from (path or ``"<bytes>"``).
    """

    pixels: np.ndarray = field(repr=False)
    source: str = "<memory>"

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            msg = f"Expected an (H, W, 3) pixel array, got shape {self.pixels.shape}"
            raise ValueError(msg)
        if self.pixels.dtype != np.uint8:
            msg = f"Expected uint8 pixels, got {self.pixels.dtype}"
            raise ValueError(msg)
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def size(self) -> tuple[int, int]:
        """``(width, height)`` in pixels, matching Pillow's convention."""
        return self.width, self.height


@dataclass
class Region:
    """A labelled bounding box with the matching crops of both images.

    The crops are transient: they are excluded from equality and from the
    serialized form, so a region read back from a report compares equal to
    the one that produced it.
    """

    x: int
    y: int
    width: int
    height: int
    label: str = ""
    design_pixels: np.ndarray | None = field(default=None, compare=False, repr=False)
    implementation_pixels: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def box(self) -> tuple[int, int, int, int]:
        """``(left, top, right, bottom)`` with exclusive right/bottom edges."""
        return self.x, self.y, self.x + self.width, self.y + self.height

    def without_pixels(self) -> "Region":
        return Region(self.x, self.y, self.width, self.height, self.label)

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Region":
        """Build a region box from a dictionary.

        Accepts ``width``/``height`` or the short ``w``/``h`` keys.

        Raises:
            ValueError: If a coordinate is missing or not an integer.
        """
        try:
            return cls(
                x=int(data["x"]),
                y=int(data["y"]),
                width=int(data["width"] if "width" in data else data["w"]),
                height=int(data["height"] if "height" in data else data["h"]),
                label=str(data.get("label", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Invalid region box {data!r}: {e}"
            raise ValueError(msg) from e


@dataclass
class ColorSample:
    """Explicit colour sampling point.

    Attributes:
        sample_id: Key under which the ΔE00 value is reported.
        x: Column of the sample centre.
        y: Row of the sample centre.
        radius: Half-size of the square patch averaged around the centre.
    """

    sample_id: str
    x: int
    y: int
    radius: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ColorSample":
        return cls(
            sample_id=str(data.get("id", data.get("sample_id", f"{data['x']},{data['y']}"))),
            x=int(data["x"]),
            y=int(data["y"]),
            radius=int(data.get("radius", 0)),
        )


@dataclass
class LayoutElement:
    """Layout and font metadata for one element.

    Produced by a layout-introspection collaborator.  ``expected`` holds the
    design values and ``measured`` the values read from the implementation,
    keyed by property name (``font_size``, ``padding_left``, ``opacity``...).
    """

    label: str
    expected: dict[str, float | str] = field(default_factory=dict)
    measured: dict[str, float | str] = field(default_factory=dict)
    region: Region | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LayoutElement":
        if "label" not in data:
            msg = f"Layout element must have a 'label' field: {data!r}"
            raise ValueError(msg)
        box = data.get("region")
        return cls(
            label=str(data["label"]),
            expected=dict(data.get("expected", {})),
            measured=dict(data.get("measured", {})),
            region=Region.from_dict({**box, "label": box.get("label", data["label"])})
            if box
            else None,
        )


@dataclass
class RegionMetrics:
    """Measurements for one region.

    Attributes:
        label: Region label.
        ssim: Local-window SSIM over the region crops.
        pixel_diff_percent: Percentage of pixels beyond the fuzz threshold.
        mask_mismatch: Share of the foreground union that is foreground in
            only one of the two crops (0 means identical shapes).
        delta_e: CIEDE2000 distance between the average foreground colours,
            or ``None`` when neither crop has foreground.
        offset_x: Horizontal shift of the foreground bounding box (impl - design).
        offset_y: Vertical shift of the foreground bounding box.
        width_delta: Change in foreground bounding-box width.
        height_delta: Change in foreground bounding-box height.
        design_coverage: Foreground share of the design crop.
        implementation_coverage: Foreground share of the implementation crop.
    """

    label: str
    ssim: float
    pixel_diff_percent: float
    mask_mismatch: float
    delta_e: float | None = None
    offset_x: int | None = None
    offset_y: int | None = None
    width_delta: int | None = None
    height_delta: int | None = None
    design_coverage: float = 0.0
    implementation_coverage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegionMetrics":
        return cls(**data)


@dataclass
class MetricResult:
    """Raw metric values for one image pair.

    The ``uncovered_*`` values describe the pixels outside every measured
    region (the whole image when no region was measured).  ``None`` means
    they were not computed and the image-wide values stand in for them.
    """

    ssim: float
    pixel_diff_percent: float
    phash_distance: int
    color_delta_e: dict[str, float] = field(default_factory=dict)
    regions: dict[str, RegionMetrics] = field(default_factory=dict)
    uncovered_ssim: float | None = None
    uncovered_pixel_diff_percent: float | None = None
    uncovered_mask_mismatch: float | None = None

    @property
    def max_delta_e(self) -> float:
        return max(self.color_delta_e.values(), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ssim": self.ssim,
            "pixel_diff_percent": self.pixel_diff_percent,
            "phash_distance": self.phash_distance,
            "color_delta_e": dict(self.color_delta_e),
            "regions": {label: rm.to_dict() for label, rm in self.regions.items()},
            "uncovered_ssim": self.uncovered_ssim,
            "uncovered_pixel_diff_percent": self.uncovered_pixel_diff_percent,
            "uncovered_mask_mismatch": self.uncovered_mask_mismatch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricResult":
        return cls(
            ssim=data["ssim"],
            pixel_diff_percent=data["pixel_diff_percent"],
            phash_distance=data["phash_distance"],
            color_delta_e=dict(data.get("color_delta_e", {})),
            regions={
                label: RegionMetrics.from_dict(rm)
                for label, rm in data.get("regions", {}).items()
            },
            uncovered_ssim=data.get("uncovered_ssim"),
            uncovered_pixel_diff_percent=data.get("uncovered_pixel_diff_percent"),
            uncovered_mask_mismatch=data.get("uncovered_mask_mismatch"),
        )


@dataclass
class Discrepancy:
    """One classified, localized difference.

    Attributes:
        category: What kind of difference this is.
        severity: Tier derived from ``delta`` by a fixed threshold table.
        signal: The measurement that produced the finding (``ssim``,
            ``delta_e``, ``offset``, ``font_size``...).
        measured: Value observed in the implementation.
        expected: Value taken from the design.
        delta: Magnitude of the difference in the signal's own unit.
        region: Region the finding belongs to, ``None`` for image-wide ones.
        fix_category: Suggested kind of fix for the external fixer.
        description: Human-readable summary.
    """

    category: Category
    severity: Severity
    signal: str
    measured: float | str | None = None
    expected: float | str | None = None
    delta: float = 0.0
    region: Region | None = None
    fix_category: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "signal": self.signal,
            "measured": self.measured,
            "expected": self.expected,
            "delta": self.delta,
            "region": self.region.to_dict() if self.region is not None else None,
            "fix_category": self.fix_category,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Discrepancy":
        region = data.get("region")
        return cls(
            category=Category(data["category"]),
            severity=Severity(data["severity"]),
            signal=data["signal"],
            measured=data.get("measured"),
            expected=data.get("expected"),
            delta=data.get("delta", 0.0),
            region=Region.from_dict(region) if region is not None else None,
            fix_category=data.get("fix_category", ""),
            description=data.get("description", ""),
        )


@dataclass
class FidelityScore:
    """Weighted 0-100 fidelity score for one iteration."""

    total: int
    breakdown: dict[str, int] = field(default_factory=dict)
    iteration: int = 0
    timestamp: str = field(default_factory=utc_timestamp)

    def __post_init__(self) -> None:
        if not 0 <= self.total <= 100:
            msg = f"Fidelity score total must be within [0, 100], got {self.total}"
            raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "breakdown": dict(self.breakdown),
            "iteration": self.iteration,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FidelityScore":
        return cls(
            total=data["total"],
            breakdown=dict(data.get("breakdown", {})),
            iteration=data.get("iteration", 0),
            timestamp=data["timestamp"],
        )


@dataclass
class IterationState:
    """Append-only score history plus the loop status."""

    iteration: int = 0
    history: list[FidelityScore] = field(default_factory=list)
    status: IterationStatus = IterationStatus.RUNNING
    status_trail: list[IterationStatus] = field(
        default_factory=lambda: [IterationStatus.RUNNING]
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "status": self.status.value,
            "status_trail": [s.value for s in self.status_trail],
            "history": [s.to_dict() for s in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationState":
        return cls(
            iteration=data.get("iteration", 0),
            history=[FidelityScore.from_dict(s) for s in data.get("history", [])],
            status=IterationStatus(data.get("status", IterationStatus.RUNNING.value)),
            status_trail=[
                IterationStatus(s) for s in data.get("status_trail", [IterationStatus.RUNNING.value])
            ],
        )
