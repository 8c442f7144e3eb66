"""Engine configuration.

Loads scoring weights, severity thresholds, metric parameters and iteration
limits from a JSON file.  Every value is validated when the configuration is
built: a malformed value raises :class:`ConfigurationError` and is never
replaced by a default.

Example configuration file::

    {
        "weights": {"ssim": 30, "pixel_diff": 20, "color": 20,
                    "spacing": 15, "typography_effects": 15},
        "thresholds": {"color": {"none": 1.0, "low": 2.0, "medium": 3.5}},
        "metrics": {"ssim_window": 7, "fuzz_threshold": 0.02},
        "iteration": {"convergence_threshold": 95, "max_iterations": 10}
    }
"""

import json
import math
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from fidelity.errors import ConfigurationError


def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
        msg = f"{name} must be a finite number, got {value!r}"
        raise ConfigurationError(msg)
    return float(value)


def _require_int(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{name} must be an integer, got {value!r}"
        raise ConfigurationError(msg)
    if value < minimum:
        msg = f"{name} must be >= {minimum}, got {value}"
        raise ConfigurationError(msg)
    return value


@dataclass(frozen=True)
class SeverityThresholds:
    """Tier boundaries for one signal.

    For lower-is-better signals (ΔE, pixels) a value up to ``none`` is
    severity None, up to ``low`` is Low, up to ``medium`` is Medium and
    anything larger is High.  For higher-is-better signals (SSIM) the
    comparisons are reversed: at least ``none`` is None, and so on.
    """

    none: float
    low: float
    medium: float
    higher_is_better: bool = False

    def validate(self, name: str) -> None:
        bounds = [
            _require_number(f"thresholds.{name}.{tier}", getattr(self, tier))
            for tier in ("none", "low", "medium")
        ]
        if self.higher_is_better:
            ordered = bounds[0] >= bounds[1] >= bounds[2]
        else:
            ordered = bounds[0] <= bounds[1] <= bounds[2]
        if not ordered or min(bounds) < 0:
            direction = "non-increasing" if self.higher_is_better else "non-decreasing"
            msg = f"thresholds.{name} must be non-negative and {direction}, got {bounds}"
            raise ConfigurationError(msg)

    @classmethod
    def parse(cls, name: str, data: Any, higher_is_better: bool) -> "SeverityThresholds":
        """Parse ``{"none":..,"low":..,"medium":..}`` or a three-item list."""
        if isinstance(data, list | tuple) and len(data) == 3:
            none, low, medium = data
        elif isinstance(data, dict) and set(data) == {"none", "low", "medium"}:
            none, low, medium = data["none"], data["low"], data["medium"]
        else:
            msg = (
                f"thresholds.{name} must be a list of three bounds or an object "
                f"with 'none', 'low' and 'medium', got {data!r}"
            )
            raise ConfigurationError(msg)
        thresholds = cls(none, low, medium, higher_is_better)
        thresholds.validate(name)
        return thresholds


@dataclass(frozen=True)
class ThresholdSet:
    """Severity thresholds for every classified signal."""

    color: SeverityThresholds = SeverityThresholds(1.0, 2.0, 3.5)
    spacing: SeverityThresholds = SeverityThresholds(1.0, 4.0, 8.0)
    ssim: SeverityThresholds = SeverityThresholds(0.98, 0.95, 0.90, higher_is_better=True)
    pixel_diff: SeverityThresholds = SeverityThresholds(0.5, 2.0, 5.0)
    font_weight: SeverityThresholds = SeverityThresholds(0.0, 100.0, 200.0)
    opacity: SeverityThresholds = SeverityThresholds(0.02, 0.05, 0.10)

    def validate(self) -> None:
        for f in fields(self):
            getattr(self, f.name).validate(f.name)
        if self.ssim.none > 1.0:
            msg = f"thresholds.ssim bounds must not exceed 1.0, got {self.ssim.none}"
            raise ConfigurationError(msg)


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the score components; they must sum to 100."""

    ssim: float = 30
    pixel_diff: float = 20
    color: float = 20
    spacing: float = 15
    typography_effects: float = 15

    def validate(self) -> None:
        values = [_require_number(f"weights.{f.name}", getattr(self, f.name)) for f in fields(self)]
        if any(v < 0 for v in values):
            msg = f"Score weights must be non-negative, got {self.as_dict()}"
            raise ConfigurationError(msg)
        if not math.isclose(sum(values), 100.0, abs_tol=1e-9):
            msg = f"Score weights must sum to 100, got {sum(values):g}"
            raise ConfigurationError(msg)

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class MetricSettings:
    """Parameters of the metric engine and the region segmenter.

    Attributes:
        ssim_window: Side of the square SSIM window (odd, >= 3).
        fuzz_threshold: Per-channel delta, as a fraction of the channel
            range, that a pixel must exceed to count as different.
        phash_size: Side of the DCT low-frequency block; the fingerprint
            has ``phash_size ** 2`` bits.
        phash_gross_threshold: Hamming distance above which the pair is
            flagged as a gross mismatch.
        gross_mismatch_ssim: Global SSIM below which a large hash distance
            is confirmed as a gross mismatch.  DCT hash bits of symmetric
            layouts sit on near-zero coefficients and flip on rounding
            noise, so the hash distance alone is not trusted.
        short_circuit_on_gross_mismatch: Skip region analysis once a gross
            mismatch has been detected.
        contrast_threshold: Channel delta from the background colour above
            which a pixel belongs to the foreground.
        mask_tolerance: Foreground mismatch share tolerated before a region
            is treated as structurally different.
        merge_distance: Dilation radius used to cluster nearby foreground
            pixels into one auto-detected region.
        min_region_area: Auto-detected components smaller than this are
            ignored.
        max_regions: Upper bound on auto-detected regions (largest kept).
        parallel: Run the metric sub-computations on a thread pool.
    """

    ssim_window: int = 7
    fuzz_threshold: float = 0.02
    phash_size: int = 8
    phash_gross_threshold: int = 20
    gross_mismatch_ssim: float = 0.90
    short_circuit_on_gross_mismatch: bool = False
    contrast_threshold: int = 24
    mask_tolerance: float = 0.05
    merge_distance: int = 4
    min_region_area: int = 16
    max_regions: int = 64
    parallel: bool = True

    def validate(self) -> None:
        window = _require_int("metrics.ssim_window", self.ssim_window, 3)
        if window % 2 == 0:
            msg = f"metrics.ssim_window must be odd, got {window}"
            raise ConfigurationError(msg)
        fuzz = _require_number("metrics.fuzz_threshold", self.fuzz_threshold)
        if not 0 <= fuzz < 1:
            msg = f"metrics.fuzz_threshold must be within [0, 1), got {fuzz}"
            raise ConfigurationError(msg)
        _require_int("metrics.phash_size", self.phash_size, 2)
        _require_int("metrics.phash_gross_threshold", self.phash_gross_threshold, 0)
        ceiling = _require_number("metrics.gross_mismatch_ssim", self.gross_mismatch_ssim)
        if not 0 <= ceiling <= 1:
            msg = f"metrics.gross_mismatch_ssim must be within [0, 1], got {ceiling}"
            raise ConfigurationError(msg)
        contrast = _require_int("metrics.contrast_threshold", self.contrast_threshold, 1)
        if contrast > 254:
            msg = f"metrics.contrast_threshold must be <= 254, got {contrast}"
            raise ConfigurationError(msg)
        tolerance = _require_number("metrics.mask_tolerance", self.mask_tolerance)
        if not 0 <= tolerance < 1:
            msg = f"metrics.mask_tolerance must be within [0, 1), got {tolerance}"
            raise ConfigurationError(msg)
        _require_int("metrics.merge_distance", self.merge_distance, 0)
        _require_int("metrics.min_region_area", self.min_region_area, 1)
        _require_int("metrics.max_regions", self.max_regions, 1)
        for flag in ("short_circuit_on_gross_mismatch", "parallel"):
            if not isinstance(getattr(self, flag), bool):
                msg = f"metrics.{flag} must be a boolean, got {getattr(self, flag)!r}"
                raise ConfigurationError(msg)


@dataclass(frozen=True)
class IterationSettings:
    """Limits of the refinement loop."""

    convergence_threshold: int = 95
    max_iterations: int = 10
    stall_window: int = 2

    def validate(self) -> None:
        threshold = _require_number(
            "iteration.convergence_threshold", self.convergence_threshold
        )
        if not 0 <= threshold <= 100:
            msg = f"iteration.convergence_threshold must be within [0, 100], got {threshold}"
            raise ConfigurationError(msg)
        _require_int("iteration.max_iterations", self.max_iterations, 1)
        _require_int("iteration.stall_window", self.stall_window, 1)


_THRESHOLD_DIRECTIONS = {
    "color": False,
    "spacing": False,
    "ssim": True,
    "pixel_diff": False,
    "font_weight": False,
    "opacity": False,
}


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""

    weights: ScoreWeights = field(default_factory=ScoreWeights)
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)
    metrics: MetricSettings = field(default_factory=MetricSettings)
    iteration: IterationSettings = field(default_factory=IterationSettings)

    def __post_init__(self) -> None:
        self.weights.validate()
        self.thresholds.validate()
        self.metrics.validate()
        self.iteration.validate()

    @classmethod
    def from_file(cls, config_path: Path) -> "EngineConfig":
        """Load a configuration from a JSON file.

        Args:
            config_path: Path to the configuration JSON file

        Returns:
            EngineConfig instance

        Raises:
            ConfigurationError: If the file is missing, is not valid JSON or
                holds invalid values
        """
        if not config_path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise ConfigurationError(msg)

        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            msg = f"Configuration file {config_path} is not valid JSON: {e}"
            raise ConfigurationError(msg) from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Create an EngineConfig from a dictionary.

        Missing sections and keys take their documented defaults; unknown
        sections or keys are rejected so that typos never go unnoticed.

        Raises:
            ConfigurationError: If the dictionary holds unknown keys or
                invalid values
        """
        if not isinstance(data, dict):
            msg = f"Configuration must be a JSON object, got {type(data).__name__}"
            raise ConfigurationError(msg)

        known = {"weights", "thresholds", "metrics", "iteration"}
        unknown = set(data) - known
        if unknown:
            msg = f"Unknown configuration sections: {sorted(unknown)}"
            raise ConfigurationError(msg)

        weights = _build_section(ScoreWeights, "weights", data.get("weights", {}))
        metrics = _build_section(MetricSettings, "metrics", data.get("metrics", {}))
        iteration = _build_section(IterationSettings, "iteration", data.get("iteration", {}))

        thresholds_data = data.get("thresholds", {})
        if not isinstance(thresholds_data, dict):
            msg = "Configuration section 'thresholds' must be an object"
            raise ConfigurationError(msg)
        unknown = set(thresholds_data) - set(_THRESHOLD_DIRECTIONS)
        if unknown:
            msg = f"Unknown threshold signals: {sorted(unknown)}"
            raise ConfigurationError(msg)
        parsed = {
            name: SeverityThresholds.parse(name, value, _THRESHOLD_DIRECTIONS[name])
            for name, value in thresholds_data.items()
        }

        return cls(
            weights=weights,
            thresholds=replace(ThresholdSet(), **parsed),
            metrics=metrics,
            iteration=iteration,
        )

    def with_overrides(
        self,
        tolerance: float | None = None,
        max_iterations: int | None = None,
        convergence_threshold: int | None = None,
    ) -> "EngineConfig":
        """Return a copy with command-line overrides applied.

        Args:
            tolerance: Pixel-diff fraction still considered a match
                (``0.005`` means 0.5 % of the pixels).
            max_iterations: Iteration budget.
            convergence_threshold: Score at which the loop converges.

        Raises:
            ConfigurationError: If an override is invalid
        """
        thresholds = self.thresholds
        if tolerance is not None:
            value = _require_number("tolerance", tolerance)
            if not 0 <= value < 1:
                msg = f"tolerance must be within [0, 1), got {value}"
                raise ConfigurationError(msg)
            thresholds = replace(
                thresholds, pixel_diff=replace(thresholds.pixel_diff, none=value * 100)
            )

        iteration = self.iteration
        if max_iterations is not None:
            iteration = replace(iteration, max_iterations=max_iterations)
        if convergence_threshold is not None:
            iteration = replace(iteration, convergence_threshold=convergence_threshold)

        return replace(self, thresholds=thresholds, iteration=iteration)


def _build_section(section_cls: type, name: str, data: Any) -> Any:
    if not isinstance(data, dict):
        msg = f"Configuration section '{name}' must be an object"
        raise ConfigurationError(msg)
    allowed = {f.name for f in fields(section_cls)}
    unknown = set(data) - allowed
    if unknown:
        msg = f"Unknown keys in '{name}': {sorted(unknown)}"
        raise ConfigurationError(msg)
    return section_cls(**data)
