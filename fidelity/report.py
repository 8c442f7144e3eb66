"""Report generation.

Serializes the outcome of a comparison for the external orchestrator and for
people:

* a JSON report (score, ranked discrepancies, iteration state, raw metrics)
  that parses back into an equal :class:`ComparisonReport`;
* a JSON-lines trend log with the raw metric values of every iteration,
  loaded into a pandas DataFrame for analysis;
* a static HTML page rendered with Jinja2;
* a per-pixel CIEDE2000 heatmap and a score trend plot rendered with
  matplotlib.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import matplotlib

# Use non-interactive backend for plotting in environments without display
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape
from PIL import Image

from fidelity.metrics import delta_e_map
from fidelity.models import (
    Discrepancy,
    FidelityScore,
    ImageData,
    IterationState,
    MetricResult,
    utc_timestamp,
)

TEMPLATES_DIR = Path(__file__).parent / "templates"

TREND_METRICS = ["total", "ssim", "pixel_diff_percent", "phash_distance", "max_delta_e"]

# Metrics where a larger value means a closer match.
_HIGHER_IS_BETTER = {"total", "ssim"}


@dataclass
class ComparisonReport:
    """Complete result of one comparison iteration.

    Attributes:
        design_source: Where the design image came from.
        implementation_source: Where the implementation screenshot came from.
        score: Fidelity score of this iteration.
        discrepancies: Findings ranked by estimated score impact.
        state: Iteration state after the score was recorded.
        metrics: Raw metric values.
        reason: Why the loop stopped, empty while it is running.
        generated_at: ISO-8601 UTC timestamp.
    """

    design_source: str
    implementation_source: str
    score: FidelityScore
    discrepancies: list[Discrepancy]
    state: IterationState
    metrics: MetricResult
    reason: str = ""
    generated_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "design_source": self.design_source,
            "implementation_source": self.implementation_source,
            "generated_at": self.generated_at,
            "score": self.score.to_dict(),
            "status": self.state.status.value,
            "reason": self.reason,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "state": self.state.to_dict(),
            "metrics": self.metrics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComparisonReport":
        """Create a report from its dictionary form.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        try:
            return cls(
                design_source=data["design_source"],
                implementation_source=data["implementation_source"],
                score=FidelityScore.from_dict(data["score"]),
                discrepancies=[Discrepancy.from_dict(d) for d in data.get("discrepancies", [])],
                state=IterationState.from_dict(data["state"]),
                metrics=MetricResult.from_dict(data["metrics"]),
                reason=data.get("reason", ""),
                generated_at=data["generated_at"],
            )
        except (KeyError, TypeError) as e:
            msg = f"Malformed comparison report: {e}"
            raise ValueError(msg) from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def save(self, output_path: Path) -> Path:
        """Write the report as JSON.

        Args:
            output_path: Destination file; parent directories are created.

        Returns:
            ``output_path``.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self.to_json())
            f.write("\n")
        return output_path

    @classmethod
    def load(cls, report_path: Path) -> "ComparisonReport":
        with open(report_path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def save_state(state: IterationState, state_path: Path) -> Path:
    """Persist an iteration state so the next run can resume it."""
    state_path.parent.mkdir(parents=True, exist_ok=True)
    with open(state_path, "w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2)
        f.write("\n")
    return state_path


def load_state(state_path: Path) -> IterationState:
    """Load a persisted iteration state.

    Raises:
        ValueError: If the file is not a valid state document.
    """
    try:
        with open(state_path, encoding="utf-8") as f:
            return IterationState.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        msg = f"Invalid iteration state file {state_path}: {e}"
        raise ValueError(msg) from e


def trend_record(report: ComparisonReport) -> dict[str, Any]:
    """Flatten one report into a trend-log row."""
    record: dict[str, Any] = {
        "iteration": report.score.iteration,
        "timestamp": report.score.timestamp,
        "status": report.state.status.value,
        "total": report.score.total,
        "ssim": report.metrics.ssim,
        "pixel_diff_percent": report.metrics.pixel_diff_percent,
        "phash_distance": report.metrics.phash_distance,
        "max_delta_e": report.metrics.max_delta_e,
        "discrepancies": len(report.discrepancies),
    }
    for component, value in report.score.breakdown.items():
        record[f"score_{component}"] = value
    return record


def append_trend(report: ComparisonReport, trend_path: Path) -> Path:
    """Append one JSON line with the raw metric values of an iteration."""
    trend_path.parent.mkdir(parents=True, exist_ok=True)
    with open(trend_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(trend_record(report)))
        f.write("\n")
    return trend_path


def load_trend(trend_path: Path) -> pd.DataFrame:
    """Load a trend log into a DataFrame ordered by iteration.

    Blank lines are ignored.

    Raises:
        FileNotFoundError: If the log does not exist.
        ValueError: If a line is not valid JSON.
    """
    records = []
    with open(trend_path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                msg = f"Invalid trend record on line {line_no} of {trend_path}: {e}"
                raise ValueError(msg) from e

    df = pd.DataFrame(records)
    if not df.empty:
        df = df.sort_values("iteration").reset_index(drop=True)
    return df


def summarize_trend(df: pd.DataFrame) -> pd.DataFrame:
    """Summarize how each metric moved across iterations.

    Args:
        df: DataFrame from :func:`load_trend`.

    Returns:
        DataFrame indexed by metric with ``first``, ``last``, ``best`` and
        ``change`` columns.  ``best`` respects each metric's direction.
    """
    rows = []
    for metric in TREND_METRICS:
        if metric not in df.columns or df[metric].dropna().empty:
            continue
        series = df[metric].dropna()
        best = series.max() if metric in _HIGHER_IS_BETTER else series.min()
        rows.append(
            {
                "metric": metric,
                "first": series.iloc[0],
                "last": series.iloc[-1],
                "best": best,
                "change": series.iloc[-1] - series.iloc[0],
            }
        )
    return pd.DataFrame(rows, columns=["metric", "first", "last", "best", "change"]).set_index(
        "metric"
    )


def plot_score_trend(df: pd.DataFrame, output_path: Path, convergence_threshold: float = 95) -> Path:
    """Plot the fidelity score per iteration with the convergence line.

    Args:
        df: DataFrame from :func:`load_trend`.
        output_path: Destination image (format from the suffix).
        convergence_threshold: Score drawn as a horizontal reference line.

    Returns:
        ``output_path``.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(df["iteration"], df["total"], marker="o", linewidth=2, label="Fidelity score")
    ax.axhline(
        convergence_threshold,
        color="gray",
        linestyle="--",
        linewidth=1,
        label=f"Convergence ({convergence_threshold:g})",
    )

    ax.set_xlabel("Iteration", fontsize=11)
    ax.set_ylabel("Score (higher is better)", fontsize=11)
    ax.set_title("Fidelity score per iteration", fontsize=12)
    ax.set_ylim(0, 100)
    ax.legend(fontsize=8)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path)
    plt.close(fig)
    return output_path


def render_diff_heatmap(
    design: ImageData,
    implementation: ImageData,
    output_path: Path,
    *,
    vmax: float = 10.0,
) -> Path:
    """Render the per-pixel CIEDE2000 difference as a colour image.

    A fixed scale is used so heatmaps from different iterations are
    comparable: ΔE00 0 maps to the bright end of *viridis_r* and anything at
    or above ``vmax`` to the dark end.

    Args:
        design: Design image.
        implementation: Implementation image with the same dimensions.
        output_path: Destination image (format from the suffix).
        vmax: ΔE00 value mapped to the darkest colour.

    Returns:
        ``output_path``.

    Raises:
        DimensionMismatchError: If the images have different sizes.
    """
    arr = delta_e_map(design, implementation)
    if vmax > 0:
        normalised = np.clip(arr / vmax, 0.0, 1.0)
    else:
        normalised = np.zeros_like(arr, dtype=np.float64)

    rgba = matplotlib.colormaps["viridis_r"](normalised)  # (H, W, 4) in [0, 1]
    rgb = (rgba[:, :, :3] * 255).astype(np.uint8)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(rgb).save(output_path)
    return output_path


def _create_environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_html(
    report: ComparisonReport,
    output_path: Path,
    heatmap_path: Path | None = None,
) -> Path:
    """Render the HTML report.

    Args:
        report: Report to render.
        output_path: Destination HTML file.
        heatmap_path: Optional heatmap image, linked relative to the page.

    Returns:
        ``output_path``.
    """
    heatmap = None
    if heatmap_path is not None:
        try:
            heatmap = heatmap_path.resolve().relative_to(output_path.resolve().parent).as_posix()
        except ValueError:
            heatmap = heatmap_path.resolve().as_uri()

    template = _create_environment().get_template("report.html.j2")
    html = template.render(
        report=report,
        score=report.score,
        status=report.state.status.value.replace("_", " "),
        discrepancies=report.discrepancies,
        history=report.state.history,
        metrics=report.metrics,
        heatmap=heatmap,
    )
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(html, encoding="utf-8")
    return output_path
