"""Fidelity scoring.

Combines classified findings into one weighted 0-100 score.  Each component
is a step function of the worst severity among its findings, so a score
difference always maps back to a perceptual tier rather than to a raw
linear value:

==========  ======
Severity    Credit
==========  ======
None        100 %
Low         75 %
Medium      40 %
High        0 %
==========  ======

Component membership:

* ``ssim``: Structure findings from SSIM, canvas size, element presence and
  the perceptual-hash gross-mismatch check.
* ``pixel_diff``: Structure findings from the pixel diff.
* ``color``: Color findings.
* ``spacing``: Spacing findings.
* ``typography_effects``: Typography and Effects findings.

"Region skipped" notes are reported but never scored.
"""

from fidelity.config import EngineConfig, ScoreWeights
from fidelity.metrics import is_gross_mismatch
from fidelity.models import Category, Discrepancy, FidelityScore, MetricResult, Severity

SEVERITY_CREDIT = {
    Severity.NONE: 1.0,
    Severity.LOW: 0.75,
    Severity.MEDIUM: 0.4,
    Severity.HIGH: 0.0,
}

UNSCORED_SIGNALS = {"region_skipped"}


def component_for(discrepancy: Discrepancy) -> str | None:
    """Name of the score component a finding counts against."""
    if discrepancy.signal in UNSCORED_SIGNALS:
        return None
    if discrepancy.category is Category.STRUCTURE:
        return "pixel_diff" if discrepancy.signal == "pixel_diff" else "ssim"
    if discrepancy.category is Category.COLOR:
        return "color"
    if discrepancy.category is Category.SPACING:
        return "spacing"
    return "typography_effects"


def component_severities(discrepancies: list[Discrepancy]) -> dict[str, Severity]:
    """Worst severity per score component."""
    worst: dict[str, Severity] = {name: Severity.NONE for name in ScoreWeights().as_dict()}
    for d in discrepancies:
        component = component_for(d)
        if component is not None:
            worst[component] = Severity.worst([worst[component], d.severity])
    return worst


def score(
    metrics: MetricResult,
    discrepancies: list[Discrepancy],
    weights: ScoreWeights | None = None,
    iteration: int = 0,
    config: EngineConfig | None = None,
) -> FidelityScore:
    """Compute the weighted fidelity score.

    Args:
        metrics: Raw metric values of the pair.  A confirmed gross
            mismatch (large hash distance and low global SSIM) zeroes both
            structural components, whatever the findings say.
        discrepancies: Classified findings.
        weights: Component weights; defaults to those of ``config``.
        iteration: Iteration number recorded on the score.
        config: Engine configuration.

    Returns:
        :class:`FidelityScore` with the clamped, rounded total and the
        per-component breakdown.
    """
    config = config or EngineConfig()
    weights = weights or config.weights
    weights.validate()

    severities = component_severities(discrepancies)
    if is_gross_mismatch(metrics.phash_distance, metrics.ssim, config.metrics):
        severities["ssim"] = Severity.HIGH
        severities["pixel_diff"] = Severity.HIGH

    raw = {
        name: weight * SEVERITY_CREDIT[severities[name]]
        for name, weight in weights.as_dict().items()
    }
    total = max(0, min(100, round(sum(raw.values()))))

    return FidelityScore(
        total=int(total),
        breakdown={name: int(round(value)) for name, value in raw.items()},
        iteration=iteration,
    )


def estimated_impact(discrepancy: Discrepancy, weights: ScoreWeights | None = None) -> float:
    """Score points a finding would give back if it were fixed on its own."""
    weights = weights or ScoreWeights()
    component = component_for(discrepancy)
    if component is None:
        return 0.0
    weight = weights.as_dict()[component]
    return weight * (1.0 - SEVERITY_CREDIT[discrepancy.severity])


def rank_discrepancies(
    discrepancies: list[Discrepancy],
    weights: ScoreWeights | None = None,
) -> list[Discrepancy]:
    """Order findings by estimated score impact, largest first.

    Ties are broken by the component weight, then by severity, then by the
    larger delta.  Unscored notes come last.  The sort is stable, so equal
    findings keep their detection order.
    """
    weights = weights or ScoreWeights()
    weight_of = weights.as_dict()

    def key(d: Discrepancy) -> tuple[float, float, int, float]:
        component = component_for(d)
        weight = weight_of[component] if component is not None else -1.0
        return (
            estimated_impact(d, weights),
            weight,
            d.severity.rank,
            abs(d.delta),
        )

    return sorted(discrepancies, key=key, reverse=True)
