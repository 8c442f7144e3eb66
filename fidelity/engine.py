"""Comparison orchestration.

Runs one design/implementation comparison through every stage and, for the
refinement loop, records the resulting score with an
:class:`~fidelity.controller.IterationController`::

    load ─► normalize ─► segment ─► metrics ─► classify ─► score ─► rank
                                                                     │
                                              controller.record ◄────┘

Each call is synchronous and stateless: images are reloaded every time and
nothing is cached between iterations.
"""

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fidelity import classifier, loader, metrics, scorer, segmenter
from fidelity.cancellation import CancellationToken, check_cancelled
from fidelity.config import EngineConfig
from fidelity.controller import IterationController, IterationDecision
from fidelity.models import (
    Category,
    ColorSample,
    Discrepancy,
    FidelityScore,
    ImageData,
    IterationState,
    LayoutElement,
    MetricResult,
    Region,
    Severity,
)
from fidelity.report import ComparisonReport


@dataclass
class ComparisonOutcome:
    """Everything produced by one comparison.

    Attributes:
        design: Design image.
        implementation: Implementation image, resized to the design's
            dimensions when they differed.
        regions: Regions that were measured (without crops).
        metrics: Raw metric values.
        discrepancies: Findings ranked by estimated score impact.
        score: Fidelity score.
        notes: Findings raised before classification: the canvas size
            mismatch and skipped regions or samples.  They are also part
            of ``discrepancies``.
    """

    design: ImageData
    implementation: ImageData
    regions: list[Region]
    metrics: MetricResult
    discrepancies: list[Discrepancy]
    score: FidelityScore
    notes: list[Discrepancy] = field(default_factory=list)


def _sample_note(sample: ColorSample, image: ImageData) -> Discrepancy:
    return Discrepancy(
        category=Category.STRUCTURE,
        severity=Severity.MEDIUM,
        signal="region_skipped",
        measured=f"{sample.x},{sample.y}",
        expected=f"point within {image.width}x{image.height}",
        fix_category="verify-region-box",
        description=f"Colour sample {sample.sample_id!r} skipped: outside the image",
    )


def load_regions_file(path: Path) -> list[Region]:
    """Load region boxes from a JSON file.

    Raises:
        ValueError: If the file is missing, is not JSON or holds a malformed box.
    """
    return segmenter.parse_region_boxes(_read_json(path, "regions"))


def load_layout_file(path: Path) -> tuple[list[LayoutElement], list[ColorSample]]:
    """Load layout metadata and colour samples from a JSON file.

    The document is either a list of elements or an object with optional
    ``elements`` and ``samples`` lists.

    Raises:
        ValueError: If the file is missing, is not JSON or is malformed.
    """
    data = _read_json(path, "layout")
    if isinstance(data, list):
        data = {"elements": data}
    if not isinstance(data, dict):
        msg = f"Layout file {path} must hold a list or an object"
        raise ValueError(msg)
    try:
        elements = [LayoutElement.from_dict(e) for e in data.get("elements", [])]
        samples = [ColorSample.from_dict(s) for s in data.get("samples", [])]
    except (KeyError, TypeError, AttributeError) as e:
        msg = f"Malformed layout file {path}: {e}"
        raise ValueError(msg) from e
    return elements, samples


def _read_json(path: Path, kind: str) -> Any:
    if not path.exists():
        msg = f"{kind.capitalize()} file not found: {path}"
        raise ValueError(msg)
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        msg = f"{kind.capitalize()} file {path} is not valid JSON: {e}"
        raise ValueError(msg) from e


class FidelityEngine:
    """Runs comparisons with one configuration."""

    def __init__(self, config: EngineConfig | None = None, verbose: bool = False) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration (defaults when omitted).
            verbose: Print progress for every stage.
        """
        self.config = config or EngineConfig()
        self.verbose = verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)

    def _load(
        self, source: loader.ImageSource | ImageData, cancel_token: CancellationToken | None
    ) -> ImageData:
        if isinstance(source, ImageData):
            check_cancelled(cancel_token, f"load of {source.source}")
            return source
        return loader.load(source, cancel_token)

    def compare(
        self,
        design_source: loader.ImageSource | ImageData,
        implementation_source: loader.ImageSource | ImageData,
        boxes: list[Region] | None = None,
        layout: list[LayoutElement] | None = None,
        samples: list[ColorSample] | None = None,
        iteration: int = 0,
        cancel_token: CancellationToken | None = None,
    ) -> ComparisonOutcome:
        """Compare a design against an implementation screenshot.

        Args:
            design_source: Design image, or a path/bytes/stream to load it from.
            implementation_source: Implementation screenshot or its source.
            boxes: Region boxes from a layout-introspection collaborator;
                regions are auto-detected when omitted.
            layout: Layout and font metadata.
            samples: Explicit colour sample points.  Points outside the
                image are skipped with a note.
            iteration: Iteration number recorded on the score.
            cancel_token: Optional token checked before loads and crops.

        Returns:
            :class:`ComparisonOutcome` with ranked findings and the score.

        Raises:
            ImageLoadError: If an image cannot be loaded.
            OperationCancelledError: If the token was cancelled.
        """
        design = self._load(design_source, cancel_token)
        implementation = self._load(implementation_source, cancel_token)
        self._log(f"Design: {design.source} ({design.width}x{design.height})")
        self._log(
            f"Implementation: {implementation.source} "
            f"({implementation.width}x{implementation.height})"
        )

        design, implementation, notes = loader.normalize(design, implementation)
        if notes:
            self._log(f"  Resized implementation to {design.width}x{design.height}")

        regions, skipped = segmenter.segment(
            design, implementation, boxes, self.config.metrics, cancel_token
        )
        notes.extend(skipped)
        source = "supplied" if boxes is not None else "auto-detected"
        self._log(f"  Regions: {len(regions)} {source}, {len(skipped)} skipped")

        usable_samples = []
        for sample in samples or []:
            if 0 <= sample.x < design.width and 0 <= sample.y < design.height:
                usable_samples.append(sample)
            else:
                notes.append(_sample_note(sample, design))

        result = metrics.compare(
            design, implementation, usable_samples, regions, self.config.metrics
        )
        self._log(
            f"  SSIM {result.ssim:.4f}, pixel diff {result.pixel_diff_percent:.2f}%, "
            f"pHash distance {result.phash_distance}, max ΔE00 {result.max_delta_e:.2f}"
        )

        findings = notes + classifier.classify(result, regions, layout, self.config)
        fidelity = scorer.score(
            result, findings, self.config.weights, iteration=iteration, config=self.config
        )
        ranked = scorer.rank_discrepancies(findings, self.config.weights)
        self._log(f"  Score: {fidelity.total}/100 ({len(ranked)} discrepancies)")

        return ComparisonOutcome(
            design=design,
            implementation=implementation,
            regions=[r.without_pixels() for r in regions],
            metrics=result,
            discrepancies=ranked,
            score=fidelity,
            notes=notes,
        )

    def create_controller(self, state: IterationState | None = None) -> IterationController:
        """Create an iteration controller using this engine's limits and weights."""
        return IterationController(
            settings=self.config.iteration, weights=self.config.weights, state=state
        )

    def run_iteration(
        self,
        controller: IterationController,
        design_source: loader.ImageSource | ImageData,
        implementation_source: loader.ImageSource | ImageData,
        boxes: list[Region] | None = None,
        layout: list[LayoutElement] | None = None,
        samples: list[ColorSample] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[ComparisonReport, IterationDecision, ComparisonOutcome]:
        """Run one refinement iteration and record its score.

        Args:
            controller: Controller holding the loop state.
            design_source: Design image or its source.
            implementation_source: Current implementation screenshot.
            boxes: Optional region boxes.
            layout: Optional layout metadata.
            samples: Optional colour samples.
            cancel_token: Optional token; a cancelled iteration leaves the
                controller's history untouched.

        Returns:
            ``(report, decision, outcome)``.

        Raises:
            TerminalStateError: If the loop already finished.
            OperationCancelledError: If the token was cancelled.
        """
        iteration = controller.next_iteration
        self._log(f"Iteration {iteration}")
        outcome = self.compare(
            design_source,
            implementation_source,
            boxes=boxes,
            layout=layout,
            samples=samples,
            iteration=iteration,
            cancel_token=cancel_token,
        )
        decision = controller.record(outcome.score, outcome.discrepancies, cancel_token)
        self._log(f"  Status: {decision.status.value}")
        if decision.reason:
            self._log(f"  {decision.reason}")

        # The controller keeps appending to its state; the report holds a snapshot.
        state = copy.deepcopy(controller.state)
        report = ComparisonReport(
            design_source=outcome.design.source,
            implementation_source=outcome.implementation.source,
            score=state.history[-1],
            discrepancies=outcome.discrepancies,
            state=state,
            metrics=outcome.metrics,
            reason=decision.reason,
        )
        return report, decision, outcome
