"""Command-line interface.

Runs one refinement iteration: compares a design image against the current
implementation screenshot, records the score in a persisted iteration state
and writes the requested reports.

Exit codes:
    0  converged
    1  iteration budget exhausted, or stalled and escalated to a human
    2  input or configuration error
    3  still running: apply the suggested fixes and run again
"""

import argparse
import sys
from pathlib import Path

from fidelity.config import EngineConfig
from fidelity.engine import FidelityEngine, load_layout_file, load_regions_file
from fidelity.errors import ConfigurationError, FidelityError
from fidelity.models import IterationStatus
from fidelity.report import (
    append_trend,
    load_state,
    render_diff_heatmap,
    render_html,
    save_state,
)

EXIT_CONVERGED = 0
EXIT_STOPPED = 1
EXIT_INPUT_ERROR = 2
EXIT_RUNNING = 3

EXIT_CODES = {
    IterationStatus.CONVERGED: EXIT_CONVERGED,
    IterationStatus.MAX_ITERATIONS_REACHED: EXIT_STOPPED,
    IterationStatus.STALLED: EXIT_STOPPED,
    IterationStatus.ESCALATED: EXIT_STOPPED,
    IterationStatus.RUNNING: EXIT_RUNNING,
}

# Number of findings printed in the summary.
TOP_FINDINGS = 10


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fidelity-compare",
        description="Compare a design image against an implementation screenshot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One-off comparison
  fidelity-compare design.png screenshot.png

  # Refinement loop: keep the state between runs and log the trend
  fidelity-compare design.png screenshot.png --state .fidelity/state.json \\
      --trend .fidelity/trend.jsonl --output .fidelity/report.json

  # Use region boxes and layout metadata from the page
  fidelity-compare design.png screenshot.png --regions boxes.json --layout layout.json

Exit codes: 0 converged, 1 stopped (budget exhausted or escalated),
2 input/configuration error, 3 another iteration is needed.
        """,
    )

    parser.add_argument("design", type=Path, help="Reference design image")
    parser.add_argument("implementation", type=Path, help="Implementation screenshot")

    parser.add_argument(
        "--regions",
        type=Path,
        help="JSON file with region boxes (disables auto-detection)",
    )
    parser.add_argument(
        "--layout",
        type=Path,
        help="JSON file with layout/font metadata and colour samples",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="JSON configuration file (weights, thresholds, metric settings)",
    )
    parser.add_argument(
        "--tolerance",
        type=float,
        help="Share of differing pixels still considered a match (default: 0.005)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        help="Iteration budget of the refinement loop (default: 10)",
    )
    parser.add_argument(
        "--convergence",
        type=int,
        help="Score at which the loop converges (default: 95)",
    )
    parser.add_argument(
        "--state",
        type=Path,
        help="Iteration state file, read if present and rewritten after the run",
    )
    parser.add_argument("-o", "--output", type=Path, help="Write the JSON report here")
    parser.add_argument("--trend", type=Path, help="Append raw metrics to this JSON-lines log")
    parser.add_argument("--html", type=Path, help="Write an HTML report here")
    parser.add_argument("--heatmap", type=Path, help="Write a colour-difference heatmap here")
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only print the final summary",
    )
    return parser


def _load_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_file(args.config) if args.config else EngineConfig()
    return config.with_overrides(
        tolerance=args.tolerance,
        max_iterations=args.max_iterations,
        convergence_threshold=args.convergence,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the comparison command.

    Args:
        argv: Command-line arguments (defaults to ``sys.argv[1:]``)

    Returns:
        Exit code (see module docstring)
    """
    args = build_parser().parse_args(argv)

    try:
        config = _load_config(args)
    except ConfigurationError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    try:
        boxes = load_regions_file(args.regions) if args.regions else None
        layout, samples = load_layout_file(args.layout) if args.layout else ([], [])
        state = load_state(args.state) if args.state and args.state.exists() else None
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    engine = FidelityEngine(config, verbose=not args.quiet)
    controller = engine.create_controller(state)

    try:
        report, decision, outcome = engine.run_iteration(
            controller,
            args.design,
            args.implementation,
            boxes=boxes,
            layout=layout,
            samples=samples,
        )
    except (FidelityError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    print()
    print(f"Fidelity score: {report.score.total}/100 (iteration {decision.iteration})")
    for component, points in report.score.breakdown.items():
        print(f"  {component:<20} {points:>3}")
    print(f"Status: {decision.status.value}")
    if decision.reason:
        print(f"  {decision.reason}")

    if report.discrepancies:
        print()
        print(f"Discrepancies ({len(report.discrepancies)}):")
        for d in report.discrepancies[:TOP_FINDINGS]:
            print(
                f"  [{d.severity.value:>6}] {d.category.value:<10} {d.fix_category:<24} "
                f"{d.description}"
            )
        if len(report.discrepancies) > TOP_FINDINGS:
            print(f"  ... and {len(report.discrepancies) - TOP_FINDINGS} more")

    written = []
    if args.output:
        written.append(report.save(args.output))
    if args.state:
        written.append(save_state(controller.state, args.state))
    if args.trend:
        written.append(append_trend(report, args.trend))
    if args.heatmap:
        written.append(
            render_diff_heatmap(outcome.design, outcome.implementation, args.heatmap)
        )
    if args.html:
        written.append(render_html(report, args.html, heatmap_path=args.heatmap))

    if written:
        print()
        for path in written:
            print(f"Written: {path}")

    return EXIT_CODES[decision.status]


if __name__ == "__main__":
    sys.exit(main())
