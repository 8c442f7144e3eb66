#!/usr/bin/env python3
"""Analyze the metric trend of a refinement loop.

Reads the JSON-lines trend log written by ``fidelity-compare --trend``,
prints a per-metric summary and optionally saves the summary as CSV and a
score-per-iteration plot.

Usage:
    python3 scripts/analyze_trend.py .fidelity/trend.jsonl
    python3 scripts/analyze_trend.py .fidelity/trend.jsonl --csv summary.csv --plot trend.svg
"""

import argparse
import sys
from pathlib import Path

# Add the project root to path for local imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fidelity.report import load_trend, plot_score_trend, summarize_trend  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    """Main entry point for trend analysis.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(
        description="Summarize the metric trend of a refinement loop",
    )
    parser.add_argument("trend", type=Path, help="Trend log (JSON lines)")
    parser.add_argument("--csv", type=Path, help="Save the summary table as CSV")
    parser.add_argument("--plot", type=Path, help="Save a score-per-iteration plot")
    parser.add_argument(
        "--convergence",
        type=float,
        default=95,
        help="Convergence threshold drawn on the plot (default: 95)",
    )
    args = parser.parse_args(argv)

    if not args.trend.exists():
        print(f"Error: Trend log not found: {args.trend}")
        return 1

    try:
        df = load_trend(args.trend)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if df.empty:
        print(f"No iterations recorded in {args.trend}")
        return 1

    print(f"Trend log: {args.trend}")
    print(f"Iterations: {len(df)}")
    print(f"Final status: {df['status'].iloc[-1]}")
    print()

    summary = summarize_trend(df)
    print(summary.to_string(float_format=lambda v: f"{v:.4f}"))

    if args.csv:
        args.csv.parent.mkdir(parents=True, exist_ok=True)
        summary.to_csv(args.csv)
        print(f"\nSummary saved: {args.csv}")
    if args.plot:
        plot_score_trend(df, args.plot, args.convergence)
        print(f"Plot saved: {args.plot}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
