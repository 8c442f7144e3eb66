#!/usr/bin/env python3
"""Compare a design image against an implementation screenshot.

Thin wrapper around :mod:`fidelity.cli` for running from a checkout.

Usage:
    python3 scripts/compare_design.py design.png screenshot.png
    python3 scripts/compare_design.py design.png screenshot.png --state state.json --trend trend.jsonl
"""

import sys
from pathlib import Path

# Add the project root to path for local imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fidelity.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
