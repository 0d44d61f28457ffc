#!/usr/bin/env python3
"""Run a single vipguard node as its own process.

Usage examples:
  - python scripts/run_node.py --id lb1
  - python scripts/run_node.py --id lb2 --config config/cluster.yaml

Same as `vipguard run`, but works from a checkout without installing, so an
IDE can have one run configuration per node.
"""

from __future__ import annotations

import sys
from pathlib import Path


# Ensure src is on sys.path
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from vipguard.app.main import main  # type: ignore  # noqa: E402


if __name__ == "__main__":
    sys.exit(main(["run", *sys.argv[1:]]))
