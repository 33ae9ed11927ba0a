#!/usr/bin/env python3
"""Run a single causalsync node as its own process.

Usage examples:
  - python scripts/run_node.py --id 1
  - python scripts/run_node.py --id 2 --config config/cluster.yaml

Start one process per node id in separate terminals, then type commands
(event, show, send <peer>, end) into each.
"""

from __future__ import annotations

import sys
from pathlib import Path


# Ensure src is on sys.path when the package is not installed
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from causalsync.app.main import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
