#!/usr/bin/env python3
"""
CONDUIT -- Source-tree launcher

Runs the CLI straight from a checkout, without installing:
    python run_conduit.py                  # run the bridge
    python run_conduit.py pairing list     # pending pairing codes
    python run_conduit.py status           # allowlist / pairing summary

Installed copies should use the ``conduit`` console script instead.
"""

import sys
from pathlib import Path

# Ensure imports work
CONDUIT_DIR = Path(__file__).parent
SRC_DIR = CONDUIT_DIR / "src"
sys.path.insert(0, str(SRC_DIR))

from conduit.cli.app import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
