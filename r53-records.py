#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/r53_records`. This wrapper replays event
files from a fresh checkout: `./r53-records.py events/run-instances.json`.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from r53_records.handler import main  # noqa: E402


if __name__ == "__main__":
    main()
