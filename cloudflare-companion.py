#!/usr/bin/env python3

"""Run the companion straight from a source checkout.

The package lives under `src/cloudflare_companion`; this puts `src` on
sys.path so `./cloudflare-companion.py` works without installing.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cloudflare_companion.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
