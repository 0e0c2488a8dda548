#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/service_netbox_syncer`. This wrapper runs the
syncer straight from a checkout, e.g. as a CronJob command.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from service_netbox_syncer.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
