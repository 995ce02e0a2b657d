#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[deuterium] binary={os.environ.get('DEUTERIUM_BROWSER_BINARY', 'auto')} | "
    f"port={os.environ.get('DEUTERIUM_CDP_PORT', '9222')} | "
    f"snapshots={os.environ.get('DEUTERIUM_SNAPSHOT_COUNT', '5')}",
    file=sys.stderr,
)

from leak_tools.deuterium.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
