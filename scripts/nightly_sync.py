# scripts/nightly_sync.py
"""
Usage:
  python scripts/nightly_sync.py [--skip-discovery] [--skip-assignment]
                                 [--area NAME] [--force] [--retry-failed]

Exit code 0 on full or partial success, 1 when the run failed outright.
"""
import sys

from buildingsync.entrypoints.cli import main

if __name__ == "__main__":
    sys.exit(main(["nightly", *sys.argv[1:]]))
