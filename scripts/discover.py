# scripts/discover.py
import sys

from buildingsync.entrypoints.cli import main

if __name__ == "__main__":
    sys.exit(main(["discover", *sys.argv[1:]]))
