"""CLI entry point for shinysync.

Delegates to the sync module so the project supports
running via `python -m shinysync.main`.
"""
import sys

from .sync import main as sync_main

if __name__ == "__main__":
    sys.exit(sync_main())
