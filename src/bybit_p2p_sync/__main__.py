"""Entry point for running bybit_p2p_sync as a module.

Usage:
    python -m bybit_p2p_sync run
    python -m bybit_p2p_sync sync-once
"""

import sys

from bybit_p2p_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
