#!/usr/bin/env python3
"""
Re-process a block range through the event indexer handlers.

The persisted cursor is left untouched; already processed events are skipped,
events that failed earlier are retried.

Usage:
    python rescan_blocks.py 1200 4500
    python rescan_blocks.py 1200 4500 --batch-size 200
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ticketgate.core.errors import LedgerUnavailableError
from ticketgate.core.logging import setup_logging
from ticketgate.db.session import init_db
from ticketgate.services.indexer_service import EventIndexer


def rescan(from_block: int, to_block: int, batch_size: int = None) -> bool:
    indexer = EventIndexer(batch_size=batch_size, use_lock=False)
    print(f"🔄 Re-scanning blocks {from_block}-{to_block} on {indexer.ledger.endpoint} ({indexer.contract_address})")
    try:
        totals = asyncio.run(indexer.process_range(from_block, to_block))
    except LedgerUnavailableError as e:
        print(f"❌ Ledger unavailable: {e}")
        return False

    print(f"✅ Done: {totals}")
    return totals.get("failed", 0) == 0


def main():
    parser = argparse.ArgumentParser(description="Re-process a ledger block range")
    parser.add_argument("from_block", type=int, help="First block (inclusive)")
    parser.add_argument("to_block", type=int, help="Last block (inclusive)")
    parser.add_argument("--batch-size", type=int, default=None, help="Blocks per batch")
    args = parser.parse_args()

    if args.from_block < 0 or args.to_block < args.from_block:
        parser.error("expected 0 <= from_block <= to_block")

    setup_logging()
    init_db()
    sys.exit(0 if rescan(args.from_block, args.to_block, args.batch_size) else 1)


if __name__ == "__main__":
    main()
