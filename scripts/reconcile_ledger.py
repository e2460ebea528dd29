#!/usr/bin/env python3
"""Repair pending keys left behind by the previous non-atomic approval flow."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from intake_ledger.core.config import get_settings
from intake_ledger.services.geocoding import get_geocoder
from intake_ledger.services.kv import KeyValueStore, get_store
from intake_ledger.services.ledger import IntakeLedger, ReconcileReport


async def run_reconcile(store: KeyValueStore, *, dry_run: bool, page_size: int = 100) -> ReconcileReport:
    ledger = IntakeLedger(store, get_geocoder(), page_size=page_size)
    try:
        return await ledger.reconcile(dry_run=dry_run)
    finally:
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Move legacy pending:<intakeMethod>:<orderId> keys and drop pending keys of approved orders.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing to the store",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Keys fetched per store page (defaults to IL_LIST_PAGE_SIZE)",
    )
    args = parser.parse_args()

    page_size = args.page_size or get_settings().list_page_size
    report = asyncio.run(run_reconcile(get_store(), dry_run=args.dry_run, page_size=page_size))
    print(json.dumps(asdict(report), indent=2))


if __name__ == "__main__":
    main()
