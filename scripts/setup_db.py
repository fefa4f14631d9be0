#!/usr/bin/env python3
"""Create the TALLY billing tables, or report which ones are missing.

    python scripts/setup_db.py                  # create missing tables
    python scripts/setup_db.py --check          # report only, exit 1 if incomplete
    python scripts/setup_db.py --tenant t1 --customer-ref cus_123
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.core.logging import setup_logging, get_logger
from src.storage.db import close_engine, get_engine, init_schema, metadata, missing_tables
from src.storage.postgres import PostgresEntitlementStore

log = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="TALLY schema setup")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report missing tables; do not create anything",
    )
    parser.add_argument(
        "--tenant",
        type=str,
        default=None,
        help="Provision a free entitlement for this tenant id",
    )
    parser.add_argument(
        "--customer-ref",
        type=str,
        default=None,
        help="Gateway customer id to bind to --tenant",
    )
    return parser.parse_args()


async def main() -> int:
    setup_logging()
    args = parse_args()

    try:
        missing = await missing_tables()
        log.info("schema_status", expected=sorted(metadata.tables), missing=missing)
        if args.check:
            return 1 if missing else 0

        if missing:
            await init_schema()
            log.info("schema_initialization_complete", created=missing)

        if args.tenant:
            store = PostgresEntitlementStore(await get_engine())
            ent = await store.create(args.tenant, customer_ref=args.customer_ref)
            log.info(
                "tenant_provisioned",
                tenant_id=ent.tenant_id,
                plan=str(getattr(ent.plan, "value", ent.plan)),
                customer_ref=ent.customer_ref,
            )
    except Exception as exc:
        log.error("schema_setup_failed", error=str(exc))
        raise
    finally:
        await close_engine()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
