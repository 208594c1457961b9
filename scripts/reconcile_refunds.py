#!/usr/bin/env python
"""Script to reconcile order refund bookkeeping with stored refund records.

This script:
1. Loads each given order and its refund records
2. Recomputes refunded_total_cents, last_refund_at and the order status
3. Writes the order only when something changed

Usage:
    python scripts/reconcile_refunds.py <order_id> [<order_id> ...] [--succeeded-only]

Requirements:
    - SUPABASE_URL and SUPABASE_SECRET_KEY environment variables must be set

Note:
    - Run it after a refund was recorded by hand, or when a refund
      reservation could not be released after a Stripe failure
    - Canceled orders keep their status
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.errors import SettlementError
from src.services.refund_service import RefundService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def reconcile_orders(order_ids: list[str], include_pending: bool = True) -> dict[str, int]:
    """Reconcile refund state for each order.

    Args:
        order_ids: Order UUIDs.
        include_pending: Count pending refunds toward the refunded total.

    Returns:
        dict: Counts of changed, unchanged and failed orders.
    """
    service = RefundService()
    changed = unchanged = failed = 0

    for order_id in order_ids:
        try:
            result = await service.reconcile_refund_state(order_id, include_pending=include_pending)
        except SettlementError as e:
            logger.error("Order %s: %s (%s)", order_id, e.message, e.code)
            failed += 1
            continue

        if result.changed:
            logger.info(
                "Order %s updated: refunded_total=%s status=%s",
                order_id,
                result.refunded_total_cents,
                result.status,
            )
            changed += 1
        else:
            logger.info("Order %s already consistent", order_id)
            unchanged += 1

    return {"changed": changed, "unchanged": unchanged, "failed": failed}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile order refund state from refund records")
    parser.add_argument("order_ids", nargs="+", help="Order UUIDs to reconcile")
    parser.add_argument(
        "--succeeded-only",
        action="store_true",
        help="Only count succeeded refunds (pending ones are ignored)",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the reconciliation script."""
    args = parse_args(argv)
    logger.info("Reconciling refund state for %d orders...", len(args.order_ids))

    results = await reconcile_orders(args.order_ids, include_pending=not args.succeeded_only)

    logger.info("=" * 60)
    logger.info("Refund reconciliation complete!")
    logger.info("Orders updated: %s", results["changed"])
    logger.info("Orders already consistent: %s", results["unchanged"])
    logger.info("Failed: %s", results["failed"])
    logger.info("=" * 60)

    if results["failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
