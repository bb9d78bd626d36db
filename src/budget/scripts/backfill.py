"""
Backfill script: import historical Revolut transactions for one household.

Usage:
    python -m budget.scripts.backfill HOUSEHOLD_ID --days 365

Runs the accounts phase first so every vendor account has a pocket, then the
transactions phase with a window starting --days ago instead of the usual
last-sync anchor. Transactions already in the ledger are skipped, so the
script is safe to re-run.
"""
import argparse
import asyncio
import logging
from datetime import datetime, timedelta

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _backfill(household_id: str, days: int) -> int:
    from budget.db.engine import get_engine
    from budget.revolut.client import RevolutClient
    from budget.revolut.sync_service import build_sync_service

    engine = get_engine()
    from_date = datetime.utcnow() - timedelta(days=days)

    async with RevolutClient() as client:
        service = build_sync_service(engine, client)

        accounts = await service.sync_accounts(household_id)
        logger.info(
            "Accounts: %s (%d pockets)", accounts.status, accounts.records_synced
        )

        logger.info(
            "Importing transactions since %s", from_date.strftime("%Y-%m-%d")
        )
        result = await service.sync_transactions(household_id, from_date=from_date)

    for error in result.errors:
        logger.warning("%s", error)
    logger.info(
        "Backfill complete: %s, %d transactions imported",
        result.status,
        result.records_synced,
    )
    return result.records_synced


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill Revolut transactions")
    parser.add_argument("household_id", help="Household to backfill")
    parser.add_argument(
        "--days",
        type=int,
        default=365,
        help="Number of days to backfill (default: 365)",
    )
    args = parser.parse_args()
    asyncio.run(_backfill(args.household_id, args.days))


if __name__ == "__main__":
    main()
