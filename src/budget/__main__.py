"""
Main entrypoint: runs the nightly sync scheduler, or a one-off sync.

FastAPI runs separately under uvicorn (OAuth callback, sync trigger, webhook).

Usage:
    python -m budget                              # starts the scheduler
    python -m budget sync HOUSEHOLD_ID [TYPE]     # one-off sync (TYPE: all|accounts|balances|transactions)
    uvicorn budget.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

SYNC_TYPES = ("all", "accounts", "balances", "transactions")


async def _run_sync(household_id: str, sync_type: str) -> int:
    from budget.db.engine import get_engine
    from budget.revolut.client import RevolutClient
    from budget.revolut.errors import RevolutError, should_prompt_reconnect
    from budget.revolut.sync_service import build_sync_service

    engine = get_engine()
    async with RevolutClient() as client:
        service = build_sync_service(engine, client)
        runner = getattr(service, f"sync_{sync_type}")
        try:
            result = await runner(household_id)
        except RevolutError as exc:
            if should_prompt_reconnect(exc):
                logger.error("Consent expired. Reconnect the bank from the settings page.")
            else:
                logger.error("Sync failed: %s", exc.message)
            return 1

    logger.info("Sync %s: %s, %d records", sync_type, result.status, result.records_synced)
    for error in result.errors:
        logger.warning("  %s", error)
    return 0 if result.success else 1


async def _run_scheduler() -> None:
    from budget.config import get_settings
    from budget.db.engine import get_engine
    from budget.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC)",
        settings.revolut_sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m budget sync ...` or just `python -m budget`
    if len(sys.argv) > 2 and sys.argv[1] == "sync":
        sync_type = sys.argv[3] if len(sys.argv) > 3 else "all"
        if sync_type not in SYNC_TYPES:
            logger.error("Unknown sync type %r (expected one of %s)", sync_type, ", ".join(SYNC_TYPES))
            sys.exit(2)
        sys.exit(asyncio.run(_run_sync(sys.argv[2], sync_type)))
    else:
        asyncio.run(_run_scheduler())
