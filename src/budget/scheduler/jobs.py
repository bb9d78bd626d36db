"""
APScheduler jobs for background sync.

Nightly full sync of every household with an active Revolut connection,
catching anything a webhook or a manual "sync now" missed.

Households are synced one after another; a failure in one is logged and the
loop moves on to the next.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from budget.config import get_settings
from budget.models.connection import RevolutConnection

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.revolut_sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


def _active_household_ids(engine) -> List[str]:
    with Session(engine) as s:
        rows = s.exec(
            select(RevolutConnection.household_id).where(
                RevolutConnection.is_active == True  # noqa: E712
            )
        ).all()
    return sorted(set(rows))


async def _nightly_sync(engine) -> Dict[str, Any]:
    """
    Nightly job: run sync_all for every active connection.

    Idempotent: transactions already imported are skipped.

    Returns:
        Summary dict with per-household results.
    """
    from budget.revolut.client import RevolutClient
    from budget.revolut.sync_service import build_sync_service

    logger.info("Nightly sync starting at %s", datetime.utcnow().isoformat())
    results: List[Dict[str, Any]] = []

    async with RevolutClient() as client:
        service = build_sync_service(engine, client)
        for household_id in _active_household_ids(engine):
            try:
                result = await service.sync_all(household_id)
            except Exception as exc:
                logger.error("Nightly sync failed for household %s: %s", household_id, exc)
                results.append({
                    "household_id": household_id,
                    "success": False,
                    "records_synced": 0,
                    "errors": [str(exc)],
                })
                continue
            results.append({
                "household_id": household_id,
                "success": result.success,
                "records_synced": result.records_synced,
                "errors": result.errors,
            })

    successful = sum(1 for r in results if r["success"])
    total_records = sum(r["records_synced"] for r in results)
    logger.info(
        "Nightly sync completed: %d/%d households, %d records",
        successful, len(results), total_records,
    )
    return {
        "total_households": len(results),
        "successful_syncs": successful,
        "failed_syncs": len(results) - successful,
        "total_records_synced": total_records,
        "results": results,
    }
