"""
RevolutSyncService pulls accounts, balances and transactions from Revolut
into the local ledger.

Each phase runs inside its own SyncLog:
  1. Create SyncLog (status="running")
  2. Obtain a valid access token (refreshing if needed)
  3. Fetch from the API → reconcile each item, collecting per-item errors
  4. Finalize SyncLog: "success" (no errors), "partial" (some items failed,
     some succeeded) or "failed" (nothing succeeded, or the phase itself threw)

Items inside a phase run one at a time; a failing item is recorded and the
loop moves on. The one exception is RevolutConsentExpiredError: it finalizes
the log as failed and propagates, because no further call can succeed until
the user reconnects.

sync_all() runs accounts → balances → transactions (both later phases need
the pockets the first one creates) under an "all" SyncLog of its own.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, List, Optional

from sqlmodel import Session, select

from budget.config import get_settings
from budget.models.connection import RevolutConnection
from budget.models.sync import SyncLog
from budget.revolut.errors import (
    RevolutConsentExpiredError,
    get_error_message,
    should_prompt_reconnect,
)
from budget.revolut.reconciler import EntityReconciler
from budget.revolut.retry import with_retry

logger = logging.getLogger(__name__)

SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome of one phase or of a full run."""
    status: str                         # "success" | "partial" | "failed"
    records_synced: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == SUCCESS


@dataclass
class _PhaseProgress:
    records: int = 0                    # rows written
    succeeded: int = 0                  # items processed without error
    errors: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.errors:
            return SUCCESS
        return PARTIAL if self.succeeded else FAILED


class RevolutSyncService:
    """Orchestrates Revolut → DB sync for one household at a time."""

    def __init__(
        self,
        auth,
        client,
        engine,
        reconciler: Optional[EntityReconciler] = None,
        now: Callable[[], datetime] = datetime.utcnow,
        lookback_days: Optional[int] = None,
    ):
        """
        Args:
            auth: RevolutAuth instance (or AsyncMock in tests).
            client: RevolutClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            reconciler: EntityReconciler. Built from engine if omitted.
            now: Clock returning naive UTC datetimes.
            lookback_days: Transaction window when the connection never
                completed a transaction sync. Defaults to settings.
        """
        self.auth = auth
        self.client = client
        self.engine = engine
        self.reconciler = reconciler or EntityReconciler(engine, now=now)
        self._now = now
        self.lookback_days = (
            lookback_days if lookback_days is not None
            else get_settings().transaction_lookback_days
        )

    # ─── Phases ──────────────────────────────────────────────────────────────

    async def sync_accounts(self, household_id: str) -> SyncResult:
        """Create or update one pocket per external account."""
        return await self._run_phase(household_id, "accounts", self._accounts_phase)

    async def sync_balances(self, household_id: str) -> SyncResult:
        """Refresh the balance of every linked pocket."""
        return await self._run_phase(household_id, "balances", self._balances_phase)

    async def sync_transactions(
        self, household_id: str, from_date: Optional[datetime] = None
    ) -> SyncResult:
        """
        Import booked transactions for every linked pocket.

        Args:
            from_date: Window start. Defaults to the connection's
                last_synced_at, or lookback_days ago if it never synced.
        """
        return await self._run_phase(
            household_id,
            "transactions",
            partial(self._transactions_phase, from_date=from_date),
        )

    async def sync_all(self, household_id: str) -> SyncResult:
        """
        Run all three phases in order and aggregate their outcomes.

        Raises:
            RevolutConsentExpiredError: propagated from any phase, after the
                "all" SyncLog has been finalized as failed.
        """
        log = self._create_sync_log(household_id, "all")
        results: List[SyncResult] = []

        try:
            results.append(await self.sync_accounts(household_id))
            results.append(await self.sync_balances(household_id))
            results.append(await self.sync_transactions(household_id))
        except Exception as exc:
            self._finish_sync_log(
                log,
                status=FAILED,
                records_synced=sum(r.records_synced for r in results),
                error_message=get_error_message(exc),
            )
            raise

        records = sum(r.records_synced for r in results)
        errors = [e for r in results for e in r.errors]
        if all(r.status == FAILED for r in results):
            status = FAILED
        elif errors:
            status = PARTIAL
        else:
            status = SUCCESS

        self._finish_sync_log(
            log,
            status=status,
            records_synced=records,
            error_message="; ".join(errors) or None,
        )
        logger.info(
            "Full sync for household %s finished: %s, %d records, %d errors",
            household_id, status, records, len(errors),
        )
        return SyncResult(status=status, records_synced=records, errors=errors)

    # ─── Phase runner ────────────────────────────────────────────────────────

    async def _run_phase(
        self,
        household_id: str,
        sync_type: str,
        body: Callable[[str, _PhaseProgress], Awaitable[None]],
    ) -> SyncResult:
        log = self._create_sync_log(household_id, sync_type)
        progress = _PhaseProgress()

        try:
            await body(household_id, progress)
        except Exception as exc:
            message = get_error_message(exc)
            self._finish_sync_log(
                log,
                status=FAILED,
                records_synced=progress.records,
                error_message=message,
            )
            logger.error(
                "%s sync failed for household %s: %s", sync_type, household_id, message
            )
            if should_prompt_reconnect(exc):
                raise
            return SyncResult(
                status=FAILED,
                records_synced=progress.records,
                errors=progress.errors + [message],
            )

        status = progress.status
        self._finish_sync_log(
            log,
            status=status,
            records_synced=progress.records,
            error_message="; ".join(progress.errors) or None,
        )
        if progress.errors:
            logger.warning(
                "%s sync for household %s finished %s: %s",
                sync_type, household_id, status, "; ".join(progress.errors),
            )
        else:
            logger.info(
                "%s sync for household %s: %d records",
                sync_type, household_id, progress.records,
            )
        return SyncResult(
            status=status, records_synced=progress.records, errors=list(progress.errors)
        )

    async def _accounts_phase(self, household_id: str, progress: _PhaseProgress) -> None:
        await self.auth.get_valid_access_token(household_id)
        accounts = await with_retry(self.client.get_accounts, household_id, self.auth)

        for account in accounts:
            try:
                self.reconciler.upsert_pocket(household_id, account)
            except RevolutConsentExpiredError:
                raise
            except Exception as exc:
                progress.errors.append(
                    f"Error processing account {account.account_id}: {get_error_message(exc)}"
                )
                continue
            progress.records += 1
            progress.succeeded += 1

    async def _balances_phase(self, household_id: str, progress: _PhaseProgress) -> None:
        await self.auth.get_valid_access_token(household_id)

        for pocket in self.reconciler.linked_pockets(household_id):
            try:
                balance = await with_retry(
                    partial(self.client.get_account_balance, account_id=pocket.revolut_account_id),
                    household_id,
                    self.auth,
                )
                self.reconciler.apply_balance(pocket.id, balance)
            except RevolutConsentExpiredError:
                raise
            except Exception as exc:
                progress.errors.append(
                    f"Error syncing balance for pocket {pocket.id} "
                    f"(account {pocket.revolut_account_id}): {get_error_message(exc)}"
                )
                continue
            progress.records += 1
            progress.succeeded += 1

    async def _transactions_phase(
        self,
        household_id: str,
        progress: _PhaseProgress,
        from_date: Optional[datetime] = None,
    ) -> None:
        started_at = self._now()
        await self.auth.get_valid_access_token(household_id)
        window_start = from_date or self._transaction_window_start(household_id)

        for pocket in self.reconciler.linked_pockets(household_id):
            try:
                transactions = await with_retry(
                    partial(
                        self.client.get_transactions,
                        account_id=pocket.revolut_account_id,
                        from_date=window_start,
                    ),
                    household_id,
                    self.auth,
                )
            except RevolutConsentExpiredError:
                raise
            except Exception as exc:
                progress.errors.append(
                    f"Error syncing transactions for pocket {pocket.id} "
                    f"(account {pocket.revolut_account_id}): {get_error_message(exc)}"
                )
                continue

            pocket_ok = True
            for tx in transactions:
                try:
                    row = self.reconciler.insert_transaction(household_id, pocket.id, tx)
                except Exception as exc:
                    pocket_ok = False
                    progress.errors.append(
                        f"Failed to insert transaction {tx.transaction_id}: {get_error_message(exc)}"
                    )
                    continue
                if row is not None:
                    progress.records += 1

            self.reconciler.mark_pocket_synced(pocket.id)
            if pocket_ok:
                progress.succeeded += 1

        # Only a clean run advances the window; a partial one is re-fetched
        # next time and deduplicated.
        if not progress.errors:
            self._mark_connection_synced(household_id, started_at)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _transaction_window_start(self, household_id: str) -> datetime:
        with Session(self.engine) as s:
            connection = s.exec(
                select(RevolutConnection).where(
                    RevolutConnection.household_id == household_id,
                    RevolutConnection.is_active == True,  # noqa: E712
                )
            ).first()
        if connection is not None and connection.last_synced_at is not None:
            return connection.last_synced_at
        return self._now() - timedelta(days=self.lookback_days)

    def _mark_connection_synced(self, household_id: str, at: datetime) -> None:
        with Session(self.engine) as s:
            rows = s.exec(
                select(RevolutConnection).where(
                    RevolutConnection.household_id == household_id,
                    RevolutConnection.is_active == True,  # noqa: E712
                )
            ).all()
            for row in rows:
                row.last_synced_at = at
                s.add(row)
            s.commit()

    def _create_sync_log(self, household_id: str, sync_type: str) -> SyncLog:
        log = SyncLog(
            household_id=household_id,
            sync_type=sync_type,
            status="running",
            started_at=self._now(),
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        records_synced: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.completed_at = self._now()
            db_log.records_synced = records_synced
            db_log.error_message = error_message
            s.add(db_log)
            s.commit()


def build_sync_service(engine, client) -> RevolutSyncService:
    """Wire RevolutAuth + RevolutSyncService around a shared client."""
    from budget.revolut.auth import RevolutAuth

    return RevolutSyncService(auth=RevolutAuth(engine, client), client=client, engine=engine)
