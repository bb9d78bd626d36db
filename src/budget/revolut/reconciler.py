"""
Merges normalized Revolut DTOs into local pockets and ledger transactions.

No network access and no sync-log bookkeeping here; RevolutSyncService
decides what to fetch and how failures are reported.

Identity rules:
  - A pocket is matched by (household_id, revolut_account_id), never by its
    local primary key. Balances are last-write-wins.
  - A transaction is matched by (household_id, revolut_transaction_id). An
    existing match is skipped, so re-syncing an overlapping window never
    duplicates ledger rows. The unique constraint on those columns backs the
    check up if two writers race.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from budget.models.ledger import LedgerTransaction, Pocket
from budget.revolut.normalizer import (
    ExternalAccount,
    ExternalBalance,
    ExternalTransaction,
    category_for,
    signed_amount,
)


class EntityReconciler:
    """Idempotent upserts of vendor data into the ledger tables."""

    def __init__(self, engine, now: Callable[[], datetime] = datetime.utcnow):
        self.engine = engine
        self._now = now

    # ── Pockets ───────────────────────────────────────────────────────────────

    def find_pocket(self, household_id: str, account_id: str) -> Optional[Pocket]:
        with Session(self.engine) as s:
            return s.exec(
                select(Pocket).where(
                    Pocket.household_id == household_id,
                    Pocket.revolut_account_id == account_id,
                )
            ).first()

    def linked_pockets(self, household_id: str) -> List[Pocket]:
        """Pockets of the household that are linked to a vendor account."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(Pocket)
                .where(
                    Pocket.household_id == household_id,
                    Pocket.revolut_account_id.is_not(None),
                )
                .order_by(Pocket.id)
            ).all())

    def upsert_pocket(self, household_id: str, account: ExternalAccount) -> Tuple[Pocket, bool]:
        """
        Create or update the pocket linked to an external account.

        Returns:
            (pocket, created) where created is True for a new row.
        """
        now = self._now()
        with Session(self.engine) as s:
            existing = s.exec(
                select(Pocket).where(
                    Pocket.household_id == household_id,
                    Pocket.revolut_account_id == account.account_id,
                )
            ).first()

            if existing:
                existing.current_balance = account.balance
                existing.last_synced_at = now
                s.add(existing)
                s.commit()
                s.refresh(existing)
                return existing, False

            pocket = Pocket(
                household_id=household_id,
                name=account.name,
                target_amount=0.0,
                current_balance=account.balance,
                revolut_account_id=account.account_id,
                last_synced_at=now,
            )
            s.add(pocket)
            s.commit()
            s.refresh(pocket)
            return pocket, True

    def apply_balance(self, pocket_id: int, balance: ExternalBalance) -> Pocket:
        """Overwrite a pocket's balance with the freshly fetched one."""
        return self.set_pocket_balance(pocket_id, balance.signed_amount)

    def set_pocket_balance(self, pocket_id: int, amount: float) -> Pocket:
        with Session(self.engine) as s:
            pocket = s.get(Pocket, pocket_id)
            if pocket is None:
                raise LookupError(f"Pocket {pocket_id} no longer exists")
            pocket.current_balance = amount
            pocket.last_synced_at = self._now()
            s.add(pocket)
            s.commit()
            s.refresh(pocket)
            return pocket

    def mark_pocket_synced(self, pocket_id: int) -> None:
        with Session(self.engine) as s:
            pocket = s.get(Pocket, pocket_id)
            if pocket is not None:
                pocket.last_synced_at = self._now()
                s.add(pocket)
                s.commit()

    def pockets_for_account(self, account_id: str) -> List[Pocket]:
        """All pockets (any household) linked to a vendor account id."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(Pocket).where(Pocket.revolut_account_id == account_id)
            ).all())

    # ── Transactions ──────────────────────────────────────────────────────────

    def transaction_exists(self, household_id: str, transaction_id: str) -> bool:
        with Session(self.engine) as s:
            return s.exec(
                select(LedgerTransaction.id).where(
                    LedgerTransaction.household_id == household_id,
                    LedgerTransaction.revolut_transaction_id == transaction_id,
                )
            ).first() is not None

    def insert_transaction(
        self,
        household_id: str,
        pocket_id: int,
        tx: ExternalTransaction,
    ) -> Optional[LedgerTransaction]:
        """
        Insert an imported transaction unless it is already in the ledger.

        The debit/credit sign is applied here and nowhere else.

        Returns:
            The new row, or None if the transaction was already imported.

        Raises:
            IntegrityError: any constraint failure other than the duplicate.
        """
        if self.transaction_exists(household_id, tx.transaction_id):
            return None

        row = LedgerTransaction(
            household_id=household_id,
            pocket_id=pocket_id,
            amount=signed_amount(tx.amount, tx.credit_debit_indicator),
            category=category_for(tx.transaction_type),
            description=tx.description,
            merchant_name=tx.merchant_name,
            booking_date=tx.booking_date,
            revolut_transaction_id=tx.transaction_id,
            is_imported=True,
        )
        with Session(self.engine) as s:
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                # Inserted concurrently between the check and the commit;
                # any other constraint failure is the caller's to report
                if self.transaction_exists(household_id, tx.transaction_id):
                    return None
                raise
            s.refresh(row)
            return row
