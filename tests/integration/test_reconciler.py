"""Integration tests for EntityReconciler against an in-memory DB."""
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from budget.models.ledger import LedgerTransaction, Pocket
from budget.revolut.normalizer import DEBIT, ExternalTransaction, TransactionType
from budget.revolut.reconciler import EntityReconciler

HOUSEHOLD_ID = "household-1"


def make_tx(tx_id="tx-1", booking_date=date(2025, 5, 20)):
    return ExternalTransaction(
        transaction_id=tx_id,
        account_id="acc-1",
        amount=9.99,
        currency="GBP",
        transaction_type=TransactionType.CARD_PAYMENT,
        description="Lunch",
        booking_date=booking_date,
        credit_debit_indicator=DEBIT,
    )


@pytest.fixture
def pocket(engine):
    with Session(engine) as s:
        row = Pocket(household_id=HOUSEHOLD_ID, name="Main", revolut_account_id="acc-1")
        s.add(row)
        s.commit()
        s.refresh(row)
        return row


def ledger_rows(engine):
    with Session(engine) as s:
        return s.exec(select(LedgerTransaction)).all()


class TestInsertTransaction:
    def test_inserts_signed_row(self, engine, pocket):
        row = EntityReconciler(engine).insert_transaction(HOUSEHOLD_ID, pocket.id, make_tx())
        assert row is not None
        assert row.amount == -9.99
        assert row.is_imported is True

    def test_existing_row_is_skipped(self, engine, pocket):
        reconciler = EntityReconciler(engine)
        reconciler.insert_transaction(HOUSEHOLD_ID, pocket.id, make_tx())
        assert reconciler.insert_transaction(HOUSEHOLD_ID, pocket.id, make_tx()) is None
        assert len(ledger_rows(engine)) == 1

    def test_concurrent_duplicate_is_skipped(self, engine, pocket):
        """The unique constraint catches a row written after the existence check."""
        reconciler = EntityReconciler(engine)
        reconciler.insert_transaction(HOUSEHOLD_ID, pocket.id, make_tx())

        with patch.object(
            reconciler, "transaction_exists", side_effect=[False, True]
        ):
            assert reconciler.insert_transaction(HOUSEHOLD_ID, pocket.id, make_tx()) is None
        assert len(ledger_rows(engine)) == 1

    def test_other_constraint_failures_raise(self, engine, pocket):
        reconciler = EntityReconciler(engine)
        with pytest.raises(IntegrityError):
            reconciler.insert_transaction(
                HOUSEHOLD_ID, pocket.id, make_tx("tx-nodate", booking_date=None)
            )
        assert ledger_rows(engine) == []
