"""Ledger models the bank sync writes into: pockets and their transactions."""
from datetime import date, datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Pocket(SQLModel, table=True):
    """
    A budget bucket. Pockets created by the bank sync carry the vendor
    account id; manually created pockets leave it null.
    """

    __tablename__ = "pockets"
    __table_args__ = (
        UniqueConstraint("household_id", "revolut_account_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: str = Field(index=True)
    name: str
    target_amount: float = 0.0
    current_balance: float = 0.0

    # Bank link (null for manual pockets)
    revolut_account_id: Optional[str] = Field(default=None, index=True)
    last_synced_at: Optional[datetime] = None


class LedgerTransaction(SQLModel, table=True):
    """
    One ledger entry. Amount is signed: debits negative, credits positive.
    Imported rows carry the vendor transaction id, which is the dedup key.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("household_id", "revolut_transaction_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: str = Field(index=True)
    pocket_id: Optional[int] = Field(default=None, foreign_key="pockets.id", index=True)
    amount: float
    category: str = "Other"
    description: Optional[str] = None
    merchant_name: Optional[str] = None
    booking_date: date

    revolut_transaction_id: Optional[str] = Field(default=None, index=True)
    is_imported: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
