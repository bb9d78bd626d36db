"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """Records each sync phase (or full run) for audit and debugging."""

    __tablename__ = "sync_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: str = Field(index=True)
    sync_type: str  # "accounts", "balances", "transactions", "all"
    status: str = "running"  # "running", "success", "partial", "failed"
    records_synced: int = 0
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
