"""Per-household Open Banking OAuth credentials."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class RevolutConnection(SQLModel, table=True):
    """
    One row per OAuth completion.

    At most one row per household has is_active=True. Refreshes rewrite the
    token fields in place; revoking consent flips is_active and keeps the row.
    """

    __tablename__ = "revolut_connections"

    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: str = Field(index=True)
    access_token: str
    refresh_token: str
    expires_at: datetime
    consent_id: Optional[str] = None
    connected_at: datetime = Field(default_factory=datetime.utcnow)
    last_synced_at: Optional[datetime] = None
    is_active: bool = Field(default=True, index=True)
