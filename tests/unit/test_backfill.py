"""Tests for the backfill script.

_backfill() imports its collaborators lazily, so they are patched at their
source module paths.

Key behaviours:
  - Accounts phase runs before transactions (pockets must exist first)
  - Transactions window starts --days ago, not at the last-sync anchor
  - Returns the number of imported transactions
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from budget.revolut.sync_service import SyncResult
from budget.scripts.backfill import _backfill


def make_service():
    service = MagicMock()
    calls = []

    async def sync_accounts(household_id):
        calls.append("accounts")
        return SyncResult(status="success", records_synced=2)

    async def sync_transactions(household_id, from_date=None):
        calls.append("transactions")
        return SyncResult(status="partial", records_synced=17, errors=["one pocket failed"])

    service.sync_accounts = AsyncMock(side_effect=sync_accounts)
    service.sync_transactions = AsyncMock(side_effect=sync_transactions)
    return service, calls


def mock_client():
    client = AsyncMock()
    client.__aenter__.return_value = client
    return client


class TestBackfill:
    @pytest.mark.asyncio
    async def test_accounts_then_transactions_with_window(self):
        service, calls = make_service()

        with patch("budget.db.engine.get_engine", return_value=MagicMock()), \
             patch("budget.revolut.client.RevolutClient", return_value=mock_client()), \
             patch("budget.revolut.sync_service.build_sync_service", return_value=service):
            before = datetime.utcnow()
            imported = await _backfill("household-1", days=30)

        assert calls == ["accounts", "transactions"]
        assert imported == 17
        from_date = service.sync_transactions.await_args.kwargs["from_date"]
        expected = before - timedelta(days=30)
        assert abs((from_date - expected).total_seconds()) < 5
