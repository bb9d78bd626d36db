"""Tests for with_retry(): one refresh, then give up."""
from unittest.mock import AsyncMock

import pytest

from budget.revolut.errors import (
    RevolutConsentExpiredError,
    RevolutNetworkError,
    RevolutTokenExpiredError,
)
from budget.revolut.retry import with_retry

HOUSEHOLD_ID = "household-1"


@pytest.fixture
def auth():
    mock = AsyncMock()
    mock.get_valid_access_token = AsyncMock(return_value="token-old")
    mock.refresh_access_token = AsyncMock(return_value="token-new")
    return mock


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, auth):
        fn = AsyncMock(return_value="ok")
        assert await with_retry(fn, HOUSEHOLD_ID, auth) == "ok"
        fn.assert_awaited_once_with("token-old")
        auth.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refreshes_once_and_retries_with_new_token(self, auth):
        fn = AsyncMock(side_effect=[RevolutTokenExpiredError(), "ok"])

        assert await with_retry(fn, HOUSEHOLD_ID, auth) == "ok"

        assert fn.await_count == 2
        assert [c.args for c in fn.await_args_list] == [("token-old",), ("token-new",)]
        auth.refresh_access_token.assert_awaited_once_with(
            HOUSEHOLD_ID, stale_token="token-old"
        )

    @pytest.mark.asyncio
    async def test_gives_up_after_one_refresh(self, auth):
        fn = AsyncMock(side_effect=[RevolutTokenExpiredError(), RevolutTokenExpiredError()])

        with pytest.raises(RevolutTokenExpiredError):
            await with_retry(fn, HOUSEHOLD_ID, auth)

        assert fn.await_count == 2
        auth.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_consent_expired_not_retried(self, auth):
        fn = AsyncMock(side_effect=RevolutConsentExpiredError())

        with pytest.raises(RevolutConsentExpiredError):
            await with_retry(fn, HOUSEHOLD_ID, auth)

        fn.assert_awaited_once()
        auth.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self, auth):
        error = RevolutNetworkError("boom")
        fn = AsyncMock(side_effect=error)

        with pytest.raises(RevolutNetworkError) as exc_info:
            await with_retry(fn, HOUSEHOLD_ID, auth)

        assert exc_info.value is error
        auth.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_retries(self, auth):
        fn = AsyncMock(side_effect=RevolutTokenExpiredError())
        with pytest.raises(RevolutTokenExpiredError):
            await with_retry(fn, HOUSEHOLD_ID, auth, max_retries=0)
        auth.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_given_token_skips_lookup(self, auth):
        fn = AsyncMock(return_value="ok")
        await with_retry(fn, HOUSEHOLD_ID, auth, access_token="token-given")
        fn.assert_awaited_once_with("token-given")
        auth.get_valid_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_failure_surfaces(self, auth):
        auth.refresh_access_token.side_effect = RevolutConsentExpiredError()
        fn = AsyncMock(side_effect=RevolutTokenExpiredError())

        with pytest.raises(RevolutConsentExpiredError):
            await with_retry(fn, HOUSEHOLD_ID, auth)
        fn.assert_awaited_once()
