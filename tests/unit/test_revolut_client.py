"""Tests for RevolutClient: status → error mapping and resource normalization.

The external API is replaced by httpx.MockTransport, so no network is used.
"""
from datetime import date, datetime

import httpx
import pytest

from budget.revolut.client import RevolutClient
from budget.revolut.errors import (
    RevolutConsentExpiredError,
    RevolutError,
    RevolutNetworkError,
    RevolutRateLimitError,
    RevolutTokenExpiredError,
)
from budget.revolut.normalizer import DEBIT, AccountType

BASE_URL = "https://oba.test"


def make_client(handler) -> RevolutClient:
    return RevolutClient(base_url=BASE_URL, timeout=5, transport=httpx.MockTransport(handler))


def respond(status_code=200, json=None, headers=None, content=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if content is not None:
            return httpx.Response(status_code, content=content, headers=headers)
        return httpx.Response(status_code, json=json, headers=headers)
    return handler


# ─── request(): error taxonomy ────────────────────────────────────────────────

class TestRequestErrors:
    async def test_429_raises_rate_limit_with_retry_after(self):
        async with make_client(respond(429, {}, headers={"Retry-After": "30"})) as client:
            with pytest.raises(RevolutRateLimitError) as exc_info:
                await client.request("/accounts", "tok")
        assert exc_info.value.retry_after == 30

    async def test_429_without_header(self):
        async with make_client(respond(429, {})) as client:
            with pytest.raises(RevolutRateLimitError) as exc_info:
                await client.request("/accounts", "tok")
        assert exc_info.value.retry_after is None

    async def test_401_raises_token_expired(self):
        async with make_client(respond(401, {"error": "invalid_token"})) as client:
            with pytest.raises(RevolutTokenExpiredError):
                await client.request("/accounts", "tok")

    async def test_403_raises_consent_expired(self):
        async with make_client(respond(403, {})) as client:
            with pytest.raises(RevolutConsentExpiredError):
                await client.request("/accounts", "tok")

    async def test_other_status_carries_upstream_code(self):
        body = {"error": "resource_unknown", "message": "Account not found"}
        async with make_client(respond(404, body)) as client:
            with pytest.raises(RevolutError) as exc_info:
                await client.request("/accounts/x/balances", "tok")
        exc = exc_info.value
        assert exc.message == "Account not found"
        assert exc.code == "resource_unknown"
        assert exc.status_code == 404

    async def test_unparseable_error_body_falls_back(self):
        async with make_client(respond(500, content=b"<html>oops</html>")) as client:
            with pytest.raises(RevolutError) as exc_info:
                await client.request("/accounts", "tok")
        exc = exc_info.value
        assert exc.message == "HTTP 500: Internal Server Error"
        assert exc.code == "unknown_error"
        assert exc.status_code == 500

    async def test_connect_error_becomes_network_error(self):
        def handler(request):
            raise httpx.ConnectError("dns failure", request=request)

        async with make_client(handler) as client:
            with pytest.raises(RevolutNetworkError):
                await client.request("/accounts", "tok")

    async def test_timeout_becomes_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(RevolutNetworkError):
                await client.request("/accounts", "tok")


# ─── request(): success path ──────────────────────────────────────────────────

class TestRequestSuccess:
    async def test_sends_bearer_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"ok": True})

        async with make_client(handler) as client:
            body = await client.request("/accounts", "tok-123")
        assert body == {"ok": True}
        assert seen["auth"] == "Bearer tok-123"
        assert seen["url"] == f"{BASE_URL}/accounts"

    async def test_extra_headers_merged(self):
        seen = {}

        def handler(request):
            seen["x"] = request.headers.get("x-fapi-financial-id")
            return httpx.Response(200, json={})

        async with make_client(handler) as client:
            await client.request("/accounts", "tok", headers={"x-fapi-financial-id": "001"})
        assert seen["x"] == "001"


# ─── Resource methods ─────────────────────────────────────────────────────────

class TestResources:
    async def test_get_accounts_normalizes(self):
        payload = {"accounts": [
            {"resourceId": "acc-1", "currency": "GBP", "name": "Main", "cashAccountType": "CACC",
             "balances": [{"balanceAmount": {"amount": "12.50", "currency": "GBP"},
                           "balanceType": "CLAV"}]},
            {"resourceId": "acc-2", "currency": "EUR", "product": "Savings"},
        ]}
        async with make_client(respond(200, payload)) as client:
            accounts = await client.get_accounts("tok")
        assert [a.account_id for a in accounts] == ["acc-1", "acc-2"]
        assert accounts[0].balance == pytest.approx(12.50)
        assert accounts[1].account_type is AccountType.SAVINGS
        assert accounts[1].name == "EUR Account"

    async def test_get_account_balance_hits_account_path(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"balances": [
                {"balanceAmount": {"amount": "80.00", "currency": "GBP"}, "balanceType": "CLAV"},
            ]})

        async with make_client(handler) as client:
            balance = await client.get_account_balance("tok", "acc-9")
        assert seen["path"] == "/accounts/acc-9/balances"
        assert balance.account_id == "acc-9"
        assert balance.amount == 80.0

    async def test_get_transactions_sends_date_window(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"transactions": {"booked": [{
                "transactionId": "tx-1",
                "bookingDate": "2025-03-01",
                "transactionAmount": {"amount": "42.50", "currency": "GBP"},
                "creditDebitIndicator": "DBIT",
            }]}})

        async with make_client(handler) as client:
            txs = await client.get_transactions(
                "tok", "acc-1",
                from_date=datetime(2025, 2, 1, 13, 45),
                to_date=date(2025, 3, 1),
            )
        assert seen["params"] == {"dateFrom": "2025-02-01", "dateTo": "2025-03-01"}
        assert len(txs) == 1
        assert txs[0].credit_debit_indicator == DEBIT

    async def test_get_transactions_without_window_sends_no_params(self):
        seen = {}

        def handler(request):
            seen["query"] = request.url.query
            return httpx.Response(200, json={"transactions": {"booked": []}})

        async with make_client(handler) as client:
            assert await client.get_transactions("tok", "acc-1") == []
        assert seen["query"] == b""
