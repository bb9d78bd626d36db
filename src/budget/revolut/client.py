"""
Async client for the Revolut Open Banking API.

Every call goes through RevolutClient.request(), which attaches the bearer
token and maps HTTP status codes onto the error taxonomy:

    429            → RevolutRateLimitError (Retry-After seconds, if sent)
    401            → RevolutTokenExpiredError
    403            → RevolutConsentExpiredError
    other non-2xx  → RevolutError with the upstream code/message
    transport/timeout → RevolutNetworkError

Tokens are never fetched here; callers pass the access token in.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from budget.config import get_settings
from budget.revolut.errors import (
    RevolutConsentExpiredError,
    RevolutError,
    RevolutNetworkError,
    RevolutRateLimitError,
    RevolutTokenExpiredError,
)
from budget.revolut.normalizer import (
    ExternalAccount,
    ExternalBalance,
    ExternalTransaction,
    normalize_account,
    normalize_balance,
    normalize_transactions,
)

logger = logging.getLogger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    """Decode an error body, falling back to a generic one if it isn't JSON."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return {
            "error": "unknown_error",
            "message": f"HTTP {response.status_code}: {response.reason_phrase}",
        }
    return body


class RevolutClient:
    """
    Thin async wrapper over httpx.AsyncClient bound to the Revolut base URL.

    Usage:
        async with RevolutClient() as client:
            accounts = await client.get_accounts(access_token)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root. Defaults to settings.revolut_api_base_url.
            timeout: Per-request timeout in seconds. Defaults to
                     settings.request_timeout_seconds.
            transport: Optional httpx transport (tests pass MockTransport).
        """
        settings = get_settings()
        self.base_url = (base_url or settings.revolut_api_base_url).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.request_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "RevolutClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Transport ─────────────────────────────────────────────────────────────

    async def post_form(
        self,
        path: str,
        data: Mapping[str, str],
        basic_auth: Tuple[str, str],
    ) -> httpx.Response:
        """
        POST a form-encoded body with HTTP Basic auth (used for /token).

        Status handling is left to the caller; only transport failures are
        translated here.

        Raises:
            RevolutNetworkError: on connect/DNS/timeout failures.
        """
        try:
            return await self._http.post(path, data=dict(data), auth=basic_auth)
        except httpx.TransportError as exc:
            raise RevolutNetworkError("Failed to connect to Revolut API") from exc

    async def request(
        self,
        endpoint: str,
        access_token: str,
        method: str = "GET",
        params: Optional[Mapping[str, str]] = None,
        json: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """
        Make an authenticated request and return the decoded JSON body.

        Args:
            endpoint: Path relative to the base URL, e.g. "/accounts".
            access_token: Current bearer token.
            method: HTTP method.
            params: Query string parameters.
            json: JSON request body.
            headers: Extra headers, merged over the defaults.

        Raises:
            RevolutRateLimitError, RevolutTokenExpiredError,
            RevolutConsentExpiredError, RevolutNetworkError, RevolutError.
        """
        request_headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            response = await self._http.request(
                method, endpoint, params=params, json=json, headers=request_headers
            )
        except httpx.TransportError as exc:
            logger.warning("Transport failure on %s %s: %s", method, endpoint, exc)
            raise RevolutNetworkError("Failed to connect to Revolut API") from exc

        if response.status_code == 429:
            raise RevolutRateLimitError(
                _parse_retry_after(response.headers.get("Retry-After"))
            )
        if response.status_code == 401:
            raise RevolutTokenExpiredError()
        if response.status_code == 403:
            raise RevolutConsentExpiredError()

        if not response.is_success:
            body = _error_body(response)
            raise RevolutError(
                body.get("message")
                or body.get("error_description")
                or body.get("error")
                or "API request failed",
                body.get("error") or body.get("code"),
                response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise RevolutError(
                f"Invalid JSON in response from {endpoint}", "INVALID_RESPONSE",
                response.status_code,
            ) from exc

    # ── Resources ─────────────────────────────────────────────────────────────

    async def get_accounts(self, access_token: str) -> List[ExternalAccount]:
        """Fetch all accounts the consent covers."""
        body = await self.request("/accounts", access_token)
        return [normalize_account(a) for a in body.get("accounts") or []]

    async def get_account_balance(
        self, access_token: str, account_id: str
    ) -> ExternalBalance:
        """Fetch the current balance of one account (CLAV preferred)."""
        body = await self.request(f"/accounts/{account_id}/balances", access_token)
        return normalize_balance(body, account_id)

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[ExternalTransaction]:
        """
        Fetch booked transactions for one account.

        Args:
            from_date: Sent as dateFrom (YYYY-MM-DD) if given.
            to_date: Sent as dateTo (YYYY-MM-DD) if given.
        """
        params: Dict[str, str] = {}
        if from_date is not None:
            params["dateFrom"] = from_date.strftime("%Y-%m-%d")
        if to_date is not None:
            params["dateTo"] = to_date.strftime("%Y-%m-%d")

        body = await self.request(
            f"/accounts/{account_id}/transactions", access_token, params=params or None
        )
        return normalize_transactions(body, account_id)
