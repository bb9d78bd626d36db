"""
Revolut OAuth token lifecycle with DB persistence.

Flow:
  1. authorization_url() sends the user to Revolut's consent screen.
  2. The callback hands us a one-shot code; exchange_code_for_token() trades
     it for an access/refresh token pair and store_connection() saves it as
     the household's single active RevolutConnection.
  3. Every sync calls get_valid_access_token(). While expires_at is in the
     future this is a pure DB read. Once expired, the refresh token is
     exchanged and the new pair + expiry are written back in one commit.
     Revolut rotates refresh tokens, so the old one is dead after this.
  4. If the refresh grant is rejected (HTTP 403 or invalid_grant) the consent
     is gone: the connection is deactivated and RevolutConsentExpiredError is
     raised. Nothing recovers from that except a new OAuth exchange.

Refreshes for one household are serialized with an asyncio.Lock. A caller
that waited on the lock re-reads the connection first, so it picks up the
token the previous holder wrote instead of replaying a rotated refresh token.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel
from sqlmodel import Session, select

from budget.config import get_settings
from budget.models.connection import RevolutConnection
from budget.revolut.client import RevolutClient
from budget.revolut.errors import (
    NoActiveConnectionError,
    RevolutAuthError,
    RevolutConsentExpiredError,
    RevolutError,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

TOKEN_PATH = "/token"
AUTH_PATH = "/auth"
OAUTH_SCOPE = "accounts transactions"

_refresh_locks: Dict[str, asyncio.Lock] = {}


def _refresh_lock(household_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(household_id)
    if lock is None:
        lock = _refresh_locks[household_id] = asyncio.Lock()
    return lock


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str = ""


def _oauth_error(response: httpx.Response) -> Dict[str, str]:
    try:
        body = response.json()
    except ValueError:
        body = None
    return body if isinstance(body, dict) else {}


# ── Main class ────────────────────────────────────────────────────────────────

class RevolutAuth:
    """
    Owns the OAuth grants and the household's RevolutConnection row.

    Usage:
        auth = RevolutAuth(engine, client)
        token = await auth.get_valid_access_token(household_id)
    """

    def __init__(
        self,
        engine,
        client: RevolutClient,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            engine: SQLAlchemy engine holding revolut_connections.
            client: RevolutClient used for the /token POSTs.
            client_id: OAuth client id. Defaults to settings.
            client_secret: OAuth client secret. Defaults to settings.
            now: Clock returning naive UTC datetimes (overridable in tests).
        """
        settings = get_settings()
        self.engine = engine
        self.client = client
        self.client_id = client_id if client_id is not None else settings.revolut_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.revolut_client_secret
        )
        self._now = now

    # ── OAuth grants ──────────────────────────────────────────────────────────

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the consent-screen URL the user is redirected to."""
        params = urlencode({
            "client_id": self.client_id,
            "response_type": "code",
            "scope": OAUTH_SCOPE,
            "state": state,
            "redirect_uri": redirect_uri,
        })
        return f"{self.client.base_url}{AUTH_PATH}?{params}"

    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> TokenResponse:
        """
        Trade an authorization code for a token pair.

        Raises:
            RevolutAuthError: non-2xx from /token, carrying the OAuth error code.
            RevolutNetworkError: transport failure.
        """
        response = await self.client.post_form(
            TOKEN_PATH,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            basic_auth=(self.client_id, self.client_secret),
        )
        if not response.is_success:
            error = _oauth_error(response)
            raise RevolutAuthError(
                error.get("error_description")
                or error.get("error")
                or "Failed to exchange code for token",
                error.get("error"),
            )
        return self._parse_token(response)

    async def refresh_access_token_direct(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new pair. Does not touch the DB.

        Raises:
            RevolutConsentExpiredError: HTTP 403 or error=invalid_grant (terminal).
            RevolutAuthError: any other non-2xx.
            RevolutNetworkError: transport failure.
        """
        response = await self.client.post_form(
            TOKEN_PATH,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            basic_auth=(self.client_id, self.client_secret),
        )
        if not response.is_success:
            error = _oauth_error(response)
            if response.status_code == 403 or error.get("error") == "invalid_grant":
                raise RevolutConsentExpiredError()
            raise RevolutAuthError(
                error.get("error_description")
                or error.get("error")
                or "Failed to refresh token",
                error.get("error"),
            )
        return self._parse_token(response)

    @staticmethod
    def _parse_token(response: httpx.Response) -> TokenResponse:
        try:
            return TokenResponse.model_validate(response.json())
        except ValueError as exc:
            raise RevolutAuthError(
                "Malformed token response from Revolut", "invalid_response"
            ) from exc

    # ── Household tokens ──────────────────────────────────────────────────────

    async def get_valid_access_token(self, household_id: str) -> str:
        """
        Return a usable access token, refreshing only if the stored one expired.

        Raises:
            NoActiveConnectionError: the household never connected or disconnected.
            RevolutConsentExpiredError: refresh rejected; connection deactivated.
        """
        connection = self._require_active_connection(household_id)
        if connection.expires_at > self._now():
            return connection.access_token

        async with _refresh_lock(household_id):
            connection = self._require_active_connection(household_id)
            if connection.expires_at > self._now():
                # Another caller refreshed while we waited
                return connection.access_token
            return await self._refresh(connection)

    async def refresh_access_token(
        self, household_id: str, stale_token: Optional[str] = None
    ) -> str:
        """
        Force a refresh regardless of the stored expiry.

        Used when the API rejected a token the DB still considers valid. If
        stale_token is given and the stored token already differs from it,
        someone else rotated it and the stored one is returned as is.
        """
        async with _refresh_lock(household_id):
            connection = self._require_active_connection(household_id)
            if stale_token is not None and connection.access_token != stale_token:
                return connection.access_token
            return await self._refresh(connection)

    async def _refresh(self, connection: RevolutConnection) -> str:
        try:
            token = await self.refresh_access_token_direct(connection.refresh_token)
        except RevolutConsentExpiredError:
            logger.warning(
                "Consent expired for household %s; deactivating connection %s",
                connection.household_id, connection.id,
            )
            self.deactivate_connections(connection.household_id)
            raise

        expires_at = self._now() + timedelta(seconds=token.expires_in)
        with Session(self.engine) as s:
            db_conn = s.get(RevolutConnection, connection.id)
            if db_conn is None:
                raise RevolutError("Failed to update access token")
            db_conn.access_token = token.access_token
            db_conn.refresh_token = token.refresh_token
            db_conn.expires_at = expires_at
            s.add(db_conn)
            s.commit()

        logger.info(
            "Refreshed access token for household %s (expires %s)",
            connection.household_id, expires_at.isoformat(),
        )
        return token.access_token

    # ── Connection rows ───────────────────────────────────────────────────────

    def get_active_connection(self, household_id: str) -> Optional[RevolutConnection]:
        with Session(self.engine) as s:
            return s.exec(
                select(RevolutConnection).where(
                    RevolutConnection.household_id == household_id,
                    RevolutConnection.is_active == True,  # noqa: E712
                )
            ).first()

    def _require_active_connection(self, household_id: str) -> RevolutConnection:
        connection = self.get_active_connection(household_id)
        if connection is None:
            raise NoActiveConnectionError(household_id)
        return connection

    def store_connection(
        self,
        household_id: str,
        token: TokenResponse,
        consent_id: Optional[str] = None,
    ) -> RevolutConnection:
        """
        Save a freshly exchanged token pair as the household's only active
        connection. Previously active rows are deactivated in the same commit.
        """
        now = self._now()
        with Session(self.engine) as s:
            existing = s.exec(
                select(RevolutConnection).where(
                    RevolutConnection.household_id == household_id,
                    RevolutConnection.is_active == True,  # noqa: E712
                )
            ).all()
            for old in existing:
                old.is_active = False
                s.add(old)

            connection = RevolutConnection(
                household_id=household_id,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                expires_at=now + timedelta(seconds=token.expires_in),
                consent_id=consent_id,
                connected_at=now,
                is_active=True,
            )
            s.add(connection)
            s.commit()
            s.refresh(connection)
        logger.info("Stored new Revolut connection for household %s", household_id)
        return connection

    def deactivate_connections(self, household_id: str) -> int:
        """Mark every active connection inactive. Rows are kept. Returns count."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(RevolutConnection).where(
                    RevolutConnection.household_id == household_id,
                    RevolutConnection.is_active == True,  # noqa: E712
                )
            ).all()
            for row in rows:
                row.is_active = False
                s.add(row)
            s.commit()
        return len(rows)
