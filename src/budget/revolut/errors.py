"""
Error taxonomy for the Revolut Open Banking integration.

Every failure surfaced by the auth manager or the API client is one of the
classes below, so callers can branch on type instead of parsing messages:

    RevolutError
    ├── RevolutAuthError
    │   └── RevolutTokenExpiredError   (retry once after a refresh)
    ├── RevolutConsentExpiredError     (terminal: user must reconnect)
    ├── RevolutRateLimitError          (carries retry_after seconds)
    ├── RevolutNetworkError            (transport failure or timeout)
    ├── RevolutValidationError         (bad local input)
    └── NoActiveConnectionError
"""
from typing import Optional


class RevolutError(Exception):
    """Base class. Carries a machine code and the upstream HTTP status, if any."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class RevolutAuthError(RevolutError):
    """Generic OAuth failure: bad client credentials, malformed grant, etc."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, code, 401)


class RevolutTokenExpiredError(RevolutAuthError):
    """The access token was rejected. Retryable once after a refresh."""

    def __init__(self):
        super().__init__("Access token has expired", "TOKEN_EXPIRED")


class RevolutConsentExpiredError(RevolutError):
    """The refresh token or consent is revoked. Requires a new OAuth flow."""

    def __init__(self):
        super().__init__(
            "User consent has expired or been revoked", "CONSENT_EXPIRED", 403
        )


class RevolutRateLimitError(RevolutError):
    """HTTP 429. retry_after is the Retry-After header in seconds, if sent."""

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Rate limit exceeded", "RATE_LIMIT_EXCEEDED", 429)
        self.retry_after = retry_after


class RevolutNetworkError(RevolutError):
    def __init__(self, message: str):
        super().__init__(message, "NETWORK_ERROR")


class RevolutValidationError(RevolutError):
    def __init__(self, message: str):
        super().__init__(message, "VALIDATION_ERROR", 400)


class NoActiveConnectionError(RevolutError):
    """Raised when a household has no is_active connection."""

    def __init__(self, household_id: str):
        super().__init__(
            f"No active Revolut connection found for household {household_id}",
            "NO_CONNECTION",
        )
        self.household_id = household_id


# ── Predicates ────────────────────────────────────────────────────────────────

def should_refresh_token(error: BaseException) -> bool:
    """True if the error means the access token is stale and a refresh may help."""
    if isinstance(error, RevolutTokenExpiredError):
        return True
    if isinstance(error, RevolutAuthError) and error.code == "invalid_token":
        return True
    return False


def should_prompt_reconnect(error: BaseException) -> bool:
    """True if the user has to go through the OAuth flow again."""
    return isinstance(error, RevolutConsentExpiredError)


def get_error_message(error: BaseException) -> str:
    """Extract a user-facing message from any exception."""
    if isinstance(error, RevolutError):
        return error.message
    return str(error) or "An unexpected error occurred"
