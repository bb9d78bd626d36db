"""
Single refresh-and-retry around a token-consuming coroutine.

The wrapped callable receives the access token as its only argument, so a
retry always runs with the token the refresh produced rather than one
captured before the failure.
"""
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from budget.revolut.errors import should_refresh_token

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[str], Awaitable[T]],
    household_id: str,
    auth,
    max_retries: int = 1,
    access_token: Optional[str] = None,
) -> T:
    """
    Run fn(access_token); on a token-expired error refresh once and rerun.

    Args:
        fn: Coroutine function taking the access token.
        household_id: Household whose connection supplies the token.
        auth: RevolutAuth (anything with get_valid_access_token and
              refresh_access_token).
        max_retries: Refresh-and-retry cycles allowed. Default 1.
        access_token: Token to start with. Fetched via auth if omitted.

    Returns:
        Whatever fn returns.

    Raises:
        The last error from fn if it is not refresh-worthy or retries ran out.
        Consent-expired errors are never retried.
    """
    if access_token is None:
        access_token = await auth.get_valid_access_token(household_id)
    try:
        return await fn(access_token)
    except Exception as exc:
        if not (should_refresh_token(exc) and max_retries > 0):
            raise
        logger.info(
            "Access token rejected for household %s; refreshing and retrying",
            household_id,
        )
        new_token = await auth.refresh_access_token(household_id, stale_token=access_token)
        return await with_retry(
            fn, household_id, auth, max_retries - 1, access_token=new_token
        )
