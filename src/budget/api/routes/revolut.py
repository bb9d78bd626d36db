"""Revolut connection, sync trigger, status and webhook routes."""
import json
import logging
import secrets
from datetime import datetime
from typing import AsyncGenerator, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import Session, select

from budget.config import get_settings
from budget.db.engine import get_engine, get_session
from budget.models.connection import RevolutConnection
from budget.models.ledger import Pocket
from budget.models.sync import SyncLog
from budget.revolut.auth import RevolutAuth
from budget.revolut.client import RevolutClient
from budget.revolut.errors import (
    NoActiveConnectionError,
    RevolutConsentExpiredError,
    RevolutError,
    get_error_message,
)
from budget.revolut.sync_service import RevolutSyncService
from budget.revolut.webhooks import SIGNATURE_HEADER, process_webhook_event, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()

STATE_COOKIE = "revolut_oauth_state"
HOUSEHOLD_COOKIE = "revolut_oauth_household"
OAUTH_COOKIE_MAX_AGE = 600  # seconds
SYNC_TYPES = ("all", "accounts", "transactions", "balances")


async def get_revolut_client() -> AsyncGenerator[RevolutClient, None]:
    """FastAPI dependency that yields a RevolutClient and closes it afterwards."""
    async with RevolutClient() as client:
        yield client


class HouseholdRequest(BaseModel):
    household_id: str


class SyncRequest(BaseModel):
    household_id: str
    type: str = "all"


class SyncResponse(BaseModel):
    success: bool
    type: str
    status: str
    records_synced: int
    errors: List[str]


class LatestSync(BaseModel):
    type: str
    status: str
    records_synced: int
    started_at: datetime
    completed_at: Optional[datetime]


class StatusResponse(BaseModel):
    connected: bool
    token_expired: bool = False
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    linked_accounts: int = 0
    latest_sync: Optional[LatestSync] = None


def _redirect_uri(request: Request) -> str:
    return get_settings().revolut_redirect_uri or str(request.url_for("revolut_callback"))


def _settings_redirect(query: str) -> RedirectResponse:
    response = RedirectResponse(f"/settings?{query}", status_code=303)
    response.delete_cookie(STATE_COOKIE)
    response.delete_cookie(HOUSEHOLD_COOKIE)
    return response


def _http_error(exc: RevolutError) -> HTTPException:
    if isinstance(exc, NoActiveConnectionError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, RevolutConsentExpiredError):
        return HTTPException(status_code=409, detail=exc.message)
    return HTTPException(status_code=502, detail=get_error_message(exc))


# ── OAuth ─────────────────────────────────────────────────────────────────────

@router.get("/connect")
def connect(
    household_id: str,
    request: Request,
    engine=Depends(get_engine),
    client: RevolutClient = Depends(get_revolut_client),
):
    """
    Start the OAuth flow. Returns the consent URL; the state token and the
    household id ride along in short-lived http-only cookies.
    """
    state = secrets.token_hex(32)
    auth_url = RevolutAuth(engine, client).authorization_url(state, _redirect_uri(request))

    response = JSONResponse({"auth_url": auth_url})
    secure = request.url.scheme == "https"
    for key, value in ((STATE_COOKIE, state), (HOUSEHOLD_COOKIE, household_id)):
        response.set_cookie(
            key, value,
            max_age=OAUTH_COOKIE_MAX_AGE,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )
    return response


@router.get("/callback", name="revolut_callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    engine=Depends(get_engine),
    client: RevolutClient = Depends(get_revolut_client),
):
    """OAuth redirect target: validate state, exchange the code, store tokens."""
    if error:
        logger.warning("Revolut OAuth error: %s", error)
        return _settings_redirect(f"error=revolut_{error}")
    if not code or not state:
        return _settings_redirect("error=revolut_invalid_callback")

    stored_state = request.cookies.get(STATE_COOKIE)
    household_id = request.cookies.get(HOUSEHOLD_COOKIE)
    if not stored_state or not secrets.compare_digest(stored_state, state):
        return _settings_redirect("error=revolut_invalid_state")
    if not household_id:
        return _settings_redirect("error=revolut_missing_household")

    auth = RevolutAuth(engine, client)
    try:
        token = await auth.exchange_code_for_token(code, _redirect_uri(request))
    except RevolutError as exc:
        logger.error("Revolut code exchange failed: %s", exc.message)
        return _settings_redirect("error=revolut_callback_failed")

    auth.store_connection(household_id, token)
    return _settings_redirect("success=revolut_connected")


@router.post("/disconnect")
def disconnect(
    body: HouseholdRequest,
    engine=Depends(get_engine),
    client: RevolutClient = Depends(get_revolut_client),
):
    """
    Deactivate the household's connection. Linked ids on pockets and
    transactions are kept so imported history stays attributable.
    """
    count = RevolutAuth(engine, client).deactivate_connections(body.household_id)
    return {"success": True, "deactivated": count, "message": "Revolut disconnected"}


@router.post("/refresh")
async def refresh(
    body: HouseholdRequest,
    engine=Depends(get_engine),
    client: RevolutClient = Depends(get_revolut_client),
):
    """Force a token refresh for the household."""
    try:
        await RevolutAuth(engine, client).refresh_access_token(body.household_id)
    except RevolutError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "message": "Token refreshed successfully"}


# ── Sync ──────────────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResponse)
async def trigger_sync(
    body: SyncRequest,
    engine=Depends(get_engine),
    client: RevolutClient = Depends(get_revolut_client),
):
    """Run one sync phase (or all of them) and report the outcome."""
    if body.type not in SYNC_TYPES:
        raise HTTPException(status_code=400, detail="Invalid sync type")

    auth = RevolutAuth(engine, client)
    if auth.get_active_connection(body.household_id) is None:
        raise HTTPException(status_code=404, detail="No active Revolut connection found")

    service = RevolutSyncService(auth=auth, client=client, engine=engine)
    runners = {
        "all": service.sync_all,
        "accounts": service.sync_accounts,
        "balances": service.sync_balances,
        "transactions": service.sync_transactions,
    }
    try:
        result = await runners[body.type](body.household_id)
    except RevolutError as exc:
        raise _http_error(exc) from exc

    return SyncResponse(
        success=result.success,
        type=body.type,
        status=result.status,
        records_synced=result.records_synced,
        errors=result.errors,
    )


@router.get("/status", response_model=StatusResponse)
def status(household_id: str, session: Session = Depends(get_session)):
    """Connection state, token expiry, linked account count and latest sync."""
    connection = session.exec(
        select(RevolutConnection).where(
            RevolutConnection.household_id == household_id,
            RevolutConnection.is_active == True,  # noqa: E712
        )
    ).first()
    if connection is None:
        return StatusResponse(connected=False)

    latest = session.exec(
        select(SyncLog)
        .where(SyncLog.household_id == household_id)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
    ).first()
    linked = session.exec(
        select(func.count(Pocket.id)).where(
            Pocket.household_id == household_id,
            Pocket.revolut_account_id.is_not(None),
        )
    ).one()

    return StatusResponse(
        connected=True,
        token_expired=connection.expires_at <= datetime.utcnow(),
        connected_at=connection.connected_at,
        last_synced_at=connection.last_synced_at,
        expires_at=connection.expires_at,
        linked_accounts=linked or 0,
        latest_sync=LatestSync(
            type=latest.sync_type,
            status=latest.status,
            records_synced=latest.records_synced,
            started_at=latest.started_at,
            completed_at=latest.completed_at,
        ) if latest else None,
    )


# ── Webhook ───────────────────────────────────────────────────────────────────

@router.post("/webhook")
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    engine=Depends(get_engine),
):
    """
    Receive a signed Revolut event. Responds immediately; the event is
    processed in the background.
    """
    secret = get_settings().revolut_webhook_secret
    if not secret:
        logger.error("REVOLUT_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")

    payload = await request.body()
    if not verify_signature(payload, signature, secret):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    background_tasks.add_task(process_webhook_event, event, engine)
    return {"received": True}
