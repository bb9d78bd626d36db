"""
Revolut webhook verification and event handling.

Revolut signs the raw request body with HMAC-SHA256 using the shared webhook
secret and sends the hex digest in the x-revolut-signature header.

Handled event types:
  transaction.created  → transactions phase for the owning household
  balance.updated      → write the pushed balance onto the linked pocket(s)
  account.updated      → balances phase for the owning household

Anything else is logged and ignored.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict

from budget.revolut.client import RevolutClient
from budget.revolut.normalizer import CREDIT, DEBIT, signed_amount
from budget.revolut.reconciler import EntityReconciler
from budget.revolut.sync_service import build_sync_service

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-revolut-signature"


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over the raw body."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    # Header values arrive latin-1 decoded; compare bytes so non-ASCII input
    # is a mismatch rather than a TypeError
    candidate = signature.strip().lower().encode("latin-1", errors="replace")
    return hmac.compare_digest(candidate, digest.encode())


async def process_webhook_event(event: Dict[str, Any], engine) -> None:
    """
    Dispatch one webhook event. Runs as a background task, so failures are
    logged rather than raised.
    """
    event_type = event.get("type")
    data = event.get("data") or {}

    try:
        if event_type == "transaction.created":
            await _handle_transaction_created(data, engine)
        elif event_type == "balance.updated":
            _handle_balance_updated(data, engine)
        elif event_type == "account.updated":
            await _handle_account_updated(data, engine)
        else:
            logger.info("Ignoring unknown webhook event type: %s", event_type)
    except Exception:
        logger.exception("Error handling webhook event %s", event_type)


def _household_for_account(engine, account_id: str):
    pockets = EntityReconciler(engine).pockets_for_account(account_id)
    return pockets[0].household_id if pockets else None


async def _handle_transaction_created(data: Dict[str, Any], engine) -> None:
    account_id = data.get("accountId")
    household_id = _household_for_account(engine, account_id)
    if household_id is None:
        logger.info("No pocket found for account %s", account_id)
        return

    async with RevolutClient() as client:
        result = await build_sync_service(engine, client).sync_transactions(household_id)
    logger.info(
        "Transaction %s synced via webhook (%s, %d records)",
        data.get("transactionId"), result.status, result.records_synced,
    )


def _handle_balance_updated(data: Dict[str, Any], engine) -> None:
    account_id = data.get("accountId")
    balance = data.get("balance") or {}
    amount = signed_amount(
        float(balance["amount"]),
        DEBIT if balance.get("creditDebitIndicator") == "DBIT" else CREDIT,
    )

    reconciler = EntityReconciler(engine)
    pockets = reconciler.pockets_for_account(account_id)
    if not pockets:
        logger.info("No pocket found for account %s", account_id)
        return
    for pocket in pockets:
        reconciler.set_pocket_balance(pocket.id, amount)
    logger.info("Balance updated via webhook for account %s", account_id)


async def _handle_account_updated(data: Dict[str, Any], engine) -> None:
    account_id = data.get("accountId")
    household_id = _household_for_account(engine, account_id)
    if household_id is None:
        logger.info("No pocket found for account %s", account_id)
        return

    async with RevolutClient() as client:
        await build_sync_service(engine, client).sync_balances(household_id)
    logger.info("Account %s synced via webhook", account_id)
