"""
Revolut Open Banking response normalizer.

Converts raw vendor JSON (Berlin Group / PSD2 shaped) into small DTOs the
sync service works with. No DB or network access here.

Vendor shapes handled:

  GET /accounts
    {"accounts": [{"resourceId", "currency", "name", "product",
                   "cashAccountType", "iban", "bic",
                   "balances": [{"balanceAmount": {"amount", "currency"},
                                 "balanceType", "creditDebitIndicator"}]}]}

  GET /accounts/{id}/balances
    {"balances": [ ...same balance objects... ]}

  GET /accounts/{id}/transactions
    {"transactions": {"booked": [...], "pending": [...]}}

Amounts arrive as unsigned decimal strings with a separate
creditDebitIndicator ("CRDT" / "DBIT"). DTOs keep the magnitude unsigned;
signed_amount() applies the sign when a row is written.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CREDIT = "CREDIT"
DEBIT = "DEBIT"

# Closing available balance; preferred over the other balance types
PREFERRED_BALANCE_TYPE = "CLAV"


class AccountType(str, Enum):
    CURRENT = "CURRENT"
    SAVINGS = "SAVINGS"
    INVESTMENT = "INVESTMENT"
    LOAN = "LOAN"
    OTHER = "OTHER"


class TransactionType(str, Enum):
    CARD_PAYMENT = "CARD_PAYMENT"
    CARD_REFUND = "CARD_REFUND"
    TRANSFER = "TRANSFER"
    ATM = "ATM"
    FEE = "FEE"
    EXCHANGE = "EXCHANGE"
    OTHER = "OTHER"


CATEGORY_BY_TRANSACTION_TYPE: Dict[TransactionType, str] = {
    TransactionType.CARD_PAYMENT: "Shopping",
    TransactionType.CARD_REFUND: "Refund",
    TransactionType.TRANSFER: "Transfer",
    TransactionType.ATM: "Cash Withdrawal",
    TransactionType.FEE: "Fees",
    TransactionType.EXCHANGE: "Currency Exchange",
    TransactionType.OTHER: "Other",
}


# ── DTOs ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExternalAccount:
    account_id: str
    currency: str
    account_type: AccountType
    name: str
    balance: float                      # signed, from the preferred balance entry
    iban: Optional[str] = None
    bic: Optional[str] = None


@dataclass(frozen=True)
class ExternalBalance:
    account_id: str
    amount: float                       # unsigned magnitude
    currency: str
    credit_debit_indicator: str         # CREDIT | DEBIT
    balance_type: str                   # vendor code, e.g. "CLAV"
    reference_date: Optional[date] = None

    @property
    def signed_amount(self) -> float:
        return signed_amount(self.amount, self.credit_debit_indicator)


@dataclass(frozen=True)
class ExternalTransaction:
    transaction_id: str
    account_id: str
    amount: float                       # unsigned magnitude
    currency: str
    transaction_type: TransactionType
    description: str
    booking_date: date
    credit_debit_indicator: str         # CREDIT | DEBIT
    merchant_name: Optional[str] = None
    value_date: Optional[date] = None


# ── Classification ────────────────────────────────────────────────────────────

# Checked in order; first substring hit wins. REFUND precedes CARD so that
# card refund codes are not swallowed by the card payment rule.
_ACCOUNT_TYPE_RULES = [
    (("CURRENT", "CACC"), AccountType.CURRENT),
    (("SAVING", "SVGS"), AccountType.SAVINGS),
    (("INVEST",), AccountType.INVESTMENT),
    (("LOAN",), AccountType.LOAN),
]

_TRANSACTION_TYPE_RULES = [
    (("REFUND",), TransactionType.CARD_REFUND),
    (("CARD", "POS"), TransactionType.CARD_PAYMENT),
    (("TRANSFER", "SEPA"), TransactionType.TRANSFER),
    (("ATM", "CASH"), TransactionType.ATM),
    (("FEE", "CHARGE"), TransactionType.FEE),
    (("EXCHANGE", "FX"), TransactionType.EXCHANGE),
]


def classify_account_type(code: Optional[str]) -> AccountType:
    """Map a vendor cashAccountType/product code onto AccountType."""
    code_upper = (code or "").upper()
    for needles, account_type in _ACCOUNT_TYPE_RULES:
        if any(n in code_upper for n in needles):
            return account_type
    if code_upper:
        logger.debug("Unmapped account type code %r, using OTHER", code)
    return AccountType.OTHER


def classify_transaction_type(code: Optional[str]) -> TransactionType:
    """Map a proprietaryBankTransactionCode onto TransactionType."""
    code_upper = (code or "").upper()
    for needles, tx_type in _TRANSACTION_TYPE_RULES:
        if any(n in code_upper for n in needles):
            return tx_type
    if code_upper:
        logger.debug("Unmapped transaction code %r, using OTHER", code)
    return TransactionType.OTHER


def category_for(transaction_type: Any) -> str:
    """Display category for a transaction type. Unknown types map to "Other"."""
    try:
        return CATEGORY_BY_TRANSACTION_TYPE[TransactionType(transaction_type)]
    except ValueError:
        return "Other"


def signed_amount(amount: float, credit_debit_indicator: str) -> float:
    """Debit → negative, credit → positive. Input must be a magnitude."""
    magnitude = abs(amount)
    return -magnitude if credit_debit_indicator == DEBIT else magnitude


# ── Helpers ───────────────────────────────────────────────────────────────────

def _indicator(raw_indicator: Optional[str]) -> str:
    """Vendor CRDT/DBIT → CREDIT/DEBIT. Missing indicator counts as credit."""
    return DEBIT if raw_indicator == "DBIT" else CREDIT


def _parse_date(s: Optional[str]) -> Optional[date]:
    """Parse "YYYY-MM-DD" or a full ISO timestamp; None passes through."""
    if not s:
        return None
    return date.fromisoformat(s[:10])


def _pick_balance(balances: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not balances:
        return None
    for b in balances:
        if b.get("balanceType") == PREFERRED_BALANCE_TYPE:
            return b
    return balances[0]


# ── Normalizers ───────────────────────────────────────────────────────────────

def normalize_account(raw: Dict[str, Any]) -> ExternalAccount:
    """
    Normalize one entry of the /accounts list.

    The name falls back to "{currency} Account" when the vendor omits it.
    Balance is taken from the nested balances array (CLAV preferred) and is 0
    when the array is absent.
    """
    currency = raw.get("currency", "")
    balance_raw = _pick_balance(raw.get("balances") or [])
    balance = 0.0
    if balance_raw:
        balance = signed_amount(
            float(balance_raw["balanceAmount"]["amount"]),
            _indicator(balance_raw.get("creditDebitIndicator")),
        )
    return ExternalAccount(
        account_id=raw["resourceId"],
        currency=currency,
        account_type=classify_account_type(
            raw.get("cashAccountType") or raw.get("product")
        ),
        name=raw.get("name") or f"{currency} Account",
        balance=balance,
        iban=raw.get("iban"),
        bic=raw.get("bic"),
    )


def normalize_balance(raw: Dict[str, Any], account_id: str) -> ExternalBalance:
    """
    Normalize a /balances response into a single ExternalBalance.

    Raises:
        ValueError: if the response carries no balances at all.
    """
    chosen = _pick_balance(raw.get("balances") or [])
    if chosen is None:
        raise ValueError(f"No balances returned for account {account_id}")
    return ExternalBalance(
        account_id=account_id,
        amount=abs(float(chosen["balanceAmount"]["amount"])),
        currency=chosen["balanceAmount"].get("currency", ""),
        credit_debit_indicator=_indicator(chosen.get("creditDebitIndicator")),
        balance_type=chosen.get("balanceType", ""),
        reference_date=_parse_date(chosen.get("referenceDate")) or datetime.utcnow().date(),
    )


def normalize_transaction(raw: Dict[str, Any], account_id: str) -> ExternalTransaction:
    """
    Normalize one booked transaction.

    Raises:
        ValueError: if bookingDate is missing or empty.
    """
    booking_date = _parse_date(raw.get("bookingDate"))
    if booking_date is None:
        raise ValueError(f"Transaction {raw.get('transactionId')} has no booking date")
    return ExternalTransaction(
        transaction_id=raw["transactionId"],
        account_id=account_id,
        amount=abs(float(raw["transactionAmount"]["amount"])),
        currency=raw["transactionAmount"].get("currency", ""),
        transaction_type=classify_transaction_type(
            raw.get("proprietaryBankTransactionCode")
        ),
        description=(
            raw.get("remittanceInformationUnstructured")
            or raw.get("additionalInformation")
            or "Transaction"
        ),
        booking_date=booking_date,
        credit_debit_indicator=_indicator(raw.get("creditDebitIndicator")),
        merchant_name=raw.get("creditorName") or raw.get("debtorName"),
        value_date=_parse_date(raw.get("valueDate")),
    )


def normalize_transactions(raw: Dict[str, Any], account_id: str) -> List[ExternalTransaction]:
    """Normalize a /transactions response. Only booked entries are returned."""
    booked = (raw.get("transactions") or {}).get("booked") or []
    return [normalize_transaction(tx, account_id) for tx in booked]
