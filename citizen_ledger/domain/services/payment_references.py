"""
Payment reference codec

Gateway transaction ids double as the link back to the obligation being paid:

- ``DEBT_{debt_id}_{epoch_ms}_{nonce}``: the debt id is recovered from the id
  itself, no payment row exists for debt sessions.
- ``FINE_...`` / ``FINES_...`` (or anything else): resolved by exact lookup
  on ``Payment.transaction_id``.
"""
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from citizen_ledger.core.exceptions import InvalidReferenceError

DEBT_PREFIX = "DEBT"
FINE_PREFIX = "FINE"
MULTI_FINE_PREFIX = "FINES"

_DEBT_REFERENCE_RE = re.compile(r"^DEBT_([^_]+)_")


class ReferenceKind(str, Enum):
    DEBT = "DEBT"
    FINE = "FINE"


@dataclass(frozen=True)
class PaymentReference:
    kind: ReferenceKind
    transaction_id: str
    debt_id: Optional[str] = None


def _timestamp_and_nonce() -> str:
    return f"{int(time.time() * 1000)}_{secrets.randbelow(10_000)}"


def encode_debt_reference(debt_id: str) -> str:
    """Mint a gateway transaction id that carries ``debt_id``"""
    debt_id = str(debt_id)
    if not debt_id or "_" in debt_id:
        raise InvalidReferenceError(debt_id, "debt id must be non-empty and contain no '_'")
    return f"{DEBT_PREFIX}_{debt_id}_{_timestamp_and_nonce()}"


def is_debt_reference(transaction_id: str) -> bool:
    return bool(transaction_id) and transaction_id.startswith(f"{DEBT_PREFIX}_")


def decode_debt_reference(transaction_id: str) -> str:
    """Debt id embedded in a ``DEBT_`` transaction id"""
    match = _DEBT_REFERENCE_RE.match(transaction_id or "")
    if not match:
        raise InvalidReferenceError(transaction_id or "", "expected DEBT_{id}_{timestamp}_{nonce}")
    return match.group(1)


def generate_transaction_id(prefix: str = FINE_PREFIX) -> str:
    """Transaction id for fine and multi-fine sessions"""
    if prefix == DEBT_PREFIX:
        raise ValueError("debt transaction ids are minted by encode_debt_reference")
    return f"{prefix}_{_timestamp_and_nonce()}"


def classify_reference(transaction_id: str) -> PaymentReference:
    """Route a callback's tran_id to the debt or the fine settlement flow"""
    if not transaction_id:
        raise InvalidReferenceError("", "missing tran_id")
    if is_debt_reference(transaction_id):
        return PaymentReference(
            kind=ReferenceKind.DEBT,
            transaction_id=transaction_id,
            debt_id=decode_debt_reference(transaction_id),
        )
    return PaymentReference(kind=ReferenceKind.FINE, transaction_id=transaction_id)
