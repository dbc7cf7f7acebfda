"""
Candidate -> durable transaction mapping.

Pure function: no I/O, no account lookups. The committer resolves
account ids first and passes them in.

Numeric fields leave here as plain decimal strings so that
"1000.123456" is stored exactly as written by the model.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from .extraction import TransactionCandidate, decimal_to_str


@dataclass
class NormalizedTransaction:
    """Durable shape of one transaction row."""

    id: str
    type: str
    date: str  # ISO timestamp
    account_id: str | None = None
    to_account_id: str | None = None
    amount: str | None = None
    currency: str = "USD"
    symbol: str | None = None
    quantity: str | None = None
    price: str | None = None
    fees: str | None = None
    confidence: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


def _normalize_date(raw: str | None, fallback: datetime) -> tuple[str, str | None]:
    """
    Parse the model's date into an ISO timestamp.

    Returns:
        (iso_timestamp, unparsed_original) - the original is returned
        only when it could not be parsed and the fallback was used.
    """
    fallback_iso = fallback.isoformat().replace("+00:00", "Z")
    if not raw:
        return fallback_iso, None

    text = raw.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed_date = date.fromisoformat(text[:10])
        except ValueError:
            return fallback_iso, raw
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat().replace("+00:00", "Z"), None


def normalize_transaction(
    candidate: TransactionCandidate,
    account_id: str | None,
    to_account_id: str | None = None,
    processed_at: datetime | None = None,
) -> NormalizedTransaction:
    """
    Map an extraction candidate to the durable transaction shape.

    Typed side-data, the security name and any free-form fields are
    merged into the structured ``data`` payload. Free-form fields never
    overwrite a typed field of the same name.

    Args:
        candidate: Validated candidate from an ExtractionResult
        account_id: Resolved source account id (may be None)
        to_account_id: Resolved destination account id (transfers)
        processed_at: Used as the transaction date when the model gave none
    """
    fallback = processed_at or datetime.now(timezone.utc)
    tx_date, unparsed_date = _normalize_date(candidate.transaction_date, fallback)

    data: dict[str, Any] = {}
    if candidate.details is not None:
        data.update(candidate.details.to_data())
    if candidate.security_name:
        data["security_name"] = candidate.security_name
    if candidate.description:
        data["description"] = candidate.description
    if candidate.category:
        data["category"] = candidate.category
    if unparsed_date:
        data["raw_transaction_date"] = unparsed_date
    for key, value in candidate.extra.items():
        data.setdefault(key, value)

    return NormalizedTransaction(
        id=str(uuid.uuid4()),
        type=candidate.transaction_type.value,
        date=tx_date,
        account_id=account_id,
        to_account_id=to_account_id,
        amount=decimal_to_str(candidate.amount),
        currency=candidate.currency or "USD",
        symbol=candidate.symbol,
        quantity=decimal_to_str(candidate.quantity),
        price=decimal_to_str(candidate.price),
        fees=decimal_to_str(candidate.fees),
        confidence=decimal_to_str(candidate.confidence),
        data=data,
    )
