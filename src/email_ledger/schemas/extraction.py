"""
Canonical extraction result object (SSOT).

This is THE single source of truth for what an extraction call returns.
Every invoker maps its provider output into ExtractionResult, and the
orchestrator, committer and normalizer only ever consume this shape.

Wire format:
- Models answer in camelCase (isTransactional, transactionType, ...)
- Stored snapshots use snake_case
- from_dict() accepts both; to_dict() always emits snake_case
- Numbers are held as Decimal and serialized as strings, never floats
"""

import json
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Optional, Union

ExtraValue = Union[str, int, bool, None]


class SchemaValidationError(ValueError):
    """Raised when an extraction payload does not match the expected schema."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Extraction schema validation failed: {detail}")


class TransactionType(str, Enum):
    """Closed set of financial event types an email can describe."""

    DIVIDEND = "dividend"
    INTEREST = "interest"
    STOCK_TRADE = "stock_trade"
    OPTION_TRADE = "option_trade"
    WIRE_TRANSFER_IN = "wire_transfer_in"
    WIRE_TRANSFER_OUT = "wire_transfer_out"
    FUNDS_TRANSFER = "funds_transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    RSU_VEST = "rsu_vest"
    RSU_RELEASE = "rsu_release"
    ACCOUNT_TRANSFER = "account_transfer"
    FEE = "fee"
    OTHER = "other"

    @property
    def is_wire(self) -> bool:
        """Wires move money to or from an external counterparty."""
        return self in (TransactionType.WIRE_TRANSFER_IN, TransactionType.WIRE_TRANSFER_OUT)


class EmailType(str, Enum):
    """Model's classification of the email as a whole."""

    TRANSACTIONAL = "transactional"
    EVIDENCE = "evidence"
    INFORMATIONAL = "informational"
    MARKETING = "marketing"
    ALERT = "alert"
    STATEMENT = "statement"
    OTHER = "other"


def _camel(name: str) -> str:
    """snake_case -> camelCase."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _pick(data: dict[str, Any], name: str) -> Any:
    """Read a field by snake_case name, falling back to its camelCase spelling."""
    if name in data:
        return data[name]
    return data.get(_camel(name))


def to_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    """
    Coerce a numeric field to Decimal without passing through binary floats.

    Floats are converted via their shortest repr, so 1000.123456 becomes
    Decimal("1000.123456") rather than its binary expansion.

    Raises:
        SchemaValidationError: If the value is not numeric
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SchemaValidationError(f"{field_name} must be a number, got boolean")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "").lstrip("$")
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            raise SchemaValidationError(f"{field_name} is not a number: {value!r}") from None
    raise SchemaValidationError(f"{field_name} must be a number, got {type(value).__name__}")


def decimal_to_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialize a Decimal in plain (non-exponent) notation."""
    if value is None:
        return None
    return format(value, "f")


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise SchemaValidationError(f"{field_name} must be a string")
    text = str(value).strip()
    return text or None


# ============================================================================
# Typed side-data, keyed by transaction type
# ============================================================================


@dataclass
class _Details:
    """Shared codec for the per-type detail records."""

    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset()
    INT_FIELDS: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Optional["_Details"]:
        """Build from a candidate payload, or None if none of the fields are present."""
        values: dict[str, Any] = {}
        for name in cls.field_names():
            raw = _pick(data, name)
            if raw is None:
                continue
            if name in cls.DECIMAL_FIELDS:
                values[name] = to_decimal(raw, name)
            elif name in cls.INT_FIELDS:
                number = to_decimal(raw, name)
                values[name] = int(number) if number is not None else None
            else:
                values[name] = _optional_str(raw, name)
        if not any(v is not None for v in values.values()):
            return None
        return cls(**values)

    def to_data(self) -> dict[str, Any]:
        """Non-empty fields as JSON-safe values."""
        result: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if value is None:
                continue
            result[name] = decimal_to_str(value) if isinstance(value, Decimal) else value
        return result


@dataclass
class OptionDetails(_Details):
    """Option contract details (option_trade)."""

    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset({"strike_price"})
    INT_FIELDS: ClassVar[frozenset[str]] = frozenset({"contract_size"})

    option_type: Optional[str] = None  # call, put
    strike_price: Optional[Decimal] = None
    expiration_date: Optional[str] = None
    option_action: Optional[str] = None  # buy_to_open, sell_to_close, assigned, ...
    contract_size: Optional[int] = None


@dataclass
class TradeDetails(_Details):
    """Order details (stock_trade)."""

    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset({"limit_price", "execution_price"})

    order_type: Optional[str] = None  # buy, sell, buy_to_cover, sell_short
    order_status: Optional[str] = None
    order_id: Optional[str] = None
    price_type: Optional[str] = None  # market, limit, stop, ...
    limit_price: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    time_in_force: Optional[str] = None
    execution_time: Optional[str] = None


@dataclass
class RsuDetails(_Details):
    """Restricted stock grant details (rsu_vest, rsu_release)."""

    grant_number: Optional[str] = None
    vest_date: Optional[str] = None


@dataclass
class TransferDetails(_Details):
    """Wire and internal transfer details."""

    reference_number: Optional[str] = None


TransactionDetails = Union[OptionDetails, TradeDetails, RsuDetails, TransferDetails]

DETAILS_BY_TYPE: dict[TransactionType, type[_Details]] = {
    TransactionType.OPTION_TRADE: OptionDetails,
    TransactionType.STOCK_TRADE: TradeDetails,
    TransactionType.RSU_VEST: RsuDetails,
    TransactionType.RSU_RELEASE: RsuDetails,
    TransactionType.WIRE_TRANSFER_IN: TransferDetails,
    TransactionType.WIRE_TRANSFER_OUT: TransferDetails,
    TransactionType.FUNDS_TRANSFER: TransferDetails,
    TransactionType.ACCOUNT_TRANSFER: TransferDetails,
}

_ALL_DETAIL_CLASSES: tuple[type[_Details], ...] = (
    OptionDetails,
    TradeDetails,
    RsuDetails,
    TransferDetails,
)


def _extra_value(value: Any) -> ExtraValue:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, Decimal):
        return decimal_to_str(value)
    if isinstance(value, float):
        return decimal_to_str(Decimal(repr(value)))
    return json.dumps(value, default=str)


def _additional_fields(raw: Any) -> dict[str, ExtraValue]:
    """Accept additionalFields as a mapping or as a list of {key, value} pairs."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): _extra_value(v) for k, v in raw.items()}
    if isinstance(raw, list):
        result: dict[str, ExtraValue] = {}
        for item in raw:
            if not isinstance(item, dict) or "key" not in item:
                raise SchemaValidationError("additional_fields entries need a 'key'")
            result[str(item["key"])] = _extra_value(item.get("value"))
        return result
    raise SchemaValidationError("additional_fields must be an object or a list")


# ============================================================================
# Candidate and result
# ============================================================================


@dataclass
class TransactionCandidate:
    """
    One financial event found in one email, before account linking.

    Account references are free text exactly as the model read them
    (e.g. "XXXX-1802", "MAS Irrevocable Trust"); the resolver maps
    them to durable accounts at commit time.
    """

    transaction_type: TransactionType
    confidence: Optional[Decimal] = None  # 0..1
    transaction_date: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"
    category: Optional[str] = None

    # Source account
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    institution: Optional[str] = None

    # Destination account (transfers)
    to_account_number: Optional[str] = None
    to_account_name: Optional[str] = None
    to_institution: Optional[str] = None

    # Security
    symbol: Optional[str] = None
    security_name: Optional[str] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    fees: Optional[Decimal] = None

    details: Optional[TransactionDetails] = None
    extra: dict[str, ExtraValue] = field(default_factory=dict)

    _STR_FIELDS: ClassVar[tuple[str, ...]] = (
        "transaction_date",
        "description",
        "category",
        "account_number",
        "account_name",
        "institution",
        "to_account_number",
        "to_account_name",
        "to_institution",
        "symbol",
        "security_name",
    )
    _DECIMAL_FIELDS: ClassVar[tuple[str, ...]] = ("amount", "quantity", "price", "fees")

    @property
    def has_destination(self) -> bool:
        return bool(self.to_account_number or self.to_account_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionCandidate":
        """Deserialize a candidate from model output or a stored snapshot."""
        if not isinstance(data, dict):
            raise SchemaValidationError("transaction entries must be objects")

        raw_type = _pick(data, "transaction_type")
        if not raw_type:
            raise SchemaValidationError("transaction_type is required")
        try:
            tx_type = TransactionType(str(raw_type).strip().lower())
        except ValueError:
            raise SchemaValidationError(f"unknown transaction_type {raw_type!r}") from None

        confidence = to_decimal(_pick(data, "confidence"), "confidence")
        if confidence is not None and not (Decimal(0) <= confidence <= Decimal(1)):
            raise SchemaValidationError(f"confidence {confidence} is outside [0, 1]")

        kwargs: dict[str, Any] = {
            name: _optional_str(_pick(data, name), name) for name in cls._STR_FIELDS
        }
        for name in cls._DECIMAL_FIELDS:
            kwargs[name] = to_decimal(_pick(data, name), name)

        details_cls = DETAILS_BY_TYPE.get(tx_type)
        details = details_cls.from_dict(data) if details_cls else None

        # Known side-data that doesn't belong to this type is kept, not dropped
        extra: dict[str, ExtraValue] = {}
        for other_cls in _ALL_DETAIL_CLASSES:
            if other_cls is details_cls:
                continue
            for name in other_cls.field_names():
                value = _pick(data, name)
                if value is not None:
                    extra[name] = _extra_value(value)
        extra.update(_additional_fields(_pick(data, "additional_fields")))

        return cls(
            transaction_type=tx_type,
            confidence=confidence,
            currency=_optional_str(_pick(data, "currency"), "currency") or "USD",
            details=details,
            extra=extra,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a flat snake_case dictionary for JSON storage."""
        result: dict[str, Any] = {
            "transaction_type": self.transaction_type.value,
            "confidence": decimal_to_str(self.confidence),
            "currency": self.currency,
        }
        for name in self._STR_FIELDS:
            result[name] = getattr(self, name)
        for name in self._DECIMAL_FIELDS:
            result[name] = decimal_to_str(getattr(self, name))
        if self.details is not None:
            result.update(self.details.to_data())
        result["additional_fields"] = dict(self.extra)
        return result


@dataclass
class ExtractionResult:
    """
    CANONICAL output of one extraction call against one email.

    Lives in memory until its batch is committed, then is persisted
    as an immutable extraction record.
    """

    is_transactional: bool
    email_type: EmailType = EmailType.OTHER
    transactions: list[TransactionCandidate] = field(default_factory=list)
    extraction_notes: Optional[str] = None
    discussion_summary: Optional[str] = None
    related_reference_numbers: list[str] = field(default_factory=list)

    @property
    def has_transactions(self) -> bool:
        """True when the email is transactional and yielded at least one candidate."""
        return self.is_transactional and len(self.transactions) > 0

    def informational_note(self) -> str:
        """Explanation stored on non-transactional emails."""
        return self.extraction_notes or (
            f"Non-transactional email (type: {self.email_type.value})"
        )

    def average_confidence(self) -> Optional[Decimal]:
        """Mean candidate confidence rounded to two places, or None."""
        confidences = [t.confidence for t in self.transactions if t.confidence is not None]
        if not confidences:
            return None
        mean = sum(confidences, Decimal(0)) / len(confidences)
        return mean.quantize(Decimal("0.01"))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON storage."""
        return {
            "is_transactional": self.is_transactional,
            "email_type": self.email_type.value,
            "transactions": [t.to_dict() for t in self.transactions],
            "extraction_notes": self.extraction_notes,
            "discussion_summary": self.discussion_summary,
            "related_reference_numbers": list(self.related_reference_numbers),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        """
        Deserialize and validate.

        Raises:
            SchemaValidationError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise SchemaValidationError("extraction must be a JSON object")

        is_transactional = _pick(data, "is_transactional")
        if not isinstance(is_transactional, bool):
            raise SchemaValidationError("is_transactional is required and must be a boolean")

        raw_transactions = _pick(data, "transactions")
        if raw_transactions is None:
            raw_transactions = []
        if not isinstance(raw_transactions, list):
            raise SchemaValidationError("transactions must be a list")

        raw_email_type = _pick(data, "email_type")
        try:
            email_type = EmailType(str(raw_email_type).lower()) if raw_email_type else (
                EmailType.TRANSACTIONAL if is_transactional else EmailType.OTHER
            )
        except ValueError:
            email_type = EmailType.OTHER

        references = _pick(data, "related_reference_numbers")
        if references is None:
            references = []
        if not isinstance(references, list):
            raise SchemaValidationError("related_reference_numbers must be a list")

        return cls(
            is_transactional=is_transactional,
            email_type=email_type,
            transactions=[TransactionCandidate.from_dict(t) for t in raw_transactions],
            extraction_notes=_optional_str(_pick(data, "extraction_notes"), "extraction_notes"),
            discussion_summary=_optional_str(
                _pick(data, "discussion_summary"), "discussion_summary"
            ),
            related_reference_numbers=[str(r) for r in references],
        )

    @classmethod
    def from_json(cls, text: str) -> "ExtractionResult":
        """Parse JSON text, keeping every number as Decimal."""
        return cls.from_dict(json.loads(text, parse_float=Decimal))
