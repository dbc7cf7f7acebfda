"""Prompt templates for LLM transaction extraction.

The stored prompt (see StateStore.create_prompt) is the system message;
the email itself is rendered into the user message here. The default
prompt below is only a seed for new databases.
"""

import html
import re
from typing import Any

from ..schemas.extraction import EmailType, TransactionType
from ..state_store import SourceRecord

# v1.0: Initial extraction prompt
PROMPT_VERSION = "v1.0"

DEFAULT_PROMPT_NAME = "default-transaction-extraction"

# Plain-text bodies shorter than this are replaced by the stripped HTML part
MIN_TEXT_BODY_CHARS = 200
MAX_BODY_CHARS = 20000

DEFAULT_EXTRACTION_PROMPT = """You extract financial transactions from emails sent by
banks, brokerages and payroll providers.

Rules:
1. Decide whether the email reports one or more completed financial events
   (isTransactional). Marketing, alerts without amounts, and statements that
   only announce availability are not transactional.
2. For each event, return one entry in "transactions" with its type, date
   (YYYY-MM-DD), amount, currency and the account it affects.
3. Copy account numbers exactly as shown, including masking (e.g. "XXXX-1802").
4. For transfers, put the receiving account in the toAccount* fields.
5. Put anything useful that has no field in additionalFields.
6. Give each transaction a confidence from 0.0 to 1.0.
7. Never invent values. Leave a field out if the email does not state it.

Respond with a single JSON object matching the requested schema."""

USER_TEMPLATE = """Extract transactions from this email:

Subject: {subject}
From: {sender}
Date: {date}

{body}"""


def _string(description: str | None = None, enum: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": ["string", "null"]}
    if description:
        schema["description"] = description
    if enum:
        schema["enum"] = enum
    return schema


def _number(description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": ["number", "null"]}
    if description:
        schema["description"] = description
    return schema


EXTRACTION_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["isTransactional", "emailType", "transactions"],
    "properties": {
        "isTransactional": {"type": "boolean"},
        "emailType": {"type": "string", "enum": [t.value for t in EmailType]},
        "transactions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["transactionType", "confidence"],
                "properties": {
                    "transactionType": {
                        "type": "string",
                        "enum": [t.value for t in TransactionType],
                    },
                    "transactionDate": _string("YYYY-MM-DD"),
                    "description": _string(),
                    "amount": _number(),
                    "currency": _string("ISO 4217 code"),
                    "category": _string(),
                    "accountNumber": _string("As shown, masking included"),
                    "accountName": _string(),
                    "institution": _string(),
                    "toAccountNumber": _string(),
                    "toAccountName": _string(),
                    "toInstitution": _string(),
                    "symbol": _string(),
                    "securityName": _string(),
                    "quantity": _number(),
                    "price": _number(),
                    "fees": _number(),
                    "optionType": _string(enum=["call", "put"]),
                    "strikePrice": _number(),
                    "expirationDate": _string("YYYY-MM-DD"),
                    "optionAction": _string(),
                    "contractSize": _number(),
                    "orderType": _string(),
                    "orderStatus": _string(),
                    "orderId": _string(),
                    "priceType": _string(),
                    "limitPrice": _number(),
                    "executionPrice": _number(),
                    "timeInForce": _string(),
                    "executionTime": _string(),
                    "grantNumber": _string(),
                    "vestDate": _string("YYYY-MM-DD"),
                    "referenceNumber": _string(),
                    "additionalFields": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "key": {"type": "string"},
                                "value": {"type": ["string", "number", "boolean", "null"]},
                            },
                            "required": ["key", "value"],
                        },
                    },
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
            },
        },
        "extractionNotes": _string(),
        "discussionSummary": _string(),
        "relatedReferenceNumbers": {"type": "array", "items": {"type": "string"}},
    },
}

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/tr|/li|/h[1-6])[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def html_to_text(markup: str) -> str:
    """Strip tags and entities, keeping rough line structure."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    text = _SPACES_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.splitlines()).strip()


def email_body(record: SourceRecord) -> str:
    """Plain text if it is substantial, otherwise the HTML part stripped to text."""
    text = (record.body_text or "").strip()
    if record.body_html and len(text) < MIN_TEXT_BODY_CHARS:
        stripped = html_to_text(record.body_html)
        if len(stripped) > len(text):
            text = stripped
    if len(text) > MAX_BODY_CHARS:
        text = text[:MAX_BODY_CHARS] + "\n[truncated]"
    return text


def render_email_message(record: SourceRecord) -> str:
    """User message for one email."""
    return USER_TEMPLATE.format(
        subject=record.subject or "(no subject)",
        sender=record.sender or "(unknown sender)",
        date=record.email_date or "(unknown date)",
        body=email_body(record) or "(empty body)",
    )
