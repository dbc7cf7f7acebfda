"""Test fixtures and utilities."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import pytest

from email_ledger.config import Config, ExtractionConfig, LLMConfig
from email_ledger.extractors.base import ExtractionInvoker
from email_ledger.extractors.prompts import DEFAULT_EXTRACTION_PROMPT, EXTRACTION_OUTPUT_SCHEMA
from email_ledger.schemas.extraction import ExtractionResult
from email_ledger.state_store import SourceRecord, StateStore

TEST_MODEL = "test-model:7b"

# Model replies in the camelCase wire format
DIVIDEND_REPLY = {
    "isTransactional": True,
    "emailType": "transactional",
    "transactions": [
        {
            "transactionType": "dividend",
            "transactionDate": "2024-03-15",
            "description": "Dividend AAPL",
            "amount": 123.45,
            "currency": "USD",
            "accountNumber": "XXXX-1802",
            "institution": "E*TRADE",
            "symbol": "AAPL",
            "securityName": "Apple Inc",
            "confidence": 0.95,
        }
    ],
    "extractionNotes": "Quarterly dividend",
}

MARKETING_REPLY = {
    "isTransactional": False,
    "emailType": "marketing",
    "transactions": [],
}

SAMPLE_DIVIDEND_EMAIL = """Your dividend has been paid.

Account: XXXX-1802
Security: Apple Inc (AAPL)
Amount: $123.45
Pay date: 03/15/2024
"""


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_ledger.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with all migrations applied."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Config with small windows and a fast pause poll."""
    return Config(
        llm=LLMConfig(default_model=TEST_MODEL, timeout_seconds=5),
        extraction=ExtractionConfig(
            concurrency=2,
            commit_batch_size=2,
            write_chunk_size=100,
            pause_poll_seconds=0.01,
            stale_after_minutes=10,
        ),
        state_db_path=temp_db,
    )


@dataclass
class Ledger:
    """A store seeded with one model and one prompt."""

    store: StateStore
    model_id: str
    prompt_id: str

    def make_set(self, subjects: list[str], name: str = "test set") -> tuple[str, list[str]]:
        """Create a set with one email per subject. Returns (set_id, email_ids)."""
        set_id = self.store.create_email_set(name)
        email_ids = [
            self.store.add_email(
                set_id,
                subject=subject,
                sender="alerts@example-broker.com",
                body_text=f"Body of {subject}",
                email_date="2024-03-15",
            )
            for subject in subjects
        ]
        return set_id, email_ids


@pytest.fixture
def ledger(store) -> Ledger:
    """Store seeded with the test model and default prompt."""
    store.upsert_model(TEST_MODEL)
    prompt_id = store.create_prompt(
        name="default",
        content=DEFAULT_EXTRACTION_PROMPT,
        json_schema=EXTRACTION_OUTPUT_SCHEMA,
    )
    return Ledger(store=store, model_id=TEST_MODEL, prompt_id=prompt_id)


class FakeInvoker(ExtractionInvoker):
    """
    Scripted invoker keyed by email subject.

    A reply may be a dict (parsed as the model's JSON) or an exception
    instance (raised). Subjects without a script get the default reply.
    """

    def __init__(
        self,
        replies: Optional[dict[str, Any]] = None,
        default: Any = None,
        delay: float = 0.0,
    ):
        self.replies = replies or {}
        self.default = default if default is not None else MARKETING_REPLY
        self.delay = delay
        self.calls: list[str] = []
        self.max_in_flight = 0
        self._in_flight = 0

    @property
    def name(self) -> str:
        return "fake"

    async def extract(
        self,
        record: SourceRecord,
        model_id: str,
        prompt_text: str,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> ExtractionResult:
        self.calls.append(record.id)
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            await asyncio.sleep(self.delay)
            reply = self.replies.get(record.subject, self.default)
            if isinstance(reply, Exception):
                raise reply
            return ExtractionResult.from_dict(reply)
        finally:
            self._in_flight -= 1


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    """Invoker returning informational results for every email."""
    return FakeInvoker()
