"""
Batch Committer.

Buffers per-email outcomes between flushes and makes each flush durable
in one store transaction:

1. New accounts (and non-destructive updates to existing ones)
2. Transactions, linked to the run and the source email
3. Extraction records, one per successfully extracted email
4. Email status updates, partitioned completed / informational / failed
5. Cumulative run counters

If anything in the flush fails, none of it persists and the error
propagates to the orchestrator. Prior flushes stand.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..schemas.extraction import ExtractionResult, TransactionCandidate, decimal_to_str
from ..schemas.normalizer import NormalizedTransaction, normalize_transaction
from ..state_store import (
    BatchWrite,
    ExtractionStatus,
    NewExtractionRecord,
    RunCounters,
    SourceStatusUpdate,
    StateStore,
)
from .account_resolver import AccountResolver

logger = logging.getLogger(__name__)


@dataclass
class PendingExtraction:
    email_id: str
    result: ExtractionResult
    processing_time_ms: int


@dataclass
class PendingFailure:
    email_id: str
    error: str


@dataclass
class BatchBuffer:
    """In-memory outcomes since the last flush. Discarded on cancellation."""

    extractions: list[PendingExtraction] = field(default_factory=list)
    candidates: list[tuple[str, TransactionCandidate]] = field(default_factory=list)
    failures: list[PendingFailure] = field(default_factory=list)

    def add_result(self, email_id: str, result: ExtractionResult, processing_time_ms: int) -> None:
        self.extractions.append(PendingExtraction(email_id, result, processing_time_ms))
        if result.has_transactions:
            self.candidates.extend((email_id, c) for c in result.transactions)

    def add_failure(self, email_id: str, error: str) -> None:
        self.failures.append(PendingFailure(email_id, error))

    def clear(self) -> None:
        self.extractions.clear()
        self.candidates.clear()
        self.failures.clear()

    def __len__(self) -> int:
        """Number of processed emails buffered."""
        return len(self.extractions) + len(self.failures)


class BatchCommitter:
    """Flushes a BatchBuffer for one run."""

    def __init__(self, store: StateStore, run_id: str, chunk_size: int = 100):
        self.store = store
        self.run_id = run_id
        self.chunk_size = chunk_size

    def flush(
        self,
        buffer: BatchBuffer,
        counters: RunCounters | None = None,
        stats: dict[str, Any] | None = None,
    ) -> int:
        """
        Persist the buffer atomically, then clear it.

        Args:
            buffer: Outcomes accumulated since the last flush
            counters: Cumulative run counters to persist in the same transaction
            stats: Run stats blob to persist alongside the counters

        Returns:
            Number of transactions committed by this flush
        """
        # Cross-run consistency comes from re-reading the registry every flush
        resolver = AccountResolver(self.store.list_accounts())
        processed_at = datetime.now(timezone.utc)

        transactions: list[tuple[str, NormalizedTransaction]] = []
        tx_ids_by_email: dict[str, list[str]] = {}
        for email_id, candidate in buffer.candidates:
            account_id = resolver.resolve(
                candidate.account_number, candidate.account_name, candidate.institution
            )
            to_account_id = None
            if candidate.has_destination:
                to_account_id = resolver.resolve(
                    candidate.to_account_number,
                    candidate.to_account_name,
                    candidate.to_institution,
                    is_external=candidate.transaction_type.is_wire,
                )
            tx = normalize_transaction(candidate, account_id, to_account_id, processed_at)
            transactions.append((email_id, tx))
            tx_ids_by_email.setdefault(email_id, []).append(tx.id)

        records: list[NewExtractionRecord] = []
        status_updates: list[SourceStatusUpdate] = []
        for pending in buffer.extractions:
            result = pending.result
            raw = result.to_dict()
            if result.has_transactions:
                status = ExtractionStatus.COMPLETED
                notes = None
            else:
                status = ExtractionStatus.INFORMATIONAL
                notes = result.informational_note()

            records.append(
                NewExtractionRecord(
                    email_id=pending.email_id,
                    status=status.value,
                    raw_output=raw,
                    confidence=decimal_to_str(result.average_confidence()),
                    processing_time_ms=pending.processing_time_ms,
                    transaction_ids=tx_ids_by_email.get(pending.email_id, []),
                )
            )
            status_updates.append(
                SourceStatusUpdate(
                    email_id=pending.email_id,
                    status=status,
                    notes=notes,
                    raw_extraction=result.to_json(),
                )
            )

        for failure in buffer.failures:
            status_updates.append(
                SourceStatusUpdate(
                    email_id=failure.email_id,
                    status=ExtractionStatus.FAILED,
                    error=failure.error,
                )
            )

        batch = BatchWrite(
            run_id=self.run_id,
            new_accounts=list(resolver.new_accounts.values()),
            account_updates=list(resolver.account_updates.values()),
            transactions=transactions,
            extraction_records=records,
            status_updates=status_updates,
            counters=counters,
            stats=stats,
        )
        committed = self.store.commit_batch(batch, chunk_size=self.chunk_size)
        logger.info(
            f"Run {self.run_id}: committed {len(buffer)} emails, "
            f"{committed} transactions, {len(batch.new_accounts)} new accounts"
        )
        buffer.clear()

        if batch.new_accounts:
            self._record_corpus_suggestions(resolver)

        return committed

    def _record_corpus_suggestions(self, resolver: AccountResolver) -> None:
        """Best effort; a failure here never affects the committed batch."""
        try:
            added = self.store.add_corpus_suggestions(resolver.corpus_suggestions())
            if added:
                logger.info(f"Recorded {added} account corpus suggestions")
        except Exception as e:
            logger.warning(f"Could not record corpus suggestions: {e}")
