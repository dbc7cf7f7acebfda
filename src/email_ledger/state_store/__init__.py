"""
State Store (SQLite-based).

Durable tracking of:
- Source emails and their extraction status
- Accounts and corpus suggestions
- Extraction runs, jobs, transactions and extraction records

Enforces one extraction record per email per run and unique run versions.
"""

from .sqlite_store import (
    AccountRecord,
    AccountUpdate,
    BatchWrite,
    CorpusSuggestion,
    ExtractionLogEntry,
    ExtractionRecord,
    ExtractionStatus,
    JobRecord,
    JobStatus,
    NewAccount,
    NewExtractionRecord,
    PromptRecord,
    RunCounters,
    RunCoverage,
    RunRecord,
    RunStatus,
    SourceRecord,
    SourceStatusUpdate,
    StateStore,
    TransactionRecord,
)

__all__ = [
    "AccountRecord",
    "AccountUpdate",
    "BatchWrite",
    "CorpusSuggestion",
    "ExtractionLogEntry",
    "ExtractionRecord",
    "ExtractionStatus",
    "JobRecord",
    "JobStatus",
    "NewAccount",
    "NewExtractionRecord",
    "PromptRecord",
    "RunCounters",
    "RunCoverage",
    "RunRecord",
    "RunStatus",
    "SourceRecord",
    "SourceStatusUpdate",
    "StateStore",
    "TransactionRecord",
]
