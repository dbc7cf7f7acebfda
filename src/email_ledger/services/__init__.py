"""
Extraction services.

- account_resolver: Account matching, creation and corpus suggestions
- batch_committer: Atomic per-batch persistence
- progress: Progress events, run control token, in-process job registry
- orchestrator: Run lifecycle state machine
"""

from .account_resolver import AccountResolver, account_numbers_match
from .batch_committer import BatchBuffer, BatchCommitter
from .orchestrator import (
    AlreadyExtractedError,
    ExtractionOrchestrator,
    JobCancelledError,
    MissingInputError,
    OrchestrationError,
    PreconditionError,
    RunNotResumableError,
    RunPlan,
    UnknownEntityError,
    classify_error,
)
from .progress import JobRegistry, RunControl

__all__ = [
    "AccountResolver",
    "AlreadyExtractedError",
    "BatchBuffer",
    "BatchCommitter",
    "ExtractionOrchestrator",
    "JobCancelledError",
    "JobRegistry",
    "MissingInputError",
    "OrchestrationError",
    "PreconditionError",
    "RunControl",
    "RunNotResumableError",
    "RunPlan",
    "UnknownEntityError",
    "account_numbers_match",
    "classify_error",
]
