"""
Progress stream contract and run controls.

Events (in order):
- started: once, before any extraction
- progress: after every dispatch window
- batch_committed: after every commit
- completed | error: exactly one, last

Events serialize to camelCase dicts (to_dict) so a UI can forward them
unchanged. The stream is the liveness signal; the persisted job and run
rows are the fallback if a consumer loses the stream.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Union

from ..state_store import JobStatus, RunCounters, StateStore

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    BATCH_COMMITTED = "batch_committed"
    COMPLETED = "completed"
    ERROR = "error"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class _Event:
    TYPE: ClassVar[EventType]

    @property
    def type(self) -> EventType:
        return self.TYPE

    @property
    def is_terminal(self) -> bool:
        return self.TYPE in (EventType.COMPLETED, EventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        """Wire form: {"type": ..., camelCase fields...}."""
        payload: dict[str, Any] = {"type": self.TYPE.value}
        for f in fields(self):
            payload[_camel(f.name)] = getattr(self, f.name)
        return payload


@dataclass
class StartedEvent(_Event):
    TYPE: ClassVar[EventType] = EventType.STARTED

    job_id: str
    run_id: str
    total_items: int
    model_id: str
    is_resume: bool
    already_processed: int


@dataclass
class ProgressUpdate(_Event):
    TYPE: ClassVar[EventType] = EventType.PROGRESS

    processed_items: int
    total_items: int
    failed_items: int
    informational_items: int
    transactions_found: int


@dataclass
class BatchCommittedEvent(_Event):
    TYPE: ClassVar[EventType] = EventType.BATCH_COMMITTED

    transactions_committed: int
    total_transactions_committed: int
    processed_items: int
    total_items: int


@dataclass
class CompletedEvent(_Event):
    TYPE: ClassVar[EventType] = EventType.COMPLETED

    run_id: str
    transactions_created: int
    emails_processed: int
    processing_time_ms: int


@dataclass
class ErrorEvent(_Event):
    TYPE: ClassVar[EventType] = EventType.ERROR

    error: str


ProgressEvent = Union[
    StartedEvent, ProgressUpdate, BatchCommittedEvent, CompletedEvent, ErrorEvent
]


class RunControl:
    """
    Cancellation token with two independent signals.

    cancel is permanent and can be raised in-process with cancel() or by
    another process flipping the persisted job status. pause is resumable
    and lives only in the persisted job status, so a pause from one process
    can be lifted from any other. The dispatch loop calls checkpoint() at
    every window boundary.
    """

    def __init__(
        self,
        store: StateStore,
        job_id: str,
        run_id: str,
        poll_interval: float = 1.0,
    ):
        self.store = store
        self.job_id = job_id
        self.run_id = run_id
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    async def checkpoint(self) -> bool:
        """
        Block while paused.

        Returns:
            True to continue dispatching, False if cancellation was requested.
        """
        logged_pause = False
        while True:
            status = self.store.get_job_status(self.job_id)
            if self._cancelled.is_set() or status == JobStatus.CANCELLED:
                return False
            if status != JobStatus.PAUSED:
                if logged_pause:
                    logger.info(f"Job {self.job_id} resumed")
                return True

            if not logged_pause:
                logger.info(f"Job {self.job_id} paused")
                logged_pause = True
            self.store.touch_heartbeat(self.run_id, self.job_id)
            await asyncio.sleep(self.poll_interval)


@dataclass
class RegistryEntry:
    """In-process view of one executing job."""

    job_id: str
    run_id: str
    control: RunControl
    total_items: int
    counters: RunCounters = field(default_factory=RunCounters)
    started_monotonic: float = field(default_factory=time.monotonic)


class JobRegistry:
    """
    Lock-guarded table of jobs executing in this process.

    Non-authoritative: it only routes in-process pause/cancel and serves
    live counters. Recovery always reads the durable job and run rows.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RegistryEntry] = {}

    def register(self, entry: RegistryEntry) -> None:
        with self._lock:
            self._entries[entry.job_id] = entry

    def unregister(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def get(self, job_id: str) -> RegistryEntry | None:
        with self._lock:
            return self._entries.get(job_id)

    def update_counters(self, job_id: str, counters: RunCounters) -> None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is not None:
                entry.counters = RunCounters(**vars(counters))

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
