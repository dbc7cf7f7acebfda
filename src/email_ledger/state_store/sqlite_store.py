"""
SQLite-based state store implementation.

Tables:
- email_sets / emails: Source records awaiting extraction
- ai_models / prompts: Extraction configuration catalog
- accounts / account_corpus / corpus_suggestions: Account registry (migration 001)
- extraction_runs / jobs / transactions / email_extractions: Run state (migration 002)
- extraction_logs: Per-record extraction error log (migration 003)
"""

import hashlib
import json
import sqlite3
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..schemas.normalizer import NormalizedTransaction


def _iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so stored values compare lexicographically."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _now() -> str:
    return _iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return str(uuid.uuid4())


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ExtractionStatus(str, Enum):
    """Processing status of a source email."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFORMATIONAL = "informational"


class RunStatus(str, Enum):
    """Status of an extraction run. Pause lives on the job, not the run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Status of a job (one live execution of a run)."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


# ============================================================================
# Records
# ============================================================================


@dataclass
class EmailSetRecord:
    """A named group of source emails."""

    id: str
    name: str
    description: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmailSetRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_at=row["created_at"],
        )


@dataclass
class SourceRecord:
    """A source email as stored by the ingestion step."""

    id: str
    set_id: str | None
    content_hash: str
    filename: str | None
    subject: str | None
    sender: str | None
    recipient: str | None
    email_date: str | None
    body_text: str | None
    body_html: str | None
    extraction_status: ExtractionStatus
    extraction_error: str | None = None
    raw_extraction: str | None = None
    skip_reason: str | None = None
    informational_notes: str | None = None
    processed_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SourceRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            set_id=row["set_id"],
            content_hash=row["content_hash"],
            filename=row["filename"],
            subject=row["subject"],
            sender=row["sender"],
            recipient=row["recipient"],
            email_date=row["email_date"],
            body_text=row["body_text"],
            body_html=row["body_html"],
            extraction_status=ExtractionStatus(row["extraction_status"]),
            extraction_error=row["extraction_error"],
            raw_extraction=row["raw_extraction"],
            skip_reason=row["skip_reason"],
            informational_notes=row["informational_notes"],
            processed_at=row["processed_at"],
        )


@dataclass
class ModelRecord:
    """A model known to the extraction layer."""

    id: str
    name: str
    provider: str
    context_window: int | None
    is_active: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ModelRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            provider=row["provider"],
            context_window=row["context_window"],
            is_active=bool(row["is_active"]),
        )


@dataclass
class PromptRecord:
    """An extraction prompt and its optional output schema."""

    id: str
    name: str
    content: str
    json_schema: dict[str, Any] | None
    is_active: bool
    created_at: str
    updated_at: str

    @property
    def content_hash(self) -> str:
        """SHA-256 of the prompt text; distinguishes edits under the same id."""
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PromptRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            content=row["content"],
            json_schema=json.loads(row["json_schema"]) if row["json_schema"] else None,
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class AccountRecord:
    """A durable account or counterparty."""

    id: str
    display_name: str
    institution: str | None
    account_number: str | None
    masked_number: str | None
    account_type: str | None
    is_external: bool
    corpus_id: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AccountRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            display_name=row["display_name"],
            institution=row["institution"],
            account_number=row["account_number"],
            masked_number=row["masked_number"],
            account_type=row["account_type"],
            is_external=bool(row["is_external"]),
            corpus_id=row["corpus_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class TransactionRecord:
    """A committed, account-linked transaction."""

    id: str
    email_id: str
    run_id: str
    account_id: str | None
    to_account_id: str | None
    type: str
    date: str
    amount: str | None
    currency: str
    symbol: str | None
    quantity: str | None
    price: str | None
    fees: str | None
    confidence: str | None
    data: dict[str, Any]
    run_completed: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TransactionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            email_id=row["email_id"],
            run_id=row["run_id"],
            account_id=row["account_id"],
            to_account_id=row["to_account_id"],
            type=row["type"],
            date=row["date"],
            amount=row["amount"],
            currency=row["currency"],
            symbol=row["symbol"],
            quantity=row["quantity"],
            price=row["price"],
            fees=row["fees"],
            confidence=row["confidence"],
            data=json.loads(row["data"]) if row["data"] else {},
            run_completed=bool(row["run_completed"]),
            created_at=row["created_at"],
        )


@dataclass
class ExtractionRecord:
    """Immutable record of one email's extraction within one run."""

    id: str
    run_id: str
    email_id: str
    status: str  # completed, informational
    raw_output: dict[str, Any]
    confidence: str | None
    processing_time_ms: int | None
    transaction_ids: list[str]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExtractionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            email_id=row["email_id"],
            status=row["status"],
            raw_output=json.loads(row["raw_output"]),
            confidence=row["confidence"],
            processing_time_ms=row["processing_time_ms"],
            transaction_ids=json.loads(row["transaction_ids"]) if row["transaction_ids"] else [],
            created_at=row["created_at"],
        )


@dataclass
class RunRecord:
    """An extraction run (the unit of work)."""

    id: str
    set_id: str
    model_id: str
    prompt_id: str
    prompt_hash: str | None
    software_version: str
    version: int
    name: str | None
    description: str | None
    status: RunStatus
    job_id: str | None
    emails_processed: int
    transactions_created: int
    informational_count: int
    error_count: int
    stats: dict[str, Any]
    error_message: str | None
    started_at: str
    completed_at: str | None
    heartbeat_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RunRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            set_id=row["set_id"],
            model_id=row["model_id"],
            prompt_id=row["prompt_id"],
            prompt_hash=row["prompt_hash"],
            software_version=row["software_version"],
            version=row["version"],
            name=row["name"],
            description=row["description"],
            status=RunStatus(row["status"]),
            job_id=row["job_id"],
            emails_processed=row["emails_processed"],
            transactions_created=row["transactions_created"],
            informational_count=row["informational_count"],
            error_count=row["error_count"],
            stats=json.loads(row["stats"]) if row["stats"] else {},
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            heartbeat_at=row["heartbeat_at"],
        )


@dataclass
class JobRecord:
    """UI-facing tracking record for one execution of a run."""

    id: str
    type: str
    status: JobStatus
    run_id: str | None
    set_id: str | None
    model_id: str | None
    total_items: int
    processed_items: int
    failed_items: int
    informational_items: int
    transactions_found: int
    error_message: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None
    heartbeat_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            type=row["type"],
            status=JobStatus(row["status"]),
            run_id=row["run_id"],
            set_id=row["set_id"],
            model_id=row["model_id"],
            total_items=row["total_items"],
            processed_items=row["processed_items"],
            failed_items=row["failed_items"],
            informational_items=row["informational_items"],
            transactions_found=row["transactions_found"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            heartbeat_at=row["heartbeat_at"],
        )


@dataclass
class CorpusSuggestion:
    """A proposed grouping of two accounts, awaiting human review."""

    account_id1: str
    account_id2: str
    reason: str
    confidence: float
    id: str = field(default_factory=_new_id)
    status: str = "pending"
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CorpusSuggestion":
        """Create from database row."""
        return cls(
            id=row["id"],
            account_id1=row["account_id1"],
            account_id2=row["account_id2"],
            reason=row["reason"],
            confidence=row["confidence"],
            status=row["status"],
            created_at=row["created_at"],
        )


@dataclass
class ExtractionLogEntry:
    """One per-record extraction error."""

    id: int
    email_id: str | None
    job_id: str | None
    run_id: str | None
    level: str
    message: str
    error_type: str | None
    stack_trace: str | None
    metadata: dict[str, Any]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExtractionLogEntry":
        """Create from database row."""
        return cls(
            id=row["id"],
            email_id=row["email_id"],
            job_id=row["job_id"],
            run_id=row["run_id"],
            level=row["level"],
            message=row["message"],
            error_type=row["error_type"],
            stack_trace=row["stack_trace"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
        )


# ============================================================================
# Batch write shapes
# ============================================================================


@dataclass
class RunCounters:
    """Cumulative run counters (including anything carried over by a resume)."""

    emails_processed: int = 0
    transactions_created: int = 0
    informational_count: int = 0
    error_count: int = 0


@dataclass
class RunCoverage:
    """What a run has already durably recorded."""

    covered_email_ids: set[str]
    informational_count: int
    transaction_count: int


@dataclass
class NewAccount:
    """Account row to insert."""

    id: str
    display_name: str
    institution: str | None = None
    account_number: str | None = None
    masked_number: str | None = None
    account_type: str | None = None
    is_external: bool = False


@dataclass
class AccountUpdate:
    """Non-destructive improvement to an existing account. None means unchanged."""

    account_id: str
    account_number: str | None = None
    display_name: str | None = None
    institution: str | None = None


@dataclass
class NewExtractionRecord:
    """Extraction record row to insert."""

    email_id: str
    status: str
    raw_output: dict[str, Any]
    confidence: str | None
    processing_time_ms: int | None
    transaction_ids: list[str]
    id: str = field(default_factory=_new_id)


@dataclass
class SourceStatusUpdate:
    """Outcome of one email in a batch."""

    email_id: str
    status: ExtractionStatus
    error: str | None = None
    notes: str | None = None
    raw_extraction: str | None = None


@dataclass
class BatchWrite:
    """Everything one flush makes durable, in dependency order."""

    run_id: str
    new_accounts: list[NewAccount] = field(default_factory=list)
    account_updates: list[AccountUpdate] = field(default_factory=list)
    transactions: list[tuple[str, NormalizedTransaction]] = field(default_factory=list)
    extraction_records: list[NewExtractionRecord] = field(default_factory=list)
    status_updates: list[SourceStatusUpdate] = field(default_factory=list)
    counters: RunCounters | None = None
    stats: dict[str, Any] | None = None


class StateStore:
    """
    SQLite-based state store for the extraction engine.

    Provides persistent tracking of:
    - Source emails and their extraction status
    - Accounts and corpus suggestions
    - Extraction runs, jobs and their counters
    - Committed transactions and extraction records

    Every public write runs in its own transaction; commit_batch() makes
    one whole flush atomic.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS email_sets (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            # Source emails (written by ingestion, status owned by runs)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    set_id TEXT,
                    content_hash TEXT NOT NULL,
                    filename TEXT,
                    subject TEXT,
                    sender TEXT,
                    recipient TEXT,
                    email_date TEXT,
                    body_text TEXT,
                    body_html TEXT,
                    extraction_status TEXT NOT NULL DEFAULT 'pending',
                    extraction_error TEXT,
                    raw_extraction TEXT,  -- JSON snapshot of the last result
                    skip_reason TEXT,
                    informational_notes TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (set_id) REFERENCES email_sets(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_models (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    provider TEXT NOT NULL DEFAULT 'ollama',
                    context_window INTEGER,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS prompts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    json_schema TEXT,  -- JSON output schema
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_emails_set_id ON emails(set_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_status ON emails(extraction_status)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Email set and source record methods

    def create_email_set(
        self, name: str, description: str | None = None, set_id: str | None = None
    ) -> str:
        """Create an email set and return its id."""
        set_id = set_id or _new_id()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO email_sets (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (set_id, name, description, _now()),
            )
        return set_id

    def get_email_set(self, set_id: str) -> EmailSetRecord | None:
        """Get an email set by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM email_sets WHERE id = ?", (set_id,)).fetchone()
            return EmailSetRecord.from_row(row) if row else None

    def add_email(
        self,
        set_id: str | None,
        subject: str | None = None,
        sender: str | None = None,
        body_text: str | None = None,
        body_html: str | None = None,
        email_date: str | None = None,
        recipient: str | None = None,
        filename: str | None = None,
        email_id: str | None = None,
    ) -> str:
        """Insert a source email (the ingestion step's write) and return its id."""
        email_id = email_id or _new_id()
        content = "\n".join(part or "" for part in (subject, sender, body_text, body_html))
        content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO emails
                (id, set_id, content_hash, filename, subject, sender, recipient, email_date,
                 body_text, body_html, extraction_status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    email_id,
                    set_id,
                    content_hash,
                    filename,
                    subject,
                    sender,
                    recipient,
                    email_date,
                    body_text,
                    body_html,
                    ExtractionStatus.PENDING.value,
                    _now(),
                ),
            )
        return email_id

    def get_email(self, email_id: str) -> SourceRecord | None:
        """Get a source email by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
            return SourceRecord.from_row(row) if row else None

    def get_emails(self, email_ids: Sequence[str]) -> list[SourceRecord]:
        """Get several source emails, in no particular order."""
        records: list[SourceRecord] = []
        with self._transaction() as conn:
            for chunk in _chunks(list(email_ids), 500):
                placeholders = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT * FROM emails WHERE id IN ({placeholders})", tuple(chunk)
                ).fetchall()
                records.extend(SourceRecord.from_row(row) for row in rows)
        return records

    def list_email_ids(self, set_id: str) -> list[str]:
        """Ids of every email in a set, in insertion order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM emails WHERE set_id = ? ORDER BY created_at, id", (set_id,)
            ).fetchall()
            return [row["id"] for row in rows]

    def list_emails(
        self, set_id: str, status: ExtractionStatus | None = None
    ) -> list[SourceRecord]:
        """List the emails of a set, optionally filtered by status."""
        with self._transaction() as conn:
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM emails WHERE set_id = ? AND extraction_status = ?
                    ORDER BY created_at, id
                """,
                    (set_id, status.value),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM emails WHERE set_id = ? ORDER BY created_at, id", (set_id,)
                ).fetchall()
            return [SourceRecord.from_row(row) for row in rows]

    # Model and prompt methods

    def upsert_model(
        self,
        model_id: str,
        name: str | None = None,
        provider: str = "ollama",
        context_window: int | None = None,
        is_active: bool = True,
    ) -> None:
        """Insert or update a model record."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO ai_models (id, name, provider, context_window, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    provider = excluded.provider,
                    context_window = excluded.context_window,
                    is_active = excluded.is_active
            """,
                (model_id, name or model_id, provider, context_window, int(is_active), _now()),
            )

    def get_model(self, model_id: str) -> ModelRecord | None:
        """Get a model by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM ai_models WHERE id = ?", (model_id,)).fetchone()
            return ModelRecord.from_row(row) if row else None

    def create_prompt(
        self,
        name: str,
        content: str,
        json_schema: dict[str, Any] | None = None,
        prompt_id: str | None = None,
    ) -> str:
        """Create a prompt and return its id."""
        prompt_id = prompt_id or _new_id()
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO prompts (id, name, content, json_schema, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
                (
                    prompt_id,
                    name,
                    content,
                    json.dumps(json_schema) if json_schema else None,
                    now,
                    now,
                ),
            )
        return prompt_id

    def update_prompt_content(self, prompt_id: str, content: str) -> bool:
        """Edit a prompt's text in place. Returns False if the prompt does not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE prompts SET content = ?, updated_at = ? WHERE id = ?",
                (content, _now(), prompt_id),
            )
            return cursor.rowcount > 0

    def get_prompt(self, prompt_id: str) -> PromptRecord | None:
        """Get a prompt by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM prompts WHERE id = ?", (prompt_id,)).fetchone()
            return PromptRecord.from_row(row) if row else None

    # Run and job lifecycle

    def find_completed_run(
        self,
        set_id: str,
        model_id: str,
        prompt_id: str,
        software_version: str,
        prompt_hash: str | None,
    ) -> RunRecord | None:
        """Find a completed run with work done for the same configuration."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM extraction_runs
                WHERE set_id = ? AND model_id = ? AND prompt_id = ?
                  AND software_version = ? AND prompt_hash IS ?
                  AND status = ? AND emails_processed > 0
                ORDER BY version DESC
                LIMIT 1
            """,
                (
                    set_id,
                    model_id,
                    prompt_id,
                    software_version,
                    prompt_hash,
                    RunStatus.COMPLETED.value,
                ),
            ).fetchone()
            return RunRecord.from_row(row) if row else None

    def create_run_with_job(
        self,
        set_id: str,
        model_id: str,
        prompt_id: str,
        prompt_hash: str | None,
        software_version: str,
        total_items: int,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[RunRecord, JobRecord]:
        """
        Allocate a running run and its first job atomically.

        The version is allocated by the insert itself; the UNIQUE
        constraint on version rejects a concurrent duplicate.
        """
        run_id = _new_id()
        job_id = _new_id()
        now = _now()

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO extraction_runs
                (id, set_id, model_id, prompt_id, prompt_hash, software_version, version,
                 name, description, status, job_id, stats, started_at, heartbeat_at)
                SELECT ?, ?, ?, ?, ?, ?, COALESCE(MAX(version), 0) + 1, ?, ?, ?, ?, ?, ?, ?
                FROM extraction_runs
            """,
                (
                    run_id,
                    set_id,
                    model_id,
                    prompt_id,
                    prompt_hash,
                    software_version,
                    name,
                    description,
                    RunStatus.RUNNING.value,
                    job_id,
                    json.dumps({}),
                    now,
                    now,
                ),
            )
            self._insert_job(conn, job_id, run_id, set_id, model_id, total_items, now)
            run_row = conn.execute(
                "SELECT * FROM extraction_runs WHERE id = ?", (run_id,)
            ).fetchone()
            job_row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return RunRecord.from_row(run_row), JobRecord.from_row(job_row)

    def _insert_job(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        run_id: str,
        set_id: str,
        model_id: str,
        total_items: int,
        now: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO jobs
            (id, type, status, run_id, set_id, model_id, total_items,
             created_at, started_at, heartbeat_at)
            VALUES (?, 'extraction', ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (job_id, JobStatus.RUNNING.value, run_id, set_id, model_id, total_items, now, now, now),
        )

    def attach_job_to_run(self, run_id: str, total_items: int) -> JobRecord | None:
        """
        Flip a failed run back to running under a fresh job.

        Conditional on the run still being failed, so two concurrent
        resumes cannot both succeed. Returns None if the run was not failed.
        """
        job_id = _new_id()
        now = _now()

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE extraction_runs
                SET status = ?, job_id = ?, heartbeat_at = ?, completed_at = NULL,
                    error_message = NULL
                WHERE id = ? AND status = ?
            """,
                (RunStatus.RUNNING.value, job_id, now, run_id, RunStatus.FAILED.value),
            )
            if cursor.rowcount == 0:
                return None

            run_row = conn.execute(
                "SELECT set_id, model_id FROM extraction_runs WHERE id = ?", (run_id,)
            ).fetchone()
            self._insert_job(
                conn, job_id, run_id, run_row["set_id"], run_row["model_id"], total_items, now
            )
            job_row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return JobRecord.from_row(job_row)

    def get_run(self, run_id: str) -> RunRecord | None:
        """Get a run by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM extraction_runs WHERE id = ?", (run_id,)).fetchone()
            return RunRecord.from_row(row) if row else None

    def list_runs(self, limit: int = 20, set_id: str | None = None) -> list[RunRecord]:
        """List runs, newest version first."""
        with self._transaction() as conn:
            if set_id:
                rows = conn.execute(
                    "SELECT * FROM extraction_runs WHERE set_id = ? ORDER BY version DESC LIMIT ?",
                    (set_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM extraction_runs ORDER BY version DESC LIMIT ?", (limit,)
                ).fetchall()
            return [RunRecord.from_row(row) for row in rows]

    def get_job(self, job_id: str) -> JobRecord | None:
        """Get a job by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return JobRecord.from_row(row) if row else None

    def get_job_status(self, job_id: str) -> JobStatus | None:
        """Read only the persisted status of a job."""
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return JobStatus(row["status"]) if row else None

    def list_jobs(self, run_id: str | None = None) -> list[JobRecord]:
        """List jobs, newest first."""
        with self._transaction() as conn:
            if run_id:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE run_id = ? ORDER BY created_at DESC", (run_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC").fetchall()
            return [JobRecord.from_row(row) for row in rows]

    def _set_job_status(
        self, job_id: str, new_status: JobStatus, allowed_from: Sequence[JobStatus]
    ) -> bool:
        """Conditional status flip. Returns True if the job was in an allowed state."""
        placeholders = ",".join("?" * len(allowed_from))
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs SET status = ?, heartbeat_at = ?
                WHERE id = ? AND status IN ({placeholders})
            """,
                (new_status.value, _now(), job_id, *(s.value for s in allowed_from)),
            )
            return cursor.rowcount > 0

    def pause_job(self, job_id: str) -> bool:
        """Request a pause. Only a running job can be paused."""
        return self._set_job_status(job_id, JobStatus.PAUSED, [JobStatus.RUNNING])

    def unpause_job(self, job_id: str) -> bool:
        """Resume a paused job."""
        return self._set_job_status(job_id, JobStatus.RUNNING, [JobStatus.PAUSED])

    def cancel_job(self, job_id: str) -> bool:
        """Request cancellation of an active job."""
        return self._set_job_status(
            job_id, JobStatus.CANCELLED, [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED]
        )

    def get_run_coverage(self, run_id: str) -> RunCoverage:
        """Emails already extraction-recorded by a run, with their durable totals."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT email_id, status FROM email_extractions WHERE run_id = ?", (run_id,)
            ).fetchall()
            tx_count = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE run_id = ?", (run_id,)
            ).fetchone()[0]

        return RunCoverage(
            covered_email_ids={row["email_id"] for row in rows},
            informational_count=sum(1 for row in rows if row["status"] == "informational"),
            transaction_count=tx_count,
        )

    def record_progress(self, run_id: str, job_id: str, counters: RunCounters) -> None:
        """Mirror live counters onto the job and refresh both heartbeats."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET processed_items = ?, failed_items = ?, informational_items = ?,
                    transactions_found = ?, heartbeat_at = ?
                WHERE id = ?
            """,
                (
                    counters.emails_processed,
                    counters.error_count,
                    counters.informational_count,
                    counters.transactions_created,
                    now,
                    job_id,
                ),
            )
            conn.execute(
                "UPDATE extraction_runs SET heartbeat_at = ? WHERE id = ?", (now, run_id)
            )

    def touch_heartbeat(self, run_id: str, job_id: str) -> None:
        """Refresh liveness without changing counters."""
        now = _now()
        with self._transaction() as conn:
            conn.execute("UPDATE jobs SET heartbeat_at = ? WHERE id = ?", (now, job_id))
            conn.execute(
                "UPDATE extraction_runs SET heartbeat_at = ? WHERE id = ?", (now, run_id)
            )

    def _write_run_counters(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        counters: RunCounters,
        stats: dict[str, Any] | None,
        now: str,
    ) -> None:
        conn.execute(
            """
            UPDATE extraction_runs
            SET emails_processed = ?, transactions_created = ?, informational_count = ?,
                error_count = ?, stats = COALESCE(?, stats), heartbeat_at = ?
            WHERE id = ?
        """,
            (
                counters.emails_processed,
                counters.transactions_created,
                counters.informational_count,
                counters.error_count,
                json.dumps(stats) if stats is not None else None,
                now,
                run_id,
            ),
        )

    def complete_run(
        self, run_id: str, job_id: str, counters: RunCounters, stats: dict[str, Any]
    ) -> None:
        """Terminal success: flag the run's transactions, close run and job together."""
        now = _now()
        with self._transaction() as conn:
            conn.execute("UPDATE transactions SET run_completed = 1 WHERE run_id = ?", (run_id,))
            self._write_run_counters(conn, run_id, counters, stats, now)
            conn.execute(
                "UPDATE extraction_runs SET status = ?, completed_at = ? WHERE id = ?",
                (RunStatus.COMPLETED.value, now, run_id),
            )
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, completed_at = ?, heartbeat_at = ?, processed_items = ?,
                    failed_items = ?, informational_items = ?, transactions_found = ?
                WHERE id = ?
            """,
                (
                    JobStatus.COMPLETED.value,
                    now,
                    now,
                    counters.emails_processed,
                    counters.error_count,
                    counters.informational_count,
                    counters.transactions_created,
                    job_id,
                ),
            )

    def fail_run(
        self,
        run_id: str,
        job_id: str,
        counters: RunCounters,
        stats: dict[str, Any],
        error_message: str,
        job_status: JobStatus = JobStatus.FAILED,
    ) -> None:
        """Terminal failure (or cancellation). Prior commits stand."""
        now = _now()
        with self._transaction() as conn:
            self._write_run_counters(conn, run_id, counters, stats, now)
            conn.execute(
                """
                UPDATE extraction_runs SET status = ?, completed_at = ?, error_message = ?
                WHERE id = ?
            """,
                (RunStatus.FAILED.value, now, error_message, run_id),
            )
            conn.execute(
                """
                UPDATE jobs SET status = ?, completed_at = ?, heartbeat_at = ?, error_message = ?
                WHERE id = ?
            """,
                (job_status.value, now, now, error_message, job_id),
            )

    def sweep_stale_runs(self, older_than: datetime, message: str) -> int:
        """
        Mark orphaned running runs and active jobs as failed.

        Only rows whose heartbeat is older than the cutoff are touched, so a
        run that another live process is still writing to survives the sweep.
        Returns the number of runs swept.
        """
        cutoff = _iso(older_than)
        now = _now()
        active_jobs = tuple(s.value for s in JobStatus if s.is_active)

        with self._transaction() as conn:
            stale_runs = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id FROM extraction_runs
                    WHERE status = ? AND COALESCE(heartbeat_at, started_at) < ?
                """,
                    (RunStatus.RUNNING.value, cutoff),
                ).fetchall()
            ]
            for run_id in stale_runs:
                conn.execute(
                    """
                    UPDATE extraction_runs
                    SET status = ?, error_message = ?, completed_at = ?,
                        stats = json_set(COALESCE(stats, '{}'), '$.canResume', json('true'))
                    WHERE id = ? AND status = ?
                """,
                    (RunStatus.FAILED.value, message, now, run_id, RunStatus.RUNNING.value),
                )

            conn.execute(
                f"""
                UPDATE jobs SET status = ?, error_message = ?, completed_at = ?
                WHERE status IN ({",".join("?" * len(active_jobs))})
                  AND COALESCE(heartbeat_at, created_at) < ?
            """,
                (JobStatus.FAILED.value, message, now, *active_jobs, cutoff),
            )
        return len(stale_runs)

    # Atomic batch commit

    def commit_batch(self, batch: BatchWrite, chunk_size: int = 100) -> int:
        """
        Make one flush durable, all-or-nothing.

        Order: accounts, account updates, transactions, extraction records,
        email status updates (chunked per outcome), run counters.

        Returns:
            Number of transactions written
        """
        now = _now()
        with self._transaction() as conn:
            for chunk in _chunks(batch.new_accounts, chunk_size):
                conn.executemany(
                    """
                    INSERT INTO accounts
                    (id, display_name, institution, account_number, masked_number,
                     account_type, is_external, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    [
                        (
                            a.id,
                            a.display_name,
                            a.institution,
                            a.account_number,
                            a.masked_number,
                            a.account_type,
                            int(a.is_external),
                            now,
                            now,
                        )
                        for a in chunk
                    ],
                )

            for update in batch.account_updates:
                conn.execute(
                    """
                    UPDATE accounts
                    SET account_number = COALESCE(?, account_number),
                        display_name = COALESCE(?, display_name),
                        institution = COALESCE(?, institution),
                        updated_at = ?
                    WHERE id = ?
                """,
                    (
                        update.account_number,
                        update.display_name,
                        update.institution,
                        now,
                        update.account_id,
                    ),
                )

            for chunk in _chunks(batch.transactions, chunk_size):
                conn.executemany(
                    """
                    INSERT INTO transactions
                    (id, email_id, run_id, account_id, to_account_id, type, date, amount,
                     currency, symbol, quantity, price, fees, confidence, data,
                     run_completed, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                    [
                        (
                            tx.id,
                            email_id,
                            batch.run_id,
                            tx.account_id,
                            tx.to_account_id,
                            tx.type,
                            tx.date,
                            tx.amount,
                            tx.currency,
                            tx.symbol,
                            tx.quantity,
                            tx.price,
                            tx.fees,
                            tx.confidence,
                            json.dumps(tx.data),
                            now,
                        )
                        for email_id, tx in chunk
                    ],
                )

            for chunk in _chunks(batch.extraction_records, chunk_size):
                conn.executemany(
                    """
                    INSERT INTO email_extractions
                    (id, run_id, email_id, status, raw_output, confidence,
                     processing_time_ms, transaction_ids, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    [
                        (
                            r.id,
                            batch.run_id,
                            r.email_id,
                            r.status,
                            json.dumps(r.raw_output),
                            r.confidence,
                            r.processing_time_ms,
                            json.dumps(r.transaction_ids),
                            now,
                        )
                        for r in chunk
                    ],
                )

            for status in (
                ExtractionStatus.COMPLETED,
                ExtractionStatus.INFORMATIONAL,
                ExtractionStatus.FAILED,
            ):
                updates = [u for u in batch.status_updates if u.status == status]
                for chunk in _chunks(updates, chunk_size):
                    conn.executemany(
                        """
                        UPDATE emails
                        SET extraction_status = ?, extraction_error = ?,
                            informational_notes = COALESCE(?, informational_notes),
                            raw_extraction = COALESCE(?, raw_extraction),
                            processed_at = ?
                        WHERE id = ?
                    """,
                        [
                            (
                                u.status.value,
                                u.error,
                                u.notes,
                                u.raw_extraction,
                                now,
                                u.email_id,
                            )
                            for u in chunk
                        ],
                    )

            if batch.counters is not None:
                self._write_run_counters(conn, batch.run_id, batch.counters, batch.stats, now)

        return len(batch.transactions)

    # Accounts and corpus suggestions

    def list_accounts(self) -> list[AccountRecord]:
        """All accounts, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY created_at, id").fetchall()
            return [AccountRecord.from_row(row) for row in rows]

    def get_account(self, account_id: str) -> AccountRecord | None:
        """Get an account by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return AccountRecord.from_row(row) if row else None

    def add_corpus_suggestions(self, suggestions: Sequence[CorpusSuggestion]) -> int:
        """
        Record corpus suggestions, skipping pairs that already exist in either order.

        Returns the number inserted.
        """
        inserted = 0
        now = _now()
        with self._transaction() as conn:
            for suggestion in suggestions:
                existing = conn.execute(
                    """
                    SELECT 1 FROM corpus_suggestions
                    WHERE (account_id1 = ? AND account_id2 = ?)
                       OR (account_id1 = ? AND account_id2 = ?)
                """,
                    (
                        suggestion.account_id1,
                        suggestion.account_id2,
                        suggestion.account_id2,
                        suggestion.account_id1,
                    ),
                ).fetchone()
                if existing:
                    continue
                conn.execute(
                    """
                    INSERT INTO corpus_suggestions
                    (id, account_id1, account_id2, reason, confidence, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        suggestion.id,
                        suggestion.account_id1,
                        suggestion.account_id2,
                        suggestion.reason,
                        suggestion.confidence,
                        suggestion.status,
                        now,
                    ),
                )
                inserted += 1
        return inserted

    def list_corpus_suggestions(self, status: str | None = None) -> list[CorpusSuggestion]:
        """List corpus suggestions, highest confidence first."""
        with self._transaction() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM corpus_suggestions WHERE status = ? ORDER BY confidence DESC",
                    (status,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM corpus_suggestions ORDER BY confidence DESC"
                ).fetchall()
            return [CorpusSuggestion.from_row(row) for row in rows]

    # Transactions, extraction records and logs

    def list_transactions(
        self, run_id: str | None = None, email_id: str | None = None
    ) -> list[TransactionRecord]:
        """List committed transactions, optionally by run or source email."""
        clauses = []
        params: list[Any] = []
        if run_id:
            clauses.append("run_id = ?")
            params.append(run_id)
        if email_id:
            clauses.append("email_id = ?")
            params.append(email_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions {where} ORDER BY date, id", tuple(params)
            ).fetchall()
            return [TransactionRecord.from_row(row) for row in rows]

    def list_extraction_records(self, run_id: str) -> list[ExtractionRecord]:
        """Extraction records of a run."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM email_extractions WHERE run_id = ? ORDER BY created_at, id",
                (run_id,),
            ).fetchall()
            return [ExtractionRecord.from_row(row) for row in rows]

    def log_extraction_error(
        self,
        email_id: str | None,
        message: str,
        error_type: str,
        job_id: str | None = None,
        run_id: str | None = None,
        stack_trace: str | None = None,
        metadata: dict[str, Any] | None = None,
        level: str = "error",
    ) -> None:
        """Append one entry to the extraction error log."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO extraction_logs
                (email_id, job_id, run_id, level, message, error_type, stack_trace,
                 metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    email_id,
                    job_id,
                    run_id,
                    level,
                    message,
                    error_type,
                    stack_trace,
                    json.dumps(metadata or {}, default=str),
                    _now(),
                ),
            )

    def list_extraction_logs(
        self, run_id: str | None = None, job_id: str | None = None
    ) -> list[ExtractionLogEntry]:
        """List extraction log entries, oldest first."""
        with self._transaction() as conn:
            if run_id:
                rows = conn.execute(
                    "SELECT * FROM extraction_logs WHERE run_id = ? ORDER BY id", (run_id,)
                ).fetchall()
            elif job_id:
                rows = conn.execute(
                    "SELECT * FROM extraction_logs WHERE job_id = ? ORDER BY id", (job_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM extraction_logs ORDER BY id").fetchall()
            return [ExtractionLogEntry.from_row(row) for row in rows]

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get aggregate statistics."""
        with self._transaction() as conn:
            email_counts = {
                row["extraction_status"]: row["count"]
                for row in conn.execute(
                    """
                    SELECT extraction_status, COUNT(*) as count FROM emails
                    GROUP BY extraction_status
                """
                ).fetchall()
            }
            run_counts = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) as count FROM extraction_runs GROUP BY status"
                ).fetchall()
            }
            accounts = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
            transactions = conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
            suggestions = conn.execute(
                "SELECT COUNT(*) FROM corpus_suggestions WHERE status = 'pending'"
            ).fetchone()[0]

        return {
            "emails_total": sum(email_counts.values()),
            "emails_by_status": email_counts,
            "runs_by_status": run_counts,
            "accounts": accounts,
            "transactions": transactions,
            "pending_corpus_suggestions": suggestions,
        }
