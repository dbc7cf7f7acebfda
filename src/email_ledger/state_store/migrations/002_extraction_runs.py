"""
Migration 002: Extraction runs, jobs and their output.

- extraction_runs: the unit of work; version is unique across all runs
- jobs: one live execution of a run (a run spans several jobs on resume)
- transactions: committed, account-linked transactions
- email_extractions: one immutable extraction record per email per run
"""

import sqlite3

VERSION = 2
NAME = "extraction_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create run tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extraction_runs (
            id TEXT PRIMARY KEY,
            set_id TEXT NOT NULL,
            model_id TEXT NOT NULL,
            prompt_id TEXT NOT NULL,
            prompt_hash TEXT,  -- SHA-256 of the prompt text used
            software_version TEXT NOT NULL,
            version INTEGER NOT NULL UNIQUE,
            name TEXT,
            description TEXT,
            status TEXT NOT NULL,  -- running, completed, failed
            job_id TEXT,
            emails_processed INTEGER NOT NULL DEFAULT 0,
            transactions_created INTEGER NOT NULL DEFAULT 0,
            informational_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            stats TEXT,  -- JSON
            error_message TEXT,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            heartbeat_at TEXT,
            FOREIGN KEY (set_id) REFERENCES email_sets(id),
            FOREIGN KEY (model_id) REFERENCES ai_models(id),
            FOREIGN KEY (prompt_id) REFERENCES prompts(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL DEFAULT 'extraction',
            status TEXT NOT NULL,  -- pending, running, paused, completed, failed, cancelled
            run_id TEXT,
            set_id TEXT,
            model_id TEXT,
            total_items INTEGER NOT NULL DEFAULT 0,
            processed_items INTEGER NOT NULL DEFAULT 0,
            failed_items INTEGER NOT NULL DEFAULT 0,
            informational_items INTEGER NOT NULL DEFAULT 0,
            transactions_found INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            heartbeat_at TEXT,
            FOREIGN KEY (run_id) REFERENCES extraction_runs(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            email_id TEXT NOT NULL,
            run_id TEXT NOT NULL,
            account_id TEXT,
            to_account_id TEXT,
            type TEXT NOT NULL,
            date TEXT NOT NULL,
            amount TEXT,      -- decimal string
            currency TEXT NOT NULL DEFAULT 'USD',
            symbol TEXT,
            quantity TEXT,    -- decimal string
            price TEXT,       -- decimal string
            fees TEXT,        -- decimal string
            confidence TEXT,  -- decimal string
            data TEXT,        -- JSON side-data
            run_completed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (email_id) REFERENCES emails(id),
            FOREIGN KEY (run_id) REFERENCES extraction_runs(id),
            FOREIGN KEY (account_id) REFERENCES accounts(id),
            FOREIGN KEY (to_account_id) REFERENCES accounts(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS email_extractions (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            email_id TEXT NOT NULL,
            status TEXT NOT NULL,  -- completed, informational
            raw_output TEXT NOT NULL,  -- JSON
            confidence TEXT,
            processing_time_ms INTEGER,
            transaction_ids TEXT,  -- JSON array
            created_at TEXT NOT NULL,
            UNIQUE (run_id, email_id),
            FOREIGN KEY (run_id) REFERENCES extraction_runs(id),
            FOREIGN KEY (email_id) REFERENCES emails(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_runs_lookup "
        "ON extraction_runs(set_id, model_id, prompt_id, status)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON extraction_runs(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_run ON transactions(run_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_email ON transactions(email_id)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove run tables."""
    conn.execute("DROP TABLE IF EXISTS email_extractions")
    conn.execute("DROP TABLE IF EXISTS transactions")
    conn.execute("DROP TABLE IF EXISTS jobs")
    conn.execute("DROP TABLE IF EXISTS extraction_runs")
