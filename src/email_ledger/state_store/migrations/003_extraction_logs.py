"""
Migration 003: Per-record extraction error log.
"""

import sqlite3

VERSION = 3
NAME = "extraction_logs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create extraction_logs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extraction_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email_id TEXT,
            job_id TEXT,
            run_id TEXT,
            level TEXT NOT NULL DEFAULT 'error',
            message TEXT NOT NULL,
            error_type TEXT,  -- schema_validation, api_error, timeout, parse_error, unknown
            stack_trace TEXT,
            metadata TEXT,  -- JSON
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_extraction_logs_run ON extraction_logs(run_id)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove extraction_logs table."""
    conn.execute("DROP TABLE IF EXISTS extraction_logs")
