"""
Migration 001: Account registry.

accounts holds every account or counterparty seen in extracted
transactions; account_corpus groups accounts a human confirmed to be
the same entity; corpus_suggestions holds proposed groupings.
"""

import sqlite3

VERSION = 1
NAME = "accounts"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create account tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS account_corpus (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL,
            institution TEXT,
            account_number TEXT,  -- NULL when only a masked form is known
            masked_number TEXT,   -- e.g. XXXX-1802
            account_type TEXT,
            is_external INTEGER NOT NULL DEFAULT 0,
            corpus_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (corpus_id) REFERENCES account_corpus(id)
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS corpus_suggestions (
            id TEXT PRIMARY KEY,
            account_id1 TEXT NOT NULL,
            account_id2 TEXT NOT NULL,
            reason TEXT NOT NULL,
            confidence REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',  -- pending, accepted, rejected
            created_at TEXT NOT NULL,
            FOREIGN KEY (account_id1) REFERENCES accounts(id),
            FOREIGN KEY (account_id2) REFERENCES accounts(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_accounts_institution ON accounts(institution)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_corpus_suggestions_status ON corpus_suggestions(status)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove account tables."""
    conn.execute("DROP TABLE IF EXISTS corpus_suggestions")
    conn.execute("DROP TABLE IF EXISTS accounts")
    conn.execute("DROP TABLE IF EXISTS account_corpus")
