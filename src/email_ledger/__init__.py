"""
Email → LLM Extraction → Normalized Ledger

A resumable, batch-committing pipeline that runs LLM extraction over sets of
financial emails, resolves the accounts they mention, and persists normalized
transactions with full run provenance.
"""

__version__ = "0.3.0"
