"""
Configuration management (SSOT).

This module defines ALL configuration for the email ledger.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Orchestration tunables (window size, commit threshold) live in ExtractionConfig
- The Ollama URL is only ever used for API calls, never shown in stored data
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class LLMConfig:
    """Ollama configuration for the extraction invoker.

    SSOT for LLM settings:
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - default_model: Used when a run does not name a model
    """

    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or custom header value
    auth_header: str | None = None
    default_model: str = "qwen2.5:7b-instruct-q4_K_M"
    # Request timeout (seconds) for a single extraction call
    timeout_seconds: int = 120

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class ExtractionConfig:
    """Extraction run orchestration settings."""

    # Records dispatched concurrently per window
    concurrency: int = 8
    # Processed records buffered before a batch commit
    commit_batch_size: int = 25
    # Rows per multi-row statement inside a commit
    write_chunk_size: int = 100
    # Interval between job status polls while paused (seconds)
    pause_poll_seconds: float = 1.0
    # Running runs without a heartbeat for this long are considered orphaned
    stale_after_minutes: int = 10


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    llm: LLMConfig = field(default_factory=LLMConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/ledger.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.llm.ollama_url:
            errors.append("llm.ollama_url is required")
        if self.llm.timeout_seconds <= 0:
            errors.append("llm.timeout_seconds must be positive")

        extraction = self.extraction
        if extraction.concurrency < 1:
            errors.append("extraction.concurrency must be at least 1")
        if extraction.commit_batch_size < 1:
            errors.append("extraction.commit_batch_size must be at least 1")
        if extraction.write_chunk_size < 1:
            errors.append("extraction.write_chunk_size must be at least 1")
        if extraction.pause_poll_seconds < 0:
            errors.append("extraction.pause_poll_seconds must not be negative")
        if extraction.stale_after_minutes < 1:
            errors.append("extraction.stale_after_minutes must be at least 1")

        return errors


def _env_int(name: str, default: int) -> int:
    """Read an integer override from the environment, keeping the default if invalid."""
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - OLLAMA_URL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_MODEL (default extraction model)
    - OLLAMA_TIMEOUT (request timeout in seconds)
    - LEDGER_CONCURRENCY
    - LEDGER_COMMIT_BATCH_SIZE
    - LEDGER_STALE_AFTER_MINUTES
    - LEDGER_DB_PATH
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # LLM config
    llm_data = data.get("llm", {})
    llm = LLMConfig(
        ollama_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        default_model=os.environ.get(
            "OLLAMA_MODEL", llm_data.get("default_model", "qwen2.5:7b-instruct-q4_K_M")
        ),
        timeout_seconds=_env_int("OLLAMA_TIMEOUT", int(llm_data.get("timeout_seconds", 120))),
    )

    # Extraction config
    extraction_data = data.get("extraction", {})
    extraction = ExtractionConfig(
        concurrency=_env_int("LEDGER_CONCURRENCY", int(extraction_data.get("concurrency", 8))),
        commit_batch_size=_env_int(
            "LEDGER_COMMIT_BATCH_SIZE", int(extraction_data.get("commit_batch_size", 25))
        ),
        write_chunk_size=int(extraction_data.get("write_chunk_size", 100)),
        pause_poll_seconds=float(extraction_data.get("pause_poll_seconds", 1.0)),
        stale_after_minutes=_env_int(
            "LEDGER_STALE_AFTER_MINUTES", int(extraction_data.get("stale_after_minutes", 10))
        ),
    )

    state_db = os.environ.get("LEDGER_DB_PATH", data.get("state_db_path", "data/ledger.db"))

    config = Config(
        llm=llm,
        extraction=extraction,
        state_db_path=Path(state_db),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Email Ledger Configuration

# Local LLM settings (Ollama)
# Supports localhost, LAN, or remote deployments
llm:
  ollama_url: "http://localhost:11434"     # Ollama server URL (localhost, LAN, or remote)
  auth_header: null                        # Optional auth header for proxied deployments
  default_model: "qwen2.5:7b-instruct-q4_K_M"   # Used when a run names no model
  timeout_seconds: 120                     # Per-email extraction call timeout

# Extraction run orchestration
extraction:
  concurrency: 8                           # Emails extracted concurrently per window
  commit_batch_size: 25                    # Emails buffered before each atomic commit
  write_chunk_size: 100                    # Rows per multi-row statement
  pause_poll_seconds: 1.0                  # Job status poll interval while paused
  stale_after_minutes: 10                  # Silent running runs older than this are swept

# State database path
state_db_path: "data/ledger.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
