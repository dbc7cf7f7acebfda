"""
CLI main entry point.
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..extractors import OllamaExtractor
from ..extractors.prompts import (
    DEFAULT_EXTRACTION_PROMPT,
    DEFAULT_PROMPT_NAME,
    EXTRACTION_OUTPUT_SCHEMA,
)
from ..services.orchestrator import (
    STALE_RUN_MESSAGE,
    ExtractionOrchestrator,
    PreconditionError,
    RunPlan,
)
from ..services.progress import EventType, ProgressEvent
from ..state_store import RunStatus, StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="email-ledger",
        description="Extract financial transactions from emails with a local LLM",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-config", help="Write a default config file")
    subparsers.add_parser("seed", help="Register the default model and extraction prompt")

    import_parser = subparsers.add_parser(
        "import-emails", help="Create an email set from a JSON-lines file"
    )
    import_parser.add_argument("file", type=Path, help="One JSON object per line")
    import_parser.add_argument("--name", type=str, required=True, help="Email set name")
    import_parser.add_argument("--description", type=str, help="Email set description")

    # extract command
    extract_parser = subparsers.add_parser("extract", help="Start an extraction run")
    extract_parser.add_argument("--set", dest="set_id", type=str, required=True, help="Email set ID")
    extract_parser.add_argument(
        "--prompt",
        dest="prompt_id",
        type=str,
        default=DEFAULT_PROMPT_NAME,
        help=f"Prompt ID (default: {DEFAULT_PROMPT_NAME})",
    )
    extract_parser.add_argument(
        "--model", dest="model_id", type=str, help="Model ID (default: llm.default_model)"
    )
    extract_parser.add_argument(
        "--concurrency", type=int, help="Emails extracted concurrently per window"
    )
    extract_parser.add_argument("--sample", type=int, help="Extract a random sample of N emails")
    extract_parser.add_argument("--name", type=str, help="Run name")
    extract_parser.add_argument("--description", type=str, help="Run description")

    resume_parser = subparsers.add_parser("resume", help="Resume a failed run")
    resume_parser.add_argument("run_id", type=str, help="Run ID")
    resume_parser.add_argument(
        "--concurrency", type=int, help="Emails extracted concurrently per window"
    )

    for command, help_text in (
        ("pause", "Pause a running job"),
        ("unpause", "Resume a paused job"),
        ("cancel", "Cancel an active job"),
    ):
        job_parser = subparsers.add_parser(command, help=help_text)
        job_parser.add_argument("job_id", type=str, help="Job ID")

    runs_parser = subparsers.add_parser("runs", help="List recent extraction runs")
    runs_parser.add_argument(
        "--limit", type=int, default=20, help="Maximum runs to list (default: 20)"
    )

    subparsers.add_parser("sweep", help="Fail runs orphaned by a dead process")
    subparsers.add_parser("status", help="Show ledger status and statistics")

    return parser


def _print_event(event: ProgressEvent) -> None:
    """Render one progress event as a console line."""
    if event.type == EventType.STARTED:
        mode = "Resuming" if event.is_resume else "Starting"
        print(f"🚀 {mode} run {event.run_id} (job {event.job_id}) with {event.model_id}")
        print(f"   {event.total_items} emails, {event.already_processed} already processed")
    elif event.type == EventType.PROGRESS:
        print(
            f"  ⏳ {event.processed_items}/{event.total_items} processed | "
            f"{event.transactions_found} transactions | "
            f"{event.informational_items} informational | {event.failed_items} failed"
        )
    elif event.type == EventType.BATCH_COMMITTED:
        print(
            f"  💾 Committed {event.transactions_committed} transactions "
            f"({event.total_transactions_committed} total)"
        )
    elif event.type == EventType.COMPLETED:
        print(
            f"\n✓ Run {event.run_id} completed: {event.emails_processed} emails, "
            f"{event.transactions_created} transactions in {event.processing_time_ms} ms"
        )
    elif event.type == EventType.ERROR:
        print(f"\n❌ Run failed: {event.error}")


async def _drive(
    config: Config,
    store: StateStore,
    prepare: Callable[[ExtractionOrchestrator], RunPlan],
) -> int:
    async with OllamaExtractor(config.llm) as invoker:
        orchestrator = ExtractionOrchestrator(store, invoker, config)
        try:
            plan = prepare(orchestrator)
        except PreconditionError as e:
            print(f"❌ {e}")
            return 1
        run = await orchestrator.run(plan, on_event=_print_event)

    return 0 if run.status == RunStatus.COMPLETED else 1


def cmd_init_config(config_path: Path) -> int:
    """Write the default config file."""
    if config_path.exists():
        print(f"❌ Config already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_seed(config: Config) -> int:
    """Register the default model and prompt."""
    store = StateStore(config.state_db_path)

    store.upsert_model(config.llm.default_model)
    print(f"✓ Model registered: {config.llm.default_model}")

    if store.get_prompt(DEFAULT_PROMPT_NAME) is None:
        store.create_prompt(
            name="Default transaction extraction",
            content=DEFAULT_EXTRACTION_PROMPT,
            json_schema=EXTRACTION_OUTPUT_SCHEMA,
            prompt_id=DEFAULT_PROMPT_NAME,
        )
        print(f"✓ Prompt created: {DEFAULT_PROMPT_NAME}")
    else:
        print(f"  Prompt already present: {DEFAULT_PROMPT_NAME}")
    return 0


def cmd_import_emails(config: Config, file: Path, name: str, description: str | None) -> int:
    """Create an email set from pre-parsed emails (one JSON object per line)."""
    if not file.exists():
        print(f"❌ File not found: {file}")
        return 1

    rows = []
    with open(file) as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as e:
                print(f"❌ Line {line_no}: invalid JSON ({e})")
                return 1

    store = StateStore(config.state_db_path)
    set_id = store.create_email_set(name, description)
    for row in rows:
        store.add_email(
            set_id,
            subject=row.get("subject"),
            sender=row.get("sender"),
            body_text=row.get("body_text"),
            body_html=row.get("body_html"),
            email_date=row.get("date"),
            recipient=row.get("recipient"),
            filename=row.get("filename"),
        )

    print(f"✓ Imported {len(rows)} email(s) into set {set_id}")
    return 0


def cmd_extract(
    config: Config,
    set_id: str,
    prompt_id: str,
    model_id: str | None,
    concurrency: int | None,
    sample: int | None,
    name: str | None,
    description: str | None,
) -> int:
    """Start an extraction run and stream its progress."""
    store = StateStore(config.state_db_path)
    return asyncio.run(
        _drive(
            config,
            store,
            lambda orchestrator: orchestrator.prepare_run(
                set_id=set_id,
                prompt_id=prompt_id,
                model_id=model_id,
                concurrency=concurrency,
                sample_size=sample,
                name=name,
                description=description,
            ),
        )
    )


def cmd_resume(config: Config, run_id: str, concurrency: int | None) -> int:
    """Resume a failed run."""
    store = StateStore(config.state_db_path)
    return asyncio.run(
        _drive(
            config,
            store,
            lambda orchestrator: orchestrator.prepare_resume(run_id, concurrency=concurrency),
        )
    )


def cmd_job_control(config: Config, action: str, job_id: str) -> int:
    """Flip the persisted job status; the owning process observes it between windows."""
    store = StateStore(config.state_db_path)
    handlers = {
        "pause": store.pause_job,
        "unpause": store.unpause_job,
        "cancel": store.cancel_job,
    }
    if handlers[action](job_id):
        print(f"✓ Job {job_id}: {action} requested")
        return 0

    job = store.get_job(job_id)
    if job is None:
        print(f"❌ Job not found: {job_id}")
    else:
        print(f"❌ Cannot {action} job {job_id} in status {job.status.value}")
    return 1


def cmd_runs(config: Config, limit: int) -> int:
    """List recent runs."""
    store = StateStore(config.state_db_path)
    runs = store.list_runs(limit=limit)
    if not runs:
        print("No runs yet")
        return 0

    print(f"\n📋 Extraction runs (latest {limit})")
    print("=" * 72)
    for run in runs:
        marker = {"completed": "✓", "failed": "❌", "running": "⏳"}[run.status.value]
        print(
            f"  {marker} v{run.version:<4} {run.id}  {run.status.value:<9} "
            f"{run.emails_processed} emails, {run.transactions_created} tx, "
            f"{run.error_count} errors"
        )
        if run.status == RunStatus.FAILED and run.stats.get("canResume"):
            print(f"       resumable: {run.error_message or 'no message'}")
    print()
    return 0


def cmd_sweep(config: Config) -> int:
    """Fail orphaned runs."""
    store = StateStore(config.state_db_path)
    cutoff = datetime.now(timezone.utc) - timedelta(
        minutes=config.extraction.stale_after_minutes
    )
    swept = store.sweep_stale_runs(cutoff, STALE_RUN_MESSAGE)
    print(f"✓ Swept {swept} stale run(s)")
    return 0


def cmd_status(config: Config) -> int:
    """Show ledger status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()
    by_status = stats["emails_by_status"]
    runs = stats["runs_by_status"]

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Emails total:           {stats['emails_total']}")
    for status in ("pending", "completed", "informational", "failed", "skipped"):
        print(f"    {status:<22}{by_status.get(status, 0)}")
    print(f"  Runs completed:         {runs.get('completed', 0)}")
    print(f"  Runs failed:            {runs.get('failed', 0)}")
    print(f"  Runs running:           {runs.get('running', 0)}")
    print(f"  Accounts:               {stats['accounts']}")
    print(f"  Transactions:           {stats['transactions']}")
    print(f"  Corpus suggestions:     {stats['pending_corpus_suggestions']}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "seed":
        return cmd_seed(config)
    elif parsed.command == "import-emails":
        return cmd_import_emails(config, parsed.file, parsed.name, parsed.description)
    elif parsed.command == "extract":
        return cmd_extract(
            config,
            parsed.set_id,
            parsed.prompt_id,
            parsed.model_id,
            parsed.concurrency,
            parsed.sample,
            parsed.name,
            parsed.description,
        )
    elif parsed.command == "resume":
        return cmd_resume(config, parsed.run_id, parsed.concurrency)
    elif parsed.command in ("pause", "unpause", "cancel"):
        return cmd_job_control(config, parsed.command, parsed.job_id)
    elif parsed.command == "runs":
        return cmd_runs(config, parsed.limit)
    elif parsed.command == "sweep":
        return cmd_sweep(config)
    elif parsed.command == "status":
        return cmd_status(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
