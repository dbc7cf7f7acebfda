"""Tests for CLI commands."""

import importlib
import json

import pytest

from email_ledger.extractors.prompts import DEFAULT_PROMPT_NAME
from email_ledger.runner.main import create_cli, main
from email_ledger.state_store import JobStatus, RunStatus, StateStore

from conftest import DIVIDEND_REPLY, TEST_MODEL, FakeInvoker

# email_ledger.runner re-exports the main() function, shadowing the submodule.
main_module = importlib.import_module("email_ledger.runner.main")

ENV_OVERRIDES = (
    "OLLAMA_URL",
    "OLLAMA_AUTH_HEADER",
    "OLLAMA_MODEL",
    "OLLAMA_TIMEOUT",
    "LEDGER_CONCURRENCY",
    "LEDGER_COMMIT_BATCH_SIZE",
    "LEDGER_STALE_AFTER_MINUTES",
    "LEDGER_DB_PATH",
)


class ContextInvoker(FakeInvoker):
    """FakeInvoker usable where the CLI expects `async with OllamaExtractor(...)`."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Config file pointing at a temporary database. Returns (config_path, db_path)."""
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    db_path = tmp_path / "ledger.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"llm:\n  default_model: {TEST_MODEL}\n"
        "extraction:\n  concurrency: 2\n  commit_batch_size: 2\n  pause_poll_seconds: 0.01\n"
        f"state_db_path: {db_path}\n"
    )
    return config_path, db_path


def write_emails(path, rows):
    path.write_text("\n".join(json.dumps(row) for row in rows) + "\n\n")


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        parser = create_cli()

        for argv in (
            ["init-config"],
            ["seed"],
            ["import-emails", "emails.jsonl", "--name", "March"],
            ["extract", "--set", "s1"],
            ["resume", "r1"],
            ["pause", "j1"],
            ["unpause", "j1"],
            ["cancel", "j1"],
            ["runs"],
            ["sweep"],
            ["status"],
        ):
            assert parser.parse_args(argv).command == argv[0]

    def test_extract_defaults(self):
        args = create_cli().parse_args(["extract", "--set", "s1"])

        assert args.prompt_id == DEFAULT_PROMPT_NAME
        assert args.model_id is None
        assert args.concurrency is None
        assert args.sample is None

    def test_extract_options(self):
        args = create_cli().parse_args(
            ["extract", "--set", "s1", "--model", "m", "--concurrency", "4", "--sample", "10"]
        )

        assert (args.set_id, args.model_id, args.concurrency, args.sample) == ("s1", "m", 4, 10)

    def test_no_command_prints_help(self):
        assert main([]) == 1


class TestSetupCommands:
    """init-config, seed and import-emails."""

    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "new" / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_seed_is_idempotent(self, cli_env, capsys):
        config_path, db_path = cli_env

        assert main(["-c", str(config_path), "seed"]) == 0
        assert main(["-c", str(config_path), "seed"]) == 0

        store = StateStore(db_path)
        assert store.get_model(TEST_MODEL) is not None
        assert store.get_prompt(DEFAULT_PROMPT_NAME).json_schema is not None
        assert "already present" in capsys.readouterr().out

    def test_import_emails(self, cli_env, tmp_path, capsys):
        config_path, db_path = cli_env
        emails = tmp_path / "emails.jsonl"
        write_emails(
            emails,
            [
                {"subject": "Dividend", "body_text": "Paid", "date": "2024-03-15"},
                {"subject": "Trade", "body_html": "<p>Filled</p>"},
            ],
        )

        assert main(["-c", str(config_path), "import-emails", str(emails), "--name", "March"]) == 0

        assert "Imported 2 email(s)" in capsys.readouterr().out
        store = StateStore(db_path)
        conn = store._get_connection()
        try:
            (email_set,) = conn.execute("SELECT id FROM email_sets").fetchall()
        finally:
            conn.close()
        emails_in_set = store.list_emails(email_set["id"])
        assert [e.subject for e in emails_in_set] == ["Dividend", "Trade"]
        assert emails_in_set[0].email_date == "2024-03-15"

    def test_import_rejects_bad_json(self, cli_env, tmp_path, capsys):
        config_path, _ = cli_env
        emails = tmp_path / "emails.jsonl"
        emails.write_text('{"subject": "ok"}\nnot json\n')

        assert main(["-c", str(config_path), "import-emails", str(emails), "--name", "x"]) == 1
        assert "Line 2" in capsys.readouterr().out

    def test_import_missing_file(self, cli_env, tmp_path):
        config_path, _ = cli_env

        assert (
            main(["-c", str(config_path), "import-emails", str(tmp_path / "nope"), "--name", "x"])
            == 1
        )

    def test_invalid_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("LEDGER_CONCURRENCY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("extraction:\n  concurrency: 0\n")

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out


class TestRunCommands:
    """extract, runs, status and job controls."""

    @pytest.fixture
    def seeded(self, cli_env):
        config_path, db_path = cli_env
        main(["-c", str(config_path), "seed"])
        store = StateStore(db_path)
        set_id = store.create_email_set("March")
        store.add_email(set_id, subject="Dividend", body_text="Paid")
        store.add_email(set_id, subject="Newsletter", body_text="Hello")
        return config_path, store, set_id

    def test_extract_unknown_set(self, seeded, capsys):
        config_path, _, _ = seeded

        assert main(["-c", str(config_path), "extract", "--set", "missing"]) == 1
        assert "Email set not found: missing" in capsys.readouterr().out

    def test_extract_runs_and_reports(self, seeded, monkeypatch, capsys):
        config_path, store, set_id = seeded
        monkeypatch.setattr(
            main_module,
            "OllamaExtractor",
            lambda llm_config: ContextInvoker({"Dividend": DIVIDEND_REPLY}),
        )

        assert main(["-c", str(config_path), "extract", "--set", set_id]) == 0

        out = capsys.readouterr().out
        assert "Starting run" in out
        assert "completed: 2 emails, 1 transactions" in out
        (run,) = store.list_runs()
        assert run.status == RunStatus.COMPLETED

        assert main(["-c", str(config_path), "extract", "--set", set_id]) == 1
        assert "already extracted" in capsys.readouterr().out

        assert main(["-c", str(config_path), "runs"]) == 0
        assert run.id in capsys.readouterr().out

        assert main(["-c", str(config_path), "status"]) == 0
        status_out = capsys.readouterr().out
        assert "Transactions:           1" in status_out
        assert "Accounts:               1" in status_out

    def test_resume_completed_run_rejected(self, seeded, monkeypatch, capsys):
        config_path, store, set_id = seeded
        monkeypatch.setattr(main_module, "OllamaExtractor", lambda llm_config: ContextInvoker())
        main(["-c", str(config_path), "extract", "--set", set_id])
        (run,) = store.list_runs()
        capsys.readouterr()

        assert main(["-c", str(config_path), "resume", run.id]) == 1
        assert "Cannot resume a completed run" in capsys.readouterr().out

    def test_job_controls(self, seeded, capsys):
        config_path, store, set_id = seeded
        _, job = store.create_run_with_job(
            set_id=set_id,
            model_id=TEST_MODEL,
            prompt_id=DEFAULT_PROMPT_NAME,
            prompt_hash=None,
            software_version="0.3.0",
            total_items=2,
        )

        assert main(["-c", str(config_path), "pause", job.id]) == 0
        assert store.get_job_status(job.id) == JobStatus.PAUSED
        assert main(["-c", str(config_path), "pause", job.id]) == 1
        assert "in status paused" in capsys.readouterr().out
        assert main(["-c", str(config_path), "unpause", job.id]) == 0
        assert main(["-c", str(config_path), "cancel", job.id]) == 0
        assert store.get_job_status(job.id) == JobStatus.CANCELLED
        assert main(["-c", str(config_path), "cancel", "no-such-job"]) == 1
        assert "Job not found" in capsys.readouterr().out

    def test_runs_empty_and_sweep(self, cli_env, capsys):
        config_path, _ = cli_env

        assert main(["-c", str(config_path), "runs"]) == 0
        assert "No runs yet" in capsys.readouterr().out
        assert main(["-c", str(config_path), "sweep"]) == 0
        assert "Swept 0 stale run(s)" in capsys.readouterr().out
