"""Tests for state store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from email_ledger.schemas.extraction import TransactionCandidate
from email_ledger.schemas.normalizer import normalize_transaction
from email_ledger.state_store import (
    BatchWrite,
    CorpusSuggestion,
    ExtractionStatus,
    JobStatus,
    NewAccount,
    NewExtractionRecord,
    RunCounters,
    RunStatus,
    SourceStatusUpdate,
    StateStore,
)
from email_ledger.state_store.migrations import MigrationRunner, get_all_migrations

from conftest import TEST_MODEL


def start_run(ledger, set_id, total_items=1, prompt_hash="hash-1"):
    return ledger.store.create_run_with_job(
        set_id=set_id,
        model_id=ledger.model_id,
        prompt_id=ledger.prompt_id,
        prompt_hash=prompt_hash,
        software_version="0.3.0",
        total_items=total_items,
    )


def extraction_record(email_id, status="informational", transaction_ids=None):
    return NewExtractionRecord(
        email_id=email_id,
        status=status,
        raw_output={"is_transactional": False},
        confidence=None,
        processing_time_ms=12,
        transaction_ids=transaction_ids or [],
    )


class TestStateStore:
    """Tests for SQLite state store setup."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = {t[0] for t in tables}
        finally:
            conn.close()

        for name in (
            "email_sets",
            "emails",
            "ai_models",
            "prompts",
            "accounts",
            "account_corpus",
            "corpus_suggestions",
            "extraction_runs",
            "jobs",
            "transactions",
            "email_extractions",
            "extraction_logs",
            "migrations",
        ):
            assert name in table_names

    def test_reopen_is_idempotent(self, temp_db):
        """Opening an existing database applies nothing twice."""
        StateStore(temp_db)
        store = StateStore(temp_db)

        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            assert runner.run_pending() == []
            assert runner.get_current_version() == max(m.version for m in get_all_migrations())
        finally:
            conn.close()

    def test_migrations_roll_back(self, store):
        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            rolled_back = runner.rollback_to(1)
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()

        assert rolled_back == [3, 2]
        assert "extraction_runs" not in tables
        assert "accounts" in tables


class TestCatalog:
    """Tests for sets, emails, models and prompts."""

    def test_email_set_and_emails(self, store):
        set_id = store.create_email_set("March alerts", "Broker notices")
        first = store.add_email(set_id, subject="Dividend", body_text="Paid")
        second = store.add_email(set_id, subject="Trade", body_html="<p>Filled</p>")

        email_set = store.get_email_set(set_id)
        assert email_set.name == "March alerts"
        assert email_set.description == "Broker notices"
        assert store.list_email_ids(set_id) == [first, second]

        email = store.get_email(first)
        assert email.subject == "Dividend"
        assert email.extraction_status == ExtractionStatus.PENDING
        assert len(email.content_hash) == 64

    def test_get_emails_by_ids(self, store):
        set_id = store.create_email_set("s")
        ids = [store.add_email(set_id, subject=f"m{i}") for i in range(3)]

        records = store.get_emails(ids[1:])

        assert {r.id for r in records} == set(ids[1:])

    def test_unknown_lookups_return_none(self, store):
        assert store.get_email_set("nope") is None
        assert store.get_email("nope") is None
        assert store.get_model("nope") is None
        assert store.get_prompt("nope") is None
        assert store.get_run("nope") is None
        assert store.get_job("nope") is None
        assert store.get_job_status("nope") is None

    def test_upsert_model(self, store):
        store.upsert_model(TEST_MODEL, context_window=4096)
        store.upsert_model(TEST_MODEL, name="Test model", context_window=8192)

        model = store.get_model(TEST_MODEL)
        assert model.name == "Test model"
        assert model.context_window == 8192
        assert model.provider == "ollama"

    def test_prompt_hash_follows_content(self, store):
        prompt_id = store.create_prompt("p", "Extract things", json_schema={"type": "object"})
        before = store.get_prompt(prompt_id)

        assert store.update_prompt_content(prompt_id, "Extract other things")
        after = store.get_prompt(prompt_id)

        assert before.json_schema == {"type": "object"}
        assert before.content_hash != after.content_hash
        assert not store.update_prompt_content("missing", "x")


class TestRunLifecycle:
    """Tests for run and job rows."""

    def test_versions_increase(self, ledger):
        set_id, _ = ledger.make_set(["a"])

        first, first_job = start_run(ledger, set_id)
        second, _ = start_run(ledger, set_id)

        assert first.version == 1
        assert second.version == 2
        assert first.status == RunStatus.RUNNING
        assert first.job_id == first_job.id
        assert first_job.status == JobStatus.RUNNING
        assert first_job.run_id == first.id

    def test_list_runs_newest_first(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        start_run(ledger, set_id)
        start_run(ledger, set_id)

        assert [r.version for r in ledger.store.list_runs()] == [2, 1]
        assert len(ledger.store.list_runs(limit=1)) == 1
        assert ledger.store.list_runs(set_id="other") == []

    def test_attach_job_only_to_failed_run(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)

        assert ledger.store.attach_job_to_run(run.id, total_items=1) is None

        ledger.store.fail_run(run.id, job.id, RunCounters(), {}, "boom")
        new_job = ledger.store.attach_job_to_run(run.id, total_items=1)

        assert new_job is not None
        assert new_job.id != job.id
        resumed = ledger.store.get_run(run.id)
        assert resumed.status == RunStatus.RUNNING
        assert resumed.job_id == new_job.id
        assert resumed.error_message is None
        # A second concurrent resume loses
        assert ledger.store.attach_job_to_run(run.id, total_items=1) is None
        assert len(ledger.store.list_jobs(run_id=run.id)) == 2

    def test_job_controls_are_conditional(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        _, job = start_run(ledger, set_id)
        store = ledger.store

        assert not store.unpause_job(job.id)
        assert store.pause_job(job.id)
        assert store.get_job_status(job.id) == JobStatus.PAUSED
        assert not store.pause_job(job.id)
        assert store.unpause_job(job.id)
        assert store.cancel_job(job.id)
        assert store.get_job_status(job.id) == JobStatus.CANCELLED
        assert not store.cancel_job(job.id)
        assert not store.pause_job(job.id)

    def test_record_progress_mirrors_job(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)

        ledger.store.record_progress(
            run.id,
            job.id,
            RunCounters(
                emails_processed=5, transactions_created=3, informational_count=1, error_count=1
            ),
        )

        job = ledger.store.get_job(job.id)
        assert (job.processed_items, job.transactions_found) == (5, 3)
        assert (job.informational_items, job.failed_items) == (1, 1)
        # Run counters only move on commit
        assert ledger.store.get_run(run.id).emails_processed == 0

    def test_complete_run_flags_transactions(self, ledger):
        set_id, (email_id,) = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)
        tx = normalize_transaction(
            TransactionCandidate.from_dict({"transactionType": "fee", "amount": 1}), None
        )
        ledger.store.commit_batch(BatchWrite(run_id=run.id, transactions=[(email_id, tx)]))

        assert not ledger.store.list_transactions(run_id=run.id)[0].run_completed

        counters = RunCounters(emails_processed=1, transactions_created=1)
        ledger.store.complete_run(run.id, job.id, counters, {"byType": {"fee": 1}})

        run = ledger.store.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.completed_at is not None
        assert run.stats == {"byType": {"fee": 1}}
        assert run.transactions_created == 1
        assert ledger.store.get_job_status(job.id) == JobStatus.COMPLETED
        assert ledger.store.list_transactions(run_id=run.id)[0].run_completed

    def test_fail_run_with_cancelled_job(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)

        ledger.store.fail_run(
            run.id, job.id, RunCounters(), {"cancelled": True}, "Job cancelled", JobStatus.CANCELLED
        )

        run = ledger.store.get_run(run.id)
        assert run.status == RunStatus.FAILED
        assert run.error_message == "Job cancelled"
        assert ledger.store.get_job(job.id).status == JobStatus.CANCELLED

    def test_find_completed_run_matches_prompt_hash(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id, prompt_hash="hash-1")
        ledger.store.complete_run(run.id, job.id, RunCounters(emails_processed=1), {})

        found = ledger.store.find_completed_run(
            set_id, ledger.model_id, ledger.prompt_id, "0.3.0", "hash-1"
        )
        other = ledger.store.find_completed_run(
            set_id, ledger.model_id, ledger.prompt_id, "0.3.0", "hash-2"
        )

        assert found.id == run.id
        assert other is None

    def test_find_completed_run_ignores_empty_runs(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)
        ledger.store.complete_run(run.id, job.id, RunCounters(), {})

        assert (
            ledger.store.find_completed_run(
                set_id, ledger.model_id, ledger.prompt_id, "0.3.0", "hash-1"
            )
            is None
        )


class TestStaleSweep:
    """Tests for heartbeat-based stale run recovery."""

    def test_sweeps_runs_with_old_heartbeat(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)

        swept = ledger.store.sweep_stale_runs(
            datetime.now(timezone.utc) + timedelta(minutes=1), "Job interrupted by server restart"
        )

        assert swept == 1
        run = ledger.store.get_run(run.id)
        assert run.status == RunStatus.FAILED
        assert run.error_message == "Job interrupted by server restart"
        assert run.stats["canResume"] is True
        assert ledger.store.get_job_status(job.id) == JobStatus.FAILED

    def test_live_runs_survive(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)

        swept = ledger.store.sweep_stale_runs(
            datetime.now(timezone.utc) - timedelta(minutes=10), "stale"
        )

        assert swept == 0
        assert ledger.store.get_run(run.id).status == RunStatus.RUNNING
        assert ledger.store.get_job_status(job.id) == JobStatus.RUNNING

    def test_finished_runs_untouched(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, job = start_run(ledger, set_id)
        ledger.store.complete_run(run.id, job.id, RunCounters(), {})

        swept = ledger.store.sweep_stale_runs(
            datetime.now(timezone.utc) + timedelta(minutes=1), "stale"
        )

        assert swept == 0
        assert ledger.store.get_run(run.id).status == RunStatus.COMPLETED


class TestCommitBatch:
    """Tests for the atomic batch commit."""

    def test_commit_writes_everything(self, ledger):
        set_id, (dividend_email, marketing_email, broken_email) = ledger.make_set(
            ["dividend", "marketing", "broken"]
        )
        run, _ = start_run(ledger, set_id, total_items=3)
        candidate = TransactionCandidate.from_dict(
            {"transactionType": "dividend", "amount": "123.45", "accountNumber": "XXXX-1802"}
        )
        tx = normalize_transaction(candidate, "acc-1")

        committed = ledger.store.commit_batch(
            BatchWrite(
                run_id=run.id,
                new_accounts=[
                    NewAccount(id="acc-1", display_name="XXXX-1802", masked_number="XXXX-1802")
                ],
                transactions=[(dividend_email, tx)],
                extraction_records=[
                    extraction_record(dividend_email, "completed", [tx.id]),
                    extraction_record(marketing_email),
                ],
                status_updates=[
                    SourceStatusUpdate(dividend_email, ExtractionStatus.COMPLETED),
                    SourceStatusUpdate(
                        marketing_email, ExtractionStatus.INFORMATIONAL, notes="Marketing"
                    ),
                    SourceStatusUpdate(broken_email, ExtractionStatus.FAILED, error="timeout"),
                ],
                counters=RunCounters(
                    emails_processed=3,
                    transactions_created=1,
                    informational_count=1,
                    error_count=1,
                ),
                stats={"canResume": True},
            )
        )

        store = ledger.store
        assert committed == 1
        assert store.get_account("acc-1").masked_number == "XXXX-1802"

        (stored_tx,) = store.list_transactions(run_id=run.id)
        assert stored_tx.amount == "123.45"
        assert stored_tx.account_id == "acc-1"
        assert stored_tx.email_id == dividend_email

        records = {r.email_id: r for r in store.list_extraction_records(run.id)}
        assert records[dividend_email].transaction_ids == [tx.id]
        assert records[marketing_email].status == "informational"

        assert store.get_email(dividend_email).extraction_status == ExtractionStatus.COMPLETED
        marketing = store.get_email(marketing_email)
        assert marketing.extraction_status == ExtractionStatus.INFORMATIONAL
        assert marketing.informational_notes == "Marketing"
        broken = store.get_email(broken_email)
        assert broken.extraction_status == ExtractionStatus.FAILED
        assert broken.extraction_error == "timeout"

        run = store.get_run(run.id)
        assert (run.emails_processed, run.error_count) == (3, 1)
        assert run.stats == {"canResume": True}

        coverage = store.get_run_coverage(run.id)
        assert coverage.covered_email_ids == {dividend_email, marketing_email}
        assert coverage.informational_count == 1
        assert coverage.transaction_count == 1

    def test_small_chunks_write_everything(self, ledger):
        set_id, email_ids = ledger.make_set([f"m{i}" for i in range(5)])
        run, _ = start_run(ledger, set_id, total_items=5)

        ledger.store.commit_batch(
            BatchWrite(
                run_id=run.id,
                extraction_records=[extraction_record(e) for e in email_ids],
                status_updates=[
                    SourceStatusUpdate(e, ExtractionStatus.INFORMATIONAL) for e in email_ids
                ],
            ),
            chunk_size=2,
        )

        assert len(ledger.store.list_extraction_records(run.id)) == 5
        assert all(
            e.extraction_status == ExtractionStatus.INFORMATIONAL
            for e in ledger.store.list_emails(set_id)
        )

    def test_failure_leaves_nothing_behind(self, ledger):
        """A duplicate extraction record aborts the whole flush."""
        set_id, (email_id,) = ledger.make_set(["only"])
        run, _ = start_run(ledger, set_id)
        store = ledger.store
        store.commit_batch(BatchWrite(run_id=run.id, extraction_records=[extraction_record(email_id)]))

        tx = normalize_transaction(
            TransactionCandidate.from_dict({"transactionType": "fee", "amount": 2}), "acc-2"
        )
        with pytest.raises(sqlite3.IntegrityError):
            store.commit_batch(
                BatchWrite(
                    run_id=run.id,
                    new_accounts=[NewAccount(id="acc-2", display_name="Checking")],
                    transactions=[(email_id, tx)],
                    extraction_records=[extraction_record(email_id)],
                    status_updates=[SourceStatusUpdate(email_id, ExtractionStatus.COMPLETED)],
                    counters=RunCounters(emails_processed=1, transactions_created=1),
                )
            )

        assert store.get_account("acc-2") is None
        assert store.list_transactions(run_id=run.id) == []
        assert store.get_email(email_id).extraction_status == ExtractionStatus.PENDING
        assert store.get_run(run.id).transactions_created == 0


class TestAccountsAndLogs:
    """Tests for corpus suggestions, logs and stats."""

    def test_corpus_suggestions_skip_reversed_pairs(self, ledger):
        set_id, _ = ledger.make_set(["a"])
        run, _ = start_run(ledger, set_id)
        ledger.store.commit_batch(
            BatchWrite(
                run_id=run.id,
                new_accounts=[
                    NewAccount(id="a1", display_name="MAS Trust"),
                    NewAccount(id="a2", display_name="MAS Family Trust"),
                ],
            )
        )

        first = ledger.store.add_corpus_suggestions(
            [CorpusSuggestion(account_id1="a1", account_id2="a2", reason="r", confidence=0.6)]
        )
        second = ledger.store.add_corpus_suggestions(
            [CorpusSuggestion(account_id1="a2", account_id2="a1", reason="r", confidence=0.6)]
        )

        assert (first, second) == (1, 0)
        assert len(ledger.store.list_corpus_suggestions(status="pending")) == 1

    def test_extraction_log(self, store):
        store.log_extraction_error(
            email_id="e1",
            message="Ollama request timed out after 120s",
            error_type="timeout",
            run_id="r1",
            metadata={"model_id": TEST_MODEL},
        )

        (entry,) = store.list_extraction_logs(run_id="r1")
        assert entry.error_type == "timeout"
        assert entry.level == "error"
        assert entry.metadata == {"model_id": TEST_MODEL}
        assert store.list_extraction_logs(run_id="other") == []

    def test_stats(self, ledger):
        ledger.make_set(["a", "b"])

        stats = ledger.store.get_stats()

        assert stats["emails_total"] == 2
        assert stats["emails_by_status"] == {"pending": 2}
        assert stats["accounts"] == 0
        assert stats["transactions"] == 0
