"""Tests for progress events and run controls."""

import asyncio

import pytest

from email_ledger.services.progress import (
    BatchCommittedEvent,
    CompletedEvent,
    ErrorEvent,
    EventType,
    JobRegistry,
    ProgressUpdate,
    RegistryEntry,
    RunControl,
    StartedEvent,
)
from email_ledger.state_store import JobStatus, RunCounters


@pytest.fixture
def running_job(ledger):
    set_id, _ = ledger.make_set(["a"])
    run, job = ledger.store.create_run_with_job(
        set_id=set_id,
        model_id=ledger.model_id,
        prompt_id=ledger.prompt_id,
        prompt_hash=None,
        software_version="0.3.0",
        total_items=1,
    )
    return ledger.store, run, job


class TestEvents:
    """Wire form of progress events."""

    def test_started_to_dict(self):
        event = StartedEvent(
            job_id="j1",
            run_id="r1",
            total_items=10,
            model_id="m",
            is_resume=True,
            already_processed=4,
        )

        assert event.to_dict() == {
            "type": "started",
            "jobId": "j1",
            "runId": "r1",
            "totalItems": 10,
            "modelId": "m",
            "isResume": True,
            "alreadyProcessed": 4,
        }
        assert not event.is_terminal

    def test_progress_and_batch_keys(self):
        progress = ProgressUpdate(
            processed_items=2,
            total_items=3,
            failed_items=0,
            informational_items=1,
            transactions_found=1,
        ).to_dict()
        batch = BatchCommittedEvent(
            transactions_committed=1,
            total_transactions_committed=4,
            processed_items=2,
            total_items=3,
        ).to_dict()

        assert progress["type"] == "progress"
        assert progress["transactionsFound"] == 1
        assert batch["type"] == "batch_committed"
        assert batch["totalTransactionsCommitted"] == 4

    def test_terminal_events(self):
        completed = CompletedEvent(
            run_id="r1", transactions_created=1, emails_processed=3, processing_time_ms=50
        )
        error = ErrorEvent(error="Job cancelled")

        assert completed.is_terminal
        assert completed.type == EventType.COMPLETED
        assert error.is_terminal
        assert error.to_dict() == {"type": "error", "error": "Job cancelled"}


class TestRunControl:
    """Tests for the pause/cancel checkpoint."""

    def test_continue_when_running(self, running_job):
        store, run, job = running_job
        control = RunControl(store, job.id, run.id, poll_interval=0.01)

        assert asyncio.run(control.checkpoint()) is True

    def test_in_process_cancel(self, running_job):
        store, run, job = running_job
        control = RunControl(store, job.id, run.id, poll_interval=0.01)

        control.cancel()

        assert control.cancel_requested
        assert asyncio.run(control.checkpoint()) is False

    def test_persisted_cancel(self, running_job):
        """Another process flipping the job row is observed."""
        store, run, job = running_job
        control = RunControl(store, job.id, run.id, poll_interval=0.01)

        store.cancel_job(job.id)

        assert asyncio.run(control.checkpoint()) is False

    def test_pause_blocks_until_resumed(self, running_job):
        store, run, job = running_job
        control = RunControl(store, job.id, run.id, poll_interval=0.01)
        store.pause_job(job.id)

        async def scenario():
            waiter = asyncio.create_task(control.checkpoint())
            await asyncio.sleep(0.05)
            blocked = not waiter.done()
            store.unpause_job(job.id)
            return blocked, await asyncio.wait_for(waiter, timeout=2)

        blocked, result = asyncio.run(scenario())

        assert blocked
        assert result is True

    def test_cancel_while_paused(self, running_job):
        store, run, job = running_job
        control = RunControl(store, job.id, run.id, poll_interval=0.01)
        store.pause_job(job.id)

        async def scenario():
            waiter = asyncio.create_task(control.checkpoint())
            await asyncio.sleep(0.03)
            control.cancel()
            return await asyncio.wait_for(waiter, timeout=2)

        assert asyncio.run(scenario()) is False
        assert store.get_job_status(job.id) == JobStatus.PAUSED


class TestJobRegistry:
    """Tests for the in-process job table."""

    def test_register_and_update(self, running_job):
        store, run, job = running_job
        registry = JobRegistry()
        control = RunControl(store, job.id, run.id)

        registry.register(
            RegistryEntry(job_id=job.id, run_id=run.id, control=control, total_items=3)
        )
        counters = RunCounters(emails_processed=2)
        registry.update_counters(job.id, counters)
        counters.emails_processed = 99

        assert len(registry) == 1
        assert registry.active_job_ids() == [job.id]
        assert registry.get(job.id).counters.emails_processed == 2

    def test_unregister(self, running_job):
        store, run, job = running_job
        registry = JobRegistry()
        registry.register(
            RegistryEntry(
                job_id=job.id, run_id=run.id, control=RunControl(store, job.id, run.id), total_items=1
            )
        )

        registry.unregister(job.id)
        registry.unregister(job.id)
        registry.update_counters(job.id, RunCounters())

        assert registry.get(job.id) is None
        assert len(registry) == 0
