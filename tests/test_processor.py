from datetime import timedelta

import httpx
import pytest

from conftest import RecordingRegistrar
from mint_orchestrator.services.errors import StageError, TransientStageError
from mint_orchestrator.services.process_state import PendingTaskRef, ProcessState
from mint_orchestrator.services.processor import BatchProcessor, RetryPolicy
from mint_orchestrator.services.task_store import TaskStatus
from mint_orchestrator.services.task_store.base import utc_now


async def queue_subjects(task_store, state, subjects, provider="stub"):
    ids = []
    for subject in subjects:
        task_id = await task_store.create_task(subject, provider, {"breed": "Tabby"})
        state.enqueue(PendingTaskRef(subject_id=subject, task_id=task_id, params={"breed": "Tabby"}))
        ids.append(task_id)
    return ids


class FrozenNow:
    def __init__(self):
        self.value = utc_now()

    def __call__(self):
        return self.value


@pytest.mark.asyncio
async def test_processes_at_most_max_tasks_per_run(task_store, executor):
    state = ProcessState()
    ids = await queue_subjects(task_store, state, ["1", "2", "3", "4", "5"])

    result = await BatchProcessor(task_store, executor, max_tasks=3).process(state)

    assert result.tasks_processed == 3
    assert [ref.task_id for ref in state.pending_tasks] == ids[3:]
    assert state.processed_subjects == {"1", "2", "3"}
    for task_id in ids[:3]:
        assert (await task_store.get_task_status(task_id)).status is TaskStatus.COMPLETED
    for task_id in ids[3:]:
        assert (await task_store.get_task_status(task_id)).status is TaskStatus.PENDING


@pytest.mark.asyncio
async def test_stage_failure_fails_task_and_drops_entry(task_store, executor, collaborators):
    collaborators.synthesizers["stub"].errors["token-3"] = StageError("content policy violation")
    state = ProcessState()
    ids = await queue_subjects(task_store, state, ["1", "2", "3", "4", "5"])

    result = await BatchProcessor(task_store, executor, max_tasks=3).process(state)

    failed = await task_store.get_task_status(ids[2])
    assert failed.status is TaskStatus.FAILED
    assert failed.error.startswith("asset synthesis failed")
    assert "content policy violation" in failed.error
    # Progress reached the synthesis checkpoint and stayed there
    assert failed.progress == 40

    assert result.tasks_processed == 2
    assert result.tasks_failed == 1
    assert [ref.task_id for ref in state.pending_tasks] == ids[3:]
    assert "3" not in state.processed_subjects


@pytest.mark.asyncio
async def test_transient_failure_keeps_entry_with_backoff(task_store, executor, collaborators):
    synthesizer = collaborators.synthesizers["stub"]
    synthesizer.errors["token-1"] = httpx.ConnectError("connection reset")
    now = FrozenNow()
    processor = BatchProcessor(
        task_store,
        executor,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=60),
        now=now,
    )
    state = ProcessState()
    (task_id,) = await queue_subjects(task_store, state, ["1"])

    result = await processor.process(state)

    assert result.tasks_retried == 1
    ref = state.pending_tasks[0]
    assert ref.attempts == 1
    assert ref.next_attempt_at == now.value + timedelta(seconds=60)
    task = await task_store.get_task_status(task_id)
    assert task.status is TaskStatus.IN_PROGRESS
    assert "will retry" in task.message

    # Not due yet: skipped without running the pipeline
    prompts_before = len(synthesizer.prompts)
    result = await processor.process(state)
    assert result.tasks_processed == 0
    assert len(synthesizer.prompts) == prompts_before

    # Once due, the retry succeeds and progress never went backwards
    del synthesizer.errors["token-1"]
    now.value += timedelta(seconds=61)
    result = await processor.process(state)
    assert result.tasks_processed == 1
    assert state.pending_tasks == []
    task = await task_store.get_task_status(task_id)
    assert task.status is TaskStatus.COMPLETED
    progress = [entry["progress"] for entry in task.history]
    assert progress == sorted(progress)


@pytest.mark.asyncio
async def test_entries_waiting_for_backoff_do_not_use_the_run_budget(task_store, executor):
    now = FrozenNow()
    state = ProcessState()
    ids = await queue_subjects(task_store, state, ["1", "2"])
    state.pending_tasks[0].next_attempt_at = now.value + timedelta(minutes=5)

    result = await BatchProcessor(task_store, executor, max_tasks=1, now=now).process(state)

    assert result.tasks_processed == 1
    assert [ref.task_id for ref in state.pending_tasks] == [ids[0]]


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_fails_task(task_store, executor, collaborators):
    collaborators.synthesizers["stub"].errors["token-1"] = TransientStageError("rate limited")
    state = ProcessState()
    (task_id,) = await queue_subjects(task_store, state, ["1"])
    state.pending_tasks[0].attempts = 2

    result = await BatchProcessor(
        task_store,
        executor,
        retry_policy=RetryPolicy(max_attempts=3),
    ).process(state)

    assert result.tasks_failed == 1
    assert state.pending_tasks == []
    task = await task_store.get_task_status(task_id)
    assert task.status is TaskStatus.FAILED
    assert "after 3 attempts" in task.message


@pytest.mark.asyncio
async def test_stale_entries_are_removed(task_store, executor):
    state = ProcessState()
    done, failed, live = await queue_subjects(task_store, state, ["1", "2", "3"])
    await task_store.complete_task(done, {"token_uri": "ipfs://x"})
    await task_store.fail_task(failed, "gave up")
    state.enqueue(PendingTaskRef(subject_id="4", task_id="vanished"))

    result = await BatchProcessor(task_store, executor, max_tasks=3).process(state)

    assert result.stale_removed == 3
    assert result.tasks_processed == 1
    assert state.pending_tasks == []
    # Completed subjects found on the queue count as processed
    assert state.processed_subjects == {"1", "3"}


@pytest.mark.asyncio
async def test_timed_out_task_is_removed_without_running(task_store, executor, collaborators):
    state = ProcessState()
    task_id = await task_store.create_task("1", "stub", timeout_seconds=60)
    state.enqueue(PendingTaskRef(subject_id="1", task_id=task_id))
    await task_store.update_task(task_id, timeout_at=utc_now() - timedelta(seconds=1))

    result = await BatchProcessor(task_store, executor).process(state)

    assert result.stale_removed == 1
    assert state.pending_tasks == []
    assert (await task_store.get_task(task_id)).status is TaskStatus.TIMEOUT
    assert collaborators.synthesizers["stub"].prompts == []


@pytest.mark.asyncio
async def test_already_processed_subject_completes_as_skipped(task_store, executor):
    state = ProcessState(processed_subjects={"1"})
    (task_id,) = await queue_subjects(task_store, state, ["1"])

    result = await BatchProcessor(task_store, executor).process(state)

    assert result.tasks_skipped == 1
    task = await task_store.get_task_status(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == {"skipped": True, "subject_id": "1"}


@pytest.mark.asyncio
async def test_stops_when_time_budget_is_spent(task_store, executor):
    state = ProcessState()
    await queue_subjects(task_store, state, ["1", "2"])

    result = await BatchProcessor(
        task_store,
        executor,
        max_seconds=25,
        clock=lambda: 30.0,
    ).process(state, started=0.0)

    assert result.stopped_early
    assert result.tasks_processed == 0
    assert len(state.pending_tasks) == 2


def test_retry_policy_backoff_doubles():
    policy = RetryPolicy(max_attempts=4, backoff_seconds=10)
    now = utc_now()

    assert policy.next_attempt_at(1, now) == now + timedelta(seconds=10)
    assert policy.next_attempt_at(2, now) == now + timedelta(seconds=20)
    assert policy.next_attempt_at(3, now) == now + timedelta(seconds=40)
    assert not policy.exhausted(3)
    assert policy.exhausted(4)


@pytest.mark.asyncio
async def test_task_timed_out_during_registration_does_not_stop_the_batch(task_store, executor, collaborators):
    state = ProcessState()
    first, second = await queue_subjects(task_store, state, ["1", "2"])

    class TimingOutRegistrar(RecordingRegistrar):
        async def register(self, subject_id, locator):
            if subject_id == "1":
                # A status poll notices the deadline while the transaction is in flight
                await task_store.update_task(first, status=TaskStatus.TIMEOUT, message="Task timed out")
            return await super().register(subject_id, locator)

    collaborators.registrar = TimingOutRegistrar()

    result = await BatchProcessor(task_store, executor, max_tasks=3).process(state)

    assert result.stale_removed == 1
    assert result.tasks_processed == 1
    assert state.pending_tasks == []
    assert state.processed_subjects == {"2"}
    assert (await task_store.get_task(first)).status is TaskStatus.TIMEOUT
    assert (await task_store.get_task(second)).status is TaskStatus.COMPLETED
