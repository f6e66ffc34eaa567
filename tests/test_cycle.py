import pytest

from conftest import mint_event
from mint_orchestrator.services.cycle import ScheduledCycle, run_cycle
from mint_orchestrator.services.errors import StoreUnavailableError
from mint_orchestrator.services.process_state import ProcessState
from mint_orchestrator.services.task_store import TaskStatus


@pytest.mark.asyncio
async def test_cycle_scans_processes_and_persists(orchestrator, event_source):
    await orchestrator.state_store.save(ProcessState(last_processed_block=100))
    event_source.head = 200
    event_source.events = [mint_event(1, 120), mint_event(2, 150)]

    summary = await run_cycle(orchestrator)

    assert summary.new_events_found == 2
    assert summary.new_tasks_created == 2
    assert summary.tasks_processed == 2
    assert summary.pending_tasks_remaining == 0
    assert summary.last_processed_block == 200
    assert summary.total_processed_subjects == 2
    assert summary.scan_error is None
    assert summary.execution_time_ms >= 0

    state = await orchestrator.state_store.load()
    assert state.last_processed_block == 200
    assert state.processed_subjects == {"1", "2"}
    assert state.pending_tasks == []

    tasks = await orchestrator.task_store.list_tasks()
    assert {task.status for task in tasks} == {TaskStatus.COMPLETED}


@pytest.mark.asyncio
async def test_cycle_with_nothing_new_still_moves_cursor(orchestrator, event_source):
    await orchestrator.state_store.save(ProcessState(last_processed_block=100))
    event_source.head = 140

    summary = (await run_cycle(orchestrator)).to_dict()

    assert summary["new_events_found"] == 0
    assert summary["new_tasks_created"] == 0
    assert summary["tasks_processed"] == 0
    assert summary["last_processed_block"] == 140
    assert (await orchestrator.state_store.load()).last_processed_block == 140


@pytest.mark.asyncio
async def test_backlog_is_drained_across_cycles(orchestrator, event_source):
    await orchestrator.state_store.save(ProcessState(last_processed_block=100))
    event_source.head = 110
    event_source.events = [mint_event(subject, 101 + subject) for subject in range(5)]

    first = await run_cycle(orchestrator)
    assert first.new_tasks_created == 5
    assert first.tasks_processed == 3
    assert first.pending_tasks_remaining == 2

    second = await run_cycle(orchestrator)
    assert second.new_events_found == 0
    assert second.tasks_processed == 2
    assert second.pending_tasks_remaining == 0


@pytest.mark.asyncio
async def test_store_outage_aborts_without_saving(orchestrator, event_source, monkeypatch):
    await orchestrator.state_store.save(ProcessState(last_processed_block=100))
    event_source.head = 200
    event_source.events = [mint_event(1, 120)]

    async def unavailable(*args, **kwargs):
        raise StoreUnavailableError("redis create_task failed: connection refused")

    monkeypatch.setattr(orchestrator.task_store, "create_task", unavailable)

    with pytest.raises(StoreUnavailableError):
        await ScheduledCycle(orchestrator).run()

    state = await orchestrator.state_store.load()
    assert state.last_processed_block == 100
    assert state.pending_tasks == []
