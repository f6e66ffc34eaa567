"""
Task endpoints: the scheduled cycle trigger, status polling and admin operations.
Every handler receives the orchestrator context through a dependency.
"""
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse

from mint_orchestrator.services.context import OrchestratorContext
from mint_orchestrator.services.cycle import run_cycle
from mint_orchestrator.services.errors import StoreUnavailableError, TaskNotFoundError
from mint_orchestrator.services.process_state import PendingTaskRef
from mint_orchestrator.services.task_store import TaskQuery, TaskStatus
from mint_orchestrator.services.task_store.base import utc_now

router = APIRouter()

_SUBJECT_RE = re.compile(r"^\d{1,78}$")


def get_context(request: Request) -> OrchestratorContext:
    return request.app.state.context


@router.api_route("/cron", methods=["GET", "POST"])
async def run_scheduled_cycle(context: OrchestratorContext = Depends(get_context)) -> Dict[str, Any]:
    """
    Run one scan-and-process cycle.

    Intended to be hit by the platform scheduler every minute. Scans new blocks
    for mint requests, queues a task per new token, advances up to
    MAX_TASKS_PER_RUN queued tasks within MAX_EXECUTION_SECONDS, and persists
    the cursor and queue.

    Returns:
        Cycle summary with counts, the new cursor and per-task result lines
    """
    summary = await run_cycle(context)
    return summary.to_dict()


@router.get("/status/{task_id}")
async def get_task_status(
    task_id: str = Path(..., max_length=100),
    minimal: bool = Query(default=False, description="Return only status, progress, message, result and updated_at"),
    context: OrchestratorContext = Depends(get_context),
) -> Dict[str, Any]:
    """
    Get the current status of a generation task.

    Use this endpoint to poll for task completion.
    Recommended: Poll every 2-5 seconds.

    Args:
        task_id: Task ID returned when the task was queued
        minimal: Return the reduced view

    Returns:
        Task status with result/error information
    """
    try:
        task = await context.task_store.get_task_status(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")

    return task.view(minimal=minimal)


@router.get("/tasks")
async def list_tasks(
    status: Optional[str] = Query(default=None, description="Task status filter"),
    subject_id: Optional[str] = Query(default=None, description="Token ID filter"),
    provider: Optional[str] = Query(default=None, description="Image provider filter"),
    created_after: Optional[datetime] = Query(default=None),
    created_before: Optional[datetime] = Query(default=None),
    min_progress: Optional[int] = Query(default=None, ge=0, le=100),
    limit: int = Query(default=50, ge=1, le=500),
    context: OrchestratorContext = Depends(get_context),
) -> Dict[str, Any]:
    """List tasks matching the given filters, newest first."""
    try:
        status_filter = TaskStatus(status.strip().upper()) if status else None
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status '{status}'. Available: {[s.value for s in TaskStatus]}",
        )

    tasks = await context.task_store.list_tasks(
        TaskQuery(
            status=status_filter,
            subject_id=subject_id,
            provider=provider,
            created_after=created_after,
            created_before=created_before,
            min_progress=min_progress,
            limit=limit,
        )
    )
    return {"tasks": [task.view(minimal=False) for task in tasks], "count": len(tasks)}


@router.post("/process/{subject_id}")
async def queue_subject(
    subject_id: str,
    force: bool = Query(default=False, description="Regenerate even if the token was already processed"),
    provider: Optional[str] = Query(default=None, description="Image provider (uses IMAGE_PROVIDER if not provided)"),
    breed: str = Query(default="Tabby", max_length=50),
    context: OrchestratorContext = Depends(get_context),
) -> Dict[str, Any]:
    """
    Manually queue generation for a token.

    The task is created immediately with a deadline of MANUAL_TASK_TIMEOUT_SECONDS
    and processed by the next scheduled cycle.
    """
    if not _SUBJECT_RE.match(subject_id):
        raise HTTPException(status_code=400, detail="Token ID must be a non-negative integer")

    provider = provider or context.settings.default_provider
    available = context.executor.collaborators.synthesizers
    if provider not in available:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown image provider '{provider}'. Available: {sorted(available)}",
        )

    state = await context.state_store.load()
    if subject_id in state.processed_subjects and not force:
        return {
            "status": "already_processed",
            "message": f"Token #{subject_id} has already been processed",
            "subject_id": subject_id,
        }

    params = {"breed": breed, "requester": "manual-request"}
    task_id = await context.task_store.create_task(
        subject_id,
        provider,
        {**params, "created_from": "manual", "force": force},
        timeout_seconds=context.settings.manual_task_timeout_seconds,
    )
    queued = state.enqueue(PendingTaskRef(subject_id=subject_id, task_id=task_id, params=params, force=force))
    await context.state_store.save(state)

    return {
        "status": "queued" if queued else "already_queued",
        "task_id": task_id,
        "subject_id": subject_id,
        "provider": provider,
        "breed": breed,
    }


@router.post("/reset-block/{block_number}")
async def reset_block(
    block_number: int = Path(..., ge=0),
    context: OrchestratorContext = Depends(get_context),
) -> Dict[str, Any]:
    """Reset the scanner cursor so the next cycle scans from ``block_number + 1``."""
    state = await context.state_store.reset_cursor(block_number)
    return {
        "success": True,
        "message": f"Last processed block reset to {block_number}",
        "last_processed_block": state.last_processed_block,
    }


@router.get("/metrics")
async def get_metrics(context: OrchestratorContext = Depends(get_context)) -> Dict[str, Any]:
    """Task counts per status and average completion time."""
    metrics = await context.task_store.get_metrics()
    state = await context.state_store.load()
    return {
        **metrics,
        "pending_queue_length": len(state.pending_tasks),
        "processed_subjects": len(state.processed_subjects),
        "last_processed_block": state.last_processed_block,
    }


@router.post("/cleanup")
async def cleanup_tasks(
    max_age_hours: float = Query(default=24.0, gt=0),
    context: OrchestratorContext = Depends(get_context),
) -> Dict[str, Any]:
    """Delete finished tasks that have not changed for ``max_age_hours``."""
    removed = await context.task_store.cleanup_tasks(timedelta(hours=max_age_hours))
    return {"removed": removed}


@router.get("/health")
async def health(context: OrchestratorContext = Depends(get_context)):
    """Queue length, scanner cursor and configured image providers. 503 when the state store is down."""
    body: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "default_provider": context.settings.default_provider,
        "available_providers": sorted(context.executor.collaborators.synthesizers),
    }
    try:
        state = await context.state_store.load()
    except StoreUnavailableError as exc:
        body.update(status="unhealthy", checks={"state_store": str(exc)})
        return JSONResponse(status_code=503, content=body)

    body.update(
        queue_length=len(state.pending_tasks),
        last_processed_block=state.last_processed_block,
        checks={"state_store": "ok"},
    )
    return body
