from fastapi import APIRouter, Depends, Request, Response

from tasksync.models.tasks import (
    ChangeEvent,
    CreateTaskRequest,
    SyncStatusResponse,
    Task,
    TaskListInfo,
    UpdateTaskRequest,
)
from tasksync.services.sync import SyncEngine
from tasksync.services.workspace import TaskWorkspace

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

MAX_EVENT_WAIT = 60.0


def get_workspace(request: Request) -> TaskWorkspace:
    return request.app.state.workspace


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


# --- Reading ---


@router.get("/")
def list_forest(workspace: TaskWorkspace = Depends(get_workspace)) -> list[Task]:
    return workspace.forest()


@router.get("/lists")
def list_task_lists(workspace: TaskWorkspace = Depends(get_workspace)) -> list[TaskListInfo]:
    return workspace.lists()


# --- Sync ---


@router.post("/sync")
def sync_now(engine: SyncEngine = Depends(get_engine)) -> dict:
    changed = engine.reconcile(wait=True)
    return {"changed": changed, "last_sync": engine.cache.last_sync, "error": engine.last_error}


@router.get("/sync/status")
def sync_status(engine: SyncEngine = Depends(get_engine)) -> SyncStatusResponse:
    return SyncStatusResponse(
        state=engine.state.value,
        running=engine.running,
        last_sync=engine.cache.last_sync,
        last_run=engine.last_run,
        last_error=engine.last_error,
        notifications_published=engine.channel.published,
        notifications_dropped=engine.channel.dropped,
    )


@router.get("/events/next")
def next_event(timeout: float = 25.0, engine: SyncEngine = Depends(get_engine)) -> ChangeEvent:
    """Long-poll until the next reconciliation changes the cache, or until ``timeout``."""
    event = engine.channel.wait(min(max(timeout, 0.0), MAX_EVENT_WAIT))
    if event is None:
        return ChangeEvent(changed=False, last_sync=engine.cache.last_sync)
    return ChangeEvent(changed=True, last_sync=event.last_sync)


# --- Tasks ---


@router.post("/lists/{list_id}/tasks", status_code=201)
def create_task(
    list_id: str, request: CreateTaskRequest, workspace: TaskWorkspace = Depends(get_workspace)
) -> Task:
    return workspace.create_task(
        list_id, request.title, request.notes, request.due_date, request.parent_id
    )


@router.get("/{task_id}")
def get_task(task_id: str, workspace: TaskWorkspace = Depends(get_workspace)) -> Task:
    return workspace.get(task_id)


@router.patch("/{task_id}")
def update_task(
    task_id: str, request: UpdateTaskRequest, workspace: TaskWorkspace = Depends(get_workspace)
) -> Task:
    return workspace.edit(
        task_id,
        title=request.title,
        notes=request.notes,
        due_date=request.due_date,
        clear_due_date=request.clear_due_date,
    )


@router.post("/{task_id}/toggle")
def toggle_task(task_id: str, workspace: TaskWorkspace = Depends(get_workspace)) -> Task:
    return workspace.toggle_completion(task_id)


@router.delete("/{task_id}", status_code=204)
def delete_task(task_id: str, workspace: TaskWorkspace = Depends(get_workspace)):
    workspace.delete_task(task_id)
    return Response(status_code=204)
