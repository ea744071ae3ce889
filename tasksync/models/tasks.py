from datetime import datetime
from enum import Enum

from pydantic import BaseModel, computed_field

TASK_KIND = "tasks#task"
TASK_LIST_KIND = "tasks#taskList"

# Tasks created without a remote client carry these ids until they are exported.
LOCAL_LIST_ID = "local"
LOCAL_ID_PREFIX = "local-"


class TaskStatus(str, Enum):
    NEEDS_ACTION = "needsAction"
    COMPLETED = "completed"
    DELETED = "deleted"  # transient, drives a remote delete only


class Task(BaseModel):
    """A task or, when ``kind`` is ``tasks#taskList``, a whole list.

    Timestamps use ``None`` for "unset". ``tasks`` holds the owned children in
    sibling order.
    """

    id: str = ""
    title: str = ""
    notes: str | None = None
    status: TaskStatus = TaskStatus.NEEDS_ACTION
    due_date: datetime | None = None
    created_at: datetime | None = None
    updated: datetime | None = None
    completed_date: datetime | None = None
    parent: str = ""
    position: str = ""
    kind: str = TASK_KIND
    etag: str | None = None
    tasks: list["Task"] = []

    @computed_field
    @property
    def completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def is_list(self) -> bool:
        return self.kind == TASK_LIST_KIND

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)


class Snapshot(BaseModel):
    tasks: list[Task] = []
    last_sync: datetime | None = None


class TaskListInfo(BaseModel):
    id: str
    title: str
    task_count: int = 0


class CreateTaskRequest(BaseModel):
    title: str
    notes: str | None = None
    due_date: datetime | None = None
    parent_id: str | None = None


class UpdateTaskRequest(BaseModel):
    title: str | None = None
    notes: str | None = None
    due_date: datetime | None = None
    clear_due_date: bool = False


class SyncStatusResponse(BaseModel):
    state: str
    running: bool
    last_sync: datetime | None = None
    last_run: datetime | None = None
    last_error: str | None = None
    notifications_published: int = 0
    notifications_dropped: int = 0


class ChangeEvent(BaseModel):
    changed: bool
    last_sync: datetime | None = None
