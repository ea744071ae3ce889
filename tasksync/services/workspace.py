"""Single-task edits made on behalf of the user.

Each edit goes to the remote first, then to the workspace's own tree and the
cache file. The shared cache is left alone: the next reconciliation brings
it in line with the remote, and the workspace reloads from it when it does.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone

from tasksync.models.tasks import (
    LOCAL_ID_PREFIX,
    LOCAL_LIST_ID,
    TASK_LIST_KIND,
    Task,
    TaskListInfo,
    TaskStatus,
)
from tasksync.services.cache import SyncCache
from tasksync.services.storage import LocalStore
from tasksync.services.sync import SyncEngine
from tasksync.services.tasks import TasksClient
from tasksync.services.tree import TaskTree

logger = logging.getLogger(__name__)

_POSITION_WIDTH = 20


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _next_position(siblings: list[Task]) -> str:
    numeric = [int(s.position) for s in siblings if s.position.isdigit()]
    return str(max(numeric, default=-1) + 1).zfill(_POSITION_WIDTH)


class TaskWorkspace:
    def __init__(
        self,
        cache: SyncCache,
        store: LocalStore,
        client: TasksClient | None = None,
        engine: SyncEngine | None = None,
    ):
        self.cache = cache
        self.store = store
        self._client = client
        self.engine = engine
        self._lock = threading.RLock()
        self._tree = TaskTree()
        self._seen_sync: datetime | None = None
        self._reload()

    @property
    def client(self) -> TasksClient | None:
        """The workspace's own client, else whatever the engine has connected since."""
        if self._client is None and self.engine is not None:
            return self.engine.client
        return self._client

    @property
    def local_only(self) -> bool:
        return self.client is None

    # --- Reading ---

    def _reload(self) -> None:
        snapshot = self.cache.read()
        with self._lock:
            self._tree = TaskTree.from_forest(snapshot.tasks)
            self._seen_sync = snapshot.last_sync

    def refresh(self) -> bool:
        """Reload from the cache if a reconciliation replaced it since the last load."""
        last_sync = self.cache.last_sync
        if last_sync is not None and (self._seen_sync is None or last_sync > self._seen_sync):
            logger.debug("Cache replaced at %s, reloading workspace", last_sync)
            self._reload()
            return True
        return False

    def forest(self) -> list[Task]:
        self.refresh()
        with self._lock:
            return self._tree.to_forest()

    def lists(self) -> list[TaskListInfo]:
        self.refresh()
        with self._lock:
            return [
                TaskListInfo(id=r.id, title=r.title, task_count=len(self._tree.children(r.id)))
                for r in self._tree.roots()
            ]

    def get(self, task_id: str) -> Task:
        self.refresh()
        with self._lock:
            return self._tree.subtree(task_id)

    # --- Mutations ---

    def _commit(self) -> None:
        with self._lock:
            self.store.save(self._tree.to_forest())
        if self.engine is not None:
            self.engine.request_sync()

    def _ensure_local_list(self, list_id: str) -> str:
        with self._lock:
            if list_id in self._tree:
                return list_id
            if not self.local_only:
                return list_id
            if LOCAL_LIST_ID not in self._tree:
                self._tree = TaskTree.from_forest(
                    self._tree.to_forest()
                    + [Task(id=LOCAL_LIST_ID, title="Tasks", kind=TASK_LIST_KIND, created_at=_now())]
                )
            return LOCAL_LIST_ID

    def create_task(
        self,
        list_id: str,
        title: str,
        notes: str | None = None,
        due_date: datetime | None = None,
        parent_id: str | None = None,
    ) -> Task:
        if not title.strip():
            raise ValueError("Task title must not be empty")
        self.refresh()
        with self._lock:
            if parent_id:
                if self._tree.get(parent_id).is_list:
                    raise ValueError(f"{parent_id} is a task list, not a task")
                list_id = self._tree.list_id_of(parent_id)
            else:
                list_id = self._ensure_local_list(list_id)
            owner = parent_id or list_id
            owner_is_local = owner == LOCAL_LIST_ID or self._tree.get(owner).is_local
            siblings = self._tree.children(owner)
        task = Task(
            title=title,
            notes=notes,
            due_date=due_date,
            parent=parent_id or "",
            created_at=_now(),
        )
        if self.client is not None and not owner_is_local:
            task = self.client.create_task(task, list_id)
        else:
            if self.client is not None and self.engine is not None:
                # Parent not exported yet; the next cycle exports both.
                self.engine.request_export()
            task = task.model_copy(
                update={
                    "id": LOCAL_ID_PREFIX + uuid.uuid4().hex,
                    "position": _next_position(siblings),
                    "updated": _now(),
                }
            )
        with self._lock:
            self._tree.insert(task, owner)
        logger.info("Created task %s in list %s", task.id, list_id)
        self._commit()
        return task

    def _update(self, task_id: str, **changes) -> Task:
        self.refresh()
        with self._lock:
            current = self._tree.get(task_id)
            if current.is_list:
                raise ValueError(f"{task_id} is a task list, not a task")
            list_id = self._tree.list_id_of(task_id)
        updated = current.model_copy(update={**changes, "updated": _now()})
        if self.client is not None and not current.is_local:
            self.client.update_task(updated, list_id)
        with self._lock:
            self._tree.replace(updated)
            result = self._tree.subtree(task_id)
        self._commit()
        return result

    def edit(
        self,
        task_id: str,
        title: str | None = None,
        notes: str | None = None,
        due_date: datetime | None = None,
        clear_due_date: bool = False,
    ) -> Task:
        """Apply several field edits with a single remote update. ``None`` leaves a field alone."""
        changes: dict = {}
        if title is not None:
            if not title.strip():
                raise ValueError("Task title must not be empty")
            changes["title"] = title
        if notes is not None:
            changes["notes"] = notes or None
        if clear_due_date:
            changes["due_date"] = None
        elif due_date is not None:
            changes["due_date"] = due_date
        if not changes:
            return self.get(task_id)
        return self._update(task_id, **changes)

    def rename(self, task_id: str, title: str) -> Task:
        if not title.strip():
            raise ValueError("Task title must not be empty")
        return self._update(task_id, title=title)

    def edit_notes(self, task_id: str, notes: str | None) -> Task:
        return self._update(task_id, notes=notes or None)

    def set_due_date(self, task_id: str, due_date: datetime | None) -> Task:
        return self._update(task_id, due_date=due_date)

    def toggle_completion(self, task_id: str) -> Task:
        self.refresh()
        with self._lock:
            current = self._tree.get(task_id)
        if current.status == TaskStatus.COMPLETED:
            return self._update(task_id, status=TaskStatus.NEEDS_ACTION, completed_date=None)
        return self._update(task_id, status=TaskStatus.COMPLETED, completed_date=_now())

    def delete_task(self, task_id: str) -> list[str]:
        """Delete a task and its subtasks. Returns every removed id."""
        self.refresh()
        with self._lock:
            current = self._tree.get(task_id)
            if current.is_list:
                raise ValueError(f"{task_id} is a task list, not a task")
            list_id = self._tree.list_id_of(task_id)
        if self.client is not None and not current.is_local:
            self.client.update_task(current.model_copy(update={"status": TaskStatus.DELETED}), list_id)
        with self._lock:
            removed = self._tree.remove(task_id)
        logger.info("Deleted task %s (%d removed)", task_id, len(removed))
        self._commit()
        return removed
