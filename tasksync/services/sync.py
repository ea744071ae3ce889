"""Background reconciliation of the remote task service into the local cache.

One cycle fetches every list and its tasks, rebuilds the forest, compares it
against the cached forest and, only when they differ, replaces the cache,
writes the cache file and publishes one ``TasksChanged`` event. The remote
always wins: the whole forest is replaced, nothing is merged.

Tasks created while no client was available are exported once a client
exists, before the first fetch, so the remote-wins replace cannot drop them.

Cycles never overlap. The timer drops a trigger that arrives while a cycle
is running; ``request_sync`` queues behind it and coalesces repeated calls
into a single extra pass.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from tasksync.exceptions import MalformedHierarchy, PersistenceFailure, RemoteUnavailable
from tasksync.models.tasks import LOCAL_LIST_ID, Snapshot, Task
from tasksync.services.cache import SyncCache
from tasksync.services.notify import ObserverChannel, TasksChanged
from tasksync.services.storage import LocalStore
from tasksync.services.tasks import TasksClient
from tasksync.services.tree import DEFAULT_MAX_DEPTH, build_forest, flatten

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


class _Exporter:
    """Creates local tasks on the remote, parents before children, keeping sibling order.

    The first failure stops further creates; tasks not yet created keep their local ids.
    """

    def __init__(self, client: TasksClient):
        self.client = client
        self.created = 0
        self.error: RemoteUnavailable | None = None

    def export(self, tasks: list[Task], list_id: str, parent_id: str = "") -> list[Task]:
        result: list[Task] = []
        previous = ""
        for task in tasks:
            if task.is_local and self.error is None:
                task = self._create(task, list_id, parent_id, previous)
            if task.is_local:
                result.append(task)
                continue
            previous = task.id
            result.append(task.model_copy(update={"tasks": self.export(task.tasks, list_id, task.id)}))
        return result

    def _create(self, task: Task, list_id: str, parent_id: str, previous: str) -> Task:
        try:
            created = self.client.create_task(
                task.model_copy(update={"id": "", "parent": parent_id, "tasks": []}),
                list_id,
                previous=previous or None,
            )
        except RemoteUnavailable as e:
            self.error = e
            logger.warning("Export of local task %s failed: %s", task.id, e)
            return task
        self.created += 1
        logger.debug("Exported local task %s as %s", task.id, created.id)
        return created.model_copy(update={"tasks": task.tasks})


class SyncEngine:
    def __init__(
        self,
        client: TasksClient | None,
        cache: SyncCache,
        store: LocalStore,
        channel: ObserverChannel,
        interval: float = 30.0,
        max_depth: int = DEFAULT_MAX_DEPTH,
        connect: Callable[[], TasksClient] | None = None,
    ):
        self.client = client
        self._connect = connect
        self.cache = cache
        self.store = store
        self.channel = channel
        self.interval = interval
        self.max_depth = max_depth

        self.state = SyncState.IDLE
        self.last_run: datetime | None = None
        self.last_error: str | None = None

        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: threading.Thread | None = None
        self._request_lock = threading.Lock()
        self._request_worker: threading.Thread | None = None
        self._request_pending = False
        self._export_pending = True

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    # --- One reconciliation ---

    def reconcile(self, wait: bool = False) -> bool:
        """Run one cycle. Returns True when the cache was replaced.

        With ``wait=False`` a cycle already in flight makes this a no-op. Without a
        client, each cycle first tries ``connect`` again.
        """
        if self.client is None and self._connect is None:
            logger.debug("No Tasks client configured, skipping reconciliation")
            return False
        if not self._cycle_lock.acquire(blocking=wait):
            logger.debug("Reconciliation already in flight, dropping trigger")
            return False
        try:
            if self.client is None and not self._connect_client():
                return False
            return self._run_cycle()
        finally:
            self.state = SyncState.IDLE
            self._cycle_lock.release()

    def _connect_client(self) -> bool:
        try:
            self.client = self._connect()
        except RemoteUnavailable as e:
            self.last_error = str(e)
            logger.debug("Tasks client still unavailable: %s", e)
            return False
        logger.info("Connected to Google Tasks")
        return True

    def _run_cycle(self) -> bool:
        self.last_run = datetime.now(timezone.utc)
        self.state = SyncState.FETCHING
        exported = 0
        if self._export_pending:
            exported = self._export_local()
            if exported is None:
                return False
            self._export_pending = False
        candidate = self._fetch()
        if candidate is None:
            return False
        if self._stop.is_set():
            logger.debug("Stop requested before reconciling, discarding fetched tasks")
            return False

        self.state = SyncState.RECONCILING
        now = datetime.now(timezone.utc)
        if self.cache.replace_if_changed(candidate, now):
            logger.info("Remote tasks changed, cache replaced (%d lists)", len(candidate))
            try:
                self.store.save(candidate)
            except PersistenceFailure as e:
                logger.warning("Could not persist synced tasks: %s", e)
        elif exported:
            now = self.cache.last_sync
        else:
            logger.debug("Remote tasks unchanged")
            return False
        self.channel.publish(TasksChanged(last_sync=now, list_count=len(candidate)))
        return True

    def _fetch(self) -> list[Task] | None:
        try:
            lists = self.client.list_lists()
        except RemoteUnavailable as e:
            self.last_error = str(e)
            logger.warning("Skipping sync cycle, task lists unavailable: %s", e)
            return None

        cached = {t.id: t for t in self.cache.read().tasks}
        candidate: list[Task] = []
        errors: list[str] = []
        for task_list in lists:
            if self._stop.is_set():
                return None
            try:
                candidate.append(self._fetch_list(task_list))
            except (RemoteUnavailable, MalformedHierarchy) as e:
                errors.append(f"{task_list.title or task_list.id}: {e}")
                logger.warning("Keeping cached copy of list %s: %s", task_list.id, e)
                previous = cached.get(task_list.id)
                if previous is not None:
                    candidate.append(previous)
        self.last_error = "; ".join(errors) or None
        return candidate

    def _fetch_list(self, task_list: Task) -> Task:
        items = self.client.list_tasks(task_list.id)
        try:
            forest = build_forest(items, self.max_depth)
        except MalformedHierarchy as e:
            logger.warning("List %s is malformed (%s), promoting unreachable tasks", task_list.id, e)
            forest = build_forest(items, self.max_depth, promote_unreachable=True)
        return task_list.model_copy(update={"tasks": forest})

    def _export_local(self) -> int | None:
        """Create tasks that only exist in the cache file on the remote.

        Tasks of the synthetic local list go to the first remote list. Returns the
        number created, or None while any local task is left, which holds back the fetch.
        """
        try:
            forest = self.store.load().tasks
        except PersistenceFailure as e:
            logger.warning("Cannot read cache file, nothing to export: %s", e)
            return 0
        if not any(t.is_local for t in flatten(forest)):
            return 0
        try:
            lists = self.client.list_lists()
        except RemoteUnavailable as e:
            self.last_error = str(e)
            logger.warning("Postponing export of local tasks: %s", e)
            return None
        if not lists:
            self.last_error = "No remote task list to export local tasks into"
            logger.warning(self.last_error)
            return None

        target_id = lists[0].id
        remote_ids = {tl.id for tl in lists}
        exporter = _Exporter(self.client)
        exported: list[Task] = []
        moved: list[Task] = []
        for task_list in forest:
            if task_list.id == LOCAL_LIST_ID:
                children = exporter.export(task_list.tasks, target_id)
                moved.extend(t for t in children if not t.is_local)
                remaining = [t for t in children if t.is_local]
                if remaining:
                    exported.append(task_list.model_copy(update={"tasks": remaining}))
            elif task_list.id in remote_ids:
                exported.append(
                    task_list.model_copy(update={"tasks": exporter.export(task_list.tasks, task_list.id)})
                )
            else:
                if any(t.is_local for t in flatten(task_list.tasks)):
                    logger.warning("List %s no longer exists remotely, its local tasks are dropped", task_list.id)
                exported.append(task_list)

        if moved:
            for i, task_list in enumerate(exported):
                if task_list.id == target_id:
                    exported[i] = task_list.model_copy(update={"tasks": task_list.tasks + moved})
                    break
            else:
                exported.insert(0, lists[0].model_copy(update={"tasks": moved}))

        if exporter.created:
            logger.info("Exported %d local tasks", exporter.created)
            self.cache.replace(Snapshot(tasks=exported, last_sync=datetime.now(timezone.utc)))
            try:
                self.store.save(exported)
            except PersistenceFailure as e:
                logger.warning("Could not persist exported task ids: %s", e)
        if exporter.error is not None:
            self.last_error = f"Export of local tasks failed: {exporter.error}"
            return None
        return exporter.created

    def request_export(self) -> None:
        """Have the next cycle look for local tasks again."""
        self._export_pending = True

    def _safe_reconcile(self, wait: bool = False) -> None:
        try:
            self.reconcile(wait=wait)
        except Exception:
            logger.exception("Unexpected error during background sync")

    # --- Timer ---

    def start(self, run_immediately: bool = True) -> None:
        if self.running:
            return
        self._stop.clear()
        self._timer = threading.Thread(
            target=self._poll, args=(run_immediately,), name="tasksync-poller", daemon=True
        )
        self._timer.start()
        logger.info("Background sync started (every %.0fs)", self.interval)

    def _poll(self, run_immediately: bool) -> None:
        if run_immediately:
            self._safe_reconcile()
        while not self._stop.wait(self.interval):
            self._safe_reconcile()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the timer. A cycle that is already reconciling runs to completion."""
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout)
            self._timer = None
        self.wait_for_requests(timeout)
        logger.info("Background sync stopped")

    # --- Coalesced on-demand passes ---

    def request_sync(self) -> None:
        """Schedule a detached full sync. Calls made while one is pending collapse into one."""
        with self._request_lock:
            if self._request_worker is not None:
                self._request_pending = True
                return
            self._request_pending = False
            self._request_worker = threading.Thread(
                target=self._serve_requests, name="tasksync-sync-request", daemon=True
            )
            self._request_worker.start()

    def _serve_requests(self) -> None:
        while True:
            self._safe_reconcile(wait=True)
            with self._request_lock:
                if not self._request_pending:
                    self._request_worker = None
                    return
                self._request_pending = False

    def wait_for_requests(self, timeout: float | None = None) -> None:
        with self._request_lock:
            worker = self._request_worker
        if worker is not None:
            worker.join(timeout)
