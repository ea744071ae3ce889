import threading

import pytest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from tasksync.exceptions import RemoteUnavailable
from tasksync.models.tasks import TASK_LIST_KIND, Task
from tasksync.services.cache import SyncCache
from tasksync.services.notify import ObserverChannel
from tasksync.services.storage import LocalStore
from tasksync.services.sync import SyncEngine
from tasksync.services.workspace import TaskWorkspace


# --- Canned API responses ---

TASKLIST_API_ITEM = {
    "kind": "tasks#taskList",
    "id": "list1",
    "etag": '"etag-list1"',
    "title": "My Tasks",
    "updated": "2025-01-01T00:00:00.000Z",
}

TASKLISTS_API_LIST = {"kind": "tasks#taskLists", "items": [TASKLIST_API_ITEM]}

TASK_API_ITEM = {
    "kind": "tasks#task",
    "id": "taskA",
    "etag": '"etag-a"',
    "title": "Write report",
    "updated": "2025-01-02T10:00:00.000Z",
    "parent": "",
    "position": "00000000000000000001",
    "notes": "Quarterly numbers",
    "status": "needsAction",
    "due": "2025-01-10T00:00:00.000Z",
}

SUBTASK_API_ITEM = {
    "kind": "tasks#task",
    "id": "taskB",
    "etag": '"etag-b"',
    "title": "Collect data",
    "updated": "2025-01-02T11:00:00.000Z",
    "parent": "taskA",
    "position": "00000000000000000000",
    "status": "completed",
    "completed": "2025-01-03T09:30:00.000Z",
}

TASKS_API_LIST = {"kind": "tasks#tasks", "items": [TASK_API_ITEM, SUBTASK_API_ITEM]}


# --- Fakes ---

class FakeTasksClient:
    """In-memory stand-in for TasksClient used by engine and workspace tests."""

    def __init__(self, lists: dict[str, list[Task]] | None = None):
        self.lists: dict[str, list[Task]] = lists or {}
        self.titles: dict[str, str] = {list_id: list_id.title() for list_id in self.lists}
        self.failing_lists: set[str] = set()
        self.lists_unavailable = False
        self.list_lists_calls = 0
        self.on_list_lists = None
        self.create_calls: list[tuple[Task, str, str | None]] = []
        self.create_failures: list[Exception] = []
        self.created_count = 0

    def list_lists(self) -> list[Task]:
        self.list_lists_calls += 1
        if self.on_list_lists is not None:
            self.on_list_lists()
        if self.lists_unavailable:
            raise RemoteUnavailable("network down")
        return [
            Task(id=list_id, title=self.titles.get(list_id, list_id), kind=TASK_LIST_KIND)
            for list_id in self.lists
        ]

    def list_tasks(self, list_id: str = "@default") -> list[Task]:
        if list_id in self.failing_lists:
            raise RemoteUnavailable(f"list {list_id} unavailable")
        return [t.model_copy(deep=True) for t in self.lists[list_id]]

    def create_task(self, task: Task, list_id: str = "@default", previous: str | None = None) -> Task:
        if self.create_failures:
            raise self.create_failures.pop(0)
        self.created_count += 1
        created = task.model_copy(
            update={"id": f"remote{self.created_count}", "position": str(self.created_count).zfill(20)}
        )
        self.lists[list_id].append(created.model_copy(update={"tasks": []}))
        self.create_calls.append((created, list_id, previous))
        return created


class BlockingCall:
    """Callable that parks the calling thread until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self):
        self.entered.set()
        assert self.release.wait(5), "blocking call was never released"


# --- Fixtures ---

@pytest.fixture
def mock_tasks_credentials(mocker):
    return mocker.patch("tasksync.services.tasks.get_tasks_credentials", return_value=MagicMock())


@pytest.fixture
def mock_tasks_build(mocker):
    mock_svc = MagicMock()
    mocker.patch("tasksync.services.tasks.build", return_value=mock_svc)
    return mock_svc


@pytest.fixture
def mock_tasks_service(mock_tasks_credentials, mock_tasks_build):
    """Fully mocked Tasks API service."""
    return mock_tasks_build


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "tasks_cache.json")


@pytest.fixture
def channel():
    return ObserverChannel(maxsize=10)


@pytest.fixture
def fake_client():
    return FakeTasksClient(
        {
            "list1": [
                Task(id="a", title="A", position="1"),
                Task(id="b", title="B", parent="a", position="1"),
                Task(id="c", title="C", parent="a", position="0"),
            ],
            "list2": [Task(id="d", title="D", position="0")],
        }
    )


@pytest.fixture
def engine(fake_client, store, channel):
    return SyncEngine(fake_client, SyncCache(), store, channel, interval=0.05)


@pytest.fixture
def local_workspace(store):
    """Workspace with no remote client and a stopped engine."""
    cache = SyncCache()
    engine = SyncEngine(None, cache, store, ObserverChannel())
    return TaskWorkspace(cache, store, client=None, engine=engine)


@pytest.fixture
def api_client(local_workspace):
    """FastAPI TestClient for router tests, wired to a local-only workspace."""
    from tasksync.main import api

    api.state.workspace = local_workspace
    api.state.engine = local_workspace.engine
    return TestClient(api)
