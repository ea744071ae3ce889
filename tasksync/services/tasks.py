import logging
from datetime import datetime, timezone

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from tasksync.auth import get_tasks_credentials
from tasksync.exceptions import (
    AuthenticationError,
    IntegrationError,
    RateLimitError,
    RemoteUnavailable,
)
from tasksync.models.tasks import TASK_KIND, TASK_LIST_KIND, Task, TaskStatus

logger = logging.getLogger(__name__)

WIRE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"
PAGE_SIZE = 100

_TRANSPORT_ERRORS = (httplib2.HttpLib2Error, TransportError, OSError)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(WIRE_TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _handle_api_error(e: HttpError):
    if e.resp.status == 429:
        raise RateLimitError("Tasks API rate limit exceeded. Try again shortly.") from e
    if e.resp.status in (401, 403):
        raise AuthenticationError(
            "Tasks credentials expired or revoked. Visit /auth/tasks/setup to re-authenticate."
        ) from e
    raise IntegrationError(f"Tasks API error: {e}") from e


def _parse_task(item: dict) -> Task:
    return Task(
        id=item["id"],
        title=item.get("title", ""),
        notes=item.get("notes"),
        status=item.get("status", TaskStatus.NEEDS_ACTION.value),
        due_date=parse_timestamp(item.get("due")),
        updated=parse_timestamp(item.get("updated")),
        completed_date=parse_timestamp(item.get("completed")),
        parent=item.get("parent", ""),
        position=item.get("position", ""),
        kind=item.get("kind", TASK_KIND),
        etag=item.get("etag"),
    )


def _parse_list(item: dict) -> Task:
    return Task(
        id=item["id"],
        title=item.get("title", ""),
        updated=parse_timestamp(item.get("updated")),
        kind=TASK_LIST_KIND,
        etag=item.get("etag"),
    )


def to_wire(task: Task) -> dict:
    """Request body for ``task``. Read-only and unset fields are left out."""
    body: dict = {"title": task.title, "status": task.status.value}
    if task.id:
        body["id"] = task.id
    if task.notes is not None:
        body["notes"] = task.notes
    if task.due_date is not None:
        body["due"] = format_timestamp(task.due_date)
    if task.status == TaskStatus.COMPLETED:
        completed = task.completed_date or datetime.now(timezone.utc)
        body["completed"] = format_timestamp(completed)
    if task.parent:
        body["parent"] = task.parent
    if task.etag:
        body["etag"] = task.etag
    return body


class TasksClient:
    """Typed operations against the Google Tasks v1 API."""

    def __init__(self, service):
        self.service = service

    def _execute(self, request):
        try:
            return request.execute(num_retries=3)
        except HttpError as e:
            _handle_api_error(e)
        except RefreshError as e:
            raise AuthenticationError(f"Failed to refresh Tasks credentials: {e}") from e
        except _TRANSPORT_ERRORS as e:
            raise RemoteUnavailable(f"Tasks API unreachable: {e}") from e

    def _paginate(self, make_request) -> list[dict]:
        items: list[dict] = []
        page_token = None
        while True:
            result = self._execute(make_request(page_token)) or {}
            items.extend(result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    # --- Task Lists ---

    def list_lists(self) -> list[Task]:
        """All task lists as empty list containers, in the order the service returns them."""
        items = self._paginate(
            lambda token: self.service.tasklists().list(maxResults=PAGE_SIZE, pageToken=token)
        )
        return [_parse_list(item) for item in items]

    # --- Tasks ---

    def list_tasks(self, list_id: str = "@default") -> list[Task]:
        """Every task in a list, flat, with parent references. Completed and hidden tasks included."""
        items = self._paginate(
            lambda token: self.service.tasks().list(
                tasklist=list_id,
                maxResults=PAGE_SIZE,
                showCompleted=True,
                showHidden=True,
                showDeleted=False,
                pageToken=token,
            )
        )
        return [_parse_task(item) for item in items if not item.get("deleted")]

    def create_task(self, task: Task, list_id: str = "@default", previous: str | None = None) -> Task:
        """Insert ``task`` and return a copy carrying the remote id and position.

        Without ``previous`` the service puts the new task first among its siblings.
        """
        kwargs = {"tasklist": list_id, "body": to_wire(task)}
        if task.parent:
            kwargs["parent"] = task.parent
        if previous:
            kwargs["previous"] = previous
        created = self._execute(self.service.tasks().insert(**kwargs))
        logger.debug("Created task %s in list %s", created.get("id"), list_id)
        return task.model_copy(
            update={
                "id": created["id"],
                "position": created.get("position", ""),
                "parent": created.get("parent", ""),
                "etag": created.get("etag"),
                "updated": parse_timestamp(created.get("updated")),
                "kind": created.get("kind", TASK_KIND),
            }
        )

    def update_task(self, task: Task, list_id: str = "@default") -> None:
        if task.status == TaskStatus.DELETED:
            self.delete_task(task.id, list_id)
            return
        if not task.id:
            raise ValueError("Cannot update a task that has no remote id")
        self._execute(
            self.service.tasks().update(tasklist=list_id, task=task.id, body=to_wire(task))
        )

    def delete_task(self, task_id: str, list_id: str = "@default") -> None:
        self._execute(self.service.tasks().delete(tasklist=list_id, task=task_id))


def build_client(account: str = "default") -> TasksClient:
    """Load credentials and build the service. Every failure is a ``RemoteUnavailable``."""
    try:
        creds = get_tasks_credentials(account)
    except FileNotFoundError as e:
        raise AuthenticationError(str(e)) from e
    except RefreshError as e:
        raise AuthenticationError(f"Failed to refresh Tasks credentials: {e}") from e
    except RuntimeError as e:
        raise AuthenticationError(str(e)) from e
    except ValueError as e:
        raise AuthenticationError(f"Unreadable Tasks token: {e}") from e
    except _TRANSPORT_ERRORS as e:
        raise RemoteUnavailable(f"Could not refresh Tasks credentials: {e}") from e
    return TasksClient(build("tasks", "v1", credentials=creds, cache_discovery=False))
