from tasksync.exceptions import AuthenticationError, RemoteUnavailable
from tasksync.services.workspace import LOCAL_LIST_ID


def _create(api_client, title="Write tests", **body):
    response = api_client.post(f"/api/tasks/lists/{LOCAL_LIST_ID}/tasks", json={"title": title, **body})
    assert response.status_code == 201
    return response.json()


class TestTaskRoutes:
    def test_empty_forest(self, api_client):
        response = api_client.get("/api/tasks/")
        assert response.status_code == 200
        assert response.json() == []

    def test_create_and_read(self, api_client):
        created = _create(api_client, notes="soon", due_date="2025-02-01T00:00:00Z")
        assert created["completed"] is False
        assert created["due_date"].startswith("2025-02-01T00:00:00")

        forest = api_client.get("/api/tasks/").json()
        assert forest[0]["id"] == LOCAL_LIST_ID
        assert forest[0]["tasks"][0]["title"] == "Write tests"

        lists = api_client.get("/api/tasks/lists").json()
        assert lists == [{"id": LOCAL_LIST_ID, "title": "Tasks", "task_count": 1}]

    def test_create_subtask(self, api_client):
        parent = _create(api_client, "Parent")
        child = _create(api_client, "Child", parent_id=parent["id"])
        fetched = api_client.get(f"/api/tasks/{parent['id']}").json()
        assert [t["id"] for t in fetched["tasks"]] == [child["id"]]
        assert child["parent"] == parent["id"]

    def test_patch_fields(self, api_client):
        task = _create(api_client, due_date="2025-02-01T00:00:00Z")
        response = api_client.patch(
            f"/api/tasks/{task['id']}", json={"title": "Renamed", "notes": "n", "clear_due_date": True}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["title"] == "Renamed"
        assert body["notes"] == "n"
        assert body["due_date"] is None

    def test_patch_is_a_single_edit(self, api_client, local_workspace, mocker):
        task = _create(api_client)
        edit = mocker.spy(local_workspace, "edit")
        api_client.patch(f"/api/tasks/{task['id']}", json={"title": "Renamed", "notes": "n"})
        edit.assert_called_once_with(
            task["id"], title="Renamed", notes="n", due_date=None, clear_due_date=False
        )

    def test_toggle(self, api_client):
        task = _create(api_client)
        body = api_client.post(f"/api/tasks/{task['id']}/toggle").json()
        assert body["status"] == "completed"
        assert body["completed"] is True

    def test_delete(self, api_client):
        task = _create(api_client)
        assert api_client.delete(f"/api/tasks/{task['id']}").status_code == 204
        assert api_client.get(f"/api/tasks/{task['id']}").status_code == 404

    def test_unknown_task_404(self, api_client):
        response = api_client.post("/api/tasks/nope/toggle")
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_empty_title_422(self, api_client):
        response = api_client.post(f"/api/tasks/lists/{LOCAL_LIST_ID}/tasks", json={"title": " "})
        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_request"


class TestErrorMapping:
    def test_remote_unavailable_502(self, api_client, local_workspace, mocker):
        mocker.patch.object(local_workspace, "create_task", side_effect=RemoteUnavailable("offline"))
        response = api_client.post("/api/tasks/lists/x/tasks", json={"title": "t"})
        assert response.status_code == 502
        assert response.json() == {"error_code": "remote_unavailable", "message": "offline"}

    def test_auth_error_401(self, api_client, local_workspace, mocker):
        mocker.patch.object(local_workspace, "toggle_completion", side_effect=AuthenticationError("expired"))
        response = api_client.post("/api/tasks/t1/toggle")
        assert response.status_code == 401
        assert response.json()["error_code"] == "auth_error"


class TestSyncRoutes:
    def test_sync_without_client(self, api_client):
        body = api_client.post("/api/tasks/sync").json()
        assert body["changed"] is False

    def test_status(self, api_client):
        body = api_client.get("/api/tasks/sync/status").json()
        assert body["state"] == "idle"
        assert body["running"] is False
        assert body["notifications_dropped"] == 0

    def test_next_event_times_out(self, api_client):
        body = api_client.get("/api/tasks/events/next", params={"timeout": 0}).json()
        assert body == {"changed": False, "last_sync": None}

    def test_next_event_delivers(self, api_client, local_workspace):
        from tasksync.services.notify import TasksChanged

        local_workspace.engine.channel.publish(TasksChanged(last_sync=None, list_count=1))
        body = api_client.get("/api/tasks/events/next", params={"timeout": 1}).json()
        assert body["changed"] is True
