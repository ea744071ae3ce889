import json
import stat

import pytest

from tasksync import auth
from tasksync.auth import TokenStore, get_tasks_credentials


@pytest.fixture
def token_store(tmp_path, mocker):
    store = TokenStore(tmp_path / "tokens.json")
    mocker.patch("tasksync.auth._get_token_store", return_value=store)
    return store


class TestTokenStore:
    def test_missing_file_is_empty(self, token_store):
        assert token_store.get("tasks") is None
        assert token_store.has_valid_token("tasks") is False

    def test_save_keeps_other_accounts(self, token_store):
        token_store.save("tasks", {"token": "a"})
        token_store.save("tasks:work", {"token": "b"})
        assert json.loads(token_store.path.read_text()) == {
            "tasks": {"token": "a"},
            "tasks:work": {"token": "b"},
        }

    def test_token_file_is_private(self, token_store):
        token_store.save("tasks", {"token": "a"})
        assert stat.S_IMODE(token_store.path.stat().st_mode) == 0o600
        assert list(token_store.path.parent.iterdir()) == [token_store.path]


class TestCredentials:
    def test_token_keys(self):
        assert auth._token_key("default") == "tasks"
        assert auth._token_key("work") == "tasks:work"

    def test_missing_token_raises(self, token_store):
        with pytest.raises(RuntimeError, match="not authenticated"):
            get_tasks_credentials("work")

    def test_valid_token_returned(self, token_store, mocker):
        creds = mocker.MagicMock(valid=True)
        mocker.patch("tasksync.auth.Credentials.from_authorized_user_info", return_value=creds)
        token_store.save("tasks", {"token": "a"})
        assert get_tasks_credentials() is creds

    def test_expired_token_refreshed_and_saved(self, token_store, mocker):
        creds = mocker.MagicMock(valid=False, expired=True, refresh_token="r")
        creds.to_json.return_value = json.dumps({"token": "fresh"})
        mocker.patch("tasksync.auth.Credentials.from_authorized_user_info", return_value=creds)
        token_store.save("tasks", {"token": "stale"})
        assert get_tasks_credentials() is creds
        creds.refresh.assert_called_once()
        assert token_store.get("tasks") == {"token": "fresh"}
