import json
import logging
import os
from pathlib import Path

# Allow Google to return broader scopes than requested (e.g. from prior grants)
os.environ["OAUTHLIB_RELAX_TOKEN_SCOPE"] = "1"

from fastapi import APIRouter
from fastapi.responses import RedirectResponse
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from tasksync.config import get_settings
from tasksync.models.common import StatusResponse
from tasksync.services.storage import atomic_write

logger = logging.getLogger(__name__)

TASKS_SCOPES = ["https://www.googleapis.com/auth/tasks"]


def _token_key(account: str) -> str:
    """Token store key: 'tasks' for the default account, 'tasks:name' otherwise."""
    return "tasks" if account == "default" else f"tasks:{account}"


def _redirect_uri() -> str:
    settings = get_settings()
    return f"http://localhost:{settings.port}/auth/tasks/callback"


class TokenStore:
    """Reads/writes OAuth tokens to a local JSON file, keyed by account."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text())

    def get(self, key: str) -> dict | None:
        return self._read_all().get(key)

    def save(self, key: str, token_data: dict) -> None:
        all_tokens = self._read_all()
        all_tokens[key] = token_data
        atomic_write(self.path, json.dumps(all_tokens, indent=2).encode(), mode=0o600)
        logger.info("Token for %s saved to %s", key, self.path)

    def has_valid_token(self, key: str) -> bool:
        token_data = self.get(key)
        if not token_data:
            return False
        creds = Credentials.from_authorized_user_info(token_data)
        return bool(creds.valid or (creds.expired and creds.refresh_token))


def _get_token_store() -> TokenStore:
    return TokenStore(get_settings().token_file)


def _create_flow() -> Flow:
    settings = get_settings()
    if not settings.client_secret_file.exists():
        raise FileNotFoundError(
            f"OAuth client secret file not found at {settings.client_secret_file}. "
            "Download it from Google Cloud Console."
        )
    return Flow.from_client_secrets_file(
        str(settings.client_secret_file),
        scopes=TASKS_SCOPES,
        redirect_uri=_redirect_uri(),
    )


def get_tasks_credentials(account: str = "default") -> Credentials:
    """Load credentials from the token store. Refreshes if expired, raises if missing."""
    store = _get_token_store()
    key = _token_key(account)
    token_data = store.get(key)

    if token_data:
        creds = Credentials.from_authorized_user_info(token_data, TASKS_SCOPES)
        if creds.valid:
            return creds
        if creds.expired and creds.refresh_token:
            creds.refresh(Request())
            store.save(key, json.loads(creds.to_json()))
            return creds

    label = f" (account={account})" if account != "default" else ""
    raise RuntimeError(
        f"tasks not authenticated{label}. Visit /auth/tasks/setup?account={account} to connect."
    )


# --- Auth router ---

router = APIRouter(prefix="/auth/tasks", tags=["auth"])


@router.get("/setup")
def auth_setup(account: str = "default"):
    """Redirect to the Google OAuth consent screen. Use ?account=name for multiple accounts."""
    flow = _create_flow()
    auth_url, _ = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
        state=f"tasks:{account}",
    )
    return RedirectResponse(auth_url)


@router.get("/callback")
def auth_callback(code: str, state: str = ""):
    """Handle the OAuth callback from Google and exchange the code for tokens."""
    account = state.split(":", 1)[1] if ":" in state else "default"
    flow = _create_flow()
    flow.fetch_token(code=code)
    store = _get_token_store()
    store.save(_token_key(account), json.loads(flow.credentials.to_json()))
    return StatusResponse(
        integration="tasks",
        authenticated=True,
        message=f"tasks account '{account}' authenticated successfully. Restart tasksync to start syncing.",
    )


@router.get("/status")
def auth_status(account: str = "default") -> StatusResponse:
    """Check whether the account has a usable token."""
    valid = _get_token_store().has_valid_token(_token_key(account))
    label = f" (account={account})" if account != "default" else ""
    return StatusResponse(
        integration="tasks",
        authenticated=valid,
        message=f"Authenticated{label}" if valid else f"Not authenticated{label}. Visit /auth/tasks/setup?account={account}",
    )
