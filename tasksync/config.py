from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 9000
    token_file: Path = Path("tokens.json")
    client_secret_file: Path = Path("client_secret.json")
    cache_file: Path = Path.home() / ".local" / "share" / "tasksync" / "tasks_cache.json"
    account: str = "default"
    sync_interval: float = 30.0  # seconds between background reconciliations
    notify_buffer: int = 1
    max_depth: int = 64
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "TASKSYNC_"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
