import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from tasksync.exceptions import PersistenceFailure
from tasksync.models.tasks import Snapshot, Task

logger = logging.getLogger(__name__)

_forest_adapter = TypeAdapter(list[Task])


def atomic_write(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place.

    The destination is either the old content or the new content, never a
    partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class LocalStore:
    """The on-disk copy of the task forest, a JSON array of list trees."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def save(self, tasks: list[Task]) -> None:
        data = _forest_adapter.dump_json(tasks, indent=2)
        try:
            atomic_write(self.path, data)
        except OSError as e:
            raise PersistenceFailure(f"Failed to write task cache {self.path}: {e}") from e
        logger.debug("Saved %d lists to %s", len(tasks), self.path)

    def load(self) -> Snapshot:
        """Read the cache file. A missing file is an empty snapshot, not an error."""
        try:
            raw = self.path.read_bytes()
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            logger.info("No task cache at %s, starting empty", self.path)
            return Snapshot()
        except OSError as e:
            raise PersistenceFailure(f"Failed to read task cache {self.path}: {e}") from e
        try:
            tasks = _forest_adapter.validate_json(raw)
        except ValidationError as e:
            raise PersistenceFailure(f"Task cache {self.path} is corrupt: {e}") from e
        return Snapshot(tasks=tasks, last_sync=datetime.fromtimestamp(mtime, timezone.utc))
