"""Key/value state store used for fingerprint baselines and host preferences."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from .file_lock import FileLock


class KeyValueStore(Protocol):
    """Minimal string store the engine reads and writes its persisted state through."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryStateStore:
    """In-process store, used by tests and embedding hosts."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value


class JsonStateStore:
    """
    JSON file backed store.

    Writes go through a lock file and an atomic replace so concurrent host
    processes never read a half-written file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger('repoman.state_store')
        self._lock = threading.Lock()
        self._file_lock_path = self.path.with_name(self.path.name + ".lock")

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"State file {self.path} unreadable, starting empty: {e}")
            return {}

        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock, FileLock(self._file_lock_path, timeout=10.0):
            values = self._read()
            values[key] = value
            write_json_atomic(self.path, values)


def write_json_atomic(path: Path, data) -> None:
    """Write JSON to path via a temporary file and os.replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
