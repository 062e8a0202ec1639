"""Process-wide registry of repository handles."""

import logging
import shutil
import threading
import time
import weakref
from pathlib import Path
from typing import List, Optional

from ..config import Config, load_configuration
from ..errors import FilesystemError
from ..file_lock import is_lock_held
from .handle import RepositoryHandle, RepositoryKey
from .jobs import make_writable_and_retry
from .workspace import is_strictly_within, prune_empty_directories


class RepositoryRegistry:
    """
    Keyed store of RepositoryHandle instances.

    Only weak references are kept: a handle lives as long as a caller or its
    running job refers to it. Equal keys resolve to the same handle while it
    is alive; a later handle for the same key recovers the persisted state.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or load_configuration()
        self.logger = logging.getLogger('repoman.git_sync.registry')
        self._handles: "weakref.WeakValueDictionary[RepositoryKey, RepositoryHandle]" = weakref.WeakValueDictionary()
        self._lock = threading.Lock()

    def get(self, key: RepositoryKey) -> RepositoryHandle:
        """Return the handle for key, creating it on first use. No git I/O happens here."""
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = RepositoryHandle(key, self.config)
                self._handles[key] = handle
                self.logger.debug(f"Created handle for {key.url} -> {key.repo_path}")
        return handle

    def get_for(self, url: str, branch: str, root_folder, repo_path, folder_path="") -> RepositoryHandle:
        """Convenience wrapper building the key from its parts."""
        return self.get(RepositoryKey(
            url=url,
            branch=branch or "",
            root_folder=str(root_folder),
            repo_path=str(repo_path),
            folder_path=str(folder_path or ""),
        ))

    def active_handles(self) -> List[RepositoryHandle]:
        """Handles that are still referenced somewhere."""
        with self._lock:
            return list(self._handles.values())

    def remove(self, key: RepositoryKey, timeout: Optional[float] = None, remove_destination: bool = True) -> bool:
        """
        Delete the repository's working tree, on-disk state and destination folder.

        A running job is asked to cancel and then awaited; cancellation may
        only take effect once the current git step is done.

        Args:
            key: Repository to remove
            timeout: Maximum seconds to wait for a running job; None waits indefinitely
            remove_destination: Also delete the synced folder in the project

        Returns:
            False if the job did not finish within timeout (nothing is deleted)

        Raises:
            FilesystemError: If files could not be deleted, or the destination
                is not inside the project root
        """
        handle = self.get(key)
        handle.cancel()
        if not handle.wait(timeout):
            self.logger.warning(f"Job for {key.url} still running after {timeout}s; not removing")
            return False
        if not self._wait_for_external_job(handle, timeout):
            self.logger.warning(f"Another owner still runs a job for {key.url}; not removing")
            return False

        destination = handle.destination
        if remove_destination and key.repo_path and not is_strictly_within(destination, key.root_folder):
            raise FilesystemError(f"Refusing to delete {destination}: it is not inside {key.root_folder}")

        self.logger.info(f"🗑️ Removing repository {key.url} ({key.repo_path})")
        try:
            if handle.working_tree.exists():
                shutil.rmtree(handle.working_tree, onerror=make_writable_and_retry)
            for path in (handle.status_path, handle.lock_path):
                if path.exists():
                    path.unlink()

            if remove_destination and key.repo_path and destination.exists():
                shutil.rmtree(destination, onerror=make_writable_and_retry)
                prune_empty_directories(destination.parent, Path(key.root_folder))
        except OSError as e:
            raise FilesystemError(f"Failed to remove {key.url}: {e}") from e
        finally:
            with self._lock:
                self._handles.pop(key, None)

        return True

    def _wait_for_external_job(self, handle: RepositoryHandle, timeout: Optional[float]) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while is_lock_held(handle.lock_path):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.config.poll_interval)
        return True


_registry: Optional[RepositoryRegistry] = None
_registry_lock = threading.Lock()


def get_repository_registry(config: Optional[Config] = None) -> RepositoryRegistry:
    """Get or create the global repository registry."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = RepositoryRegistry(config)
    return _registry


def reset_repository_registry() -> None:
    """Drop the global registry, as a host reload does; running jobs keep going."""
    global _registry
    with _registry_lock:
        _registry = None
