"""Poll loop helper: finishes a sync on the host side once a job completes."""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import RepositoryError
from .handle import RepositoryHandle, RepositoryKey
from .jobs import JobKind
from .probe import WorkingTreeProbe
from .registry import RepositoryRegistry
from .workspace import CopyResult, WorkspaceSync, remove_stray_files


def baseline_key(key: RepositoryKey) -> str:
    """State store key under which the fingerprint baseline of key's destination is kept."""
    return f"{key.repo_path}_snapshot"


@dataclass
class CompletedSync:
    """What the monitor did for one handle whose job just finished."""
    key: RepositoryKey
    success: bool
    message: str
    operation: Optional[str] = None
    copy_result: Optional[CopyResult] = None
    deleted_files: List[Path] = field(default_factory=list)
    refresh_pending: bool = False


class RepositoryMonitor:
    """
    Drives the host side of the sync from a polling loop.

    tick() never blocks on a job. It looks handles up again on every call
    instead of holding them, notices busy -> idle transitions and, after a
    successful clone or update, copies the synced subfolder into the
    destination, deletes strays and stores a fresh fingerprint baseline.
    """

    def __init__(
        self,
        registry: RepositoryRegistry,
        probe: WorkingTreeProbe,
        workspace: Optional[WorkspaceSync] = None,
        delete_file: Optional[Callable[[Path], None]] = None
    ):
        self.registry = registry
        self.probe = probe
        self.workspace = workspace or WorkspaceSync.from_config(registry.config)
        self.delete_file = delete_file or self._delete_with_companions
        self.logger = logging.getLogger('repoman.git_sync.monitor')
        self._keys: List[RepositoryKey] = []
        self._busy: Dict[RepositoryKey, bool] = {}
        self._lock = threading.Lock()

    def watch(self, keys: Iterable[RepositoryKey]) -> None:
        """Replace the set of watched repositories."""
        keys = list(dict.fromkeys(keys))
        with self._lock:
            self._keys = keys
            self._busy = {k: v for k, v in self._busy.items() if k in keys}

    def mark_started(self, key: RepositoryKey) -> None:
        """Record that a job was started for key, so a very short job is not missed."""
        with self._lock:
            if key not in self._keys:
                self._keys.append(key)
            self._busy[key] = True

    def tick(self) -> List[CompletedSync]:
        """Poll every watched handle once; returns the syncs completed during this tick."""
        finished = []
        with self._lock:
            for key in self._keys:
                handle = self.registry.get(key)
                busy = handle.in_progress
                was_busy = self._busy.get(key, False)
                self._busy[key] = busy
                if was_busy and not busy:
                    finished.append(handle)

        # Copy outside the lock
        return [self._complete(handle) for handle in finished]

    def _complete(self, handle: RepositoryHandle) -> CompletedSync:
        snapshot = handle.snapshot
        result = CompletedSync(
            key=handle.key,
            success=snapshot.last_operation_success,
            message=snapshot.last_progress.message,
            operation=snapshot.job_kind,
            refresh_pending=snapshot.refresh_pending
        )

        if not snapshot.last_operation_success:
            self.logger.warning(f"❌ {handle.key.url}: {snapshot.last_progress.message}")
            return result

        try:
            if snapshot.job_kind != JobKind.PUSH.value:
                result.copy_result, result.deleted_files = self.copy_to_destination(handle)
            self.probe.save_baseline(baseline_key(handle.key), handle.destination)
        except RepositoryError as e:
            self.logger.warning(f"Sync of {handle.key.url} into {handle.destination} failed: {e.message}")
            result.success = False
            result.message = e.message
            return result

        self.logger.info(f"✅ {handle.key.url} synced into {handle.destination}")
        return result

    def _delete_with_companions(self, path: Path) -> None:
        """Default stray deletion: the file and its companion files."""
        path.unlink()
        for suffix in self.registry.config.excluded_suffixes:
            companion = path.with_name(path.name + suffix)
            if companion.exists():
                companion.unlink()

    def copy_to_destination(self, handle: RepositoryHandle):
        """
        Copy the handle's subfolder into its destination and delete strays.

        Returns:
            Tuple of (CopyResult, deleted stray files)

        Raises:
            MissingSourceError: If the subfolder does not exist in the working tree
            FilesystemError: If copying or deleting failed
        """
        copy_result = self.workspace.copy(handle.source_folder, handle.destination)
        deleted = remove_stray_files(
            copy_result.stray_files,
            stop_at=handle.destination,
            excluded_suffixes=self.registry.config.excluded_suffixes,
            keep_companions=True,
            delete_file=self.delete_file
        )
        self.logger.info(
            f"📁 Copied {len(copy_result.updated_files)} files into {handle.destination}, "
            f"removed {len(deleted)} strays"
        )
        return copy_result, deleted
