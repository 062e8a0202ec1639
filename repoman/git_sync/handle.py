"""Repository handles: the addressable unit callers poll and drive."""

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import Config
from ..errors import JobAlreadyRunning, MissingSourceError
from ..file_lock import is_lock_held
from ..state_store import write_json_atomic
from .jobs import JobKind, JobResult, JobState, RepositoryJob, start_job
from .metadata import MetadataDirectory
from .probe import STATUS_NOT_CLONED, WorkingTreeProbe
from .progress import Progress
from .workspace import is_strictly_within

STATUS_FILE_VERSION = 1

# Minimum change in progress before the status file is rewritten
_PERSIST_PROGRESS_STEP = 0.02
_PERSIST_MIN_INTERVAL = 0.5


def _url_slug(url: str) -> str:
    """Directory name for the cache clone of url: readable prefix plus a short hash."""
    readable = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", url.strip())
    readable = re.sub(r"^[^@/]+@", "", readable)
    readable = re.sub(r"\.git$", "", readable)
    readable = re.sub(r"[^A-Za-z0-9._-]+", "_", readable).strip("._")[:60] or "repository"
    digest = hashlib.sha1(url.strip().encode("utf-8")).hexdigest()[:10]
    return f"{readable}-{digest}"


@dataclass(frozen=True)
class RepositoryKey:
    """
    Identity of a tracked repository.

    Attributes:
        url: Remote URL; also selects the shared cache clone
        branch: Tracked branch, empty for the remote default
        root_folder: Host project root
        repo_path: Destination of the synced folder, relative to root_folder
        folder_path: Subfolder of the repository that is synced, "" for all of it
    """
    url: str
    branch: str = ""
    root_folder: str = ""
    repo_path: str = ""
    folder_path: str = ""

    def cache_name(self) -> str:
        return _url_slug(self.url)


@dataclass(frozen=True)
class HandleSnapshot:
    """Everything a poller can observe about a handle, published as one object."""
    in_progress: bool = False
    last_operation_success: bool = True
    last_progress: Progress = field(default_factory=Progress)
    status: str = ""
    refresh_pending: bool = False
    metadata_hidden: bool = False
    job_kind: Optional[str] = None
    job_state: str = JobState.IDLE.value
    branch: str = ""
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_progress"] = self.last_progress.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandleSnapshot":
        return cls(
            in_progress=bool(data.get("in_progress", False)),
            last_operation_success=bool(data.get("last_operation_success", True)),
            last_progress=Progress.from_dict(data.get("last_progress") or {}),
            status=str(data.get("status", "")),
            refresh_pending=bool(data.get("refresh_pending", False)),
            metadata_hidden=bool(data.get("metadata_hidden", False)),
            job_kind=data.get("job_kind"),
            job_state=str(data.get("job_state", JobState.IDLE.value)),
            branch=str(data.get("branch", "")),
            error_code=data.get("error_code"),
        )


class RepositoryHandle:
    """
    One tracked repository: owns at most one running job and the last snapshot.

    Handles are obtained from the RepositoryRegistry; do not keep them across
    host reloads, look them up again instead. Reads of the snapshot properties
    never block on a job. A handle that finds the working tree locked by a live
    job it does not own (another registry or process) reports that job's
    progress from the on-disk status file.
    """

    def __init__(self, key: RepositoryKey, config: Config):
        self.key = key
        self.config = config
        self.logger = logging.getLogger('repoman.git_sync.handle')

        self.working_tree = config.cache_dir / key.cache_name()
        self.lock_path = self.working_tree.with_name(self.working_tree.name + ".lock")
        self.status_path = self.working_tree.with_name(self.working_tree.name + ".status.json")

        self._job: Optional[RepositoryJob] = None
        self._start_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._attached_externally = False
        self._last_persist = (0.0, -1.0, "")

        self._snapshot = self._load_persisted_snapshot()
        if key.branch and self._snapshot.branch != key.branch:
            self._snapshot = replace(self._snapshot, branch=key.branch)

    # --- paths ---------------------------------------------------------

    @property
    def destination(self) -> Path:
        """Project folder receiving the synced subfolder."""
        return Path(self.key.root_folder) / self.key.repo_path

    @property
    def source_folder(self) -> Path:
        """
        Folder inside the working tree that is synced to the destination.

        Raises:
            MissingSourceError: If folder_path points outside the working tree
        """
        if not self.key.folder_path:
            return self.working_tree
        source = self.working_tree / self.key.folder_path
        if not is_strictly_within(source, self.working_tree):
            raise MissingSourceError(f"Sub folder {self.key.folder_path!r} is outside the repository")
        return source

    def metadata_directory(self) -> MetadataDirectory:
        return MetadataDirectory(
            self.working_tree,
            self.config.metadata_dir_name,
            self.config.hidden_metadata_dir_name
        )

    def is_cloned(self) -> bool:
        return self.metadata_directory().exists()

    # --- snapshot reads ------------------------------------------------

    @property
    def snapshot(self) -> HandleSnapshot:
        """
        The latest published snapshot.

        When no local job runs, this checks the on-disk lock (a stat, plus a
        small read while another owner's job is active).
        """
        if self._job is not None:
            return self._snapshot
        return self._external_snapshot()

    @property
    def in_progress(self) -> bool:
        return self.snapshot.in_progress

    @property
    def last_operation_success(self) -> bool:
        return self.snapshot.last_operation_success

    @property
    def last_progress(self) -> Progress:
        return self.snapshot.last_progress

    @property
    def status(self) -> str:
        """Last git status text; call update_status() to refresh it."""
        return self.snapshot.status

    @property
    def refresh_pending(self) -> bool:
        return self.snapshot.refresh_pending

    @property
    def metadata_hidden(self) -> bool:
        return self.snapshot.metadata_hidden

    @property
    def branch(self) -> str:
        return self.key.branch or self._snapshot.branch

    def _external_snapshot(self) -> HandleSnapshot:
        if self.lock_path.exists() and is_lock_held(self.lock_path):
            self._attached_externally = True
            persisted = self._read_status_file()
            if persisted is None:
                return replace(self._snapshot, in_progress=True, job_state=JobState.RUNNING.value)
            return replace(persisted, in_progress=True)

        if self._attached_externally:
            # The external job finished since the last read; adopt its result
            self._attached_externally = False
            with self._publish_lock:
                self._snapshot = self._load_persisted_snapshot()
        return self._snapshot

    # --- operations ----------------------------------------------------

    def try_update(self) -> bool:
        """
        Clone the repository, or fetch and hard-reset it to the remote branch.

        Local modifications in the working tree are discarded. Returns False
        without doing anything when a job is already running.
        """
        kind = JobKind.UPDATE if self.is_cloned() else JobKind.CLONE
        return self._start(kind)

    def push_changes(self, branch: Optional[str] = None, message: str = "") -> bool:
        """
        Commit everything in the working tree and push it to branch.

        Returns False without doing anything when a job is already running.
        """
        return self._start(JobKind.PUSH, branch=branch or None, message=message)

    def update_status(self) -> str:
        """
        Run git status synchronously and publish the result as the status text.

        Does not enter in_progress.
        """
        if not self.is_cloned():
            status = STATUS_NOT_CLONED
        else:
            status = WorkingTreeProbe().refresh_vcs_status(self.working_tree)
        self._publish(status=status)
        return status

    def acknowledge_refresh(self) -> None:
        """Clear refresh_pending once the caller has re-derived its handles."""
        self._publish(refresh_pending=False)

    def cancel(self) -> None:
        """
        Ask the running job to stop.

        Best effort only: the job stops at its next step boundary, which may
        be after the current clone, fetch or push has completed.
        """
        job = self._job
        if job is not None:
            job.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the local job finishes.

        Returns:
            True if no job is running anymore
        """
        job = self._job
        if job is None:
            return True
        return job.join(timeout)

    def _start(self, kind: JobKind, **params) -> bool:
        with self._start_lock:
            if self._job is not None:
                self.logger.debug(f"Ignoring {kind.value} for {self.key.url}: job already running")
                return False

            try:
                job = start_job(self, kind, **params)
            except JobAlreadyRunning as e:
                self.logger.info(f"Ignoring {kind.value} for {self.key.url}: {e.message}")
                return False

            self._job = job
            self._publish(
                in_progress=True,
                last_progress=Progress(0.0, False, f"Starting {kind.value}"),
                job_kind=kind.value,
                job_state=JobState.RUNNING.value,
                error_code=None,
                force_persist=True
            )
            job.start()
            return True

    # --- publication (called from the worker) --------------------------

    def report_progress(self, fraction: float, message: str) -> None:
        """Publish job progress; the fraction never moves backwards."""
        current = self._snapshot.last_progress
        fraction = max(current.normalized_progress, min(1.0, max(0.0, fraction)))
        self._publish(last_progress=Progress(fraction, False, message or current.message))

    def _set_kind(self, kind: JobKind) -> None:
        self._publish(job_kind=kind.value)

    def _set_metadata_hidden(self, hidden: bool) -> None:
        self._publish(metadata_hidden=hidden, force_persist=True)

    def _branch_resolved(self, branch: str) -> None:
        if branch == self._snapshot.branch:
            return
        self.logger.info(f"Resolved branch '{branch}' for {self.key.url}")
        self._publish(branch=branch, refresh_pending=True, force_persist=True)

    def _job_finished(self, job: RepositoryJob, result: JobResult) -> None:
        status = WorkingTreeProbe().refresh_vcs_status(self.working_tree) if self.is_cloned() else STATUS_NOT_CLONED

        last = self._snapshot.last_progress
        if result.success:
            progress = Progress(1.0, False, result.message)
        else:
            progress = Progress(last.normalized_progress, True, result.message)

        with self._start_lock:
            self._publish(
                in_progress=False,
                last_operation_success=result.success,
                last_progress=progress,
                job_state=(JobState.SUCCEEDED if result.success else JobState.FAILED).value,
                error_code=result.error_code,
                status=status,
                force_persist=True
            )
            job.lock.release()
            if self._job is job:
                self._job = None

        log = self.logger.info if result.success else self.logger.warning
        log(f"{result.operation} finished for {self.key.url}: {result.message}")

    def _publish(self, force_persist: bool = False, **changes) -> None:
        with self._publish_lock:
            self._snapshot = replace(self._snapshot, **changes)
            snapshot = self._snapshot
            if force_persist or self._should_persist(snapshot):
                self._persist(snapshot)

    def _should_persist(self, snapshot: HandleSnapshot) -> bool:
        last_time, last_fraction, last_message = self._last_persist
        progress = snapshot.last_progress
        return (
            progress.message != last_message
            or progress.normalized_progress - last_fraction >= _PERSIST_PROGRESS_STEP
            or time.monotonic() - last_time >= _PERSIST_MIN_INTERVAL
        )

    # --- on-disk status ------------------------------------------------

    def _persist(self, snapshot: HandleSnapshot) -> None:
        progress = snapshot.last_progress
        self._last_persist = (time.monotonic(), progress.normalized_progress, progress.message)
        try:
            write_json_atomic(self.status_path, {
                "version": STATUS_FILE_VERSION,
                "url": self.key.url,
                "snapshot": snapshot.to_dict(),
            })
        except OSError as e:
            self.logger.warning(f"Could not write status file {self.status_path}: {e}")

    def _read_status_file(self) -> Optional[HandleSnapshot]:
        try:
            data = json.loads(self.status_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.logger.debug(f"Ignoring unreadable status file {self.status_path}: {e}")
            return None

        if data.get("version") != STATUS_FILE_VERSION or data.get("url") != self.key.url:
            return None
        return HandleSnapshot.from_dict(data.get("snapshot") or {})

    def _load_persisted_snapshot(self) -> HandleSnapshot:
        persisted = self._read_status_file()
        if persisted is None:
            return HandleSnapshot()

        if persisted.in_progress and not is_lock_held(self.lock_path):
            # The owning process died mid-job
            last = persisted.last_progress
            return replace(
                persisted,
                in_progress=False,
                last_operation_success=False,
                last_progress=Progress(last.normalized_progress, True, "Interrupted"),
                job_state=JobState.FAILED.value,
            )
        return persisted

    def __repr__(self) -> str:
        return f"RepositoryHandle(url={self.key.url!r}, repo_path={self.key.repo_path!r})"
