"""Background repository jobs: clone, update (fetch + reset) and push."""

import logging
import os
import shutil
import stat
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from git import GitCommandError, PushInfo, Repo

from ..errors import JobAlreadyRunning, PushRejected, RepositoryError, classify_git_error
from ..file_lock import FileLock
from .progress import JobProgressReporter
from .remote import detect_remote_default_branch
from .timing import time_operation
from .workspace import WorkspaceSync, remove_stray_files

if TYPE_CHECKING:
    from .handle import RepositoryHandle


class JobKind(Enum):
    """What a running job is doing."""
    CLONE = "clone"
    FETCH = "fetch"
    UPDATE = "update"
    PUSH = "push"


class JobState(Enum):
    """Lifecycle of a repository job."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobResult:
    """Terminal outcome of a repository job."""
    success: bool
    message: str
    operation: str
    error_code: Optional[str] = None
    branch_used: Optional[str] = None


class JobCancelled(RepositoryError):
    default_code = "CANCELLED"


_PUSH_FAILURE_FLAGS = PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE

DEFAULT_COMMITTER_NAME = "Repository Manager"
DEFAULT_COMMITTER_EMAIL = "repoman@localhost"


def ensure_commit_identity(repo: Repo) -> None:
    """Set a repository-level user.name/user.email when none is configured anywhere."""
    with repo.config_reader() as reader:
        user_name = reader.get_value("user", "name", default="")
        user_email = reader.get_value("user", "email", default="")

    if user_name and user_email:
        return

    with repo.config_writer() as writer:
        if not user_name:
            writer.set_value("user", "name", DEFAULT_COMMITTER_NAME)
        if not user_email:
            writer.set_value("user", "email", DEFAULT_COMMITTER_EMAIL)


class RepositoryJob:
    """
    One VCS operation executed on its own worker thread.

    The job publishes progress through its handle and, when done, hands the
    terminal JobResult back to the handle, which then drops the job. The
    handle releases the working tree lock once the terminal snapshot is
    published; the worker releases it too in case that fails.

    Cancellation is best effort: it is checked between git steps, so cancel()
    may have to wait for the current clone/fetch/push step to complete.
    """

    def __init__(
        self,
        handle: "RepositoryHandle",
        kind: JobKind,
        lock: FileLock,
        branch: Optional[str] = None,
        message: Optional[str] = None
    ):
        self.handle = handle
        self.kind = kind
        self.lock = lock
        self.branch = branch
        self.message = message
        self.state = JobState.IDLE
        self.result: Optional[JobResult] = None
        self.logger = logging.getLogger('repoman.git_sync.jobs')
        self._cancel_event = threading.Event()
        self._reporter: Optional[JobProgressReporter] = None
        self._thread = threading.Thread(
            target=self._run,
            name=f"RepoJob-{kind.value}-{handle.working_tree.name}",
            daemon=True
        )

    def start(self) -> None:
        self.state = JobState.RUNNING
        self._thread.start()
        self.logger.debug(f"Started {self.kind.value} job for {self.handle.key.url}")

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; returns True if it has finished."""
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next step boundary."""
        self._cancel_event.set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise JobCancelled(f"{self.kind.value} cancelled")

    def _report(self, fraction: float, message: str) -> None:
        self.handle.report_progress(fraction, message)

    def _progress(self, band_start: float, band_end: float) -> JobProgressReporter:
        self._reporter = JobProgressReporter(self._report, band_start, band_end)
        return self._reporter

    def _attach_progress_errors(self, error: Exception) -> None:
        # With a progress handler attached, git's stderr ends up in error_lines
        if not isinstance(error, GitCommandError) or self._reporter is None:
            return
        lines = [line for line in self._reporter.error_lines if line.strip()]
        if lines and not str(error.stderr or "").strip():
            error.stderr = "\n".join(lines)

    def _run(self) -> None:
        operation = self.kind.value
        try:
            with time_operation(f"{operation} {self.handle.key.url}", {"working_tree": self.handle.working_tree}):
                if self.kind == JobKind.CLONE:
                    result = self._clone()
                elif self.kind == JobKind.PUSH:
                    result = self._push()
                else:
                    result = self._update()
        except Exception as e:
            self._attach_progress_errors(e)
            error = classify_git_error(e, operation)
            self.logger.warning(f"{operation} failed for {self.handle.key.url}: {error.message}")
            result = JobResult(
                success=False,
                message=error.message,
                operation=operation,
                error_code=error.error_code
            )

        self.result = result
        self.state = JobState.SUCCEEDED if result.success else JobState.FAILED
        try:
            self.handle._job_finished(self, result)
        finally:
            self.lock.release()

    def _metadata_scope(self):
        metadata = self.handle.metadata_directory()
        metadata.restore()
        if not self.handle.config.hide_metadata_during_jobs:
            return nullcontext(False)
        return metadata.hidden(on_change=self.handle._set_metadata_hidden)

    def _resolve_branch(self, repo: Optional[Repo] = None) -> str:
        branch = self.branch or self.handle.branch
        if branch:
            return branch

        if repo is not None:
            try:
                branch = repo.active_branch.name
            except TypeError:
                branch = None
        if not branch:
            branch = detect_remote_default_branch(self.handle.key.url)
        if not branch:
            raise RepositoryError("Could not determine which branch to use", "BRANCH_DETECTION_FAILED")

        self.handle._branch_resolved(branch)
        return branch

    def _clone(self) -> JobResult:
        working_tree = self.handle.working_tree
        self.handle._set_kind(JobKind.CLONE)
        self._report(0.0, "Cloning")

        if working_tree.exists():
            # No metadata under either name: leftovers of an interrupted clone
            self.logger.info(f"Removing incomplete clone at {working_tree}")
            shutil.rmtree(working_tree, onerror=make_writable_and_retry)
        working_tree.parent.mkdir(parents=True, exist_ok=True)

        reporter = self._progress(0.0, 0.95)
        clone_kwargs = {"progress": reporter}
        if self.handle.branch:
            clone_kwargs["branch"] = self.handle.branch

        try:
            repo = Repo.clone_from(self.handle.key.url, str(working_tree), **clone_kwargs)
        except Exception:
            if working_tree.exists():
                shutil.rmtree(working_tree, onerror=make_writable_and_retry)
            raise

        try:
            branch = self._resolve_branch(repo)
        finally:
            repo.close()

        self._report(1.0, "Cloned")
        return JobResult(
            success=True,
            message=f"Cloned {self.handle.key.url} ({branch})",
            operation="clone",
            branch_used=branch
        )

    def _update(self) -> JobResult:
        self.handle._set_kind(JobKind.FETCH)
        self._report(0.0, "Fetching")

        with self._metadata_scope():
            repo = Repo(self.handle.working_tree)
            try:
                branch = self._resolve_branch(repo)
                remote_ref = f"origin/{branch}"
                origin = repo.remote("origin")
                origin.fetch(
                    f"+refs/heads/{branch}:refs/remotes/{remote_ref}",
                    progress=self._progress(0.0, 0.8)
                )
                self._check_cancelled()

                self.handle._set_kind(JobKind.UPDATE)
                self._report(0.85, "Checking out")
                repo.git.checkout("--force", "-B", branch, remote_ref)
                repo.git.reset("--hard", remote_ref)
                self._check_cancelled()

                self._report(0.95, "Removing untracked files")
                repo.git.clean("-fd")
                head = repo.head.commit.hexsha[:10]
            finally:
                repo.close()

        self._report(1.0, "Up to date")
        return JobResult(
            success=True,
            message=f"Updated to {remote_ref} ({head})",
            operation="update",
            branch_used=branch
        )

    def _sync_destination_back(self) -> None:
        destination = self.handle.destination
        if not destination.is_dir():
            return

        self._report(0.05, "Collecting changes")
        source_folder = self.handle.source_folder
        workspace = WorkspaceSync.from_config(self.handle.config)
        result = workspace.copy(destination, source_folder)
        remove_stray_files(
            result.stray_files,
            stop_at=source_folder,
            excluded_suffixes=self.handle.config.excluded_suffixes,
            keep_companions=False
        )

    def _push(self) -> JobResult:
        self.handle._set_kind(JobKind.PUSH)
        self._report(0.0, "Preparing push")

        if not self.handle.metadata_directory().exists():
            raise RepositoryError("Nothing to push: repository has not been cloned", "NOT_CLONED")

        self._sync_destination_back()
        self._check_cancelled()

        with self._metadata_scope():
            repo = Repo(self.handle.working_tree)
            try:
                branch = self._resolve_branch(repo)
                ensure_commit_identity(repo)

                self._report(0.15, "Staging changes")
                repo.git.add("--all")
                if repo.is_dirty(index=True, working_tree=False, untracked_files=False):
                    self._report(0.25, "Committing")
                    repo.git.commit("-m", self.message or "Update from repository manager")
                self._check_cancelled()

                self._report(0.3, "Pushing")
                push_infos = repo.remote("origin").push(
                    refspec=f"HEAD:refs/heads/{branch}",
                    progress=self._progress(0.3, 1.0)
                )
                for info in push_infos:
                    if info.flags & _PUSH_FAILURE_FLAGS:
                        raise PushRejected(f"Push of {branch} rejected: {info.summary.strip()}")
                head = repo.head.commit.hexsha[:10]
            finally:
                repo.close()

        self._report(1.0, "Pushed")
        return JobResult(
            success=True,
            message=f"Pushed {head} to {branch}",
            operation="push",
            branch_used=branch
        )


def make_writable_and_retry(func, path, exc_info):
    """shutil.rmtree error hook: git marks object files read-only on Windows."""
    os.chmod(path, stat.S_IWRITE)
    func(path)


def start_job(handle: "RepositoryHandle", kind: JobKind, **params) -> RepositoryJob:
    """
    Take the working tree lock and start a job for handle.

    Raises:
        JobAlreadyRunning: If another job holds the lock
    """
    lock = FileLock(handle.lock_path, timeout=0)
    if not lock.acquire():
        raise JobAlreadyRunning(f"A job is already running for {handle.working_tree}")

    job = RepositoryJob(handle, kind, lock, **params)
    return job
