"""Host-side facade: manifest dependencies mapped onto repository handles."""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from .config import Config, load_configuration
from .errors import RepositoryError, error_handler
from .git_sync.handle import RepositoryHandle, RepositoryKey
from .git_sync.monitor import CompletedSync, RepositoryMonitor, baseline_key
from .git_sync.probe import WorkingTreeProbe
from .git_sync.registry import RepositoryRegistry, get_repository_registry
from .git_sync.remote import check_connection
from .git_sync.workspace import is_strictly_within
from .manifest import Dependency, DependencyManifest, validate_name, validate_sub_folder
from .state_store import JsonStateStore, KeyValueStore

UPDATE_ALL_MODES = ("all", "clean_only", "abort_if_dirty")


class RepositoryService:
    """
    Resolves manifest dependencies to handles and exposes the operations a host needs.

    Every public method returns a plain dict; failures are reported as
    ErrorResponse dicts rather than raised.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[RepositoryRegistry] = None,
        store: Optional[KeyValueStore] = None
    ):
        self.config = config or load_configuration()
        self.registry = registry or get_repository_registry(self.config)
        self.store = store if store is not None else JsonStateStore(self.config.state_file_path)
        self.probe = WorkingTreeProbe(store=self.store)
        self.manifest = DependencyManifest(self.config.manifest_path)
        self.monitor = RepositoryMonitor(self.registry, self.probe)
        self.logger = logging.getLogger('repoman.service')
        self._tick_lock = threading.Lock()
        self.reload()

    # --- resolution ----------------------------------------------------

    def reload(self) -> List[Dependency]:
        """Re-read the manifest and watch its repositories."""
        dependencies = self.manifest.load()
        self._watch_manifest()
        return dependencies

    def key_for(self, dependency: Dependency) -> RepositoryKey:
        """
        Build the handle key of a dependency.

        Raises:
            ValueError: If the name or sub folder would leave the repositories
                folder or the repository
        """
        problem = validate_name(dependency.name) or validate_sub_folder(dependency.sub_folder)
        if problem:
            raise ValueError(f"{dependency.name!r}: {problem}")

        destination = self.config.repositories_path / dependency.name
        if not is_strictly_within(destination, self.config.repositories_path):
            raise ValueError(f"{dependency.name!r}: destination {destination} is outside {self.config.repositories_path}")
        try:
            repo_path = destination.relative_to(self.config.project_root)
        except ValueError:
            repo_path = destination
        return RepositoryKey(
            url=dependency.url,
            branch=dependency.branch,
            root_folder=str(self.config.project_root),
            repo_path=repo_path.as_posix(),
            folder_path=dependency.sub_folder,
        )

    def resolved_dependencies(self) -> List[Tuple[Dependency, RepositoryKey]]:
        """Manifest entries with their keys; invalid entries are logged and skipped."""
        resolved = []
        for dependency in self.manifest.dependencies:
            try:
                resolved.append((dependency, self.key_for(dependency)))
            except ValueError as e:
                self.logger.warning(f"Skipping manifest entry: {e}")
        return resolved

    def _watch_manifest(self) -> None:
        self.monitor.watch(key for _, key in self.resolved_dependencies())

    def _resolve(self, name: str):
        dependency = self.manifest.find(name)
        if dependency is None:
            raise ValueError(f"Unknown repository: {name}")
        key = self.key_for(dependency)
        return dependency, key, self.registry.get(key)

    def has_local_changes(self, handle: RepositoryHandle) -> bool:
        """
        Compare the destination with its last baseline.

        Also refreshes the handle's git status text as a side effect.
        """
        handle.update_status()
        return self.probe.has_local_changes(baseline_key(handle.key), handle.destination)

    def _describe(self, dependency: Dependency, handle: RepositoryHandle) -> Dict[str, Any]:
        snapshot = handle.snapshot
        return {
            "name": dependency.name,
            "url": dependency.url,
            "branch": handle.branch,
            "sub_folder": dependency.sub_folder,
            "destination": str(handle.destination),
            "cloned": handle.is_cloned(),
            "in_progress": snapshot.in_progress,
            "last_operation_success": snapshot.last_operation_success,
            "progress": snapshot.last_progress.to_dict(),
            "status": snapshot.status,
            "refresh_pending": snapshot.refresh_pending,
            "metadata_hidden": snapshot.metadata_hidden,
            "error_code": snapshot.error_code,
        }

    # --- queries -------------------------------------------------------

    def list_repositories(self) -> List[Dict[str, Any]]:
        """Describe every dependency; local changes are only checked for idle repositories."""
        results = []
        for dependency, key in self.resolved_dependencies():
            handle = self.registry.get(key)
            info = self._describe(dependency, handle)
            if not info["in_progress"]:
                info["has_local_changes"] = self.probe.has_local_changes(
                    baseline_key(handle.key), handle.destination
                )
            results.append(info)
        return results

    def status(self, name: str) -> Dict[str, Any]:
        """Refresh and describe one repository."""
        try:
            dependency, _, handle = self._resolve(name)
            changed = None if handle.in_progress else self.has_local_changes(handle)
            info = self._describe(dependency, handle)
            info["has_local_changes"] = changed
            return info
        except (RepositoryError, ValueError) as e:
            return error_handler.to_response(e, {"operation": "status", "repository": name}).to_dict()

    # --- operations ----------------------------------------------------

    def update(self, name: str, force: bool = False) -> Dict[str, Any]:
        """
        Start a clone or update for one repository.

        Without force, a repository with local changes is not touched and a
        DIRTY_WORKING_TREE_CONFLICT response is returned instead.
        """
        try:
            dependency, key, handle = self._resolve(name)
            if not force and handle.is_cloned() and self.has_local_changes(handle):
                return error_handler.conflict_response(dependency.name, handle.status).to_dict()
            return self._start_update(dependency, key, handle)
        except (RepositoryError, ValueError) as e:
            return error_handler.to_response(e, {"operation": "update", "repository": name}).to_dict()

    def _start_update(self, dependency: Dependency, key: RepositoryKey, handle: RepositoryHandle) -> Dict[str, Any]:
        started = handle.try_update()
        if started:
            self.monitor.mark_started(key)
            message = f"Update of {dependency.name} started"
        else:
            message = f"{dependency.name} is busy; update not started"
        return {"name": dependency.name, "started": started, "message": message}

    def update_all(self, mode: str = "all") -> Dict[str, Any]:
        """
        Update every repository.

        Modes:
            all: update everything, discarding local changes
            clean_only: skip repositories with local changes
            abort_if_dirty: update nothing if any repository has local changes
        """
        if mode not in UPDATE_ALL_MODES:
            return error_handler.to_response(
                ValueError(f"Invalid mode '{mode}'. Must be one of {list(UPDATE_ALL_MODES)}"),
                {"operation": "update_all"}
            ).to_dict()

        resolved = []
        dirty = []
        for dependency, key in self.resolved_dependencies():
            handle = self.registry.get(key)
            if mode != "all" and handle.is_cloned() and not handle.in_progress and self.has_local_changes(handle):
                dirty.append(dependency.name)
            resolved.append((dependency, key, handle))

        if dirty and mode == "abort_if_dirty":
            response = error_handler.conflict_response(", ".join(dirty), "")
            result = response.to_dict()
            result["dirty"] = dirty
            return result

        started = []
        skipped = []
        for dependency, key, handle in resolved:
            if dependency.name in dirty:
                skipped.append(dependency.name)
                continue
            if self._start_update(dependency, key, handle)["started"]:
                started.append(dependency.name)
            else:
                skipped.append(dependency.name)

        self.logger.info(f"update_all({mode}): started {len(started)}, skipped {len(skipped)}")
        return {"mode": mode, "started": started, "skipped": skipped, "dirty": dirty}

    def push(self, name: str, message: str, branch: Optional[str] = None) -> Dict[str, Any]:
        """Start committing the destination's content and pushing it."""
        try:
            if not message or not message.strip():
                raise ValueError("Commit message can not be empty.")
            dependency, key, handle = self._resolve(name)
            started = handle.push_changes(branch or handle.branch, message.strip())
            if started:
                self.monitor.mark_started(key)
            return {
                "name": dependency.name,
                "started": started,
                "message": f"Push of {dependency.name} started" if started else f"{dependency.name} is busy; push not started"
            }
        except (RepositoryError, ValueError) as e:
            return error_handler.to_response(e, {"operation": "push", "repository": name}).to_dict()

    def add_dependency(
        self,
        url: str,
        branch: str,
        name: str,
        sub_folder: str = "",
        check_remote: bool = True
    ) -> Dict[str, Any]:
        """Validate, test the connection to, and add a new dependency."""
        dependency = Dependency.from_dict({"Url": url, "Branch": branch, "Name": name, "SubFolder": sub_folder})
        try:
            problem = self.manifest.validate_new(dependency)
            if problem:
                raise ValueError(problem)

            if check_remote:
                reachable, message = check_connection(dependency.url, dependency.branch)
                if not reachable:
                    raise ValueError(message)

            self.manifest.add(dependency)
            self._watch_manifest()
            return {"success": True, "dependency": dependency.to_dict()}
        except (RepositoryError, ValueError) as e:
            return error_handler.to_response(e, {"operation": "add_dependency", "repository": name}).to_dict()

    def remove(self, name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Remove a dependency: waits for its job, then deletes its clone and destination."""
        try:
            dependency, key, _ = self._resolve(name)
            if not self.registry.remove(key, timeout=timeout):
                return {"name": dependency.name, "removed": False, "message": "A job is still running"}
            self.manifest.remove(dependency.name)
            self._watch_manifest()
            return {"name": dependency.name, "removed": True, "message": f"Removed {dependency.name}"}
        except (RepositoryError, ValueError) as e:
            return error_handler.to_response(e, {"operation": "remove", "repository": name}).to_dict()

    def wait(self, name: str, timeout: Optional[float] = None) -> bool:
        """Block until the repository's local job has finished."""
        _, _, handle = self._resolve(name)
        return handle.wait(timeout)

    # --- polling -------------------------------------------------------

    def tick(self) -> List[CompletedSync]:
        """
        One poll of all repositories.

        Completed syncs whose branch was resolved during a clone get the
        branch written back into the manifest.
        """
        with self._tick_lock:
            completed = self.monitor.tick()
            rewatch = False
            for sync in completed:
                if not sync.refresh_pending:
                    continue
                handle = self.registry.get(sync.key)
                if self.manifest.set_branch(sync.key.url, handle.branch):
                    rewatch = True
                handle.acknowledge_refresh()
            if rewatch:
                self._watch_manifest()
        return completed
