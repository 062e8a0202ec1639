"""Dependency manifest: the project's list of repositories to mirror."""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Dict, List, Optional

from .state_store import write_json_atomic


def validate_name(name: str) -> Optional[str]:
    """
    Check that a dependency name is usable as a single folder name.

    Returns:
        A message describing the problem, or None if the name is valid
    """
    name = name.strip()
    if not name:
        return "Name can not be empty."
    if name in (".", "..") or "/" in name or "\\" in name or PureWindowsPath(name).drive or os.path.isabs(name):
        return "Name must be a plain folder name without path separators."
    return None


def validate_sub_folder(sub_folder: str) -> Optional[str]:
    """
    Check that a sub folder stays inside the repository.

    Returns:
        A message describing the problem, or None if the sub folder is valid
    """
    if not sub_folder:
        return None
    windows_path = PureWindowsPath(sub_folder)
    if windows_path.drive or windows_path.is_absolute() or PurePosixPath(sub_folder).is_absolute():
        return "SubFolder must be a relative path inside the repository."
    if ".." in windows_path.parts:
        return "SubFolder must be a relative path inside the repository."
    return None


@dataclass
class Dependency:
    """One manifest record. Url identifies the dependency; the rest may change."""
    url: str
    branch: str = ""
    name: str = ""
    sub_folder: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "Url": self.url,
            "Branch": self.branch,
            "Name": self.name,
            "SubFolder": self.sub_folder,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dependency":
        return cls(
            url=str(data.get("Url", "")).strip(),
            branch=str(data.get("Branch", "") or "").strip(),
            name=str(data.get("Name", "") or "").strip(),
            sub_folder=str(data.get("SubFolder", "") or "").strip().strip("/\\"),
        )


class DependencyManifest:
    """
    JSON manifest of dependencies, ``{"Dependencies": [...]}``.

    The file is created empty on first load. Writes are atomic.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger('repoman.manifest')
        self.dependencies: List[Dependency] = []

    def load(self) -> List[Dependency]:
        """Read the manifest, creating an empty one if it does not exist."""
        if not self.path.exists():
            self.dependencies = []
            self.save()
            return self.dependencies

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Manifest {self.path} is not valid JSON: {e}")

        records = data.get("Dependencies", []) if isinstance(data, dict) else []
        self.dependencies = [Dependency.from_dict(r) for r in records if isinstance(r, dict) and r.get("Url")]
        return self.dependencies

    def save(self) -> None:
        write_json_atomic(self.path, {"Dependencies": [d.to_dict() for d in self.dependencies]})

    def find(self, name: str) -> Optional[Dependency]:
        """Find a dependency by name (case-insensitive, trimmed)."""
        wanted = name.strip().lower()
        for dependency in self.dependencies:
            if dependency.name.strip().lower() == wanted:
                return dependency
        return None

    def find_by_url(self, url: str) -> Optional[Dependency]:
        for dependency in self.dependencies:
            if dependency.url == url:
                return dependency
        return None

    def reconcile(self, updated: List[Dependency]) -> None:
        """
        Merge an edited dependency list into the manifest, keyed by url.

        Entries whose url disappeared are removed, new urls are appended;
        existing entries keep their position.
        """
        updated_urls = {d.url for d in updated}
        self.dependencies = [d for d in self.dependencies if d.url in updated_urls]

        known_urls = {d.url for d in self.dependencies}
        for dependency in updated:
            if dependency.url not in known_urls:
                self.dependencies.append(dependency)
                known_urls.add(dependency.url)

        self.save()

    def validate_new(self, dependency: Dependency) -> Optional[str]:
        """
        Check a dependency before it is added.

        Returns:
            A message describing the problem, or None if it can be added
        """
        if not dependency.url:
            return "Url can not be empty."
        if not dependency.branch:
            return "Either a valid branch or tag must be specified"
        problem = validate_name(dependency.name) or validate_sub_folder(dependency.sub_folder)
        if problem:
            return problem

        url = dependency.url.strip().lower()
        for existing in self.dependencies:
            if existing.name.strip().lower() == dependency.name.strip().lower():
                return "Name already exists."
            if existing.url.strip().lower() == url:
                return f"Repository already exists with the current url.\nExisting: {existing.name}"
        return None

    def add(self, dependency: Dependency) -> None:
        """
        Append a validated dependency and save.

        Raises:
            ValueError: If validate_new reports a problem
        """
        problem = self.validate_new(dependency)
        if problem:
            raise ValueError(problem)
        self.dependencies.append(dependency)
        self.save()
        self.logger.info(f"Added dependency {dependency.name} ({dependency.url})")

    def remove(self, name: str) -> Optional[Dependency]:
        """Remove the dependency called name; returns it, or None if unknown."""
        dependency = self.find(name)
        if dependency is None:
            return None
        self.dependencies.remove(dependency)
        self.save()
        self.logger.info(f"Removed dependency {dependency.name} ({dependency.url})")
        return dependency

    def set_branch(self, url: str, branch: str) -> bool:
        """Record a resolved branch for the dependency with url; True if it changed."""
        dependency = self.find_by_url(url)
        if dependency is None or dependency.branch == branch:
            return False
        dependency.branch = branch
        self.save()
        return True
