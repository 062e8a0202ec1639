"""Working tree probing: fingerprint based dirty detection and git status text."""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from ..errors import RepositoryError
from ..state_store import KeyValueStore
from .fingerprint import ContentFingerprint

STATUS_CLEAN = "Clean"
STATUS_NOT_CLONED = "Not cloned"

_STATUS_LABELS = {
    "M": "Modified",
    "A": "Added",
    "D": "Deleted",
    "R": "Renamed",
    "C": "Copied",
    "U": "Conflicted",
    "?": "Untracked",
}


def summarize_porcelain(porcelain: str) -> str:
    """
    Turn ``git status --porcelain`` output into a short human readable summary.

    Args:
        porcelain: Raw porcelain v1 output

    Returns:
        One line per change kind, e.g. ``Modified: a.txt, b.txt``, or "Clean"
    """
    groups: Dict[str, List[str]] = {}
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        code = line[:2]
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        key = next((c for c in code if c not in (" ", "!")), "?")
        label = _STATUS_LABELS.get(key, "Changed")
        groups.setdefault(label, []).append(path.strip('"'))

    if not groups:
        return STATUS_CLEAN

    return "\n".join(f"{label}: {', '.join(paths)}" for label, paths in groups.items())


class WorkingTreeProbe:
    """
    Answers "has this folder changed since the baseline?" and "what does git say?".

    Dirty detection is purely fingerprint based, so it still works when the
    repository metadata is inconsistent. The git status text is for display.
    """

    def __init__(self, fingerprint: Optional[ContentFingerprint] = None, store: Optional[KeyValueStore] = None):
        self.fingerprint = fingerprint or ContentFingerprint()
        self.store = store
        self.logger = logging.getLogger('repoman.git_sync.probe')

    def take_baseline(self, path: Path) -> str:
        """Fingerprint path as the new known-clean baseline."""
        return self.fingerprint.compute(path)

    def is_dirty(self, path: Path, baseline_digest: Optional[str]) -> bool:
        """
        Compare the current fingerprint of path with a baseline.

        Fingerprinting failures count as dirty rather than raising.
        """
        try:
            current = self.fingerprint.compute(path)
        except (RepositoryError, OSError) as e:
            self.logger.warning(f"Fingerprint of {path} failed, treating as dirty: {e}")
            return True
        return current != (baseline_digest or "")

    def save_baseline(self, key: str, path: Path) -> str:
        """Take a baseline of path and persist it under key in the state store."""
        digest = self.take_baseline(path)
        if self.store is not None:
            self.store.set(key, digest)
        return digest

    def load_baseline(self, key: str) -> str:
        if self.store is None:
            return ""
        return self.store.get(key, "") or ""

    def has_local_changes(self, key: str, path: Path) -> bool:
        """Check path against the baseline persisted under key."""
        return self.is_dirty(path, self.load_baseline(key))

    def refresh_vcs_status(self, path: Path) -> str:
        """
        Query git for a human readable status of the working tree at path.

        Never raises; failures are described in the returned text.
        """
        path = Path(path)
        if not path.is_dir():
            return STATUS_NOT_CLONED

        try:
            repo = Repo(path)
            try:
                # Keep status from rewriting the index while a job may be running
                with repo.git.custom_environment(GIT_OPTIONAL_LOCKS="0"):
                    porcelain = repo.git.status("--porcelain", "--untracked-files=all")
            finally:
                repo.close()
        except (InvalidGitRepositoryError, NoSuchPathError):
            return STATUS_NOT_CLONED
        except (GitCommandError, OSError) as e:
            self.logger.debug(f"git status failed for {path}: {e}")
            return f"Status unavailable: {e}"

        return summarize_porcelain(porcelain)
