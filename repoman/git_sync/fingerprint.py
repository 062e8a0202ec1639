"""Content fingerprinting of a directory tree for local change detection."""

import hashlib
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Sequence

from ..errors import FilesystemError

# Returned for a path that does not exist
EMPTY_FINGERPRINT = ""

_CHUNK_SIZE = 1024 * 1024


class ContentFingerprint:
    """
    Computes a stable digest over the logical content of a directory tree.

    Files are ordered by their relative path compared case-insensitively.
    For each file the lower-cased relative path and then its bytes are fed
    into a single SHA-256. Companion files (``*.meta``) are skipped because
    the host regenerates them on import.

    The repository metadata directory may be renamed to its hidden name while
    a job runs, so both names hash as the primary name and reads fall back to
    the other name when a file's directory has disappeared.
    """

    def __init__(
        self,
        metadata_dir_name: str = ".git",
        hidden_metadata_dir_name: str = ".gitsubrepository",
        excluded_suffixes: Sequence[str] = (".meta",)
    ):
        self.metadata_dir_name = metadata_dir_name
        self.hidden_metadata_dir_name = hidden_metadata_dir_name
        self.excluded_suffixes = tuple(s.lower() for s in excluded_suffixes)
        self.logger = logging.getLogger('repoman.git_sync.fingerprint')

    @classmethod
    def from_config(cls, config) -> "ContentFingerprint":
        return cls(
            metadata_dir_name=config.metadata_dir_name,
            hidden_metadata_dir_name=config.hidden_metadata_dir_name,
            excluded_suffixes=config.excluded_suffixes
        )

    def is_excluded(self, name: str) -> bool:
        """Check whether a file name matches the companion-file pattern."""
        return name.lower().endswith(self.excluded_suffixes)

    def canonical_path(self, relative_path: str) -> str:
        """Map the hidden metadata directory name back to the primary name."""
        parts = [
            self.metadata_dir_name if part == self.hidden_metadata_dir_name else part
            for part in PurePosixPath(relative_path).parts
        ]
        return PurePosixPath(*parts).as_posix()

    def alternate_path(self, relative_path: str) -> str:
        """Swap the primary and hidden metadata directory names in a path."""
        swapped = []
        for part in PurePosixPath(relative_path).parts:
            if part == self.metadata_dir_name:
                swapped.append(self.hidden_metadata_dir_name)
            elif part == self.hidden_metadata_dir_name:
                swapped.append(self.metadata_dir_name)
            else:
                swapped.append(part)
        return PurePosixPath(*swapped).as_posix()

    def list_files(self, root: Path) -> List[str]:
        """
        Enumerate the files that contribute to the fingerprint.

        Args:
            root: Directory to enumerate

        Returns:
            Canonical relative paths (forward slashes), in hashing order
        """
        root = Path(root)
        seen = set()
        files = []

        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in filenames:
                if self.is_excluded(filename):
                    continue
                full_path = Path(dirpath) / filename
                relative = full_path.relative_to(root).as_posix()
                # A regular file named like the metadata dir is a git-file pointer
                if filename == self.metadata_dir_name:
                    continue
                canonical = self.canonical_path(relative)
                if canonical in seen:
                    continue
                seen.add(canonical)
                files.append(canonical)

        files.sort(key=lambda p: (p.lower(), p))
        return files

    def _resolve(self, root: Path, relative_path: str) -> Path:
        candidate = root / relative_path
        if candidate.parent.is_dir():
            return candidate
        alternate = root / self.alternate_path(relative_path)
        if alternate.parent.is_dir():
            return alternate
        return candidate

    def digest_files(self, root: Path, relative_paths: Iterable[str]) -> str:
        """
        Hash the given files under root.

        Raises:
            FilesystemError: If a file cannot be read under either metadata name
        """
        root = Path(root)
        digest = hashlib.sha256()

        for relative_path in relative_paths:
            path_bytes = relative_path.lower().encode("utf-8")
            digest.update(len(path_bytes).to_bytes(8, "big"))
            digest.update(path_bytes)

            file_path = self._resolve(root, relative_path)
            try:
                with open(file_path, "rb") as f:
                    size = os.fstat(f.fileno()).st_size
                    digest.update(size.to_bytes(8, "big"))
                    for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                        digest.update(chunk)
            except OSError as e:
                raise FilesystemError(f"Cannot read {file_path} for fingerprint: {e}") from e

        return digest.hexdigest()

    def compute(self, path: Path) -> str:
        """
        Compute the fingerprint of a directory tree.

        Args:
            path: Directory to fingerprint

        Returns:
            Hex digest, or EMPTY_FINGERPRINT if the directory does not exist
        """
        root = Path(path)
        if not root.is_dir():
            return EMPTY_FINGERPRINT

        files = self.list_files(root)
        fingerprint = self.digest_files(root, files)
        self.logger.debug(f"Fingerprint of {root} over {len(files)} files: {fingerprint}")
        return fingerprint


def compute_fingerprint(path: Path, config=None) -> str:
    """Convenience wrapper computing a fingerprint with default or configured names."""
    fingerprint = ContentFingerprint.from_config(config) if config is not None else ContentFingerprint()
    return fingerprint.compute(path)
