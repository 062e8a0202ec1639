"""Copying a repository subfolder into the project workspace."""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set

from ..errors import FilesystemError, MissingSourceError


@dataclass
class CopyResult:
    """Outcome of a workspace copy."""
    updated_files: Set[Path] = field(default_factory=set)
    stray_files: Set[Path] = field(default_factory=set)


class WorkspaceSync:
    """
    Mirrors a source folder into a destination folder.

    Every destination file written is reported as updated. Files that already
    existed under the destination and were not written are reported as strays;
    deleting them is left to the caller (see remove_stray_files).
    """

    def __init__(
        self,
        ignored_dir_names: Sequence[str] = (".git", ".gitsubrepository"),
        excluded_suffixes: Sequence[str] = (".meta",)
    ):
        self.ignored_dir_names = set(ignored_dir_names)
        self.excluded_suffixes = tuple(s.lower() for s in excluded_suffixes)
        self.logger = logging.getLogger('repoman.git_sync.workspace')

    @classmethod
    def from_config(cls, config) -> "WorkspaceSync":
        return cls(
            ignored_dir_names=(config.metadata_dir_name, config.hidden_metadata_dir_name),
            excluded_suffixes=config.excluded_suffixes
        )

    def _walk_files(self, root: Path) -> Iterable[Path]:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in self.ignored_dir_names]
            for filename in filenames:
                # A file named like the metadata dir is a git-file pointer
                if filename in self.ignored_dir_names:
                    continue
                yield Path(dirpath) / filename

    def list_files(self, root: Path) -> Set[Path]:
        """List every file under root, skipping repository metadata."""
        root = Path(root)
        if not root.is_dir():
            return set()
        return set(self._walk_files(root))

    def copy(self, source: Path, destination: Path) -> CopyResult:
        """
        Copy the contents of source into destination, overwriting existing files.

        Args:
            source: Folder to copy from (a repository subfolder)
            destination: Workspace folder to copy into

        Returns:
            CopyResult with the written files and the untouched pre-existing files

        Raises:
            MissingSourceError: If source does not exist (destination untouched)
            FilesystemError: If a file cannot be copied
        """
        source = Path(source)
        destination = Path(destination)

        if not source.is_dir():
            raise MissingSourceError(f"Source folder does not exist: {source}")

        pre_existing = self.list_files(destination)
        result = CopyResult()

        for source_file in self._walk_files(source):
            target = destination / source_file.relative_to(source)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_file, target)
            except OSError as e:
                raise FilesystemError(f"Failed to copy {source_file} to {target}: {e}") from e
            result.updated_files.add(target)

        result.stray_files = pre_existing - result.updated_files
        self.logger.info(
            f"Copied {len(result.updated_files)} files from {source} to {destination} "
            f"({len(result.stray_files)} strays)"
        )
        return result


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def is_strictly_within(path: Path, root: Path) -> bool:
    """True if path resolves to a location below root (root itself excluded)."""
    resolved = Path(path).resolve()
    resolved_root = Path(root).resolve()
    return resolved != resolved_root and _is_within(resolved, resolved_root)


def prune_empty_directories(start: Path, stop_at: Path) -> List[Path]:
    """
    Remove start and its ancestors while they are empty, stopping at stop_at.

    stop_at itself is never removed.
    """
    removed = []
    directory = Path(start)
    stop_at = Path(stop_at)

    while directory != stop_at and _is_within(directory, stop_at) and directory.is_dir():
        if any(directory.iterdir()):
            break
        directory.rmdir()
        removed.append(directory)
        directory = directory.parent

    return removed


def remove_stray_files(
    stray_files: Iterable[Path],
    stop_at: Path,
    excluded_suffixes: Sequence[str] = (".meta",),
    keep_companions: bool = True,
    delete_file: Optional[Callable[[Path], None]] = None
) -> List[Path]:
    """
    Delete stray files and then any directories left empty by the deletion.

    Companion files (matching excluded_suffixes) are skipped when
    keep_companions is set; the host removes them together with their
    primary file through delete_file.

    Args:
        stray_files: Files reported as strays by WorkspaceSync.copy
        stop_at: Root folder; pruning of empty directories stops here
        excluded_suffixes: Companion-file suffixes
        keep_companions: Skip companion files instead of deleting them
        delete_file: Host-specific deletion; defaults to unlinking the file

    Returns:
        The files that were deleted

    Raises:
        FilesystemError: If one or more files could not be deleted
    """
    logger = logging.getLogger('repoman.git_sync.workspace')
    suffixes = tuple(s.lower() for s in excluded_suffixes)
    deleted = []
    failures = []

    for stray in sorted(Path(p) for p in stray_files):
        if keep_companions and stray.name.lower().endswith(suffixes):
            continue

        try:
            if delete_file is not None:
                delete_file(stray)
            else:
                stray.unlink()
            deleted.append(stray)
            prune_empty_directories(stray.parent, stop_at)
        except FileNotFoundError:
            prune_empty_directories(stray.parent, stop_at)
        except OSError as e:
            failures.append(f"{stray}: {e}")

    if deleted:
        logger.info(f"Removed {len(deleted)} stray files under {stop_at}")

    if failures:
        raise FilesystemError(f"Failed to remove stray files: {'; '.join(failures)}")

    return deleted
