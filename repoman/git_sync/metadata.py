"""Hiding a working tree's metadata directory while a job runs."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional


class MetadataDirectory:
    """
    Renames ``.git`` to its hidden name and back.

    While hidden, a git-file pointer (``gitdir: <hidden name>``) takes the
    place of the directory so git and GitPython keep resolving the repository.
    """

    def __init__(self, working_tree: Path, name: str = ".git", hidden_name: str = ".gitsubrepository"):
        self.working_tree = Path(working_tree)
        self.name = name
        self.hidden_name = hidden_name
        self.logger = logging.getLogger('repoman.git_sync.metadata')

    @property
    def primary_path(self) -> Path:
        return self.working_tree / self.name

    @property
    def hidden_path(self) -> Path:
        return self.working_tree / self.hidden_name

    def is_hidden(self) -> bool:
        return self.hidden_path.is_dir()

    def exists(self) -> bool:
        """Check whether the working tree has metadata under either name."""
        return self.primary_path.is_dir() or self.is_hidden()

    def hide(self) -> bool:
        """
        Move the metadata directory to its hidden name.

        Returns:
            True if the metadata is hidden afterwards
        """
        if self.is_hidden():
            return True
        if not self.primary_path.is_dir():
            return False

        self._exclude_hidden_directory()
        self.primary_path.rename(self.hidden_path)
        self.primary_path.write_text(f"gitdir: {self.hidden_name}\n")
        self.logger.debug(f"Hid metadata directory in {self.working_tree}")
        return True

    def _exclude_hidden_directory(self) -> None:
        # git only skips a directory named .git; status, add and clean must not see the hidden one
        exclude_file = self.primary_path / "info" / "exclude"
        pattern = f"/{self.hidden_name}/"
        existing = exclude_file.read_text() if exclude_file.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        separator = "" if not existing or existing.endswith("\n") else "\n"
        exclude_file.write_text(f"{existing}{separator}{pattern}\n")

    def restore(self) -> bool:
        """
        Move the metadata directory back to its primary name.

        Also repairs a tree left hidden by an interrupted job.

        Returns:
            True if a rename took place
        """
        if not self.is_hidden():
            return False

        if self.primary_path.is_dir():
            self.logger.error(
                f"Both {self.name} and {self.hidden_name} exist in {self.working_tree}; leaving both in place"
            )
            return False

        if self.primary_path.exists():
            self.primary_path.unlink()

        self.hidden_path.rename(self.primary_path)
        self.logger.debug(f"Restored metadata directory in {self.working_tree}")
        return True

    @contextmanager
    def hidden(self, on_change: Optional[Callable[[bool], None]] = None) -> Iterator[bool]:
        """
        Keep the metadata hidden for the duration of the block.

        Args:
            on_change: Called with the new hidden state after each rename
        """
        is_hidden = self.hide()
        if is_hidden and on_change:
            on_change(True)
        try:
            yield is_hidden
        finally:
            if is_hidden:
                self.restore()
                if on_change:
                    on_change(False)
