#!/usr/bin/env python3
"""Tests for content fingerprinting of directory trees."""

import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from repoman.config import Config
from repoman.git_sync.fingerprint import EMPTY_FINGERPRINT, ContentFingerprint, compute_fingerprint


def build_tree(root: Path) -> None:
    (root / "Scripts").mkdir(parents=True)
    (root / "Scripts" / "Player.cs").write_text("class Player {}")
    (root / "Scripts" / "Player.cs.meta").write_text("guid: 1234")
    (root / "README.md").write_text("# Package\n")
    (root / "Textures").mkdir()
    (root / "Textures" / "icon.png").write_bytes(bytes(range(256)))


def test_missing_path_gives_empty_fingerprint():
    """A path that does not exist is not an error."""
    print("Testing fingerprint of a missing path")

    with tempfile.TemporaryDirectory() as temp_dir:
        missing = Path(temp_dir) / "does-not-exist"
        assert ContentFingerprint().compute(missing) == EMPTY_FINGERPRINT
        print("  ✓ Missing path yields the empty fingerprint")


def test_fingerprint_is_deterministic():
    print("Testing fingerprint determinism")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir) / "tree"
        build_tree(root)

        fingerprint = ContentFingerprint()
        first = fingerprint.compute(root)
        second = fingerprint.compute(root)

        assert first == second
        assert len(first) == 64
        print("  ✓ Two runs over an unchanged tree agree")

        # A byte-identical copy elsewhere has the same digest
        other = Path(temp_dir) / "other"
        build_tree(other)
        assert fingerprint.compute(other) == first
        print("  ✓ Identical trees at different locations agree")


def test_content_changes_change_fingerprint():
    print("Testing fingerprint sensitivity to edits")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        build_tree(root)
        fingerprint = ContentFingerprint()
        baseline = fingerprint.compute(root)

        player = root / "Scripts" / "Player.cs"
        player.write_text("class Player { int hp; }")
        edited = fingerprint.compute(root)
        assert edited != baseline
        print("  ✓ Editing a file changes the digest")

        player.write_text("class Player {}")
        assert fingerprint.compute(root) == baseline
        print("  ✓ Reverting the bytes restores the digest")

        (root / "Scripts" / "Enemy.cs").write_text("class Enemy {}")
        assert fingerprint.compute(root) != baseline
        print("  ✓ Adding a file changes the digest")

        (root / "Scripts" / "Enemy.cs").unlink()
        (root / "README.md").unlink()
        assert fingerprint.compute(root) != baseline
        print("  ✓ Removing a file changes the digest")


def test_companion_files_are_ignored():
    print("Testing that .meta files do not affect the fingerprint")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        build_tree(root)
        fingerprint = ContentFingerprint()
        baseline = fingerprint.compute(root)

        (root / "Textures" / "icon.png.meta").write_text("importer: texture")
        (root / "Scripts" / "Player.cs.meta").unlink()
        (root / "Scripts.META").write_text("upper case suffix")

        assert fingerprint.compute(root) == baseline
        print("  ✓ Adding and removing companion files keeps the digest")


def test_rename_changes_fingerprint():
    print("Testing fingerprint path sensitivity")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        build_tree(root)
        fingerprint = ContentFingerprint()
        baseline = fingerprint.compute(root)

        os.rename(root / "README.md", root / "READ_ME.md")
        assert fingerprint.compute(root) != baseline
        print("  ✓ Same content under a new name changes the digest")

        os.rename(root / "READ_ME.md", root / "Textures" / "README.md")
        assert fingerprint.compute(root) != baseline
        print("  ✓ Moving a file to another folder changes the digest")


def test_content_boundaries_are_unambiguous():
    """Moving bytes between a file's path and its content must not collide."""
    with tempfile.TemporaryDirectory() as temp_dir:
        first = Path(temp_dir) / "first"
        second = Path(temp_dir) / "second"
        first.mkdir()
        second.mkdir()
        (first / "a").write_text("bc")
        (second / "ab").write_text("c")

        fingerprint = ContentFingerprint()
        assert fingerprint.compute(first) != fingerprint.compute(second)


def test_ordering_is_case_insensitive():
    print("Testing case-insensitive ordering")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        (root / "b.txt").write_text("b")
        (root / "A.txt").write_text("a")
        (root / "c.txt").write_text("c")

        files = ContentFingerprint().list_files(root)
        assert files == ["A.txt", "b.txt", "c.txt"]
        print("  ✓ Files are ordered ignoring case")


def test_hidden_metadata_directory_hashes_like_primary():
    print("Testing metadata directory name canonicalization")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        build_tree(root)
        (root / ".git" / "refs").mkdir(parents=True)
        (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (root / ".git" / "refs" / "main").write_text("0" * 40)

        fingerprint = ContentFingerprint()
        baseline = fingerprint.compute(root)

        os.rename(root / ".git", root / ".gitsubrepository")
        (root / ".git").write_text("gitdir: .gitsubrepository\n")

        assert fingerprint.compute(root) == baseline
        print("  ✓ Hidden metadata directory with a git-file pointer gives the same digest")


def test_rename_during_fingerprint_is_resolved():
    """The metadata directory is renamed between enumeration and reading."""
    print("Testing metadata rename in the middle of a fingerprint")

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        build_tree(root)
        (root / ".git" / "objects").mkdir(parents=True)
        (root / ".git" / "config").write_text("[core]\n\tbare = false\n")
        (root / ".git" / "objects" / "pack").write_bytes(b"\x00\x01\x02")

        fingerprint = ContentFingerprint()
        baseline = fingerprint.compute(root)

        files = fingerprint.list_files(root)
        os.rename(root / ".git", root / ".gitsubrepository")
        assert fingerprint.digest_files(root, files) == baseline
        print("  ✓ Files are read under the hidden name after the rename")

        files = fingerprint.list_files(root)
        os.rename(root / ".gitsubrepository", root / ".git")
        assert fingerprint.digest_files(root, files) == baseline
        print("  ✓ Files are read under the primary name after renaming back")


def test_configured_names_are_used():
    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir) / "tree"
        build_tree(root)
        config = Config(
            project_root=Path(temp_dir),
            cache_dir=Path(temp_dir) / "cache",
            excluded_suffixes=(".meta", ".tmp")
        )
        baseline = compute_fingerprint(root, config)
        (root / "scratch.tmp").write_text("temporary")

        assert compute_fingerprint(root, config) == baseline
        assert compute_fingerprint(root) != baseline


def main():
    """Run all fingerprint tests."""
    print("🧪 Content Fingerprint Tests")
    print("=" * 50)

    tests = [
        test_missing_path_gives_empty_fingerprint,
        test_fingerprint_is_deterministic,
        test_content_changes_change_fingerprint,
        test_companion_files_are_ignored,
        test_rename_changes_fingerprint,
        test_content_boundaries_are_unambiguous,
        test_ordering_is_case_insensitive,
        test_hidden_metadata_directory_hashes_like_primary,
        test_rename_during_fingerprint_is_resolved,
        test_configured_names_are_used,
    ]

    passed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except AssertionError as e:
            print(f"  ✗ {test.__name__} failed: {e}")

    print(f"\nResults: {passed}/{len(tests)} tests passed")
    return passed == len(tests)


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
