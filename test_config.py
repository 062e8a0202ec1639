#!/usr/bin/env python3
"""
Tests for configuration loading, platform defaults, the key/value state store and file locks.
"""

import json
import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent))

from repoman.config import Config, load_configuration, validate_configuration
from repoman.file_lock import UNPARSEABLE_LOCK_GRACE, FileLock, is_lock_held, read_lock_owner
from repoman.platform import get_git_executable, get_platform_info, get_platform_specific_defaults
from repoman.state_store import JsonStateStore, MemoryStateStore, write_json_atomic


class TestConfig(unittest.TestCase):
    """Configuration defaults, validation and environment overrides."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_derived_paths(self):
        config = Config(project_root=self.temp_dir, cache_dir=self.temp_dir / "cache")

        self.assertEqual(config.repositories_path, self.temp_dir.resolve() / "Repositories")
        self.assertEqual(config.manifest_path, config.repositories_path / "Dependencies.json")
        self.assertEqual(config.state_file_path, config.repositories_path / ".repoman-state.json")

    def test_absolute_repositories_dir(self):
        elsewhere = self.temp_dir / "elsewhere"
        config = Config(project_root=self.temp_dir, repositories_dir=elsewhere)
        self.assertEqual(config.repositories_path, elsewhere)

    def test_validation(self):
        with self.assertRaises(ValueError):
            Config(project_root=self.temp_dir, log_level="CHATTY")
        with self.assertRaises(ValueError):
            Config(project_root=self.temp_dir, poll_interval=0)
        with self.assertRaises(ValueError):
            Config(project_root=self.temp_dir, hidden_metadata_dir_name=".git")

        config = Config(project_root=self.temp_dir, log_level="debug", excluded_suffixes=(".META",))
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.excluded_suffixes, (".meta",))

    def test_load_from_environment(self):
        env = {
            "REPOMAN_PROJECT_ROOT": str(self.temp_dir / "project"),
            "REPOMAN_CACHE_DIR": str(self.temp_dir / "cache"),
            "REPOMAN_MANIFEST": "Packages.json",
            "REPOMAN_POLL_INTERVAL": "2.5",
            "REPOMAN_HIDE_METADATA": "false",
            "REPOMAN_LOG_LEVEL": "WARNING",
        }
        with patch.dict(os.environ, env):
            config = load_configuration()

        self.assertEqual(config.project_root, (self.temp_dir / "project").resolve())
        self.assertEqual(config.cache_dir, (self.temp_dir / "cache").resolve())
        self.assertEqual(config.manifest_path.name, "Packages.json")
        self.assertEqual(config.poll_interval, 2.5)
        self.assertFalse(config.hide_metadata_during_jobs)
        self.assertEqual(config.log_level, "WARNING")

    def test_invalid_environment_value(self):
        with patch.dict(os.environ, {"REPOMAN_POLL_INTERVAL": "soon"}):
            with self.assertRaises(ValueError) as context:
                load_configuration()
        self.assertIn("Configuration error", str(context.exception))

    def test_validate_configuration_creates_directories(self):
        config = Config(project_root=self.temp_dir / "project", cache_dir=self.temp_dir / "cache")

        with patch("repoman.config.validate_git_availability", return_value=(True, None)):
            problems = validate_configuration(config)

        self.assertEqual(problems, [])
        self.assertTrue(config.cache_dir.is_dir())
        self.assertTrue(config.repositories_path.is_dir())

    def test_validate_configuration_reports_missing_git(self):
        config = Config(project_root=self.temp_dir / "project", cache_dir=self.temp_dir / "cache")

        with patch("repoman.config.validate_git_availability", return_value=(False, "Git executable 'git' not found")):
            problems = validate_configuration(config)

        self.assertTrue(any("Git not available" in p for p in problems))


class TestPlatform(unittest.TestCase):
    """Platform detection drives the defaults."""

    def test_defaults_follow_detected_system(self):
        cases = (("Windows", 1.0, "git.exe"), ("Linux", 0.25, "git"), ("Darwin", 0.5, "git"))
        for system, poll_interval, git_executable in cases:
            with self.subTest(system=system), \
                    patch("repoman.platform.platform.system", return_value=system), \
                    patch("repoman.platform._platform_info", None):
                defaults = get_platform_specific_defaults()
                self.assertEqual(defaults["poll_interval"], poll_interval)
                self.assertEqual(get_git_executable(), git_executable)
                self.assertEqual(defaults["cache_dir"].name, "repoman")

    def test_unknown_system_uses_generic_defaults(self):
        with patch("repoman.platform.platform.system", return_value="Plan9"), \
                patch("repoman.platform._platform_info", None):
            info = get_platform_info()
            self.assertFalse(info.is_windows or info.is_macos or info.is_linux)
            self.assertEqual(get_platform_specific_defaults()["poll_interval"], 0.5)


class TestStateStore(unittest.TestCase):
    """Memory and JSON file backed key/value stores."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_memory_store(self):
        store = MemoryStateStore({"a": "1"})
        store.set("b", "2")
        self.assertEqual(store.get("a"), "1")
        self.assertEqual(store.get("b"), "2")
        self.assertEqual(store.get("c", "missing"), "missing")

    def test_json_store_persists_between_instances(self):
        path = self.temp_dir / "state" / "store.json"
        JsonStateStore(path).set("Repositories/Package_snapshot", "abc")

        self.assertEqual(JsonStateStore(path).get("Repositories/Package_snapshot"), "abc")
        self.assertEqual(json.loads(path.read_text()), {"Repositories/Package_snapshot": "abc"})
        self.assertFalse(path.with_name("store.json.lock").exists())

    def test_json_store_tolerates_corrupt_file(self):
        path = self.temp_dir / "store.json"
        path.write_text("{not json")
        store = JsonStateStore(path)

        self.assertIsNone(store.get("anything"))
        store.set("key", "value")
        self.assertEqual(store.get("key"), "value")

    def test_concurrent_writes_keep_every_key(self):
        store = JsonStateStore(self.temp_dir / "store.json")

        threads = [threading.Thread(target=store.set, args=(f"key{i}", str(i))) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for i in range(10):
            self.assertEqual(store.get(f"key{i}"), str(i))

    def test_write_json_atomic_leaves_no_temp_files(self):
        path = self.temp_dir / "nested" / "data.json"
        write_json_atomic(path, {"b": 2, "a": 1})

        self.assertEqual(json.loads(path.read_text()), {"a": 1, "b": 2})
        self.assertEqual([p.name for p in path.parent.iterdir()], ["data.json"])


class TestFileLock(unittest.TestCase):
    """Exclusive lock files with owner tracking and stale cleanup."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.lock_path = self.temp_dir / "repo.lock"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_lock_is_exclusive(self):
        first = FileLock(self.lock_path, timeout=0)
        second = FileLock(self.lock_path, timeout=0)

        self.assertTrue(first.acquire())
        self.assertFalse(second.acquire())
        self.assertTrue(is_lock_held(self.lock_path))
        self.assertEqual(read_lock_owner(self.lock_path)[0], os.getpid())

        first.release()
        self.assertFalse(self.lock_path.exists())
        self.assertTrue(second.acquire())
        second.release()

    def test_release_twice_is_harmless(self):
        lock = FileLock(self.lock_path, timeout=0)
        self.assertTrue(lock.acquire())
        self.assertTrue(lock.release())
        self.assertTrue(lock.release())
        self.assertFalse(lock.is_locked())

    def test_stale_lock_from_dead_process_is_reclaimed(self):
        self.lock_path.write_text("locked_by_pid_999999_thread_1")

        with patch("repoman.file_lock.is_process_running", return_value=False):
            self.assertFalse(is_lock_held(self.lock_path))
            lock = FileLock(self.lock_path, timeout=0)
            self.assertTrue(lock.acquire())

        self.assertEqual(read_lock_owner(self.lock_path)[0], os.getpid())
        lock.release()

    def test_old_unparseable_lock_is_reclaimed(self):
        self.lock_path.write_text("garbage")
        old = time.time() - UNPARSEABLE_LOCK_GRACE - 60
        os.utime(self.lock_path, (old, old))
        self.assertIsNone(read_lock_owner(self.lock_path))
        self.assertFalse(is_lock_held(self.lock_path))

        lock = FileLock(self.lock_path, timeout=0)
        self.assertTrue(lock.acquire())
        lock.release()

    def test_fresh_empty_lock_counts_as_held(self):
        """An owner may not have written its pid yet."""
        self.lock_path.touch()

        self.assertTrue(is_lock_held(self.lock_path))
        self.assertFalse(FileLock(self.lock_path, timeout=0).acquire())
        self.assertTrue(self.lock_path.exists())

    def test_lock_appears_with_owner_written(self):
        lock = FileLock(self.lock_path, timeout=0)
        self.assertTrue(lock.acquire())

        self.assertEqual(read_lock_owner(self.lock_path), (os.getpid(), threading.get_ident()))
        self.assertEqual([p.name for p in self.temp_dir.iterdir()], ["repo.lock"])
        lock.release()

    def test_racing_acquirers_never_share_the_lock(self):
        overlaps = []

        for _ in range(100):
            barrier = threading.Barrier(8)
            holders = []
            holders_lock = threading.Lock()

            def contend():
                lock = FileLock(self.lock_path, timeout=0)
                barrier.wait()
                if lock.acquire():
                    with holders_lock:
                        holders.append(lock)

            threads = [threading.Thread(target=contend) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            if len(holders) != 1:
                overlaps.append(len(holders))
            for lock in holders:
                lock.release()

        self.assertEqual(overlaps, [])
        self.assertFalse(self.lock_path.exists())

    def test_release_leaves_a_foreign_lock_alone(self):
        lock = FileLock(self.lock_path, timeout=0)
        self.assertTrue(lock.acquire())
        self.lock_path.unlink()
        self.lock_path.write_text("locked_by_pid_1_thread_1\nother\n")

        self.assertTrue(lock.release())
        self.assertTrue(self.lock_path.exists())

    def test_context_manager_times_out(self):
        with FileLock(self.lock_path, timeout=0):
            with self.assertRaises(TimeoutError):
                with FileLock(self.lock_path, timeout=0.1, poll_delay=0.02):
                    pass
        self.assertFalse(self.lock_path.exists())


if __name__ == "__main__":
    unittest.main(verbosity=2)
