#!/usr/bin/env python3
"""
MCP Server Integration Test

Checks that the server initializes from environment configuration, registers
the repository tools and runs the polling monitor.
"""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent))

from mcp.server.fastmcp import FastMCP

from repoman.config import Config
from repoman.git_sync.registry import RepositoryRegistry
from repoman.server import initialize_server, register_tools, setup_logging, start_monitor
from repoman.service import RepositoryService
from repoman.state_store import MemoryStateStore

EXPECTED_TOOLS = {
    "list_repositories",
    "repository_status",
    "update_repository",
    "update_all_repositories",
    "push_repository",
    "add_repository",
    "remove_repository",
}


class TestServer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config = Config(project_root=self.temp_dir / "project", cache_dir=self.temp_dir / "cache")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_service(self) -> RepositoryService:
        return RepositoryService(self.config, registry=RepositoryRegistry(self.config), store=MemoryStateStore())

    def test_tool_registration(self):
        server = FastMCP("Test Server")
        register_tools(server, self.make_service())

        tools = asyncio.run(server.list_tools())

        self.assertEqual({tool.name for tool in tools}, EXPECTED_TOOLS)
        print("  ✓ All repository tools registered")

    def test_initialize_server_from_environment(self):
        env = {
            "REPOMAN_PROJECT_ROOT": str(self.temp_dir / "project"),
            "REPOMAN_CACHE_DIR": str(self.temp_dir / "cache"),
            "REPOMAN_LOG_LEVEL": "ERROR",
        }
        with patch.dict(os.environ, env), \
                patch("repoman.config.validate_git_availability", return_value=(True, None)):
            server, service, config = initialize_server()

        self.assertIsInstance(server, FastMCP)
        self.assertEqual(config.project_root, (self.temp_dir / "project").resolve())
        self.assertTrue(config.manifest_path.exists())
        self.assertEqual(service.manifest.dependencies, [])

    def test_initialize_server_exits_without_git(self):
        env = {
            "REPOMAN_PROJECT_ROOT": str(self.temp_dir / "project"),
            "REPOMAN_CACHE_DIR": str(self.temp_dir / "cache"),
            "REPOMAN_LOG_LEVEL": "CRITICAL",
        }
        with patch.dict(os.environ, env), \
                patch("repoman.config.validate_git_availability", return_value=(False, "not found")):
            with self.assertRaises(SystemExit):
                initialize_server()

    def test_setup_logging_installs_handlers(self):
        setup_logging(Config(project_root=self.temp_dir, log_level="WARNING"))

        logger = logging.getLogger('repoman.service')
        self.assertEqual(logger.level, logging.WARNING)
        self.assertTrue(any(isinstance(h, logging.StreamHandler) for h in logger.handlers))
        self.assertFalse(logger.propagate)

    def test_monitor_thread_polls_service(self):
        ticked = threading.Event()
        service = MagicMock()
        service.tick.side_effect = lambda: ticked.set() or []

        thread = start_monitor(service, poll_interval=0.01)

        self.assertTrue(thread.daemon)
        self.assertTrue(ticked.wait(5))

    def test_monitor_survives_tick_errors(self):
        calls = []
        recovered = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("manifest unreadable")
            recovered.set()
            return []

        service = MagicMock()
        service.tick.side_effect = tick

        start_monitor(service, poll_interval=0.01)

        self.assertTrue(recovered.wait(5))


if __name__ == "__main__":
    unittest.main(verbosity=2)
