"""MCP server exposing the repository manager as tools."""

import logging
import sys
import threading
import time
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from .config import Config, load_configuration, validate_configuration
from .service import RepositoryService


def setup_logging(config: Config) -> None:
    """Setup logging configuration with structured logging."""
    class StructuredFormatter(logging.Formatter):
        def format(self, record):
            if hasattr(record, 'operation'):
                record.msg = f"[{record.operation}] {record.msg}"
            return super().format(record)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    loggers = [
        'repoman.init',
        'repoman.service',
        'repoman.git_sync',
        'repoman.error_handler',
        'repoman.manifest',
        'repoman.monitor'
    ]

    formatter = StructuredFormatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    for logger_name in loggers:
        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, config.log_level))

        # stdout carries the MCP stdio protocol; log to stderr
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.propagate = False


def register_tools(server: FastMCP, service: RepositoryService) -> None:
    """Register MCP tools with the server instance."""

    @server.tool()
    def list_repositories() -> List[dict]:
        """
        List every repository dependency of the project with its sync state.

        Returns:
            One entry per dependency: name, url, branch, destination, whether a
            job is in progress, the last progress/message, git status text and
            whether the synced folder has local changes.
        """
        service.reload()
        return service.list_repositories()

    @server.tool()
    def repository_status(name: str) -> dict:
        """
        Refresh and return the status of one repository.

        Args:
            name: Dependency name as listed in the manifest
        """
        return service.status(name)

    @server.tool()
    def update_repository(name: str, force: bool = False) -> dict:
        """
        Clone or update one repository in the background.

        Updating discards local changes. Without force, a repository with local
        changes is left alone and DIRTY_WORKING_TREE_CONFLICT is returned; ask
        the user before retrying with force=True.

        Args:
            name: Dependency name as listed in the manifest
            force: Update even if local changes would be lost
        """
        return service.update(name, force)

    @server.tool()
    def update_all_repositories(mode: str = "abort_if_dirty") -> dict:
        """
        Update every repository in the background.

        Args:
            mode: "all" wipes local changes everywhere, "clean_only" skips
                  repositories with local changes, "abort_if_dirty" updates
                  nothing when any repository has local changes
        """
        return service.update_all(mode)

    @server.tool()
    def push_repository(name: str, message: str, branch: Optional[str] = None) -> dict:
        """
        Commit the project's copy of a repository and push it.

        Args:
            name: Dependency name as listed in the manifest
            message: Commit message
            branch: Branch to push to; defaults to the tracked branch
        """
        return service.push(name, message, branch)

    @server.tool()
    def add_repository(url: str, branch: str, name: str, sub_folder: str = "") -> dict:
        """
        Add a repository dependency after checking that url and branch are reachable.

        Args:
            url: Remote URL
            branch: Branch or tag to track
            name: Unique name; also the folder name under the repositories directory
            sub_folder: Folder of the repository to mirror, empty for all of it
        """
        return service.add_dependency(url, branch, name, sub_folder)

    @server.tool()
    def remove_repository(name: str) -> dict:
        """
        Remove a repository dependency, its cached clone and its project folder.

        Args:
            name: Dependency name as listed in the manifest
        """
        return service.remove(name, timeout=60.0)

    logging.getLogger('repoman.init').info("MCP tools registered successfully")


def start_monitor(service: RepositoryService, poll_interval: float) -> threading.Thread:
    """Start the daemon thread that polls repositories and finishes completed syncs."""
    def monitor_loop():
        monitor_logger = logging.getLogger('repoman.monitor')

        while True:
            try:
                for sync in service.tick():
                    if not sync.success:
                        monitor_logger.warning(f"{sync.key.repo_path}: {sync.message}")
            except Exception as e:
                monitor_logger.error(f"Monitor error: {e}", exc_info=True)
            time.sleep(poll_interval)

    monitor_thread = threading.Thread(target=monitor_loop, name="RepositoryMonitor", daemon=True)
    monitor_thread.start()

    logging.getLogger('repoman.init').info(f"Repository monitor started (every {poll_interval}s)")
    return monitor_thread


def initialize_server():
    """Load configuration, build the service and the MCP server."""
    server_config = load_configuration()
    validation_issues = validate_configuration(server_config)

    setup_logging(server_config)
    init_logger = logging.getLogger('repoman.init')

    for issue in validation_issues:
        if issue.startswith("ERROR:"):
            init_logger.error(issue[7:])
        elif issue.startswith("WARNING:"):
            init_logger.warning(issue[9:])

    error_count = sum(1 for issue in validation_issues if issue.startswith("ERROR:"))
    if error_count > 0:
        init_logger.critical(f"Server startup failed due to {error_count} configuration error(s)")
        sys.exit(1)

    init_logger.info("Configuration loaded successfully")

    service = RepositoryService(server_config)
    init_logger.info(
        f"Tracking {len(service.manifest.dependencies)} repositories from {server_config.manifest_path}"
    )

    server = FastMCP("Repository Manager", log_level=server_config.log_level.upper())
    register_tools(server, service)

    return server, service, server_config


def main():
    """Main entry point for the repoman MCP server (stdio transport)."""
    startup_logger = None

    try:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        startup_logger = logging.getLogger('repoman.startup')

        startup_logger.info("=" * 60)
        startup_logger.info("Repository Manager (repoman) MCP Server")
        startup_logger.info("=" * 60)

        if sys.version_info < (3, 10):
            startup_logger.error(f"Python 3.10+ required, found {sys.version.split()[0]}")
            sys.exit(1)

        server, service, server_config = initialize_server()
        start_monitor(service, server_config.poll_interval)

        startup_logger.info("Starting server with stdio transport")
        server.run(transport="stdio")

    except KeyboardInterrupt:
        if startup_logger:
            startup_logger.info("Server stopped by user (Ctrl+C)")
    except SystemExit:
        raise
    except Exception as e:
        if startup_logger:
            startup_logger.critical(f"Server failed to start: {e}", exc_info=True)
        else:
            print(f"CRITICAL: Server failed to start: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
