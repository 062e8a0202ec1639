"""
Repository Manager (repoman) - git repository dependencies for a host project.

This package keeps a local working copy of each declared repository in sync in
the background and mirrors a configured subfolder of it into the project.
"""

__version__ = "1.0.0"
__author__ = "Repoman Team"
__description__ = "Repository Manager - background git dependency mirroring"


def main():
    """Run the MCP server (requires the mcp dependency)."""
    from .server import main as server_main
    return server_main()


__all__ = ["main"]
