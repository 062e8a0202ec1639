#!/usr/bin/env python3
"""
Repository Manager (repoman) MCP Server

Keeps a project's git repository dependencies mirrored into its repositories
folder, with clone/update/push running in the background.
"""

from repoman.server import main


if __name__ == "__main__":
    main()
