#!/usr/bin/env python3
"""
SSH MCP server launcher.

Runs the stdio JSON-RPC server from a source checkout without installing the
package. Installed copies expose the same entry point as ``ssh-mcp``.
"""

from ssh_mcp.main import main


if __name__ == "__main__":
    main()
