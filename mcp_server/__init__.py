"""MCP server exposing the Ubuntu autoinstall ISO builder.

This module implements the Model Context Protocol (MCP) server that
exposes build orchestration to AI tools and external systems.

MCP tools:
- Return structured errors with codes
- Map directly to core services
"""

from mcp_server.server import mcp

__all__ = ["mcp"]
