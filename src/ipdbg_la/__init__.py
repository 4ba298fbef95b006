"""IPDBG logic analyzer protocol engine and MCP server."""
