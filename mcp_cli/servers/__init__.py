"""Reference MCP servers launched over stdio (``python -m mcp_cli.servers.<name>``)."""
