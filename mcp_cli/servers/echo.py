"""
Echo MCP Tool Server — minimal reference implementation.

Use this as a template for building new tool servers.
It exposes two tools over stdio: ``echo`` returns its input and
``add`` sums two numbers. Useful for testing the transport layer.

Launch:
    python -m mcp_cli.servers.echo

Try it:
    mcp-cli server add echo --command python --arg=-m --arg mcp_cli.servers.echo
    mcp-cli call echo echo --message hello
"""

from mcp.server.fastmcp import FastMCP

server = FastMCP("echo")


@server.tool()
def echo(message: str, uppercase: bool = False) -> dict:
    """Echoes back the input message."""
    text = message.upper() if uppercase else message
    return {"echoed": text, "length": len(text)}


@server.tool()
def add(a: float, b: float) -> float:
    """Adds two numbers."""
    return a + b


if __name__ == "__main__":
    server.run()
