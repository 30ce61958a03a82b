"""
mcp-cli — MCP tool servers as cached, individually callable commands.

Architecture:
    ┌──────────────┐   catalog    ┌────────────────┐  stdio / HTTP  ┌─────────────┐
    │ CLI / agent  │ ──────────── │ ToolServer     │ ────────────── │ MCP server  │
    │              │   + calls    │ Manager        │  one session   │ (process or │
    │              │              │ + CatalogCache │  per operation │  endpoint)  │
    └──────────────┘              └────────────────┘                └─────────────┘

Each operation (list tools, call a tool) opens a ToolServerSession,
which owns one Transport: StdioTransport spawns the server process,
HttpTransport speaks Streamable HTTP and falls back to legacy SSE.
The session always closes its transport when the operation ends.

Tool catalogs are persisted per server by CatalogCache and expire
after a TTL. The schema module turns a tool's input schema into a
ParameterSet for argument parsing and normalizes call results.
"""

from mcp_cli.cache import CatalogCache
from mcp_cli.errors import (
    ConnectionFailedError,
    NotConnectedError,
    ParameterError,
    ToolServerError,
    TransportFallbackError,
)
from mcp_cli.manager import InvocationResult, ToolCommand, ToolServerManager
from mcp_cli.schema import normalize_result, parse_values, to_parameter_set
from mcp_cli.session import ToolServerSession
from mcp_cli.transport import HttpTransport, StdioTransport, Transport, create_transport
from mcp_cli.types import CallResult, HttpEndpoint, Operation, ProcessEndpoint

__version__ = "0.1.0"


# Bridge requires langchain; imported lazily to keep the core light
def to_langchain_tool(*args, **kwargs):
    from mcp_cli.bridge import to_langchain_tool as _impl
    return _impl(*args, **kwargs)


async def register_tools(*args, **kwargs):
    from mcp_cli.bridge import register_tools as _impl
    return await _impl(*args, **kwargs)


__all__ = [
    "CallResult",
    "CatalogCache",
    "ConnectionFailedError",
    "HttpEndpoint",
    "HttpTransport",
    "InvocationResult",
    "NotConnectedError",
    "Operation",
    "ParameterError",
    "ProcessEndpoint",
    "StdioTransport",
    "ToolCommand",
    "ToolServerError",
    "ToolServerManager",
    "ToolServerSession",
    "Transport",
    "TransportFallbackError",
    "create_transport",
    "normalize_result",
    "parse_values",
    "register_tools",
    "to_langchain_tool",
    "to_parameter_set",
]
