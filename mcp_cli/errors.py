"""
Exception hierarchy for MCP tool server access.

Connection problems, contract violations and bad arguments each get
their own class so callers can decide what to show and what to retry.
Tool-level errors (the server answered with isError=true) are NOT
exceptions: they come back as a normal CallResult.
"""

from __future__ import annotations


class ToolServerError(Exception):
    """Base class for every error raised by mcp_cli."""


class ConnectionFailedError(ToolServerError):
    """The server could not be started, reached, or initialized."""

    def __init__(self, server: str, message: str, stderr: str = ""):
        self.server = server
        self.stderr = stderr
        detail = f"{server}: {message}"
        if stderr:
            detail += f"\nstderr: {stderr}"
        super().__init__(detail)


class ConnectTimeoutError(ConnectionFailedError):
    """The connection handshake did not finish within the configured bound."""


class TransportFallbackError(ConnectionFailedError):
    """Both the Streamable HTTP and the legacy SSE attempts failed."""

    def __init__(self, server: str, streamable_error: BaseException, sse_error: BaseException):
        self.streamable_error = streamable_error
        self.sse_error = sse_error
        super().__init__(
            server,
            "Failed to connect with both Streamable HTTP and SSE: "
            f"streamable-http: {_describe(streamable_error)}; "
            f"sse: {_describe(sse_error)}",
        )


class NotConnectedError(ToolServerError, RuntimeError):
    """A request was issued on a transport that is not connected."""


class ParameterError(ToolServerError, ValueError):
    """Tool arguments could not be coerced or failed validation."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConfigError(ToolServerError):
    """The configuration file or a server definition is invalid."""


class UnknownServerError(ToolServerError, KeyError):
    """No server with this name is registered."""

    def __str__(self) -> str:
        return f"Unknown server: {self.args[0]}"


class UnknownToolError(ToolServerError, KeyError):
    """The server does not expose a tool with this name."""

    def __init__(self, server: str, tool: str, available: list[str] | None = None):
        self.server = server
        self.tool = tool
        self.available = available or []
        super().__init__(server, tool)

    def __str__(self) -> str:
        return (
            f"Unknown tool: '{self.tool}' on {self.server}. "
            f"Available: {self.available}"
        )


def leaf_error(error: BaseException) -> BaseException:
    """The underlying error of a (nested) single-member exception group."""
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return error


def _describe(error: BaseException) -> str:
    error = leaf_error(error)
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
