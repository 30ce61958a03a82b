"""
Transport layer abstraction for MCP tool servers.

Implements:
  - StdioTransport: MCP over the stdin/stdout pipes of a child process
  - HttpTransport: MCP over HTTP, Streamable HTTP first, legacy SSE
    as a fallback when the server rejects the modern handshake

Message framing and the JSON-RPC exchange itself come from the
official MCP SDK (``mcp.ClientSession``); this module only opens the
byte streams, runs the initialize handshake and tears everything down.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import IO, Any, Awaitable, Callable, Iterator, Mapping

import httpx
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamable_http_client

from mcp_cli.errors import (
    ConfigError,
    ConnectionFailedError,
    ConnectTimeoutError,
    NotConnectedError,
    ToolServerError,
    TransportFallbackError,
    leaf_error,
)
from mcp_cli.types import (
    CallResult,
    HttpEndpoint,
    Operation,
    ProcessEndpoint,
    ServerEndpoint,
    ServerInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_REQUEST_TIMEOUT = 60.0
SSE_READ_TIMEOUT = 300.0
STDERR_TAIL_CHARS = 500


def merge_environment(ambient: Mapping[str, str], overlay: Mapping[str, str] | None) -> dict[str, str]:
    """Overlay a server's env on top of the ambient environment. Overlay wins."""
    merged = dict(ambient)
    merged.update(overlay or {})
    return merged


def _iter_related(error: BaseException) -> Iterator[BaseException]:
    """Walk an exception, its group members and its cause/context chain."""
    seen: set[int] = set()
    pending = [error]
    while pending:
        exc = pending.pop()
        if exc is None or id(exc) in seen:
            continue
        seen.add(id(exc))
        yield exc
        if isinstance(exc, BaseExceptionGroup):
            pending.extend(exc.exceptions)
        pending.append(exc.__cause__)
        pending.append(exc.__context__)


def is_client_rejection(error: BaseException) -> bool:
    """
    True when a connect failure means "this server does not speak the
    attempted sub-protocol" (an HTTP 4xx), as opposed to an outage.
    """
    for exc in _iter_related(error):
        if isinstance(exc, httpx.HTTPStatusError):
            if 400 <= exc.response.status_code < 500:
                return True
            continue
        status = getattr(exc, "status_code", None)
        if isinstance(status, int) and 400 <= status < 500:
            return True
        # The SDK turns a 404 on the initialize POST into this JSON-RPC error.
        if isinstance(exc, McpError) and "session terminated" in str(exc).lower():
            return True
    return False


async def _open_into(stack: AsyncExitStack, opener: Callable[[AsyncExitStack], Awaitable[None]]) -> None:
    """
    Run ``opener`` against ``stack``; on failure unwind the stack.

    SDK clients run background task groups. When one of their tasks
    fails, the host task only sees a cancellation and the real error
    comes out of the task group's exit, so prefer that error.
    """
    try:
        await opener(stack)
    except BaseException as error:
        try:
            await stack.aclose()
        except Exception as close_error:
            if isinstance(error, asyncio.CancelledError):
                raise close_error from None
            logger.debug(f"Error while unwinding failed connect: {close_error!r}")
        except BaseException as close_error:
            logger.debug(f"Error while unwinding failed connect: {close_error!r}")
        raise


class Transport(ABC):
    """Abstract transport for one MCP server connection."""

    def __init__(
        self,
        server: str,
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.server = server
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._server_info: ServerInfo | None = None

    @abstractmethod
    async def _open(self, stack: AsyncExitStack) -> None:
        """Open the byte streams and run the handshake, registering cleanup on ``stack``."""
        ...

    def _connect_error(self, error: Exception) -> Exception:
        """Map a connect failure to the exception the caller sees."""
        return error

    async def connect(self) -> None:
        """Connect and initialize. No-op when already connected."""
        if self.is_connected():
            return

        stack = AsyncExitStack()
        deadline = asyncio.timeout(self.connect_timeout)
        try:
            async with deadline:
                await _open_into(stack, self._open)
        except Exception as error:
            self._session = None
            if deadline.expired():
                raise self._timeout_error() from error
            mapped = self._connect_error(error)
            # an error unwrapped from a task group was already raised and keeps its own chain
            if mapped is error or mapped.__traceback__ is not None:
                raise mapped
            raise mapped from error
        finally:
            if self._session is None:
                self._released()

        self._stack = stack

    async def close(self) -> None:
        """Tear the connection down. Idempotent; errors are logged, never raised."""
        stack, self._stack = self._stack, None
        self._session = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.debug(f"Ignoring error while closing {self.server}: {e!r}")
        finally:
            self._released()
        logger.debug(f"Transport for {self.server} closed")

    def is_connected(self) -> bool:
        return self._session is not None and self._stack is not None

    def server_info(self) -> ServerInfo | None:
        """Server name/version reported by the last successful handshake."""
        return self._server_info

    async def list_operations(self) -> list[Operation]:
        """List every tool the server exposes, following pagination cursors."""
        session = self._require_session()
        result = await session.list_tools()
        tools = list(result.tools)
        while result.nextCursor:
            result = await session.list_tools(cursor=result.nextCursor)
            tools.extend(result.tools)
        return [Operation.from_tool(t) for t in tools]

    async def call(self, name: str, arguments: dict[str, Any]) -> CallResult:
        """Call one tool. A tool-level error comes back as ``is_error=True``."""
        session = self._require_session()
        result = await session.call_tool(name, arguments=arguments)
        return CallResult.from_mcp(result)

    async def _start_session(self, stack: AsyncExitStack, read: Any, write: Any) -> None:
        read_timeout = (
            timedelta(seconds=self.request_timeout) if self.request_timeout else None
        )
        session = await stack.enter_async_context(
            ClientSession(read, write, read_timeout_seconds=read_timeout)
        )
        init = await session.initialize()
        self._server_info = ServerInfo.from_implementation(getattr(init, "serverInfo", None))
        self._session = session

    def _require_session(self) -> ClientSession:
        if not self.is_connected():
            raise NotConnectedError(f"Transport for {self.server} is not connected. Call connect() first.")
        return self._session

    def _timeout_error(self) -> ConnectTimeoutError:
        return ConnectTimeoutError(
            self.server, f"Connection timeout after {self.connect_timeout} seconds"
        )

    def _released(self) -> None:
        """Hook for subclasses holding resources outside the exit stack."""


class StdioTransport(Transport):
    """
    MCP over stdin/stdout pipes to a subprocess.

    The server's stderr goes to a private temporary file so diagnostic
    output never mixes with the protocol stream; its tail is attached
    to connection errors.
    """

    def __init__(self, server: str, endpoint: ProcessEndpoint, **kwargs: Any):
        super().__init__(server, **kwargs)
        self.endpoint = endpoint
        self._errlog: IO[str] | None = None
        self._last_stderr = ""

    async def _open(self, stack: AsyncExitStack) -> None:
        endpoint = self.endpoint
        logger.info(f"Starting stdio transport: {' '.join([endpoint.command, *endpoint.args])}")
        params = StdioServerParameters(
            command=endpoint.command,
            args=list(endpoint.args),
            env=merge_environment(os.environ, endpoint.env),
            cwd=endpoint.cwd,
        )
        self._errlog = tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace")
        read, write = await stack.enter_async_context(stdio_client(params, errlog=self._errlog))
        await self._start_session(stack, read, write)

    def _connect_error(self, error: Exception) -> Exception:
        leaf = leaf_error(error)
        if isinstance(leaf, ToolServerError):
            return leaf
        message = str(leaf) or type(leaf).__name__
        return ConnectionFailedError(self.server, message, self.stderr_tail())

    def _timeout_error(self) -> ConnectTimeoutError:
        return ConnectTimeoutError(
            self.server,
            f"Connection timeout after {self.connect_timeout} seconds",
            self.stderr_tail(),
        )

    def stderr_tail(self) -> str:
        """Last few hundred characters the server wrote to stderr."""
        if self._errlog is not None and not self._errlog.closed:
            try:
                self._errlog.flush()
                self._errlog.seek(0)
                self._last_stderr = self._errlog.read()[-STDERR_TAIL_CHARS:].strip()
            except (OSError, ValueError) as e:
                logger.debug(f"Could not read stderr of {self.server}: {e}")
        return self._last_stderr

    def _released(self) -> None:
        if self._errlog is not None:
            self.stderr_tail()
            self._errlog.close()
            self._errlog = None


class HttpTransport(Transport):
    """
    MCP over HTTP.

    Tries Streamable HTTP first. Only when that attempt is rejected with
    an HTTP 4xx does it retry once with the legacy SSE transport; any
    other failure is surfaced as-is.
    """

    def __init__(self, server: str, endpoint: HttpEndpoint, **kwargs: Any):
        super().__init__(server, **kwargs)
        self.endpoint = endpoint
        self.protocol: str | None = None

    async def _open(self, stack: AsyncExitStack) -> None:
        logger.info(f"Connecting to {self.server} via Streamable HTTP: {self.endpoint.url}")
        modern = await stack.enter_async_context(AsyncExitStack())
        try:
            await _open_into(modern, self._open_streamable)
            self.protocol = "streamable-http"
            return
        except Exception as error:
            if not is_client_rejection(error):
                raise
            streamable_error = error

        logger.info(
            f"{self.server} rejected Streamable HTTP ({streamable_error}), falling back to SSE"
        )
        legacy = await stack.enter_async_context(AsyncExitStack())
        try:
            await _open_into(legacy, self._open_sse)
        except Exception as sse_error:
            raise TransportFallbackError(self.server, streamable_error, sse_error) from sse_error
        self.protocol = "sse"

    async def _open_streamable(self, stack: AsyncExitStack) -> None:
        http_client = await stack.enter_async_context(
            httpx.AsyncClient(
                headers=dict(self.endpoint.headers),
                timeout=httpx.Timeout(self._http_timeout(), read=SSE_READ_TIMEOUT),
            )
        )
        read, write, _get_session_id = await stack.enter_async_context(
            streamable_http_client(self.endpoint.url, http_client=http_client)
        )
        await self._start_session(stack, read, write)

    async def _open_sse(self, stack: AsyncExitStack) -> None:
        read, write = await stack.enter_async_context(
            sse_client(
                self.endpoint.url,
                headers=dict(self.endpoint.headers),
                timeout=self._http_timeout(),
                sse_read_timeout=SSE_READ_TIMEOUT,
            )
        )
        await self._start_session(stack, read, write)

    def _connect_error(self, error: Exception) -> Exception:
        """Surface the failure itself rather than the SDK task group wrapping it."""
        return leaf_error(error)

    def _http_timeout(self) -> float:
        return self.connect_timeout or DEFAULT_CONNECT_TIMEOUT

    async def close(self) -> None:
        await super().close()
        self.protocol = None


def create_transport(
    server: str,
    endpoint: ServerEndpoint,
    connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
    request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
) -> Transport:
    """Build the transport for an endpoint variant."""
    options = {"connect_timeout": connect_timeout, "request_timeout": request_timeout}
    if isinstance(endpoint, ProcessEndpoint):
        return StdioTransport(server, endpoint, **options)
    if isinstance(endpoint, HttpEndpoint):
        return HttpTransport(server, endpoint, **options)
    raise ConfigError(f"Unknown transport type for server {server}: {type(endpoint).__name__}")
