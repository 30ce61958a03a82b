"""
One connect → operate → close cycle against a tool server.

Every logical operation gets its own session and its own transport.
There is no pooling and no retry: a failure affects exactly one call.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from mcp_cli.transport import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    Transport,
    create_transport,
)
from mcp_cli.types import CallResult, Operation, ServerEndpoint, ServerInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ToolServerSession:
    """
    Wraps a transport and guarantees it is closed after each operation.

    Usage:
        session = ToolServerSession("everything", endpoint)
        tools = await session.get_operations()
        result = await session.call("echo", {"message": "hi"})
    """

    def __init__(
        self,
        server: str,
        endpoint: ServerEndpoint,
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
        transport_factory: Callable[..., Transport] = create_transport,
    ):
        self.server = server
        self.endpoint = endpoint
        self.transport = transport_factory(
            server,
            endpoint,
            connect_timeout=connect_timeout,
            request_timeout=request_timeout,
        )

    async def with_connection(self, operation: Callable[[Transport], Awaitable[T]]) -> T:
        """
        Connect, run ``operation``, and always close afterwards.

        The operation's result or exception is what the caller sees;
        a failing close is logged and dropped.
        """
        try:
            await self.transport.connect()
            return await operation(self.transport)
        finally:
            try:
                await self.transport.close()
            except Exception as e:
                logger.debug(f"Ignoring close error for {self.server}: {e!r}")

    async def get_operations(self) -> list[Operation]:
        """List the server's tools."""
        return await self.with_connection(lambda t: t.list_operations())

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> CallResult:
        """Call a tool on the server."""
        return await self.with_connection(lambda t: t.call(tool_name, arguments))

    async def get_server_info(self) -> ServerInfo | None:
        """Server name/version from the initialize handshake."""

        async def _info(transport: Transport) -> ServerInfo | None:
            return transport.server_info()

        return await self.with_connection(_info)

    async def get_catalog(self) -> tuple[list[Operation], ServerInfo | None]:
        """Tools and server info from a single connection."""

        async def _catalog(transport: Transport) -> tuple[list[Operation], ServerInfo | None]:
            return await transport.list_operations(), transport.server_info()

        return await self.with_connection(_catalog)
