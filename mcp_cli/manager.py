"""
Tool Server Manager — resolves tool catalogs and routes tool calls.

The manager sits between the command surface (CLI, LangChain bridge)
and the servers. Catalogs come from the CatalogCache when fresh and
from a short-lived ToolServerSession otherwise. Every tool call opens
its own session.

Usage:
    manager = ToolServerManager(cache=CatalogCache("~/.config/mcp-cli/cache"))
    manager.register_server("everything", ProcessEndpoint("npx", ["-y", "@modelcontextprotocol/server-everything"]))

    # Discover tools (cached)
    catalogs = await manager.resolve_all()

    # Call a tool through its command entry
    command = await manager.command("everything", "echo")
    outcome = await command.invoke({"message": "hi"})
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from mcp_cli.cache import CatalogCache
from mcp_cli.errors import ParameterError, UnknownServerError, UnknownToolError
from mcp_cli.schema import ParameterSet, normalize_result, parse_values, to_parameter_set, validate_values
from mcp_cli.session import ToolServerSession
from mcp_cli.transport import DEFAULT_CONNECT_TIMEOUT, DEFAULT_REQUEST_TIMEOUT
from mcp_cli.types import CallResult, Operation, ServerEndpoint

logger = logging.getLogger(__name__)


@dataclass
class InvocationResult:
    """Outcome of invoking one tool command."""
    success: bool
    data: Any = None
    error: str | None = None
    result: CallResult | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class ToolCommand:
    """
    A registry entry binding one server tool to its parameter set.

    A single generic ``invoke`` handler serves every tool; nothing is
    generated per tool beyond this data.
    """
    manager: "ToolServerManager"
    server: str
    operation: Operation
    parameters: ParameterSet = field(default_factory=ParameterSet)

    @property
    def name(self) -> str:
        return self.operation.name

    @property
    def tool_id(self) -> str:
        return f"{self.server}__{self.operation.name}"

    def parse(self, raw_values: Mapping[str, Any]) -> dict[str, Any]:
        """Coerce and validate raw values into call arguments."""
        arguments = parse_values(raw_values, self.parameters)
        validate_values(arguments, self.parameters)
        return arguments

    async def invoke(self, raw_values: Mapping[str, Any]) -> InvocationResult:
        """
        Parse arguments, call the tool in a fresh session, normalize output.

        Bad arguments, connection failures and tool-level errors all come
        back as ``success=False`` with a message.
        """
        try:
            arguments = self.parse(raw_values)
        except ParameterError as e:
            return InvocationResult(success=False, error=f"Invalid arguments: {e}")

        try:
            result = await self.manager.call(self.server, self.operation.name, arguments)
        except Exception as e:
            logger.error(f"Tool call failed ({self.server}/{self.name}): {e}")
            return InvocationResult(success=False, error=str(e) or type(e).__name__)

        if result.is_error:
            return InvocationResult(
                success=False,
                error=result.error_text() or f"Tool {self.name} reported an error",
                data=result.structured_content,
                result=result,
            )
        return InvocationResult(success=True, data=normalize_result(result), result=result)


class ToolServerManager:
    """
    Resolves catalogs for a set of servers and routes tool calls.

    Responsibilities:
    - Keep the server name → endpoint mapping
    - Serve catalogs from the cache, refreshing on a miss
    - Resolve many servers concurrently, isolating per-server failures
    - Provide the ToolCommand registry used by command surfaces
    """

    def __init__(
        self,
        servers: Mapping[str, ServerEndpoint] | None = None,
        cache: CatalogCache | None = None,
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
        session_factory: Callable[..., ToolServerSession] = ToolServerSession,
    ):
        self._servers: dict[str, ServerEndpoint] = dict(servers or {})
        self.cache = cache
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._session_factory = session_factory

    def register_server(self, server: str, endpoint: ServerEndpoint) -> None:
        """Register a server (does not connect)."""
        self._servers[server] = endpoint
        logger.debug(f"Registered server: {server} ({endpoint.describe()})")

    def list_servers(self) -> dict[str, ServerEndpoint]:
        return dict(self._servers)

    def endpoint(self, server: str) -> ServerEndpoint:
        try:
            return self._servers[server]
        except KeyError:
            raise UnknownServerError(server) from None

    def session(self, server: str) -> ToolServerSession:
        """A fresh session for one operation against ``server``."""
        return self._session_factory(
            server,
            self.endpoint(server),
            connect_timeout=self.connect_timeout,
            request_timeout=self.request_timeout,
        )

    async def fetch(self, server: str) -> list[Operation]:
        """
        List tools from the server itself and store them in the cache.

        Raises on connection failure.
        """
        operations, server_info = await self.session(server).get_catalog()
        if self.cache is not None:
            self.cache.put(server, operations, server_info)
        logger.info(f"Discovered {len(operations)} tools on {server}: {[op.name for op in operations]}")
        return operations

    async def resolve(self, server: str, refresh: bool = False) -> list[Operation]:
        """
        Tools for one server: cache first, then the server.

        A server that cannot be reached is logged as a warning and
        contributes an empty catalog.
        """
        self.endpoint(server)
        if self.cache is not None and not refresh:
            cached = self.cache.get(server)
            if cached is not None:
                return cached

        try:
            operations = await self.fetch(server)
        except Exception as e:
            logger.warning(f"Failed to load tools from {server}: {e}")
            return []
        return copy.deepcopy(operations)

    async def resolve_all(
        self,
        servers: list[str] | None = None,
        refresh: bool = False,
    ) -> dict[str, list[Operation]]:
        """Resolve several servers concurrently. Returns {server: [operations]}."""
        names = list(servers) if servers is not None else list(self._servers)
        catalogs = await asyncio.gather(*(self.resolve(name, refresh=refresh) for name in names))
        return dict(zip(names, catalogs))

    async def refresh(self, server: str) -> list[Operation]:
        """Drop the cached catalog for a server and fetch it again."""
        if self.cache is not None:
            self.cache.invalidate(server)
        return await self.resolve(server, refresh=True)

    async def commands(self, server: str, refresh: bool = False) -> list[ToolCommand]:
        """Command registry entries for every tool on a server."""
        return [
            ToolCommand(self, server, op, to_parameter_set(op))
            for op in await self.resolve(server, refresh=refresh)
        ]

    async def command(self, server: str, tool_name: str) -> ToolCommand:
        """Command registry entry for one tool."""
        commands = await self.commands(server)
        for command in commands:
            if command.name == tool_name:
                return command
        raise UnknownToolError(server, tool_name, [c.name for c in commands])

    async def call(self, server: str, tool_name: str, arguments: dict[str, Any]) -> CallResult:
        """
        Call a tool on a server in a fresh session.

        Connection problems raise; tool-level errors come back with
        ``is_error=True``.
        """
        logger.debug(f"Calling {server}/{tool_name} with {sorted(arguments)}")
        return await self.session(server).call(tool_name, arguments)
