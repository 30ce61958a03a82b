"""Shared fakes for transport, session and manager tests."""

from __future__ import annotations

from typing import Any

import pytest

from mcp_cli.types import CallResult, ContentItem, Operation, ProcessEndpoint, ServerInfo


class FakeTransport:
    """In-memory transport that records its lifecycle."""

    def __init__(
        self,
        server: str,
        endpoint: Any = None,
        tools: list[Operation] | None = None,
        result: CallResult | None = None,
        connect_error: Exception | None = None,
        close_error: Exception | None = None,
        **kwargs: Any,
    ):
        self.server = server
        self.endpoint = endpoint
        self.tools = tools or []
        self.result = result or CallResult(content=[ContentItem(type="text", text="ok")])
        self.connect_error = connect_error
        self.close_error = close_error
        self.options = kwargs
        self.events: list[str] = []
        self.connected = False

    async def connect(self) -> None:
        self.events.append("connect")
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self) -> None:
        self.events.append("close")
        self.connected = False
        if self.close_error is not None:
            raise self.close_error

    def is_connected(self) -> bool:
        return self.connected

    def server_info(self) -> ServerInfo | None:
        return ServerInfo(name=f"{self.server}-server", version="1.0.0") if self.connected else None

    async def list_operations(self) -> list[Operation]:
        self.events.append("list")
        return [Operation(o.name, o.description, input_schema=o.input_schema) for o in self.tools]

    async def call(self, name: str, arguments: dict[str, Any]) -> CallResult:
        self.events.append(f"call:{name}")
        self.last_arguments = arguments
        return self.result


class FakeSessionFactory:
    """
    Stands in for ToolServerSession in manager tests.

    ``behaviour`` maps server name → list of tools, a CallResult, or an
    exception to raise on connect.
    """

    def __init__(self, behaviour: dict[str, Any]):
        self.behaviour = behaviour
        self.sessions: list[Any] = []

    def __call__(self, server: str, endpoint: Any, **kwargs: Any):
        from mcp_cli.session import ToolServerSession

        planned = self.behaviour.get(server)
        options: dict[str, Any] = {}
        if isinstance(planned, Exception):
            options["connect_error"] = planned
        elif isinstance(planned, CallResult):
            options["result"] = planned
        elif planned is not None:
            options["tools"] = planned

        session = ToolServerSession(
            server,
            endpoint,
            transport_factory=lambda s, e, **kw: FakeTransport(s, e, **options, **kw),
            **kwargs,
        )
        self.sessions.append(session)
        return session


class Clock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def endpoint() -> ProcessEndpoint:
    return ProcessEndpoint(command="fake-server")


def make_operation(name: str, **properties: dict) -> Operation:
    schema = {"type": "object", "properties": properties} if properties else None
    return Operation(name=name, description=f"{name} tool", input_schema=schema)
