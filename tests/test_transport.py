"""Tests for the stdio and HTTP transports."""

import asyncio
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import pytest
import uvicorn
from mcp import McpError
from mcp.types import ErrorData

from mcp_cli.errors import (
    ConfigError,
    ConnectionFailedError,
    ConnectTimeoutError,
    NotConnectedError,
    TransportFallbackError,
)
from mcp_cli.manager import ToolServerManager
from mcp_cli.servers.echo import server as echo_server
from mcp_cli.transport import (
    HttpTransport,
    StdioTransport,
    create_transport,
    is_client_rejection,
    merge_environment,
)
from mcp_cli.types import HttpEndpoint, ProcessEndpoint

REPO_ROOT = Path(__file__).resolve().parent.parent


def http_status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://example.test/mcp")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"Client error '{status}'", request=request, response=response)


class FakeSession:
    """Placeholder for an initialized ClientSession."""


class TestMergeEnvironment:
    """Test the ambient/overlay environment merge."""

    def test_overlay_overrides_ambient(self):
        """Overlay values win over ambient ones."""
        merged = merge_environment({"PATH": "/bin", "HOME": "/root"}, {"HOME": "/tmp", "TOKEN": "x"})
        assert merged == {"PATH": "/bin", "HOME": "/tmp", "TOKEN": "x"}

    def test_inputs_are_not_mutated(self):
        """Merge is pure."""
        ambient = {"A": "1"}
        overlay = {"B": "2"}
        merge_environment(ambient, overlay)
        assert ambient == {"A": "1"}
        assert overlay == {"B": "2"}

    def test_no_overlay(self):
        """Missing overlay returns a copy of the ambient environment."""
        ambient = {"A": "1"}
        merged = merge_environment(ambient, None)
        assert merged == ambient
        assert merged is not ambient


class TestIsClientRejection:
    """Test classification of connect failures."""

    def test_http_4xx_is_rejection(self):
        assert is_client_rejection(http_status_error(405)) is True
        assert is_client_rejection(http_status_error(404)) is True

    def test_http_5xx_is_not_rejection(self):
        assert is_client_rejection(http_status_error(503)) is False

    def test_network_error_is_not_rejection(self):
        error = httpx.ConnectError("Connection refused")
        assert is_client_rejection(error) is False

    def test_rejection_inside_exception_group(self):
        """Task-group failures wrap the HTTP error."""
        group = ExceptionGroup("unhandled errors in a TaskGroup", [http_status_error(405)])
        assert is_client_rejection(group) is True

    def test_rejection_in_cause_chain(self):
        try:
            try:
                raise http_status_error(400)
            except httpx.HTTPStatusError as inner:
                raise RuntimeError("initialize failed") from inner
        except RuntimeError as outer:
            assert is_client_rejection(outer) is True

    def test_session_terminated_is_rejection(self):
        """The SDK reports a 404 on initialize as 'Session terminated'."""
        error = McpError(ErrorData(code=32600, message="Session terminated"))
        assert is_client_rejection(error) is True

    def test_other_mcp_error_is_not_rejection(self):
        error = McpError(ErrorData(code=-32603, message="Internal error"))
        assert is_client_rejection(error) is False


class TestCreateTransport:
    """Test transport selection by endpoint variant."""

    def test_process_endpoint_gives_stdio(self):
        transport = create_transport("local", ProcessEndpoint(command="server"))
        assert isinstance(transport, StdioTransport)

    def test_http_endpoint_gives_http(self):
        transport = create_transport("remote", HttpEndpoint(url="https://example.test/mcp"))
        assert isinstance(transport, HttpTransport)

    def test_timeouts_are_passed_through(self):
        transport = create_transport(
            "remote", HttpEndpoint(url="https://x.test"), connect_timeout=5, request_timeout=7
        )
        assert transport.connect_timeout == 5
        assert transport.request_timeout == 7

    def test_unknown_endpoint_rejected(self):
        with pytest.raises(ConfigError):
            create_transport("odd", {"transport": "carrier-pigeon"})


class TestNotConnected:
    """Requests before connect are contract violations."""

    @pytest.mark.asyncio
    async def test_stdio_list_before_connect(self):
        transport = StdioTransport("local", ProcessEndpoint(command="server"))
        with pytest.raises(NotConnectedError):
            await transport.list_operations()

    @pytest.mark.asyncio
    async def test_http_call_before_connect(self):
        transport = HttpTransport("remote", HttpEndpoint(url="https://example.test/mcp"))
        with pytest.raises(NotConnectedError):
            await transport.call("echo", {})

    @pytest.mark.asyncio
    async def test_close_without_connect_is_noop(self):
        transport = StdioTransport("local", ProcessEndpoint(command="server"))
        await transport.close()
        await transport.close()
        assert transport.is_connected() is False


class TestHttpFallback:
    """Test Streamable HTTP → SSE fallback."""

    def make_transport(self, modern_error=None, legacy_error=None, **kwargs):
        transport = HttpTransport("remote", HttpEndpoint(url="https://example.test/mcp"), **kwargs)
        transport.attempts = []
        transport.closed = []

        async def open_streamable(stack):
            transport.attempts.append("streamable-http")
            stack.push_async_callback(_record, transport.closed, "streamable-http")
            if modern_error is not None:
                raise modern_error
            transport._session = FakeSession()

        async def open_sse(stack):
            transport.attempts.append("sse")
            stack.push_async_callback(_record, transport.closed, "sse")
            if legacy_error is not None:
                raise legacy_error
            transport._session = FakeSession()

        transport._open_streamable = open_streamable
        transport._open_sse = open_sse
        return transport

    @pytest.mark.asyncio
    async def test_modern_success_skips_legacy(self):
        transport = self.make_transport()
        await transport.connect()
        assert transport.attempts == ["streamable-http"]
        assert transport.protocol == "streamable-http"
        assert transport.is_connected()

    @pytest.mark.asyncio
    async def test_client_rejection_tries_legacy_once(self):
        """A 4xx from the modern transport triggers exactly one SSE attempt."""
        transport = self.make_transport(modern_error=http_status_error(405))
        await transport.connect()
        assert transport.attempts == ["streamable-http", "sse"]
        assert transport.protocol == "sse"
        assert transport.is_connected()
        # the failed modern attempt was unwound before the fallback
        assert transport.closed == ["streamable-http"]

    @pytest.mark.asyncio
    async def test_network_failure_surfaces_unchanged(self):
        """Non-4xx failures are raised as-is without trying SSE."""
        error = httpx.ConnectError("Connection refused")
        transport = self.make_transport(modern_error=error)
        with pytest.raises(httpx.ConnectError) as exc_info:
            await transport.connect()
        assert exc_info.value is error
        assert transport.attempts == ["streamable-http"]
        assert transport.is_connected() is False

    @pytest.mark.asyncio
    async def test_task_group_wrapper_is_removed(self):
        """The SDK's task group wrapping a single failure is not what the caller sees."""
        error = httpx.ConnectError("Connection refused")
        group = ExceptionGroup("unhandled errors in a TaskGroup", [ExceptionGroup("nested", [error])])
        transport = self.make_transport(modern_error=group)
        with pytest.raises(httpx.ConnectError) as exc_info:
            await transport.connect()
        assert exc_info.value is error
        assert transport.attempts == ["streamable-http"]

    @pytest.mark.asyncio
    async def test_combined_failure_names_wrapped_errors(self):
        modern = ExceptionGroup("unhandled errors in a TaskGroup", [http_status_error(405)])
        legacy = ExceptionGroup("unhandled errors in a TaskGroup", [httpx.ConnectError("SSE refused")])
        transport = self.make_transport(modern_error=modern, legacy_error=legacy)
        with pytest.raises(TransportFallbackError) as exc_info:
            await transport.connect()
        message = str(exc_info.value)
        assert "streamable-http: HTTPStatusError" in message
        assert "sse: ConnectError: SSE refused" in message
        assert "TaskGroup" not in message

    @pytest.mark.asyncio
    async def test_server_error_does_not_fall_back(self):
        transport = self.make_transport(modern_error=http_status_error(502))
        with pytest.raises(httpx.HTTPStatusError):
            await transport.connect()
        assert transport.attempts == ["streamable-http"]

    @pytest.mark.asyncio
    async def test_both_failures_are_combined(self):
        modern = http_status_error(404)
        legacy = httpx.ConnectError("SSE endpoint unreachable")
        transport = self.make_transport(modern_error=modern, legacy_error=legacy)
        with pytest.raises(TransportFallbackError) as exc_info:
            await transport.connect()
        assert exc_info.value.streamable_error is modern
        assert exc_info.value.sse_error is legacy
        assert "Streamable HTTP" in str(exc_info.value)
        assert "SSE endpoint unreachable" in str(exc_info.value)
        assert transport.attempts == ["streamable-http", "sse"]
        assert sorted(transport.closed) == ["sse", "streamable-http"]

    @pytest.mark.asyncio
    async def test_close_releases_active_protocol(self):
        transport = self.make_transport(modern_error=http_status_error(405))
        await transport.connect()
        await transport.close()
        assert transport.is_connected() is False
        assert transport.protocol is None
        assert transport.closed == ["streamable-http", "sse"]
        await transport.close()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        transport = self.make_transport()
        await transport.connect()
        await transport.connect()
        assert transport.attempts == ["streamable-http"]

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        """A handshake that never finishes is bounded by connect_timeout."""
        transport = HttpTransport("slow", HttpEndpoint(url="https://example.test/mcp"), connect_timeout=0.05)

        async def never(stack):
            await asyncio.sleep(10)

        transport._open_streamable = never
        with pytest.raises(ConnectTimeoutError):
            await transport.connect()
        assert transport.is_connected() is False


async def _record(log, name):
    log.append(name)


class TestStdioTransport:
    """Integration tests against the bundled echo server."""

    def echo_endpoint(self) -> ProcessEndpoint:
        return ProcessEndpoint(
            command=sys.executable,
            args=["-m", "mcp_cli.servers.echo"],
            env={"PYTHONPATH": str(REPO_ROOT) + os.pathsep + os.environ.get("PYTHONPATH", "")},
            cwd=str(REPO_ROOT),
        )

    @pytest.mark.asyncio
    async def test_connect_then_close(self):
        """connect followed by close leaves the transport disconnected."""
        transport = StdioTransport("echo", self.echo_endpoint())
        await transport.connect()
        assert transport.is_connected()
        assert transport.server_info().name == "echo"
        await transport.close()
        assert transport.is_connected() is False

    @pytest.mark.asyncio
    async def test_list_and_call(self):
        transport = StdioTransport("echo", self.echo_endpoint())
        await transport.connect()
        try:
            names = [op.name for op in await transport.list_operations()]
            result = await transport.call("echo", {"message": "hello"})
        finally:
            await transport.close()

        assert {"echo", "add"} <= set(names)
        assert result.is_error is False
        assert any("hello" in (item.text or "") for item in result.content)

    @pytest.mark.asyncio
    async def test_missing_executable_fails_to_connect(self, tmp_path):
        transport = StdioTransport("missing", ProcessEndpoint(command=str(tmp_path / "no-such-server")))
        with pytest.raises(ConnectionFailedError):
            await transport.connect()
        assert transport.is_connected() is False


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@asynccontextmanager
async def serve_app(app):
    """Serve an ASGI app on a local port for the duration of the block."""
    port = free_port()
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning"))
    task = asyncio.create_task(server.serve())
    try:
        async with asyncio.timeout(10):
            while not server.started:
                if task.done():
                    task.result()
                    raise RuntimeError("server exited before starting")
                await asyncio.sleep(0.01)
        yield f"http://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        server.force_exit = True
        await task


class TestHttpTransportLive:
    """HTTP transport against real sockets through the MCP SDK."""

    @pytest.mark.asyncio
    async def test_unreachable_server_reports_the_network_error(self):
        """A refused connection is not reported as an opaque task-group error."""
        url = f"http://127.0.0.1:{free_port()}/mcp"
        transport = HttpTransport("web", HttpEndpoint(url=url), connect_timeout=10)

        with pytest.raises(Exception) as exc_info:
            await transport.connect()

        assert not isinstance(exc_info.value, BaseExceptionGroup)
        assert "TaskGroup" not in str(exc_info.value)
        assert transport.is_connected() is False
        assert transport.protocol is None

    @pytest.mark.asyncio
    async def test_unreachable_server_warning_is_readable(self, caplog):
        url = f"http://127.0.0.1:{free_port()}/mcp"
        manager = ToolServerManager({"web": HttpEndpoint(url=url)}, connect_timeout=10)

        with caplog.at_level(logging.WARNING, logger="mcp_cli.manager"):
            catalogs = await manager.resolve_all()

        assert catalogs == {"web": []}
        assert "Failed to load tools from web" in caplog.text
        assert "TaskGroup" not in caplog.text

    @pytest.mark.asyncio
    async def test_sse_only_server_falls_back(self):
        """The modern POST is rejected with 405, so the legacy SSE stream is used."""
        async with serve_app(echo_server.sse_app()) as base_url:
            transport = HttpTransport("legacy", HttpEndpoint(url=f"{base_url}/sse"), connect_timeout=10)
            await transport.connect()
            try:
                assert transport.protocol == "sse"
                names = [op.name for op in await transport.list_operations()]
                result = await transport.call("add", {"a": 2, "b": 3})
            finally:
                await transport.close()

        assert {"echo", "add"} <= set(names)
        assert result.is_error is False
        assert any("5" in (item.text or "") for item in result.content)
