"""
Data model shared by the transport, session, cache and schema layers.

ServerEndpoint is a tagged variant: ProcessEndpoint (stdio) or
HttpEndpoint (Streamable HTTP / SSE). The tag is the ``transport``
class attribute and is only matched in ``transport.create_transport``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from mcp_cli.errors import ConfigError

ServerIdentity = str


@dataclass(frozen=True)
class ProcessEndpoint:
    """A server launched as a local child process speaking MCP over stdio."""
    transport: ClassVar[str] = "stdio"

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    description: str = ""
    enabled: bool = True

    def describe(self) -> str:
        return f"stdio ({' '.join([self.command, *self.args])})"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"transport": self.transport, "command": self.command}
        if self.args:
            data["args"] = list(self.args)
        if self.env:
            data["env"] = dict(self.env)
        if self.cwd:
            data["cwd"] = self.cwd
        return _with_meta(data, self)


@dataclass(frozen=True)
class HttpEndpoint:
    """A remote server reached over HTTP."""
    transport: ClassVar[str] = "http"

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    description: str = ""
    enabled: bool = True

    def describe(self) -> str:
        return f"http ({self.url})"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"transport": self.transport, "url": self.url}
        if self.headers:
            data["headers"] = dict(self.headers)
        return _with_meta(data, self)


ServerEndpoint = Union[ProcessEndpoint, HttpEndpoint]


def _with_meta(data: dict[str, Any], endpoint: ServerEndpoint) -> dict[str, Any]:
    if endpoint.description:
        data["description"] = endpoint.description
    if not endpoint.enabled:
        data["enabled"] = False
    return data


def endpoint_from_dict(name: str, data: dict[str, Any]) -> ServerEndpoint:
    """Build the endpoint variant for a server definition from the config file."""
    if not isinstance(data, dict):
        raise ConfigError(f"Server '{name}' must be an object, got {type(data).__name__}")

    transport = data.get("transport")
    meta = {
        "description": data.get("description") or "",
        "enabled": data.get("enabled", True) is not False,
    }

    if transport == "stdio":
        command = data.get("command")
        if not command:
            raise ConfigError(f"Server '{name}': 'command' is required for stdio transport")
        return ProcessEndpoint(
            command=command,
            args=[str(a) for a in data.get("args") or []],
            env={k: str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            **meta,
        )

    if transport == "http":
        url = data.get("url")
        if not url:
            raise ConfigError(f"Server '{name}': 'url' is required for http transport")
        return HttpEndpoint(
            url=url,
            headers={k: str(v) for k, v in (data.get("headers") or {}).items()},
            **meta,
        )

    raise ConfigError(
        f"Server '{name}': unknown transport {transport!r} (expected 'stdio' or 'http')"
    )


def key_to_label(key: str) -> str:
    """Render ``snake_case`` or ``camelCase`` keys as ``Title Case``."""
    result = key.replace("_", " ")
    result = re.sub(r"([a-z])([A-Z])", r"\1 \2", result)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), result)


@dataclass
class ServerInfo:
    """Server identity reported by the initialize handshake."""
    name: str | None = None
    version: str | None = None

    @classmethod
    def from_implementation(cls, impl: Any) -> "ServerInfo | None":
        if impl is None:
            return None
        return cls(name=getattr(impl, "name", None), version=getattr(impl, "version", None))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerInfo":
        return cls(name=data.get("name"), version=data.get("version"))

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in (("name", self.name), ("version", self.version)) if v is not None}


@dataclass
class Operation:
    """One tool exposed by a server."""
    name: str
    description: str = ""
    title: str | None = None
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None

    @classmethod
    def from_tool(cls, tool: Any) -> "Operation":
        """Build from an ``mcp.types.Tool``."""
        return cls(
            name=tool.name,
            description=tool.description or "",
            title=getattr(tool, "title", None),
            input_schema=_schema_dict(getattr(tool, "inputSchema", None)),
            output_schema=_schema_dict(getattr(tool, "outputSchema", None)),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Operation":
        name = data["name"]
        if not isinstance(name, str) or not name:
            raise ValueError(f"Invalid tool name: {name!r}")
        return cls(
            name=name,
            description=data.get("description") or "",
            title=data.get("title"),
            input_schema=data.get("inputSchema"),
            output_schema=data.get("outputSchema"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.title:
            data["title"] = self.title
        if self.input_schema is not None:
            data["inputSchema"] = self.input_schema
        if self.output_schema is not None:
            data["outputSchema"] = self.output_schema
        return data

    @property
    def display_name(self) -> str:
        return self.title or key_to_label(self.name)

    @property
    def summary(self) -> str:
        return self.description or f"Execute the {self.name} tool"


def _schema_dict(schema: Any) -> dict[str, Any] | None:
    """Normalize a schema to a plain dict - handles pydantic models and dicts."""
    if schema is None:
        return None
    if hasattr(schema, "model_dump"):
        return schema.model_dump()
    return dict(schema)


@dataclass
class ContentItem:
    """One piece of content in a tool result, in server order."""
    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    resource: dict[str, Any] | None = None
    raw: dict[str, Any] | None = None

    @classmethod
    def from_block(cls, block: Any) -> "ContentItem":
        """Convert an ``mcp.types`` content block."""
        kind = getattr(block, "type", None)
        if kind == "text":
            return cls(type="text", text=block.text)
        if kind in ("image", "audio"):
            return cls(type=kind, data=block.data, mime_type=block.mimeType)
        if kind == "resource":
            res = block.resource
            return cls(
                type="resource",
                resource={
                    "uri": str(res.uri),
                    "text": getattr(res, "text", None),
                    "blob": getattr(res, "blob", None),
                    "mimeType": getattr(res, "mimeType", None),
                },
            )
        raw = block.model_dump(mode="json") if hasattr(block, "model_dump") else {"value": str(block)}
        return cls(type=str(kind or "unknown"), raw=raw)

    def to_dict(self) -> dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text}
        if self.type in ("image", "audio"):
            return {"type": self.type, "data": self.data, "mimeType": self.mime_type}
        if self.type == "resource":
            return {"type": "resource", "resource": dict(self.resource or {})}
        return dict(self.raw or {"type": self.type})


@dataclass
class CallResult:
    """Result of a tool call. ``is_error`` results still carry content."""
    is_error: bool = False
    content: list[ContentItem] = field(default_factory=list)
    structured_content: dict[str, Any] | None = None

    @classmethod
    def from_mcp(cls, result: Any) -> "CallResult":
        """Convert an ``mcp.types.CallToolResult``."""
        return cls(
            is_error=bool(getattr(result, "isError", False)),
            content=[ContentItem.from_block(b) for b in getattr(result, "content", None) or []],
            structured_content=getattr(result, "structuredContent", None),
        )

    def error_text(self) -> str:
        return "\n".join(c.text for c in self.content if c.type == "text" and c.text)


@dataclass
class CatalogEntry:
    """A persisted tool catalog for one server."""
    server: ServerIdentity
    cached_at: int
    tools: list[Operation]
    server_info: ServerInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "cachedAt": self.cached_at,
            "server": self.server,
            "tools": [t.to_dict() for t in self.tools],
        }
        if self.server_info is not None:
            data["serverInfo"] = self.server_info.to_dict()
        return data

    @classmethod
    def from_dict(cls, server: ServerIdentity, data: Any) -> "CatalogEntry":
        """Parse a persisted record; raises on any structural problem."""
        if not isinstance(data, dict):
            raise ValueError("cache record is not an object")
        cached_at = data["cachedAt"]
        if isinstance(cached_at, bool) or not isinstance(cached_at, (int, float)):
            raise ValueError(f"invalid cachedAt: {cached_at!r}")
        if isinstance(cached_at, float) and not math.isfinite(cached_at):
            raise ValueError(f"invalid cachedAt: {cached_at!r}")
        tools = data["tools"]
        if not isinstance(tools, list):
            raise ValueError("tools is not a list")
        info = data.get("serverInfo")
        recorded = data.get("server")
        return cls(
            server=recorded if isinstance(recorded, str) and recorded else server,
            cached_at=int(cached_at),
            tools=[Operation.from_dict(t) for t in tools],
            server_info=ServerInfo.from_dict(info) if isinstance(info, dict) else None,
        )
