"""
Configuration: server definitions and settings in ``config.json``.

Layout:

    {
      "servers": {
        "memory": {"transport": "stdio", "command": "npx",
                   "args": ["-y", "@modelcontextprotocol/server-memory"]},
        "docs": {"transport": "http", "url": "https://example.com/mcp",
                 "headers": {"Authorization": "Bearer ${DOCS_TOKEN}"}}
      },
      "settings": {"cacheEnabled": true, "cacheTtlMs": 14400000}
    }

The config directory is ``$MCP_CLI_CONFIG_DIR`` or ``~/.config/mcp-cli``;
catalog cache files live in its ``cache/`` subdirectory.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_cli.cache import DEFAULT_TTL_MS, CatalogCache
from mcp_cli.errors import ConfigError
from mcp_cli.transport import DEFAULT_CONNECT_TIMEOUT, DEFAULT_REQUEST_TIMEOUT
from mcp_cli.types import HttpEndpoint, ProcessEndpoint, ServerEndpoint, endpoint_from_dict

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "MCP_CLI_CONFIG_DIR"
CONFIG_FILE = "config.json"


class Settings(BaseModel):
    """Stored settings. Field aliases are the keys used in ``config.json``."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    cache_enabled: bool = Field(default=True, alias="cacheEnabled")
    cache_ttl_ms: int = Field(default=DEFAULT_TTL_MS, ge=0, alias="cacheTtlMs")
    connect_timeout: float | None = Field(default=DEFAULT_CONNECT_TIMEOUT, gt=0, alias="connectTimeout")
    request_timeout: float | None = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0, alias="requestTimeout")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Settings":
        """Merge stored settings over the defaults."""
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigError("'settings' must be an object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {_problems(e)}") from e

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _problems(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    )


@dataclass
class Config:
    servers: dict[str, dict[str, Any]]
    settings: Settings


def config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "mcp-cli"


def config_path() -> Path:
    return config_dir() / CONFIG_FILE


def cache_dir() -> Path:
    return config_dir() / "cache"


def load_config(path: Path | None = None) -> Config:
    """Load the config file; a missing file gives an empty config."""
    path = path or config_path()
    if not path.exists():
        return Config(servers={}, settings=Settings())

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Failed to load config from {path}: top level must be an object")

    servers = data.get("servers") or {}
    if not isinstance(servers, dict):
        raise ConfigError(f"Failed to load config from {path}: 'servers' must be an object")

    try:
        settings = Settings.from_dict(data.get("settings"))
    except ConfigError as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e
    return Config(servers=servers, settings=settings)


def save_config(config: Config, path: Path | None = None) -> None:
    path = path or config_path()
    data = {"servers": config.servers, "settings": config.settings.to_dict()}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to save config to {path}: {e}") from e


def get_settings(path: Path | None = None) -> Settings:
    return load_config(path).settings


def update_settings(path: Path | None = None, **updates: Any) -> Settings:
    """Change some settings and persist them. Returns the new settings."""
    config = load_config(path)
    for name, value in updates.items():
        if name not in Settings.model_fields:
            raise ConfigError(f"Unknown setting: {name}")
        try:
            setattr(config.settings, name, value)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {_problems(e)}") from e
    save_config(config, path)
    return config.settings


def build_cache(settings: Settings, directory: Path | None = None) -> CatalogCache:
    return CatalogCache(
        directory or cache_dir(),
        enabled=settings.cache_enabled,
        ttl_ms=settings.cache_ttl_ms,
    )


# ── Server definitions ────────────────────────────────────────

def all_servers(path: Path | None = None) -> dict[str, ServerEndpoint]:
    """Every configured server, including disabled ones."""
    return {
        name: endpoint_from_dict(name, data)
        for name, data in load_config(path).servers.items()
    }


def enabled_servers(path: Path | None = None) -> dict[str, ServerEndpoint]:
    return {name: ep for name, ep in all_servers(path).items() if ep.enabled}


def get_server(name: str, path: Path | None = None) -> ServerEndpoint | None:
    data = load_config(path).servers.get(name)
    return endpoint_from_dict(name, data) if data is not None else None


def add_server(name: str, endpoint: ServerEndpoint, path: Path | None = None) -> bool:
    """Add a server. Returns False if the name is already taken."""
    config = load_config(path)
    if name in config.servers:
        return False
    config.servers[name] = endpoint.to_dict()
    save_config(config, path)
    logger.info(f"Added server {name}: {endpoint.describe()}")
    return True


def update_server(name: str, endpoint: ServerEndpoint, path: Path | None = None) -> bool:
    config = load_config(path)
    if name not in config.servers:
        return False
    config.servers[name] = endpoint.to_dict()
    save_config(config, path)
    return True


def remove_server(name: str, path: Path | None = None) -> bool:
    config = load_config(path)
    if config.servers.pop(name, None) is None:
        return False
    save_config(config, path)
    logger.info(f"Removed server {name}")
    return True


def set_server_enabled(name: str, enabled: bool, path: Path | None = None) -> bool:
    config = load_config(path)
    server = config.servers.get(name)
    if server is None:
        return False
    if enabled:
        server.pop("enabled", None)
    else:
        server["enabled"] = False
    save_config(config, path)
    return True


def create_example_config(path: Path | None = None) -> bool:
    """Write a starter config. Returns False if a config already exists."""
    path = path or config_path()
    if path.exists():
        return False

    home = os.environ.get("HOME", "/tmp")
    servers = {
        "memory": ProcessEndpoint(
            command="npx",
            args=["-y", "@modelcontextprotocol/server-memory"],
            description="Simple key-value memory store",
        ),
        "filesystem": ProcessEndpoint(
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem", home],
            description="File system operations",
        ),
        "everything": ProcessEndpoint(
            command="npx",
            args=["-y", "@modelcontextprotocol/server-everything"],
            description="Demo server with sample tools for testing",
        ),
        "fetch": ProcessEndpoint(
            command="uvx",
            args=["mcp-server-fetch"],
            description="Fetch and convert web content for LLM usage",
        ),
    }
    config = Config(
        servers={name: ep.to_dict() for name, ep in servers.items()},
        settings=Settings(),
    )
    save_config(config, path)
    return True


# ── Environment variable substitution ─────────────────────────

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env_vars(value: str, env: Mapping[str, str] | None = None) -> str:
    """Expand ``$VAR``, ``${VAR}`` and ``${VAR:-default}``. Unset vars become ''."""
    env = os.environ if env is None else env

    def replacer(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2) or ""
        return env.get(name, default)

    return _ENV_PATTERN.sub(replacer, value)


def resolve_endpoint(endpoint: ServerEndpoint, env: Mapping[str, str] | None = None) -> ServerEndpoint:
    """Return a copy of the endpoint with environment references expanded."""
    if isinstance(endpoint, ProcessEndpoint):
        return ProcessEndpoint(
            command=expand_env_vars(endpoint.command, env),
            args=[expand_env_vars(a, env) for a in endpoint.args],
            env={k: expand_env_vars(v, env) for k, v in endpoint.env.items()},
            cwd=expand_env_vars(endpoint.cwd, env) if endpoint.cwd else None,
            description=endpoint.description,
            enabled=endpoint.enabled,
        )
    if isinstance(endpoint, HttpEndpoint):
        return HttpEndpoint(
            url=expand_env_vars(endpoint.url, env),
            headers={k: expand_env_vars(v, env) for k, v in endpoint.headers.items()},
            description=endpoint.description,
            enabled=endpoint.enabled,
        )
    raise ConfigError(f"Unknown endpoint type: {type(endpoint).__name__}")
