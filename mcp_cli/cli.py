"""
mcp-cli — call MCP server tools from the command line.

Usage:
    # List configured servers
    mcp-cli servers

    # List tools on a server (cached for cacheTtlMs)
    mcp-cli tools everything
    mcp-cli tools everything --refresh

    # Call a tool; options are generated from the tool's input schema
    mcp-cli call everything echo --message "hello"
    mcp-cli call everything echo --help

    # Manage servers, cache and settings
    mcp-cli server add memory --command npx --arg=-y --arg @modelcontextprotocol/server-memory
    mcp-cli server add docs --url https://example.com/mcp --header "Authorization=Bearer $TOKEN"
    mcp-cli cache stats
    mcp-cli config cache-disable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Sequence

from mcp_cli import config
from mcp_cli.errors import ToolServerError
from mcp_cli.manager import ToolCommand, ToolServerManager
from mcp_cli.schema import ARRAY, BOOLEAN
from mcp_cli.types import HttpEndpoint, ProcessEndpoint

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _key_values(pairs: Sequence[str] | None, flag: str) -> dict[str, str]:
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"{flag} expects KEY=VALUE, got {pair!r}")
        result[key] = value
    return result


def build_manager() -> ToolServerManager:
    """Manager over every enabled server, with env references resolved."""
    settings = config.get_settings()
    return ToolServerManager(
        servers={
            name: config.resolve_endpoint(endpoint)
            for name, endpoint in config.enabled_servers().items()
        },
        cache=config.build_cache(settings),
        connect_timeout=settings.connect_timeout,
        request_timeout=settings.request_timeout,
    )


# ── Tool command parser ───────────────────────────────────────

def tool_parser(command: ToolCommand) -> argparse.ArgumentParser:
    """Build an argument parser for one tool from its parameter set."""
    op = command.operation
    parser = argparse.ArgumentParser(
        prog=f"mcp-cli call {command.server} {op.name}",
        description=f"{op.display_name}: {op.summary}",
        argument_default=None,
    )
    for param in command.parameters:
        flags = [f"--{param.name}"]
        dashed = param.name.replace("_", "-")
        if dashed != param.name:
            flags.append(f"--{dashed}")

        details = [param.type]
        if param.required:
            details.append("required")
        if param.has_default:
            details.append(f"default: {param.default!r}")
        if param.choices:
            details.append(f"one of: {', '.join(map(str, param.choices))}")
        if param.minimum is not None:
            details.append(f"min: {param.minimum}")
        if param.maximum is not None:
            details.append(f"max: {param.maximum}")
        help_text = f"{param.description} ({'; '.join(details)})"

        if param.type == BOOLEAN:
            parser.add_argument(*flags, dest=param.name, action=argparse.BooleanOptionalAction, help=help_text)
        else:
            metavar = "A,B,..." if param.type == ARRAY else param.label.upper().replace(" ", "_")
            parser.add_argument(*flags, dest=param.name, metavar=metavar, help=help_text)

    parser.add_argument(
        "--json-args",
        dest="_json_args",
        metavar="JSON",
        help="Arguments as a JSON object (merged under the options above)",
    )
    return parser


def tool_arguments(command: ToolCommand, argv: Sequence[str]) -> dict[str, Any]:
    """Raw values for a tool call from its command-line options."""
    namespace = vars(tool_parser(command).parse_args(list(argv)))
    raw: dict[str, Any] = {}
    json_args = namespace.pop("_json_args", None)
    if json_args:
        try:
            loaded = json.loads(json_args)
        except json.JSONDecodeError as e:
            raise ToolServerError(f"Invalid --json-args JSON: {e}") from e
        if not isinstance(loaded, dict):
            raise ToolServerError("--json-args must be a JSON object")
        raw.update(loaded)
    raw.update({k: v for k, v in namespace.items() if v is not None})
    return raw


# ── Subcommands ───────────────────────────────────────────────

def cmd_servers(args: argparse.Namespace) -> int:
    servers = config.all_servers()
    rows = [
        {
            "name": name,
            "transport": endpoint.transport,
            "endpoint": endpoint.describe(),
            "description": endpoint.description,
            "enabled": endpoint.enabled,
        }
        for name, endpoint in servers.items()
    ]
    enabled = sum(1 for row in rows if row["enabled"])

    if args.json:
        _print_json({"servers": rows, "totalCount": len(rows), "enabledCount": enabled})
        return 0

    print(f"Configured servers: {len(rows)} ({enabled} enabled)\n")
    for row in rows:
        status = "✓" if row["enabled"] else "✗"
        suffix = f" - {row['description']}" if row["description"] else ""
        print(f"{status} {row['name']}{suffix}")
        print(f"    {row['endpoint']}")
    return 0


async def cmd_tools(args: argparse.Namespace) -> int:
    manager = build_manager()
    commands = await manager.commands(args.server, refresh=args.refresh)

    if args.json:
        _print_json([c.operation.to_dict() for c in commands])
        return 0

    if not commands:
        print(f"No tools available on {args.server}")
        return 0

    print(f"Tools on {args.server}: {len(commands)}\n")
    for command in commands:
        print(f"  {command.name:<30} {command.operation.summary}")
        for param in command.parameters:
            marker = "*" if param.required else " "
            print(f"      {marker} --{param.name} <{param.type}>  {param.description}")
    return 0


async def cmd_call(args: argparse.Namespace) -> int:
    manager = build_manager()
    command = await manager.command(args.server, args.tool)
    tool_args = list(args.tool_args)
    # --json after the tool name belongs to call unless the tool takes a json option
    if "--json" in tool_args and "json" not in command.parameters:
        tool_args.remove("--json")
        args.json = True
    raw = tool_arguments(command, tool_args)
    outcome = await command.invoke(raw)

    if outcome.success:
        data = outcome.data
        if isinstance(data, dict) and set(data) == {"text"} and not args.json:
            print(data["text"])
        else:
            _print_json(data)
        return 0

    print(f"Error: {outcome.error}", file=sys.stderr)
    if outcome.data is not None:
        _print_json(outcome.data)
    return 1


def cmd_server(args: argparse.Namespace) -> int:
    if args.action == "add":
        if bool(args.command) == bool(args.url):
            print("Error: exactly one of --command or --url is required", file=sys.stderr)
            return 1
        if args.command:
            endpoint = ProcessEndpoint(
                command=args.command,
                args=args.arg or [],
                env=_key_values(args.env, "--env"),
                cwd=args.cwd,
                description=args.description or "",
            )
        else:
            endpoint = HttpEndpoint(
                url=args.url,
                headers=_key_values(args.header, "--header"),
                description=args.description or "",
            )
        if not config.add_server(args.name, endpoint):
            print(f"Error: server '{args.name}' already exists", file=sys.stderr)
            return 1
        print(f"Added server {args.name}: {endpoint.describe()}")
        return 0

    if args.action == "remove":
        changed = config.remove_server(args.name)
        if changed:
            config.build_cache(config.get_settings()).invalidate(args.name)
    else:
        changed = config.set_server_enabled(args.name, args.action == "enable")

    if not changed:
        print(f"Error: unknown server '{args.name}'", file=sys.stderr)
        return 1
    print(f"Server {args.name}: {args.action}d")
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    cache = config.build_cache(config.get_settings())
    if args.action == "stats":
        stats = cache.stats()
        if args.json:
            _print_json(stats.to_dict())
        else:
            print(f"Cache: {'enabled' if stats.enabled else 'disabled'} (TTL {stats.ttl_hours:g}h)")
            print(f"Cached servers: {', '.join(stats.cached_servers) or 'none'}")
            print(f"Cached tools: {stats.total_cached_operations}")
        return 0

    if args.server:
        removed = cache.invalidate(args.server)
        print(f"Cleared cache for {args.server}" if removed else f"No cache entry for {args.server}")
    else:
        print(f"Cleared {cache.invalidate_all()} cache entries")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.action == "path":
        print(config.config_path())
        return 0

    if args.action == "init":
        if config.create_example_config():
            print(f"Created example config at {config.config_path()}")
            return 0
        print(f"Config already exists at {config.config_path()}")
        return 1

    if args.action in ("cache-enable", "cache-disable"):
        settings = config.update_settings(cache_enabled=args.action == "cache-enable")
        print(f"Cache {'enabled' if settings.cache_enabled else 'disabled'}")
        return 0

    settings = config.get_settings()
    stats = config.build_cache(settings).stats()
    _print_json({
        "configPath": str(config.config_path()),
        "settings": settings.to_dict(),
        "cache": stats.to_dict(),
    })
    return 0


# ── Entry point ───────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-cli",
        description="Discover and call tools on MCP servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-cli servers
  mcp-cli tools everything
  mcp-cli call everything echo --message hello
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    sub = parser.add_subparsers(dest="subcommand", required=True)

    p = sub.add_parser("servers", help="List configured servers")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = sub.add_parser("tools", help="List tools on a server")
    p.add_argument("server")
    p.add_argument("--refresh", action="store_true", help="Ignore the cache and ask the server")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = sub.add_parser("call", help="Call a tool (see: call SERVER TOOL --help)")
    p.add_argument("server")
    p.add_argument("tool")
    p.add_argument("--json", action="store_true", help="Always print output as JSON")
    p.add_argument("tool_args", nargs=argparse.REMAINDER, help="Tool options")

    p = sub.add_parser("server", help="Add, remove, enable or disable a server")
    p.add_argument("action", choices=["add", "remove", "enable", "disable"])
    p.add_argument("name")
    p.add_argument("--command", help="Executable for a stdio server")
    p.add_argument("--arg", action="append", help="Argument for the executable (repeatable)")
    p.add_argument("--env", action="append", metavar="KEY=VALUE", help="Environment variable (repeatable)")
    p.add_argument("--cwd", help="Working directory for a stdio server")
    p.add_argument("--url", help="URL of an HTTP server")
    p.add_argument("--header", action="append", metavar="KEY=VALUE", help="HTTP header (repeatable)")
    p.add_argument("--description", help="Human-readable description")

    p = sub.add_parser("cache", help="Inspect or clear the tool cache")
    p.add_argument("action", choices=["stats", "clear"])
    p.add_argument("server", nargs="?", help="Clear only this server")
    p.add_argument("--json", action="store_true", help="Output as JSON")

    p = sub.add_parser("config", help="Show or change settings")
    p.add_argument("action", choices=["show", "init", "path", "cache-enable", "cache-disable"], nargs="?", default="show")

    return parser


_ASYNC_COMMANDS = {"tools": cmd_tools, "call": cmd_call}
_SYNC_COMMANDS = {"servers": cmd_servers, "server": cmd_server, "cache": cmd_cache, "config": cmd_config}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.subcommand in _ASYNC_COMMANDS:
            return asyncio.run(_ASYNC_COMMANDS[args.subcommand](args))
        return _SYNC_COMMANDS[args.subcommand](args)
    except (ToolServerError, argparse.ArgumentTypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
