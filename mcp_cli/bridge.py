"""
Bridge between MCP tool servers and LangChain.

Converts ToolCommand registry entries into LangChain StructuredTools
whose argument schema is generated from the tool's ParameterSet.

Usage:
    from mcp_cli.bridge import to_langchain_tool, register_tools

    # Single tool
    command = await manager.command("everything", "echo")
    lc_tool = to_langchain_tool(command)

    # All tools from all servers
    await register_tools(manager, tool_registry)
"""

from __future__ import annotations

import json
from typing import Any, List, Literal, Optional

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field, create_model

from mcp_cli.manager import ToolCommand, ToolServerManager
from mcp_cli.schema import ARRAY, BOOLEAN, NUMBER, Parameter, ParameterSet, to_parameter_set

_SCALARS = {BOOLEAN: bool, NUMBER: float}


def _python_type(param: Parameter) -> Any:
    if param.choices:
        return Literal[tuple(param.choices)]
    if param.type == NUMBER:
        return int if param.integer else float
    if param.type == ARRAY:
        item = _SCALARS.get(param.item_type or "", str if param.item_type else Any)
        return List[item]
    return _SCALARS.get(param.type, str)


def args_model(name: str, parameters: ParameterSet) -> type[BaseModel]:
    """Build a pydantic model describing a tool's arguments."""
    definitions: dict[str, Any] = {}
    for param in parameters:
        annotation = _python_type(param)
        constraints: dict[str, Any] = {"description": param.description}
        if param.type == NUMBER and not param.choices:
            if param.minimum is not None:
                constraints["ge"] = param.minimum
            if param.maximum is not None:
                constraints["le"] = param.maximum

        if param.required:
            definitions[param.name] = (annotation, Field(..., **constraints))
        else:
            default = param.default if param.has_default else None
            definitions[param.name] = (Optional[annotation], Field(default, **constraints))

    model_name = "".join(part.capitalize() for part in name.replace("-", "_").split("_")) or "Tool"
    return create_model(f"{model_name}Args", **definitions)


def to_langchain_tool(
    command: ToolCommand,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies to an MCP tool.

    The returned tool, when invoked by an agent, opens a session to the
    tool's server, calls it, and returns the normalized result as JSON
    text. Failures are returned as text rather than raised, so the
    agent can read them.
    """
    operation = command.operation

    async def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to MCP tool server."""
        outcome = await command.invoke(kwargs)
        if not outcome.success:
            return f"Error calling {command.server}/{command.name}: {outcome.error}"
        if isinstance(outcome.data, str):
            return outcome.data
        return json.dumps(outcome.data, indent=2)

    return StructuredTool.from_function(
        coroutine=_call_mcp,
        name=operation.name,
        description=description_override or operation.summary,
        args_schema=args_model(operation.name, command.parameters),
    )


async def register_tools(
    manager: ToolServerManager,
    tool_registry: Any,
    domain_tags: dict[str, list[str]] | None = None,
    prompt_instructions: dict[str, str] | None = None,
) -> list[str]:
    """
    Resolve every server's tools and register them in a tool registry.

    Args:
        manager: The ToolServerManager holding the servers
        tool_registry: Any object with
                       ``register_langchain_tool(tool_id, tool, prompt_instructions, domain_tags)``
        domain_tags: Optional {tool_name: [tags]} for categorization
        prompt_instructions: Optional {tool_name: instructions}

    Returns:
        List of registered tool IDs (``<server>__<tool>``).
    """
    domain_tags = domain_tags or {}
    prompt_instructions = prompt_instructions or {}
    registered = []

    catalogs = await manager.resolve_all()
    for server, operations in catalogs.items():
        for op in operations:
            command = ToolCommand(manager, server, op, to_parameter_set(op))
            instructions = prompt_instructions.get(command.name) or auto_prompt_instructions(command)
            tool_registry.register_langchain_tool(
                tool_id=command.tool_id,
                tool=to_langchain_tool(command),
                prompt_instructions=instructions,
                domain_tags=domain_tags.get(command.name, []),
            )
            registered.append(command.tool_id)

    return registered


def auto_prompt_instructions(command: ToolCommand) -> str:
    """Generate prompt instructions from a tool's parameter set."""
    operation = command.operation
    lines = [f"## Tool: {operation.name}", operation.summary, ""]
    if len(command.parameters):
        lines.append("Parameters:")
        for param in command.parameters:
            flag = "required" if param.required else "optional"
            lines.append(f"  - {param.name} ({param.type}, {flag}): {param.description}")
    return "\n".join(lines)
