"""Tool registry: name -> capability lookup for the executor."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

# Handler contract:
#   handler(input: dict) -> value | ToolResult
#   handler may be sync or async, or a (sync or async) generator whose
#   yielded values are progress and whose last value (or a yielded
#   ToolResult) is the result.
ToolHandler = Callable[[dict[str, Any]], Any]


@dataclass
class ToolDefinition:
    """A tool the model may call by name."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: ToolHandler | None = None
    human: bool = False  # result is supplied by the client, not a handler

    def spec(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Registry of tools keyed by name. Tools must be registered explicitly."""

    def __init__(self, tools: Iterable[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for t in tools or ():
            self.register(t)

    def register(self, tool: ToolDefinition) -> None:
        if tool.handler is None and not tool.human:
            raise ValueError(f"Tool '{tool.name}' needs a handler or human=True")
        self._tools[tool.name] = tool

    def register_bundle(self, tools: Iterable[ToolDefinition]) -> None:
        """Register several tools at once, e.g. ones sharing a connection."""
        for t in tools:
            self.register(t)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDefinition:
        """Like ``get`` but raises ``KeyError`` for unknown tools."""
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        return tool

    def is_human(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.human

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def get_specs(self) -> list[dict[str, Any]]:
        """Tool definitions handed to the model collaborator."""
        return [t.spec() for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def tool(
        self,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """
        Decorator that registers a function as a tool.

            @registry.tool(description="Add two numbers")
            def add(input):
                return input["a"] + input["b"]
        """

        def decorator(fn: ToolHandler) -> ToolHandler:
            definition = ToolDefinition(
                name=name or fn.__name__,
                description=description or inspect.getdoc(fn) or "",
                handler=fn,
            )
            if input_schema is not None:
                definition.input_schema = input_schema
            self.register(definition)
            return fn

        return decorator
