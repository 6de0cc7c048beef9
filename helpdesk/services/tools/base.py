from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from helpdesk.providers.llm.base import ToolDefinition


ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class ToolSpec:
    name: str
    description: str
    # JSON schema object: {"type": "object", "properties": {...}, "required": [...]}
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    executor: ToolExecutor | None = None

    def definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters)

    def parameter_descriptions(self) -> dict[str, str]:
        properties = self.parameters.get("properties") or {}
        return {name: str(schema.get("description", "")) for name, schema in properties.items()}


def object_schema(properties: dict[str, dict[str, Any]], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def with_reasoning(executor: ToolExecutor, reasoning_prompt: str | None) -> ToolExecutor:
    """Prefix a tool result with the caller's explanation when both are present."""
    if not reasoning_prompt:
        return executor

    async def _execute(arguments: dict[str, Any]) -> Any:
        result = await executor(arguments)
        if result in (None, ""):
            return result
        return f"{reasoning_prompt}\n\n{result}"

    return _execute
