"""Tool abstraction, call/result records and the name-keyed registry."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError


@dataclass
class ToolResult:
    """Outcome of one tool execution.

    ``output`` carries the payload on success, ``error`` on failure; a
    failed result always has an empty ``output``. ``metadata`` is for the
    UI and the session log, never shown to the model.
    """

    success: bool
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: str, **metadata) -> "ToolResult":
        return cls(True, output, None, metadata)

    @classmethod
    def fail(cls, error: str, **metadata) -> "ToolResult":
        return cls(False, "", error, metadata)

    def as_content(self) -> str:
        """Text sent back to the model in the tool-role message."""
        if self.success:
            return self.output
        return f"Error: {self.error}"


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.args)},
        }


class Tool(ABC):
    """A single capability the model can call.

    Subclasses set the four descriptor attributes and a pydantic ``Params``
    model, and implement ``execute``. Expected failures are returned as
    ``ToolResult.fail``; only genuine defects may raise.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    Params: ClassVar[type[BaseModel]]
    requires_confirmation: ClassVar[bool] = False
    destructive: ClassVar[bool] = False

    @abstractmethod
    def execute(self, params: BaseModel) -> ToolResult: ...

    def validate(self, args: dict) -> BaseModel:
        return self.Params.model_validate(args)

    def param_names(self) -> list[str]:
        return [f.alias or name for name, f in self.Params.model_fields.items()]

    def declaration(self) -> dict:
        """OpenAI-style function declaration for the provider."""
        schema = self.Params.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }

    def manifest_line(self) -> str:
        return f"- {self.name}({', '.join(self.param_names())}): {self.description}"


def validation_message(tool_name: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        problems.append(f"{loc}: {err['msg']}")
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


class ToolRegistry:
    """Name-keyed collection of tools, kept in registration order."""

    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        # Re-registering a name replaces the tool but keeps its position.
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def count(self) -> int:
        return len(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def manifest(self) -> str:
        """One ``- name(params): description`` line per tool, in registration order."""
        return "\n".join(tool.manifest_line() for tool in self._tools.values())

    def declarations(self) -> list[dict]:
        return [tool.declaration() for tool in self._tools.values()]
