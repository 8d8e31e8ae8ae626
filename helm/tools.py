"""Tool contract, confirmation details and the tool registry.

A tool is a ``BaseTool`` subclass exposing four hooks to the scheduler:
``validate`` (parameter check), ``should_confirm`` (optional approval step),
``execute`` (the actual work) and ``describe`` (one-line summary for UIs).
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar

logger = logging.getLogger(__name__)


class ToolConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    MODIFY_WITH_EDITOR = "modify_with_editor"
    CANCEL = "cancel"


class ToolErrorType(str, Enum):
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_TOOL_PARAMS = "invalid_tool_params"
    EXECUTION_FAILED = "execution_failed"
    UNHANDLED_EXCEPTION = "unhandled_exception"


@dataclass
class FileDiff:
    file_diff: str
    file_name: str
    original_content: str | None
    new_content: str


@dataclass
class ToolError:
    message: str
    type: ToolErrorType = ToolErrorType.EXECUTION_FAILED


@dataclass
class ToolResult:
    """What a tool hands back.

    ``content`` goes to the model (a string, a part, or a list of parts);
    ``display`` is for humans.
    """

    content: Any
    display: str | FileDiff = ""
    error: ToolError | None = None


ConfirmHandler = Callable[[ToolConfirmationOutcome, dict | None], Awaitable[None]]


async def _no_follow_up(outcome: ToolConfirmationOutcome, payload: dict | None = None):
    return None


@dataclass
class EditConfirmation:
    title: str
    file_name: str
    file_path: str
    file_diff: str
    original_content: str | None
    new_content: str
    on_confirm: ConfirmHandler = _no_follow_up
    is_modifying: bool = False
    kind: ClassVar[str] = "edit"

    def as_file_diff(self) -> FileDiff:
        return FileDiff(
            file_diff=self.file_diff,
            file_name=self.file_name,
            original_content=self.original_content,
            new_content=self.new_content,
        )


@dataclass
class ExecConfirmation:
    title: str
    command: str
    root_command: str
    on_confirm: ConfirmHandler = _no_follow_up
    kind: ClassVar[str] = "exec"


@dataclass
class InfoConfirmation:
    title: str
    prompt: str
    urls: list[str] = field(default_factory=list)
    on_confirm: ConfirmHandler = _no_follow_up
    kind: ClassVar[str] = "info"


ConfirmationDetails = EditConfirmation | ExecConfirmation | InfoConfirmation


# -- Parameter validation ----------------------------------------------------

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_params(args: object, schema: dict) -> str | None:
    """Check *args* against a flat JSON-schema object. Returns an error or None."""
    if not isinstance(args, dict):
        return "params must be an object"
    properties = schema.get("properties", {})
    for name in schema.get("required", []):
        if name not in args:
            return f"params must have required property '{name}'"
    for name, value in args.items():
        prop = properties.get(name)
        if prop is None:
            continue
        expected = _JSON_TYPES.get(prop.get("type", ""))
        if expected is not None:
            # bool is an int subclass; reject it where a number is expected.
            if isinstance(value, bool) and expected is not bool:
                return f"params/{name} must be {prop['type']}"
            if not isinstance(value, expected):
                return f"params/{name} must be {prop['type']}"
        if "enum" in prop and value not in prop["enum"]:
            allowed = ", ".join(str(v) for v in prop["enum"])
            return f"params/{name} must be one of: {allowed}"
        if "minimum" in prop and isinstance(value, (int, float)):
            if value < prop["minimum"]:
                return f"params/{name} must be >= {prop['minimum']}"
    return None


# -- Tool base classes -------------------------------------------------------


class BaseTool:
    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}

    def schema(self) -> dict:
        """OpenAI function-calling declaration for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate(self, args: dict) -> str | None:
        return validate_params(args, self.parameters)

    def describe(self, args: dict) -> str:
        return json.dumps(args, ensure_ascii=False)

    async def should_confirm(self, args: dict, token) -> ConfirmationDetails | None:
        return None

    async def execute(self, args: dict, token) -> ToolResult:
        raise NotImplementedError


class ModifiableTool(BaseTool):
    """A tool whose proposed content the user may rewrite before it runs."""

    def apply_modification(self, args: dict, new_content: str) -> dict:
        raise NotImplementedError


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.warning("tool %r is already registered, replacing it", tool.name)
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def get_all_tools(self) -> list[BaseTool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def get_function_declarations(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
