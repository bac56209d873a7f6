"""Tool gateway: schema validation, dispatch and error normalization.

Tools never raise into the turn. Whatever happens -- unknown tool name,
arguments that are not JSON, arguments that fail the tool's schema, a
:class:`~chat_server.errors.ToolError` from the tool itself, or an
unexpected exception -- the model gets back a mapping it can read and act
on in its next round::

    {"error": "<safe message>", "code": "<kind>"}
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Type

from pydantic import BaseModel, ValidationError

from chat_server.errors import ToolError

logger = logging.getLogger(__name__)


class Tool:
    """Base class: subclasses set ``name``, ``description``, ``args_model`` and implement ``run``."""

    name: str = ""
    description: str = ""
    args_model: Type[BaseModel] = BaseModel

    async def run(self, args: BaseModel) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError

    def definition(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": schema},
        }


def _describe_validation_error(err: ValidationError) -> str:
    parts: List[str] = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p != "__root__") or "arguments"
        msg = str(e.get("msg", "invalid value"))
        # pydantic prefixes custom errors with "Value error, "
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}")
    return "Invalid arguments: " + "; ".join(parts)


class ToolGateway:
    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("tool has no name")
        self._tools[tool.name] = tool

    @property
    def names(self) -> List[str]:
        return sorted(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [self._tools[n].definition() for n in self.names]

    def parse_arguments(self, raw_arguments: Any) -> Any:
        if raw_arguments is None or raw_arguments == "":
            return {}
        if isinstance(raw_arguments, (str, bytes)):
            try:
                return json.loads(raw_arguments)
            except json.JSONDecodeError as e:
                raise ToolError("invalid_input", f"Arguments are not valid JSON: {e.msg}.")
        return raw_arguments

    async def invoke(self, tool_name: str, raw_arguments: Any) -> Any:
        tool = self._tools.get(tool_name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", tool_name)
            return ToolError("not_found", f"Unknown tool: {tool_name}.").to_result()

        try:
            payload = self.parse_arguments(raw_arguments)
            if not isinstance(payload, Mapping):
                raise ToolError("invalid_input", "Arguments must be a JSON object.")
            args = tool.args_model.model_validate(payload)
        except ToolError as e:
            return e.to_result()
        except ValidationError as e:
            logger.info("Tool %s argument validation failed: %s", tool_name, e.error_count())
            return ToolError("invalid_input", _describe_validation_error(e)).to_result()

        try:
            return await tool.run(args)
        except ToolError as e:
            logger.info("Tool %s returned %s: %s", tool_name, e.kind, e.message)
            return e.to_result()
        except Exception:
            logger.exception("Tool %s failed unexpectedly", tool_name)
            return ToolError("internal", f"The {tool_name} tool failed unexpectedly.").to_result()


def is_error_result(result: Any) -> bool:
    return isinstance(result, Mapping) and "error" in result and "code" in result

