"""
Tools an agent may call, in OpenAI function-calling format, and their dispatch.
build_tool_definitions() is sent to the LLM; execute_tool() runs the chosen tool with (context, params).
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from bson import ObjectId
from pydantic import BaseModel, ValidationError

from ai_proxy.errors import InvalidToolInput, RunTimeoutError, ToolExecutionError

if TYPE_CHECKING:
    from .agent import Agent, RunContext

logger = logging.getLogger(__name__)

# Parameters for tools that take no input
EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}


@dataclass(frozen=True)
class Tool:
    """
    A named capability. execute(context, params) receives a RunContext and the validated
    params_model instance (or {} when params_model is None). It may be sync or async;
    sync functions run in a worker thread.
    """
    name: str
    description: str
    execute: Callable[..., Any]
    params_model: type[BaseModel] | None = None

    def parameters_schema(self) -> dict[str, Any]:
        if self.params_model is None:
            return dict(EMPTY_PARAMETERS)
        return self.params_model.model_json_schema()

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


def _json_serial_default(obj: Any) -> Any:
    """Convert non-JSON-serializable values for tool result payloads."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date) and not isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__!r} is not JSON serializable")


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=_json_serial_default)


def parse_arguments(
    name: str,
    arguments: str | dict | None,
    params_model: type[BaseModel] | None,
) -> BaseModel | dict:
    """
    Parse the model's arguments (JSON string or dict) and validate them against params_model.
    Raises InvalidToolInput; callers must not run the tool in that case.
    """
    if isinstance(arguments, str):
        try:
            params = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise InvalidToolInput(name, f"Invalid JSON arguments: {e}") from e
    else:
        params = arguments or {}
    if not isinstance(params, dict):
        raise InvalidToolInput(name, "arguments must be a JSON object")
    if params_model is None:
        return params
    try:
        return params_model.model_validate(params)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidToolInput(name, errors) from e


def build_tool_map(agent: "Agent") -> Mapping[str, Tool]:
    """Name -> Tool for the agent's own tools (handoffs are resolved separately)."""
    return MappingProxyType({t.name: t for t in agent.tools})


def build_tool_definitions(agent: "Agent") -> list[dict[str, Any]]:
    """Definitions sent to the LLM: the agent's tools followed by its handoff tools."""
    return [t.definition() for t in agent.tools] + [h.definition() for h in agent.handoff_specs]


async def execute_tool(
    tool: Tool,
    context: "RunContext",
    arguments: str | dict | None,
    timeout: float | None = None,
) -> str:
    """
    Validate arguments and run the tool. Returns the result serialized for the LLM.

    Raises:
        InvalidToolInput: arguments did not validate (execute was not called)
        ToolExecutionError: execute raised or returned a result that cannot be JSON-encoded
        RunTimeoutError: execute did not finish within timeout
    """
    params = parse_arguments(tool.name, arguments, tool.params_model)
    logger.info(f"Running tool {tool.name} for agent '{context.agent.name}'")
    if inspect.iscoroutinefunction(tool.execute):
        call = tool.execute(context, params)
    else:
        call = asyncio.to_thread(tool.execute, context, params)
    try:
        result = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise RunTimeoutError(f"Tool '{tool.name}' timed out after {timeout}s") from e
    except Exception as e:
        logger.exception("Tool %s failed", tool.name)
        raise ToolExecutionError(tool.name, str(e) or type(e).__name__, e) from e
    try:
        return serialize_result(result)
    except (TypeError, ValueError) as e:
        logger.warning(f"Tool {tool.name} returned an unserializable result: {e}")
        raise ToolExecutionError(tool.name, f"result is not JSON serializable: {e}", e) from e
