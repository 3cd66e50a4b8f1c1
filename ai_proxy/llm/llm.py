"""
Model completion boundary: one litellm call with tools, parsed into a tagged ModelTurn.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import litellm
import stamina

from ai_proxy.common.config import get_settings
from ai_proxy.errors import ModelCallError

logger = logging.getLogger(__name__)

# Handoff tools are named transfer_to_<agent>; any call with this prefix is a handoff request,
# whether or not the current agent declares that target.
HANDOFF_TOOL_PREFIX = "transfer_to_"


class TurnKind(str, Enum):
    ANSWER = "answer"
    TOOL_CALL = "tool_call"
    HANDOFF = "handoff"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str
    is_handoff: bool = False

    def to_message_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ModelTurn:
    """What the model decided: a final answer, tool calls, or a handoff (possibly alongside tool calls)."""
    kind: TurnKind
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: dict = field(default_factory=dict)

    def assistant_message(self) -> dict:
        if not self.tool_calls:
            return {"role": "assistant", "content": self.text}
        return {
            "role": "assistant",
            "content": self.text or None,
            "tool_calls": [tc.to_message_dict() for tc in self.tool_calls],
        }


# Substrings of provider errors worth another attempt
RETRYABLE_ERROR_PATTERNS = (
    "503",
    "429",
    "overloaded",
    "unavailable",
    "rate limit",
    "rate_limit",
    "timeout",
    "connection error",
    "internal server error",
)


def get_temperature(model: str) -> float:
    """
    Sampling temperature for a model: reasoning models (o-series, gpt-5) and gemini
    only accept 1.0; everything else runs at 0.1.
    """
    name = (model or "").strip().lower()
    if not name:
        return 0.1
    # o1, o3-mini, ... but not gpt-4o
    if name.startswith("o") or name.startswith("gpt-5") or name.startswith("gemini/"):
        return 1.0
    return 0.1


def is_retryable_error(exception) -> bool:
    """True for rate limits, overloads, timeouts and 5xx-style provider failures."""
    if not isinstance(exception, Exception):
        return False
    message = str(exception).lower()
    return any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS)


@stamina.retry(on=is_retryable_error)
async def _litellm_acompletion_with_retry(
    model: str,
    messages: list,
    api_key: Optional[str] = None,
    api_base: Optional[str] = None,
    tools: Optional[List[Dict]] = None,
    tool_choice: Optional[Union[str, Dict]] = None,
    model_settings: Optional[Dict[str, Any]] = None,
):
    """
    One litellm.acompletion call, retried by stamina while is_retryable_error() holds.
    api_key=None lets litellm read the provider's own env var; model_settings (max_tokens,
    temperature, ...) override the defaults. Tool params are only sent when tools are given.
    """
    params: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": get_temperature(model),
    }
    if api_key:
        params["api_key"] = api_key
    if api_base:
        params["api_base"] = api_base
    if model_settings:
        params.update(model_settings)

    if tools:
        params["tools"] = tools
        params["tool_choice"] = tool_choice if tool_choice is not None else "auto"

    return await litellm.acompletion(**params)


async def agent_completion(
    model: str,
    messages: list,
    tools: Optional[List[Dict]] = None,
    tool_choice: Optional[Union[str, Dict]] = None,
    model_settings: Optional[Dict[str, Any]] = None,
):
    """
    Public wrapper for agent use. Makes one LLM completion call with optional tools,
    using the process-wide key and base URL.
    """
    settings = get_settings()
    return await _litellm_acompletion_with_retry(
        model=model,
        messages=messages,
        api_key=settings.llm_api_key,
        api_base=settings.llm_base_url,
        tools=tools,
        tool_choice=tool_choice,
        model_settings=model_settings,
    )


def _extract_usage(response: Any) -> dict:
    usage = getattr(response, "usage", None)
    if not usage:
        return {}

    def _count(name: str) -> int:
        value = getattr(usage, name, None)
        return value if isinstance(value, int) else 0

    prompt_tokens = _count("prompt_tokens")
    completion_tokens = _count("completion_tokens")
    total_tokens = _count("total_tokens") or (prompt_tokens + completion_tokens)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }


def _tool_call_from_response(tc: Any, handoff_names: frozenset[str]) -> ToolCall:
    """Convert a litellm tool_call object (or dict) to a ToolCall."""
    if isinstance(tc, dict):
        fn = tc.get("function") or {}
        call_id, name, args = tc.get("id"), fn.get("name"), fn.get("arguments")
    else:
        fn = getattr(tc, "function", None)
        call_id = getattr(tc, "id", None)
        name = getattr(fn, "name", None)
        args = getattr(fn, "arguments", None)
    if not call_id or not isinstance(name, str) or not name:
        raise ModelCallError(f"Unrecognized tool call in model response: {tc!r}")
    if args is None:
        args = "{}"
    elif not isinstance(args, str):
        args = json.dumps(args)
    is_handoff = name in handoff_names or name.startswith(HANDOFF_TOOL_PREFIX)
    return ToolCall(id=call_id, name=name, arguments=args, is_handoff=is_handoff)


def parse_model_response(response: Any, handoff_names: frozenset[str] = frozenset()) -> ModelTurn:
    """Map a chat completion response onto a ModelTurn. Raises ModelCallError on unknown shapes."""
    choices = getattr(response, "choices", None)
    if not choices:
        raise ModelCallError("Unrecognized model response: no choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise ModelCallError("Unrecognized model response: no message")

    content = getattr(message, "content", None)
    if content is not None and not isinstance(content, str):
        raise ModelCallError(f"Unrecognized model response content: {type(content).__name__}")
    text = (content or "").strip()
    raw_calls = getattr(message, "tool_calls", None) or []
    calls = tuple(_tool_call_from_response(tc, handoff_names) for tc in raw_calls)
    usage = _extract_usage(response)

    if not calls:
        return ModelTurn(kind=TurnKind.ANSWER, text=text, usage=usage)
    if any(c.is_handoff for c in calls):
        return ModelTurn(kind=TurnKind.HANDOFF, text=text, tool_calls=calls, usage=usage)
    return ModelTurn(kind=TurnKind.TOOL_CALL, text=text, tool_calls=calls, usage=usage)


async def complete(
    model: str,
    instructions: str,
    history: list[dict],
    tools: list[dict] | None = None,
    model_settings: dict | None = None,
    handoff_names: frozenset[str] = frozenset(),
) -> ModelTurn:
    """
    One model invocation. instructions become the leading system message; history is sent as-is
    (callers sanitize it). Provider failures are raised as ModelCallError.
    """
    messages = [{"role": "system", "content": instructions}, *history]
    try:
        response = await agent_completion(
            model=model,
            messages=messages,
            tools=tools or None,
            tool_choice="auto" if tools else None,
            model_settings=model_settings,
        )
    except Exception as e:
        logger.error(f"Model call to {model} failed: {e}")
        raise ModelCallError(f"Model call to {model} failed: {e}") from e
    return parse_model_response(response, handoff_names)
