"""
Core agent loop: LLM call -> tool calls / handoff -> loop, until the current agent answers.

States: AWAITING_MODEL -> (DONE | EXECUTING_TOOL | HANDING_OFF), EXECUTING_TOOL -> (HANDING_OFF |
AWAITING_MODEL), HANDING_OFF -> AWAITING_MODEL. Any I/O failure (model, timeout, cancellation,
round-trip budget) ends the run in FAILED by raising; errors the model can fix (bad tool input,
failing tool, undeclared handoff target) are written back into history as tool messages.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from ai_proxy import llm
from ai_proxy.common.config import Settings, get_settings
from ai_proxy.errors import (
    AgentError,
    HandoffCallbackError,
    InvalidHandoffTarget,
    InvalidToolInput,
    ModelCallError,
    RoundTripBudgetExceeded,
    RunCancelled,
    RunTimeoutError,
    ToolExecutionError,
)
from ai_proxy.llm import ModelTurn, ToolCall, TurnKind

from .agent import Agent, RunContext
from .system_prompt import build_system_message
from .tool_registry import build_tool_definitions, execute_tool

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOL = "executing_tool"
    HANDING_OFF = "handing_off"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunConfig:
    max_round_trips: int = 10
    model_timeout: float | None = 120.0
    tool_timeout: float | None = 30.0
    # When False, on_handoff exceptions are logged and the handoff still happens.
    fatal_handoff_errors: bool = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "RunConfig":
        settings = settings or get_settings()
        values = {
            "max_round_trips": settings.max_round_trips,
            "model_timeout": settings.model_timeout_secs,
            "tool_timeout": settings.tool_timeout_secs,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RunResult:
    final_output: str
    history: list[dict]
    last_agent: Agent
    round_trips: int = 0
    # Errors that were fed back to the model (or isolated, for on_handoff) instead of ending the run
    errors: list[AgentError] = field(default_factory=list)
    usage: dict = field(default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0})


def _tool_call_ids(msg: dict) -> list[str]:
    """Extract tool call ids from an assistant message."""
    tcs = msg.get("tool_calls") or []
    return [
        tc.get("id") if isinstance(tc, dict) else getattr(tc, "id", "")
        for tc in tcs
        if tc
    ]


def _sanitize_messages_for_llm(messages: list[dict]) -> list[dict]:
    """
    Ensure every assistant message with tool_calls is immediately followed by
    tool_result (role "tool") messages. If not (e.g. a stored chat from an older run),
    drop tool_calls from that assistant message so the API receives a valid sequence.
    Stored system messages are dropped; the current agent's instructions replace them.
    """
    out: list[dict] = []
    i = 0
    while i < len(messages):
        m = messages[i]
        role = m.get("role")
        if role != "assistant" or not m.get("tool_calls"):
            if role == "user" and m.get("content") is not None:
                out.append({"role": "user", "content": m.get("content")})
            elif role == "assistant":
                out.append({"role": "assistant", "content": m.get("content") or ""})
            # system messages and orphan tool results are dropped
            i += 1
            continue
        want_ids = set(_tool_call_ids(m))
        if not want_ids:
            out.append({"role": "assistant", "content": m.get("content") or ""})
            i += 1
            continue
        # Peek ahead for role "tool" messages that cover want_ids
        got_ids: set[str] = set()
        j = i + 1
        while j < len(messages) and messages[j].get("role") == "tool":
            got_ids.add(messages[j].get("tool_call_id") or "")
            j += 1
        if got_ids >= want_ids:
            out.append({
                "role": "assistant",
                "content": m.get("content"),
                "tool_calls": m["tool_calls"],
            })
            i += 1
            while i < len(messages) and messages[i].get("role") == "tool":
                out.append({"role": "tool", "tool_call_id": messages[i]["tool_call_id"], "content": messages[i]["content"]})
                i += 1
        else:
            out.append({"role": "assistant", "content": m.get("content") or ""})
            i += 1
    return out


def _normalize_input(input: str | list[dict]) -> list[dict]:
    if isinstance(input, str):
        return [{"role": "user", "content": input}]
    return [dict(m) for m in input]


def _error_content(error: Exception) -> str:
    return json.dumps({"error": str(error)})


def _tool_message(call: ToolCall, content: str) -> dict:
    return {"role": "tool", "tool_call_id": call.id, "content": content}


def _add_usage(total: dict, usage: dict) -> None:
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        total[key] += usage.get(key, 0) or 0


async def _check_cancelled(is_cancelled: Callable[[], Any] | None) -> None:
    """Raise RunCancelled if the caller went away. Checked before dispatching each model/tool call."""
    if is_cancelled is None:
        return
    cancelled = is_cancelled()
    if inspect.isawaitable(cancelled):
        cancelled = await cancelled
    if cancelled:
        raise RunCancelled()


async def _call_model(agent: Agent, history: list[dict], config: RunConfig) -> ModelTurn:
    model = agent.model or get_settings().llm_model
    try:
        return await asyncio.wait_for(
            llm.complete(
                model=model,
                instructions=build_system_message(agent),
                history=_sanitize_messages_for_llm(history),
                tools=build_tool_definitions(agent),
                model_settings=dict(agent.model_settings) or None,
                handoff_names=frozenset(agent.handoff_map()),
            ),
            timeout=config.model_timeout,
        )
    except asyncio.TimeoutError as e:
        raise RunTimeoutError(
            f"Model call for agent '{agent.name}' timed out after {config.model_timeout}s"
        ) from e


async def _run_tool_call(
    agent: Agent,
    call: ToolCall,
    history: list[dict],
    context: Any,
    config: RunConfig,
    errors: list[AgentError],
) -> dict:
    """Execute one tool call and return its tool message. Recoverable failures become error content."""
    run_context = RunContext(context=context, agent=agent, history=tuple(history))
    tool = agent.tool_map().get(call.name)
    try:
        if tool is None:
            raise ToolExecutionError(call.name, f"Unknown tool: {call.name}")
        content = await execute_tool(tool, run_context, call.arguments, timeout=config.tool_timeout)
    except (InvalidToolInput, ToolExecutionError) as e:
        logger.warning(f"Agent '{agent.name}' tool call {call.name} failed: {e}")
        errors.append(e)
        content = _error_content(e)
    return _tool_message(call, content)


async def _run_handoffs(
    agent: Agent,
    calls: list[ToolCall],
    history: list[dict],
    context: Any,
    config: RunConfig,
    errors: list[AgentError],
    is_cancelled: Callable[[], Any] | None,
) -> Agent:
    """
    Resolve the handoff calls of one model response. The first valid call to a declared target
    wins; its on_handoff runs to completion before the switch. Returns the new current agent
    (unchanged when no call was valid).
    """
    handoffs = agent.handoff_map()
    target: Agent | None = None
    for call in calls:
        if target is not None:
            history.append(_tool_message(
                call, json.dumps({"error": "Multiple handoffs requested; ignoring this one."})
            ))
            continue
        chosen = handoffs.get(call.name)
        try:
            if chosen is None:
                raise InvalidHandoffTarget(call.name, agent.name)
            input_data = chosen.parse_input(call.arguments)
        except (InvalidHandoffTarget, InvalidToolInput) as e:
            logger.warning(f"Agent '{agent.name}' handoff call {call.name} rejected: {e}")
            errors.append(e)
            history.append(_tool_message(call, _error_content(e)))
            continue

        await _check_cancelled(is_cancelled)
        logger.info(f"Handoff from '{agent.name}' to '{chosen.agent.name}'")
        run_context = RunContext(context=context, agent=agent, history=tuple(history))
        try:
            await chosen.invoke_on_handoff(run_context, input_data, timeout=config.tool_timeout)
        except Exception as e:
            err = HandoffCallbackError(chosen.agent.name, str(e) or type(e).__name__, e)
            if config.fatal_handoff_errors:
                raise err from e
            logger.exception(f"on_handoff for '{chosen.agent.name}' failed; continuing with handoff")
            errors.append(err)
        target = chosen.agent
        history.append(_tool_message(call, json.dumps({"transferred_to": target.name})))
    return target or agent


async def run_agent(
    agent: Agent,
    input: str | list[dict],
    *,
    context: Any = None,
    config: RunConfig | None = None,
    is_cancelled: Callable[[], bool | Awaitable[bool]] | None = None,
) -> RunResult:
    """
    Run agent on input (a prompt, or a history ending with the new user message) until an
    agent produces a final answer.

    The returned history is the input history plus every message generated during the run,
    in order. Nothing in the input is edited or removed.

    Raises:
        ModelCallError: the model call failed or returned an unrecognized response
        RunTimeoutError: a model call or tool execution exceeded its timeout
        RoundTripBudgetExceeded: more than config.max_round_trips tool/handoff rounds
        RunCancelled: is_cancelled() returned True between steps
        HandoffCallbackError: on_handoff raised and config.fatal_handoff_errors is set
    """
    config = config or RunConfig.from_settings()
    history = _normalize_input(input)
    current = agent
    state = RunState.AWAITING_MODEL
    round_trips = 0
    errors: list[AgentError] = []
    usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    final_output = ""
    pending_tools: list[ToolCall] = []
    pending_handoffs: list[ToolCall] = []

    logger.info(f"Run started with agent '{agent.name}' ({len(history)} input messages)")
    try:
        while state is not RunState.DONE:
            if state is RunState.AWAITING_MODEL:
                await _check_cancelled(is_cancelled)
                turn = await _call_model(current, history, config)
                _add_usage(usage, turn.usage)
                if turn.kind is TurnKind.ANSWER:
                    history.append(turn.assistant_message())
                    final_output = turn.text
                    next_state = RunState.DONE
                elif turn.kind in (TurnKind.TOOL_CALL, TurnKind.HANDOFF):
                    if round_trips >= config.max_round_trips:
                        raise RoundTripBudgetExceeded(config.max_round_trips)
                    round_trips += 1
                    history.append(turn.assistant_message())
                    pending_tools = [c for c in turn.tool_calls if not c.is_handoff]
                    pending_handoffs = [c for c in turn.tool_calls if c.is_handoff]
                    next_state = RunState.EXECUTING_TOOL if pending_tools else RunState.HANDING_OFF
                else:
                    raise ModelCallError(f"Unrecognized model turn kind: {turn.kind!r}")
            elif state is RunState.EXECUTING_TOOL:
                for call in pending_tools:
                    await _check_cancelled(is_cancelled)
                    history.append(await _run_tool_call(current, call, history, context, config, errors))
                pending_tools = []
                next_state = RunState.HANDING_OFF if pending_handoffs else RunState.AWAITING_MODEL
            elif state is RunState.HANDING_OFF:
                current = await _run_handoffs(
                    current, pending_handoffs, history, context, config, errors, is_cancelled
                )
                pending_handoffs = []
                next_state = RunState.AWAITING_MODEL
            else:
                raise AgentError(f"Run loop reached unexpected state {state!r}")
            logger.debug(f"Run state {state.value} -> {next_state.value} (agent '{current.name}')")
            state = next_state
    except AgentError as e:
        logger.warning(
            f"Run state {state.value} -> {RunState.FAILED.value} (agent '{current.name}'): {e}"
        )
        raise

    logger.info(f"Run finished with agent '{current.name}' after {round_trips} round trips")
    return RunResult(
        final_output=final_output,
        history=history,
        last_agent=current,
        round_trips=round_trips,
        errors=errors,
        usage=usage,
    )
