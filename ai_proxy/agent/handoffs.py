"""
Handoffs: tool-like transfers of control from one agent to another.

The model sees each handoff as a function named transfer_to_<agent>. Calling it switches the
run's current agent; an optional input_model types the arguments (e.g. a reason) and an
optional on_handoff(context, input) callback runs before the new agent answers.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel

from ai_proxy.llm import HANDOFF_TOOL_PREFIX

from .tool_registry import EMPTY_PARAMETERS, parse_arguments

if TYPE_CHECKING:
    from .agent import Agent, RunContext

logger = logging.getLogger(__name__)


def default_handoff_tool_name(agent_name: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", agent_name).strip("_").lower()
    return f"{HANDOFF_TOOL_PREFIX}{slug}"


def default_handoff_tool_description(agent: "Agent") -> str:
    desc = f"Handoff to the {agent.name} agent to handle the request."
    if agent.handoff_description:
        desc = f"{desc} {agent.handoff_description}"
    return desc


@dataclass(frozen=True, eq=False)
class Handoff:
    agent: "Agent"
    tool_name: str = ""
    tool_description: str = ""
    input_model: type[BaseModel] | None = None
    on_handoff: Callable[..., Any] | None = None

    def __post_init__(self):
        if not self.tool_name:
            object.__setattr__(self, "tool_name", default_handoff_tool_name(self.agent.name))
        if not self.tool_description:
            object.__setattr__(self, "tool_description", default_handoff_tool_description(self.agent))

    def definition(self) -> dict[str, Any]:
        parameters = self.input_model.model_json_schema() if self.input_model else dict(EMPTY_PARAMETERS)
        return {
            "type": "function",
            "function": {
                "name": self.tool_name,
                "description": self.tool_description,
                "parameters": parameters,
            },
        }

    def parse_input(self, arguments: str | dict | None) -> BaseModel | None:
        """Validated input for on_handoff, or None when the handoff takes no input. Raises InvalidToolInput."""
        if self.input_model is None:
            return None
        return parse_arguments(self.tool_name, arguments, self.input_model)

    async def invoke_on_handoff(
        self,
        context: "RunContext",
        input_data: BaseModel | None,
        timeout: float | None = None,
    ) -> None:
        """
        Run on_handoff to completion. Sync callbacks run in a worker thread; both kinds are
        bounded by timeout. Exceptions (including timeouts) propagate to the caller.
        """
        if self.on_handoff is None:
            return
        if inspect.iscoroutinefunction(self.on_handoff):
            call = self.on_handoff(context, input_data)
        else:
            call = asyncio.to_thread(self.on_handoff, context, input_data)
        outcome = await asyncio.wait_for(call, timeout=timeout)
        # a sync callable may still hand back an awaitable
        if inspect.isawaitable(outcome):
            await asyncio.wait_for(outcome, timeout=timeout)


def handoff(
    agent: "Agent",
    *,
    input_model: type[BaseModel] | None = None,
    on_handoff: Callable[..., Any] | None = None,
    tool_name: str | None = None,
    tool_description: str | None = None,
) -> Handoff:
    """Declare a handoff with an input type and/or callback. A bare Agent in handoffs needs neither."""
    return Handoff(
        agent=agent,
        tool_name=tool_name or "",
        tool_description=tool_description or "",
        input_model=input_model,
        on_handoff=on_handoff,
    )
