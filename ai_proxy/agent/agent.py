"""
Agent definitions: immutable descriptors of a role (instructions, model, tools, handoffs).
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence, Union

from ai_proxy.errors import AgentConfigError
from ai_proxy.llm import HANDOFF_TOOL_PREFIX

from .handoffs import Handoff
from .tool_registry import Tool, build_tool_map


@dataclass(frozen=True, eq=False)
class Agent:
    """
    A named role. handoffs may mix Agents and Handoffs; a bare Agent is a handoff with
    no input and no callback. model=None means the configured default model (LLM_MODEL).
    Agents compare by identity, so handoff graphs may be cyclic.
    """
    name: str
    instructions: str
    model: str | None = None
    tools: Sequence[Tool] = ()
    handoffs: Sequence[Union["Agent", Handoff]] = ()
    model_settings: Mapping[str, Any] = field(default_factory=dict)
    handoff_description: str | None = None
    handoff_specs: tuple[Handoff, ...] = field(init=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "handoffs", tuple(self.handoffs))
        object.__setattr__(self, "model_settings", MappingProxyType(dict(self.model_settings)))
        specs = tuple(h if isinstance(h, Handoff) else Handoff(agent=h) for h in self.handoffs)
        object.__setattr__(self, "handoff_specs", specs)

        for tool in self.tools:
            # calls with this prefix are always routed as handoffs
            if tool.name.startswith(HANDOFF_TOOL_PREFIX):
                raise AgentConfigError(
                    f"Agent '{self.name}' tool '{tool.name}' uses the reserved handoff prefix '{HANDOFF_TOOL_PREFIX}'"
                )

        seen: set[str] = set()
        for name in [t.name for t in self.tools] + [h.tool_name for h in specs]:
            if name in seen:
                raise AgentConfigError(f"Agent '{self.name}' declares tool name '{name}' more than once")
            seen.add(name)

    def tool_map(self) -> Mapping[str, Tool]:
        return build_tool_map(self)

    def handoff_map(self) -> Mapping[str, Handoff]:
        """Handoff tool name -> Handoff. Only these targets are reachable from this agent."""
        return MappingProxyType({h.tool_name: h for h in self.handoff_specs})

    def clone(self, **changes: Any) -> "Agent":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class RunContext:
    """Passed to tools and on_handoff callbacks. history is a read-only snapshot."""
    context: Any
    agent: Agent
    history: tuple[dict, ...] = ()
