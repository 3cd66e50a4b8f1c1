"""
Builds the system message for the current agent: its instructions and, when it can hand off,
the list of declared targets. Rebuilt on every model call, so after a handoff the new agent's
instructions replace the previous framing.
"""
from __future__ import annotations

import inspect

from .agent import Agent


def build_system_message(agent: Agent) -> str:
    parts = [inspect.cleandoc(agent.instructions)]
    if agent.handoff_specs:
        parts.append("")
        parts.append("## Handoffs")
        parts.append(
            "You can transfer the conversation to these agents by calling the matching tool. "
            "Only these transfers exist."
        )
        for h in agent.handoff_specs:
            line = f"- {h.tool_name}: {h.agent.name}"
            if h.agent.handoff_description:
                line += f" ({h.agent.handoff_description})"
            parts.append(line)
    return "\n".join(parts)
