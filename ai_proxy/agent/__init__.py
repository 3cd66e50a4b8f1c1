# Agents: definitions, tools, handoffs, run loop, conversation persistence.
# Used by app/routes/agent.py.

from .tool_registry import Tool, build_tool_definitions, execute_tool
from .handoffs import Handoff, handoff
from .agent import Agent, RunContext
from .agent_loop import RunConfig, RunResult, RunState, run_agent
from .session import conversation_lock
from . import conversations
from . import definitions

__all__ = [
    "Tool",
    "build_tool_definitions",
    "execute_tool",
    "Handoff",
    "handoff",
    "Agent",
    "RunContext",
    "RunConfig",
    "RunResult",
    "RunState",
    "run_agent",
    "conversation_lock",
    "conversations",
    "definitions",
]
