from .llm import (
    HANDOFF_TOOL_PREFIX,
    ModelTurn,
    ToolCall,
    TurnKind,
    agent_completion,
    complete,
    get_temperature,
    is_retryable_error,
    parse_model_response,
)

__all__ = [
    "HANDOFF_TOOL_PREFIX",
    "ModelTurn",
    "ToolCall",
    "TurnKind",
    "agent_completion",
    "complete",
    "get_temperature",
    "is_retryable_error",
    "parse_model_response",
]
