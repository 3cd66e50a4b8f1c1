"""
Error taxonomy for the proxy. Every error carries the HTTP status the app returns for it.

Errors raised inside the model's reasoning loop (bad tool input, failing tool, unreachable
handoff target) are recovered: the run loop turns them into tool messages so the model can
self-correct. Errors at the I/O boundary (model provider, storage, timeouts) end the run.
"""


class AIProxyError(Exception):
    """Base exception. status_code is used by the HTTP error handler."""
    status_code = 500


class InvalidRoute(AIProxyError):
    status_code = 404

    def __init__(self, message: str = "Page not found"):
        super().__init__(message)


class ConversationNotFound(AIProxyError):
    status_code = 404

    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f"Chat {chat_id} not found")


class PersistenceError(AIProxyError):
    status_code = 503


class AgentConfigError(AIProxyError):
    """Raised when an agent definition is invalid (e.g. duplicate tool names)."""
    pass


# --- Run loop errors ---


class AgentError(AIProxyError):
    """Base exception for errors raised while running agents."""
    pass


class InvalidToolInput(AgentError):
    """Tool arguments failed to parse or validate; execute() is never called."""
    status_code = 400

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Invalid input for tool '{tool_name}': {message}")


class ToolExecutionError(AgentError):
    def __init__(self, tool_name: str, message: str, original_error: Exception | None = None):
        self.tool_name = tool_name
        self.original_error = original_error
        super().__init__(f"Tool '{tool_name}' execution failed: {message}")


class InvalidHandoffTarget(AgentError):
    status_code = 400

    def __init__(self, tool_name: str, agent_name: str):
        self.tool_name = tool_name
        self.agent_name = agent_name
        super().__init__(f"'{tool_name}' is not a handoff available to agent '{agent_name}'")


class HandoffCallbackError(AgentError):
    """on_handoff raised and the run was configured to treat that as fatal."""

    def __init__(self, target_agent: str, message: str, original_error: Exception | None = None):
        self.target_agent = target_agent
        self.original_error = original_error
        super().__init__(f"Handoff to '{target_agent}' failed: {message}")


class ModelCallError(AgentError):
    status_code = 502


class RunTimeoutError(AgentError):
    status_code = 504


class RoundTripBudgetExceeded(AgentError):
    def __init__(self, max_round_trips: int):
        self.max_round_trips = max_round_trips
        super().__init__(f"Round trip budget exceeded (max {max_round_trips} tool/handoff rounds)")


class RunCancelled(AgentError):
    status_code = 499

    def __init__(self, message: str = "Run cancelled by caller"):
        super().__init__(message)
