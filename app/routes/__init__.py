from .agent import agent_router

__all__ = ["agent_router"]
