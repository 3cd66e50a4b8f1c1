# AI proxy: model completion, agent run loop, conversation persistence.
# Used by app/ (FastAPI routes).

from . import common
from . import errors
from . import llm
from . import agent

__all__ = ["common", "errors", "llm", "agent"]
