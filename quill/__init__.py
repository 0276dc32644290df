"""quill: a streaming Gemini / CLI-backend chat client with workspace tools."""

from .agent import AgentLoop, RunResult, RunStatus
from .report import AgentError, ConfigError, IterationLimitError, ProtocolError, TransportError
from .session import Chat

__all__ = [
    "AgentError",
    "AgentLoop",
    "Chat",
    "ConfigError",
    "IterationLimitError",
    "ProtocolError",
    "RunResult",
    "RunStatus",
    "TransportError",
]
