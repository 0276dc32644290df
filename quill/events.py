"""Provider-neutral stream events.

Adapters narrow each backend's wire payloads into exactly these types;
unrecognized fields are dropped at the adapter boundary.
"""

from dataclasses import dataclass, field

from .messages import ToolCall, ToolResult


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequested:
    call: ToolCall


@dataclass(frozen=True)
class RetrievalUsed:
    sources: tuple[str, ...] = ()
    web_search: bool = False


@dataclass(frozen=True)
class SessionId:
    session_id: str


@dataclass(frozen=True)
class StreamError:
    message: str
    fatal: bool = True


@dataclass(frozen=True)
class Aborted:
    pass


StreamEvent = TextDelta | ToolCallRequested | RetrievalUsed | SessionId | StreamError | Aborted


# Loop-level notification, never produced by an adapter.
@dataclass(frozen=True)
class ToolResultEvent:
    result: ToolResult
    arguments: dict = field(default_factory=dict)
