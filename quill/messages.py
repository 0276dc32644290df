"""Conversation data model shared by the agent loop and the adapters."""

from dataclasses import dataclass, field

ROLES = ("user", "model")


@dataclass
class Attachment:
    mime_type: str
    data: str  # base64


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model. Immutable once produced."""

    name: str
    arguments: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "arguments": dict(self.arguments)}


@dataclass
class ToolResult:
    """Outcome of one tool call. Produced by the gateway even on failure."""

    tool_call_name: str
    success: bool
    payload: dict = field(default_factory=dict)
    error_message: str | None = None

    def as_response(self) -> dict:
        """Render the result the way it is sent back to the model."""
        if self.success:
            return {"success": True, **self.payload}
        return {"success": False, "error": self.error_message or "unknown error"}

    def to_dict(self) -> dict:
        return {
            "name": self.tool_call_name,
            "success": self.success,
            "payload": dict(self.payload),
            "error": self.error_message,
        }


@dataclass
class Message:
    role: str
    text: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)

    def __post_init__(self):
        if self.role == "assistant":
            self.role = "model"
        if self.role not in ROLES:
            raise ValueError(f"invalid message role {self.role!r}")

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Build a Message from a plain dict (as stored in a transcript)."""
        return cls(
            role=data.get("role", "user"),
            text=data.get("text", data.get("content", "")) or "",
            attachments=[
                Attachment(mime_type=a["mime_type"], data=a["data"])
                for a in data.get("attachments") or []
            ],
            tool_calls=[
                ToolCall(name=tc["name"], arguments=dict(tc.get("arguments") or {}))
                for tc in data.get("tool_calls") or []
            ],
            tool_results=[
                ToolResult(
                    tool_call_name=tr["name"],
                    success=tr["success"],
                    payload=dict(tr.get("payload") or {}),
                    error_message=tr.get("error"),
                )
                for tr in data.get("tool_results") or []
            ],
        )

    def to_dict(self) -> dict:
        d: dict = {"role": self.role, "text": self.text}
        if self.attachments:
            d["attachments"] = [
                {"mime_type": a.mime_type, "data": a.data} for a in self.attachments
            ]
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_results:
            d["tool_results"] = [tr.to_dict() for tr in self.tool_results]
        return d


def coerce_messages(messages) -> list[Message]:
    """Accept Message objects or plain dicts; always return new Message objects."""
    out = []
    for m in messages:
        if isinstance(m, Message):
            out.append(Message.from_dict(m.to_dict()))
        else:
            out.append(Message.from_dict(m))
    return out
