"""Provider adapter interface shared by the hosted API and the CLI backends."""

import logging
from dataclasses import dataclass, field

from .cancel import CancellationController
from .decoder import StreamDecoder
from .events import Aborted, SessionId, StreamEvent, TextDelta
from .messages import Message, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    supports_tools: bool = False
    supports_session_resumption: bool = False
    supports_web_search: bool = False


@dataclass
class ChatRequest:
    """Everything an adapter needs for one invocation."""

    model: str
    messages: list[Message]
    system_prompt: str = ""
    tools: list[dict] = field(default_factory=list)
    store_names: list[str] = field(default_factory=list)
    web_search: bool = False
    session_id: str | None = None
    workspace_dir: str | None = None


@dataclass
class StreamState:
    """Per-invocation scratch state kept by an adapter while it streams."""

    request: ChatRequest
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    web_search_used: bool = False
    session_id: str | None = None

    def text_delta(self, text: str) -> TextDelta:
        self.text += text
        return TextDelta(text)

    def session(self, session_id) -> list[SessionId]:
        """Emit SessionId once per run; the first id seen wins."""
        if self.session_id is not None or not session_id:
            return []
        self.session_id = str(session_id)
        return [SessionId(self.session_id)]


class ProviderAdapter:
    """Builds a request, launches the transport and maps wire events.

    Subclasses provide open_transport(), interpret() and finalize(); stream()
    drives them. Events are produced on the caller's thread in arrival order.
    """

    name = "base"
    display_name = "Base"
    capabilities = Capabilities()

    def is_available(self) -> bool:
        return True

    def open_transport(self, request: ChatRequest):
        raise NotImplementedError

    def make_decoder(self):
        return StreamDecoder()

    def interpret(self, payload, state: StreamState) -> list[StreamEvent]:
        raise NotImplementedError

    def finalize(self, result, decoder, state: StreamState) -> list[StreamEvent]:
        return []

    def stream(self, request: ChatRequest, controller: CancellationController):
        """Yield StreamEvents for one invocation.

        Raises TransportError/ProtocolError from finalize() on failure. If the
        controller reports an abort, the transport is killed, remaining
        payloads are discarded and a single Aborted event ends the stream.
        """
        state = StreamState(request=request)
        decoder = self.make_decoder()
        transport = self.open_transport(request)
        transport.start()
        controller.attach(transport)
        try:
            for chunk in transport.chunks():
                if controller.aborted:
                    break
                for payload in self._decode(decoder, chunk):
                    for event in self.interpret(payload, state):
                        yield event
                        if controller.aborted:
                            break
                    if controller.aborted:
                        break
            if controller.aborted:
                transport.kill()
                yield Aborted()
                return
            result = transport.wait()
        finally:
            controller.detach(transport)
            if not transport.finished:
                transport.kill()

        if controller.aborted:
            yield Aborted()
            return
        yield from self.finalize(result, decoder, state)

    def _decode(self, decoder, chunk: bytes) -> list:
        decoded = decoder.feed(chunk)
        if isinstance(decoded, str):
            return [decoded] if decoded else []
        return decoded
