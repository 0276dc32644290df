"""Hosted Gemini API adapter (streamGenerateContent over SSE)."""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request

from .adapter import Capabilities, ChatRequest, ProviderAdapter, StreamState
from .decoder import StreamDecoder, find_error_object
from .events import RetrievalUsed, StreamError, ToolCallRequested
from .messages import Message, ToolCall
from .report import AgentError, ProtocolError, TransportError
from .transport import DEFAULT_TIMEOUT, HttpTransport

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"
STORE_PREFIX = "fileSearchStores/"
GENERATION_CONFIG = {"temperature": 1.0, "topP": 0.95, "topK": 40}
TIMEOUT_HINT = (
    "request timed out; the retrieval store may be invalid or empty "
    "(check the store name)"
)


def normalize_store_name(name: str) -> str:
    name = name.strip()
    if name.startswith(STORE_PREFIX):
        return name
    return STORE_PREFIX + name


def messages_to_contents(messages: list[Message]) -> list[dict]:
    """Convert conversation messages into alternating user/model turns."""
    contents = []
    for msg in messages:
        parts: list[dict] = []
        if msg.text:
            parts.append({"text": msg.text})
        for att in msg.attachments:
            parts.append({"inlineData": {"mimeType": att.mime_type, "data": att.data}})
        for tc in msg.tool_calls:
            parts.append({"functionCall": {"name": tc.name, "args": dict(tc.arguments)}})
        for tr in msg.tool_results:
            parts.append(
                {
                    "functionResponse": {
                        "name": tr.tool_call_name,
                        "response": {"result": tr.as_response()},
                    }
                }
            )
        if parts:
            contents.append({"role": msg.role, "parts": parts})
    return contents


def tools_to_declarations(tools: list[dict]) -> dict:
    return {
        "functionDeclarations": [
            {
                "name": t["name"],
                "description": t["description"],
                "parameters": t["parameters"],
            }
            for t in tools
        ]
    }


def build_request_body(request: ChatRequest) -> dict:
    """Build the JSON body for one streamGenerateContent call.

    Web search replaces both the function declarations and the file search
    block: the endpoint takes one or the other, never both.
    """
    body: dict = {
        "contents": messages_to_contents(request.messages),
        "generationConfig": dict(GENERATION_CONFIG),
    }
    if request.system_prompt:
        body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

    if request.web_search:
        body["tools"] = [{"google_search": {}}]
        return body

    tools: list[dict] = []
    if request.tools:
        tools.append(tools_to_declarations(request.tools))
    if request.store_names:
        tools.append(
            {
                "file_search": {
                    "file_search_store_names": [
                        normalize_store_name(n) for n in request.store_names
                    ]
                }
            }
        )
    if tools:
        body["tools"] = tools
    return body


class GeminiAdapter(ProviderAdapter):
    name = "gemini-api"
    display_name = "Gemini API"
    capabilities = Capabilities(
        supports_tools=True,
        supports_session_resumption=False,
        supports_web_search=True,
    )

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def stream_url(self, model: str) -> str:
        return f"{self.base_url}/models/{urllib.parse.quote(model)}:streamGenerateContent?alt=sse"

    def open_transport(self, request: ChatRequest):
        body = json.dumps(build_request_body(request)).encode("utf-8")
        logger.debug(
            "POST %s (%d contents, %d tools, web_search=%s, stores=%s)",
            self.stream_url(request.model),
            len(request.messages),
            len(request.tools),
            request.web_search,
            request.store_names,
        )
        return HttpTransport(
            self.stream_url(request.model),
            body,
            headers={"x-goog-api-key": self.api_key},
            timeout=self.timeout,
        )

    def make_decoder(self):
        return StreamDecoder(prefix="data: ")

    def interpret(self, payload: dict, state: StreamState):
        events = []
        if "error" in payload:
            err = payload["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            events.append(StreamError(f"API error: {message or json.dumps(payload)}"))
            return events

        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return events
        candidate = candidates[0]

        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                events.append(state.text_delta(text))
            fc = part.get("functionCall")
            if isinstance(fc, dict) and fc.get("name"):
                args = fc.get("args")
                state.tool_calls.append(
                    ToolCall(name=fc["name"], arguments=args if isinstance(args, dict) else {})
                )

        grounding = candidate.get("groundingMetadata")
        if isinstance(grounding, dict):
            if state.request.web_search:
                state.web_search_used = True
            elif state.request.store_names:
                for chunk in grounding.get("groundingChunks") or []:
                    ctx = chunk.get("retrievedContext") if isinstance(chunk, dict) else None
                    if isinstance(ctx, dict) and ctx.get("uri"):
                        state.sources.append(ctx["uri"])
        return events

    def finalize(self, result, decoder, state: StreamState):
        if not result.ok:
            if result.timed_out:
                raise TransportError(TIMEOUT_HINT)
            embedded = find_error_object(result.output)
            if embedded:
                raise ProtocolError(f"API error: {embedded}")
            raise TransportError(
                f"request failed ({result.returncode}): {result.diagnostic or 'no diagnostic'}"
            )

        if not state.text and not state.tool_calls:
            # A plain JSON error body (no "data:" prefix) leaves nothing decoded.
            embedded = find_error_object(decoder.pending) or find_error_object(
                result.output
            )
            if embedded:
                raise ProtocolError(f"API error: {embedded}")
        decoder.close()

        events = [ToolCallRequested(tc) for tc in state.tool_calls]
        if state.sources or state.web_search_used:
            events.append(
                RetrievalUsed(sources=tuple(state.sources), web_search=state.web_search_used)
            )
        return events


def list_file_search_stores(
    api_key: str, *, base_url: str = API_BASE, timeout: float = 30
) -> list[dict]:
    """Return the retrieval stores visible to an API key."""
    stores: list[dict] = []
    page_token = None
    while True:
        url = f"{base_url.rstrip('/')}/fileSearchStores?pageSize=20"
        if page_token:
            url += "&pageToken=" + urllib.parse.quote(page_token)
        req = urllib.request.Request(url, headers={"x-goog-api-key": api_key})
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                data = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise AgentError(f"listing stores failed: {find_error_object(body) or e}")
        except urllib.error.URLError as e:
            raise AgentError(f"could not connect to {base_url}: {e}")
        except json.JSONDecodeError as e:
            raise AgentError(f"invalid JSON from {url}: {e}")
        for store in data.get("fileSearchStores") or []:
            stores.append(
                {
                    "name": store.get("name", ""),
                    "display_name": store.get("displayName", ""),
                }
            )
        page_token = data.get("nextPageToken")
        if not page_token:
            return stores
