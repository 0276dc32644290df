"""Tests for the hosted Gemini adapter."""

import http.server
import json
import threading

import pytest

from quill.adapter import ChatRequest, StreamState
from quill.cancel import CancellationController
from quill.decoder import StreamDecoder
from quill.events import RetrievalUsed, StreamError, TextDelta, ToolCallRequested
from quill.gemini import (
    TIMEOUT_HINT,
    GeminiAdapter,
    build_request_body,
    list_file_search_stores,
    messages_to_contents,
    normalize_store_name,
)
from quill.messages import Attachment, Message, ToolCall, ToolResult
from quill.report import AgentError, ProtocolError, TransportError
from quill.tools import get_enabled_tools
from quill.transport import TransportResult


def _req(**kwargs) -> ChatRequest:
    kwargs.setdefault("model", "gemini-2.5-pro")
    kwargs.setdefault("messages", [Message(role="user", text="hi")])
    return ChatRequest(**kwargs)


def _sse(*payloads) -> bytes:
    return b"".join(b"data: " + json.dumps(p).encode() + b"\r\n\r\n" for p in payloads)


def _text(t):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": t}]}}]}


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestRequestBody:
    def test_store_name_normalization(self):
        assert normalize_store_name("notes") == "fileSearchStores/notes"
        assert normalize_store_name(" fileSearchStores/abc ") == "fileSearchStores/abc"

    def test_plain(self):
        body = build_request_body(_req(system_prompt="be brief"))
        assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["generationConfig"]["temperature"] == 1.0
        assert "tools" not in body

    def test_tools_and_stores(self):
        body = build_request_body(
            _req(tools=get_enabled_tools("no_search"), store_names=["kb", "fileSearchStores/x"])
        )
        decls, search = body["tools"]
        assert [d["name"] for d in decls["functionDeclarations"]] == [
            "read_note",
            "get_active_note_info",
        ]
        assert search == {
            "file_search": {
                "file_search_store_names": ["fileSearchStores/kb", "fileSearchStores/x"]
            }
        }

    def test_web_search_only(self):
        body = build_request_body(
            _req(tools=get_enabled_tools(), store_names=["kb"], web_search=True)
        )
        assert body["tools"] == [{"google_search": {}}]

    def test_contents_conversion(self):
        msgs = [
            Message(role="user", text="look", attachments=[Attachment("image/png", "AAAA")]),
            Message(role="model", tool_calls=[ToolCall("read_note", {"name": "a"})]),
            Message(
                role="user",
                tool_results=[ToolResult("read_note", True, {"content": "x"})],
            ),
            Message(role="model", text=""),
        ]
        contents = messages_to_contents(msgs)
        assert len(contents) == 3
        assert contents[0]["parts"][1] == {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}
        assert contents[1] == {
            "role": "model",
            "parts": [{"functionCall": {"name": "read_note", "args": {"name": "a"}}}],
        }
        assert contents[2]["parts"][0] == {
            "functionResponse": {
                "name": "read_note",
                "response": {"result": {"success": True, "content": "x"}},
            }
        }

    def test_stream_url(self):
        a = GeminiAdapter("k", base_url="http://host/v1beta/")
        assert a.stream_url("gemini-2.5-pro") == (
            "http://host/v1beta/models/gemini-2.5-pro:streamGenerateContent?alt=sse"
        )


# ---------------------------------------------------------------------------
# Payload interpretation
# ---------------------------------------------------------------------------


class TestInterpret:
    def _interpret(self, payload, **req):
        state = StreamState(request=_req(**req))
        return GeminiAdapter("k").interpret(payload, state), state

    def test_text(self):
        events, state = self._interpret(_text("hello"))
        assert events == [TextDelta("hello")]
        assert state.text == "hello"

    def test_function_call_is_buffered(self):
        payload = {
            "candidates": [
                {"content": {"parts": [{"functionCall": {"name": "list_folders", "args": None}}]}}
            ]
        }
        events, state = self._interpret(payload)
        assert events == []
        assert state.tool_calls == [ToolCall("list_folders", {})]

    def test_error_payload(self):
        events, _ = self._interpret({"error": {"code": 429, "message": "quota exceeded"}})
        assert events == [StreamError("API error: quota exceeded")]
        assert events[0].fatal

    def test_unknown_fields_dropped(self):
        events, state = self._interpret({"usageMetadata": {"x": 1}, "candidates": []})
        assert events == []

    def test_retrieval_sources(self):
        payload = {
            "candidates": [
                {
                    "groundingMetadata": {
                        "groundingChunks": [
                            {"retrievedContext": {"uri": "doc-1"}},
                            {"web": {"uri": "ignored"}},
                            {"retrievedContext": {"title": "no uri"}},
                        ]
                    }
                }
            ]
        }
        _, state = self._interpret(payload, store_names=["kb"])
        assert state.sources == ["doc-1"]
        assert not state.web_search_used

    def test_web_search_grounding(self):
        payload = {"candidates": [{"groundingMetadata": {"webSearchQueries": ["q"]}}]}
        _, state = self._interpret(payload, web_search=True)
        assert state.web_search_used
        assert state.sources == []


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


class TestFinalize:
    def _finalize(self, result, state=None, pending=b""):
        decoder = StreamDecoder()
        decoder.feed(pending)
        state = state or StreamState(request=_req())
        return GeminiAdapter("k").finalize(result, decoder, state)

    def test_timeout_hint(self):
        with pytest.raises(TransportError, match="retrieval store may be invalid"):
            self._finalize(TransportResult(returncode=-1, timed_out=True))
        assert "store name" in TIMEOUT_HINT

    def test_http_error_with_embedded_message(self):
        body = json.dumps({"error": {"code": 400, "message": "API key not valid"}}).encode()
        with pytest.raises(ProtocolError, match="API key not valid"):
            self._finalize(TransportResult(returncode=400, output=body, diagnostic="HTTP 400"))

    def test_http_error_without_body(self):
        with pytest.raises(TransportError, match=r"request failed \(503\): HTTP 503"):
            self._finalize(TransportResult(returncode=503, diagnostic="HTTP 503"))

    def test_plain_json_error_on_success(self):
        body = b'{"error": {"message": "store not found"}}'
        with pytest.raises(ProtocolError, match="store not found"):
            self._finalize(TransportResult(returncode=0, output=body), pending=body)

    def test_emits_buffered_calls_then_retrieval(self):
        state = StreamState(request=_req(store_names=["kb"]))
        state.tool_calls.append(ToolCall("read_note", {"name": "a"}))
        state.sources.append("doc-1")
        events = self._finalize(TransportResult(returncode=0), state=state)
        assert events == [
            ToolCallRequested(ToolCall("read_note", {"name": "a"})),
            RetrievalUsed(sources=("doc-1",), web_search=False),
        ]

    def test_empty_success(self):
        assert self._finalize(TransportResult(returncode=0)) == []


# ---------------------------------------------------------------------------
# End to end against a local server
# ---------------------------------------------------------------------------


class _Handler(http.server.BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        self.server.bodies.append(json.loads(self.rfile.read(length)))
        status, payload = self.server.reply
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self):
        self.server.paths.append(self.path)
        status, payload = self.server.pages.pop(0)
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    srv = http.server.ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    srv.bodies, srv.paths, srv.pages = [], [], []
    srv.reply = (200, b"")
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    srv.server_close()


def _base(srv):
    return f"http://127.0.0.1:{srv.server_address[1]}/v1beta"


def _run(adapter, request):
    controller = CancellationController()
    controller.begin()
    try:
        return list(adapter.stream(request, controller))
    finally:
        controller.end()


class TestStreaming:
    def test_text_and_tool_call(self, server):
        server.reply = (
            200,
            _sse(
                _text("Let me "),
                _text("check."),
                {
                    "candidates": [
                        {
                            "content": {
                                "parts": [
                                    {"functionCall": {"name": "read_note", "args": {"name": "a"}}}
                                ]
                            }
                        }
                    ]
                },
            ),
        )
        adapter = GeminiAdapter("k", base_url=_base(server), timeout=10)
        events = _run(adapter, _req(tools=get_enabled_tools()))
        assert events == [
            TextDelta("Let me "),
            TextDelta("check."),
            ToolCallRequested(ToolCall("read_note", {"name": "a"})),
        ]
        assert "functionDeclarations" in server.bodies[0]["tools"][0]

    def test_http_error(self, server):
        server.reply = (403, json.dumps({"error": {"message": "permission denied"}}).encode())
        adapter = GeminiAdapter("k", base_url=_base(server), timeout=10)
        with pytest.raises(ProtocolError, match="permission denied"):
            _run(adapter, _req())

    def test_list_stores_paginates(self, server):
        server.pages = [
            (
                200,
                json.dumps(
                    {
                        "fileSearchStores": [{"name": "fileSearchStores/a", "displayName": "A"}],
                        "nextPageToken": "p2",
                    }
                ).encode(),
            ),
            (200, json.dumps({"fileSearchStores": [{"name": "fileSearchStores/b"}]}).encode()),
        ]
        stores = list_file_search_stores("k", base_url=_base(server))
        assert stores == [
            {"name": "fileSearchStores/a", "display_name": "A"},
            {"name": "fileSearchStores/b", "display_name": ""},
        ]
        assert "pageToken=p2" in server.paths[1]

    def test_list_stores_error(self, server):
        server.pages = [(401, b'{"error": {"message": "bad key"}}')]
        with pytest.raises(AgentError, match="bad key"):
            list_file_search_stores("k", base_url=_base(server))
