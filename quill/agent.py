import argparse
import enum
import json
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from importlib import metadata

import tiktoken

from . import fmt
from .adapter import ChatRequest
from .cancel import CancellationController
from .events import (
    Aborted,
    RetrievalUsed,
    SessionId,
    StreamError,
    TextDelta,
    ToolCallRequested,
    ToolResultEvent,
)
from .messages import Message, ToolCall, ToolResult, coerce_messages
from .models import model_info
from .report import AgentError, ConfigError, IterationLimitError, ProtocolError
from .tools import TOOLS, filter_tools, get_tool_mode

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
DEFAULT_MAX_ITERATIONS = 10
EXIT_ABORTED = 130
ABORTED_TOOL_MESSAGE = "aborted by user"

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(
    messages: list[Message], tools: list | None = None, system_prompt: str = ""
) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _get_encoder()
    total = len(enc.encode(system_prompt)) if system_prompt else 0
    for m in messages:
        content = m.text
        for tc in m.tool_calls:
            content += tc.name + json.dumps(tc.arguments)
        for tr in m.tool_results:
            content += json.dumps(tr.as_response())
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


class RunStatus(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_TOOLS = "awaiting_tools"
    FINALIZED = "finalized"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class RunState:
    """Mutable state of one run. Only the loop's own thread touches it."""

    conversation: list[Message]
    accumulated_text: str = ""
    tool_calls_used: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    retrieval_sources: list[str] = field(default_factory=list)
    web_search_used: bool = False
    iteration_count: int = 0
    aborted: bool = False
    status: RunStatus = RunStatus.IDLE
    session_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class RunResult:
    text: str
    status: RunStatus
    tool_calls: list[ToolCall]
    tool_results: list[ToolResult]
    retrieval_sources: list[str]
    web_search_used: bool
    iterations: int
    messages: list[Message]
    session_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.status is RunStatus.ABORTED

    @property
    def tool_calls_used(self) -> list[str]:
        return [tc.name for tc in self.tool_calls]


class AgentLoop:
    """Drives one provider adapter until the model stops asking for tools.

    A run alternates between streaming one adapter invocation and executing
    the tool calls it produced, appending a model message (text + calls)
    and a user message (results) after every tool round. Everything happens
    on the thread that called run(); abort() may be called from any thread.
    """

    def __init__(
        self,
        adapters: dict,
        gateway,
        *,
        sessions=None,
        controller: CancellationController | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_event=None,
        verbose: bool = False,
        workspace_dir: str | None = None,
    ):
        if max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        self.adapters = adapters
        self.gateway = gateway
        self.sessions = sessions
        self.controller = controller or CancellationController()
        self.max_iterations = max_iterations
        self.on_event = on_event
        self.verbose = verbose
        self.workspace_dir = workspace_dir
        self._run_lock = threading.Lock()
        self.state: RunState | None = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def abort(self) -> bool:
        return self.controller.abort()

    def _emit(self, event) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def run(
        self,
        messages,
        *,
        model: str,
        system_prompt: str = "",
        store_names=(),
        web_search: bool = False,
        allow_write: bool = False,
        chat_id: str | None = None,
        tools: list[dict] | None = None,
        report=None,
    ) -> RunResult:
        if not self._run_lock.acquire(blocking=False):
            raise AgentError("a run is already in progress")
        try:
            info = model_info(model)
            adapter = self.adapters.get(info.provider)
            if adapter is None:
                if info.provider == "gemini-api":
                    raise ConfigError(
                        "no API key configured for the Gemini API "
                        "(set GEMINI_API_KEY or pass --api-key)"
                    )
                raise ConfigError(f"no adapter registered for {info.provider}")
            if info.is_cli and not adapter.is_available():
                raise ConfigError(
                    f"{adapter.display_name} is not available; "
                    f"run `quill --verify {info.provider}` for details"
                )

            store_names = list(store_names or [])
            web_search = bool(web_search and info.supports_web_search)
            mode = get_tool_mode(info, web_search=web_search, retrieval=bool(store_names))
            enabled = filter_tools(TOOLS if tools is None else tools, mode, allow_write)
            logger.debug(
                "model=%s provider=%s tool_mode=%s tools=%d",
                model,
                info.provider,
                mode,
                len(enabled),
            )

            self.state = state = RunState(conversation=coerce_messages(messages))
            self.controller.begin()
            try:
                return self._run(
                    state,
                    adapter,
                    model=model,
                    system_prompt=system_prompt,
                    store_names=store_names,
                    web_search=web_search,
                    tools=enabled,
                    chat_id=chat_id,
                    report=report,
                )
            except AgentError:
                state.status = RunStatus.ERRORED
                raise
            finally:
                self.controller.end()
        finally:
            self._run_lock.release()

    def _run(
        self,
        state,
        adapter,
        *,
        model,
        system_prompt,
        store_names,
        web_search,
        tools,
        chat_id,
        report,
    ):
        resumable = adapter.capabilities.supports_session_resumption
        while True:
            if self.controller.aborted:
                return self._finish_aborted(state, "", report)
            if state.iteration_count >= self.max_iterations:
                raise IterationLimitError("maximum tool iterations reached")
            state.iteration_count += 1
            state.status = RunStatus.STREAMING

            session_id = None
            if resumable and self.sessions is not None:
                session_id = self.sessions.get(chat_id, adapter.name)
            request = ChatRequest(
                model=model,
                messages=coerce_messages(state.conversation),
                system_prompt=system_prompt,
                tools=tools,
                store_names=store_names,
                web_search=web_search,
                session_id=session_id,
                workspace_dir=self.workspace_dir,
            )

            token_est = None
            if self.verbose:
                token_est = estimate_tokens(state.conversation, tools, system_prompt)
                fmt.turn_header(state.iteration_count, self.max_iterations, token_est)

            t0 = time.monotonic()
            try:
                round_text, calls, aborted = self._stream_round(
                    adapter, request, state, chat_id, report
                )
            except AgentError:
                if report:
                    report.record_adapter_call(
                        state.iteration_count,
                        adapter.name,
                        time.monotonic() - t0,
                        "error",
                        token_est=token_est,
                    )
                raise
            elapsed = time.monotonic() - t0

            if aborted or self.controller.aborted:
                outcome = "aborted"
            else:
                outcome = "tool_calls" if calls else "final"
            if report:
                report.record_adapter_call(
                    state.iteration_count,
                    adapter.name,
                    elapsed,
                    outcome,
                    token_est=token_est,
                    text_length=len(round_text),
                    tool_calls=len(calls),
                )
            if self.verbose:
                fmt.adapter_timing(adapter.display_name, elapsed, outcome)

            if outcome == "aborted":
                return self._finish_aborted(state, round_text, report)

            if outcome == "final":
                state.conversation.append(Message(role="model", text=round_text))
                state.status = RunStatus.FINALIZED
                return self._result(state)

            state.status = RunStatus.AWAITING_TOOLS
            state.conversation.append(Message(role="model", text=round_text, tool_calls=list(calls)))
            results = []
            for call in calls:
                if self.controller.aborted:
                    # Every functionCall part needs a matching functionResponse.
                    results.append(
                        ToolResult(call.name, success=False, error_message=ABORTED_TOOL_MESSAGE)
                    )
                    continue
                results.append(self._execute_tool(call, state, report))
            state.conversation.append(Message(role="user", tool_results=results))
            if self.controller.aborted:
                return self._finish_aborted(state, "", report)

    def _stream_round(self, adapter, request, state, chat_id, report):
        """Consume one adapter invocation.

        Returns (text, tool_calls, aborted). Text streamed before an abort is
        kept so it can be reported as a partial answer.
        """
        text = ""
        calls: list[ToolCall] = []
        events = adapter.stream(request, self.controller)
        try:
            for event in events:
                if self.controller.aborted and not isinstance(event, Aborted):
                    continue
                if isinstance(event, TextDelta):
                    text += event.text
                    state.accumulated_text += event.text
                    self._emit(event)
                elif isinstance(event, ToolCallRequested):
                    calls.append(event.call)
                elif isinstance(event, RetrievalUsed):
                    state.retrieval_sources.extend(event.sources)
                    state.web_search_used = state.web_search_used or event.web_search
                    self._emit(event)
                elif isinstance(event, SessionId):
                    state.session_id = event.session_id
                    if self.sessions is not None:
                        self.sessions.set(chat_id, adapter.name, event.session_id)
                    if report:
                        report.record_session(state.iteration_count, adapter.name, event.session_id)
                    self._emit(event)
                elif isinstance(event, StreamError):
                    if event.fatal:
                        raise ProtocolError(event.message)
                    state.warnings.append(event.message)
                    self._emit(event)
                elif isinstance(event, Aborted):
                    self._emit(event)
                    return text, [], True
        finally:
            events.close()
        if self.controller.aborted:
            return text, [], True
        return text, calls, False

    def _execute_tool(self, call: ToolCall, state: RunState, report) -> ToolResult:
        self._emit(ToolCallRequested(call))
        if self.verbose:
            fmt.tool_call(call.name, json.dumps(call.arguments, indent=2)[:MAX_ARG_LOG])
        t0 = time.monotonic()
        result = self.gateway.execute(call.name, call.arguments)
        elapsed = time.monotonic() - t0
        state.tool_calls_used.append(call)
        state.tool_results.append(result)
        if report:
            report.record_tool_call(
                state.iteration_count,
                call.name,
                dict(call.arguments),
                result.success,
                elapsed,
                error=result.error_message,
            )
        if self.verbose:
            if result.success:
                fmt.tool_result(call.name, elapsed, json.dumps(result.payload)[:500])
            else:
                fmt.tool_error(call.name, result.error_message or "failed")
        self._emit(ToolResultEvent(result, dict(call.arguments)))
        return result

    def _finish_aborted(self, state: RunState, partial: str, report) -> RunResult:
        state.aborted = True
        state.status = RunStatus.ABORTED
        if partial:
            state.conversation.append(Message(role="model", text=partial))
        if report:
            report.record_abort(state.iteration_count)
        logger.debug("run aborted after %d iteration(s)", state.iteration_count)
        return self._result(state)

    def _result(self, state: RunState) -> RunResult:
        return RunResult(
            text=state.accumulated_text,
            status=state.status,
            tool_calls=list(state.tool_calls_used),
            tool_results=list(state.tool_results),
            retrieval_sources=list(state.retrieval_sources),
            web_search_used=state.web_search_used,
            iterations=state.iteration_count,
            messages=list(state.conversation),
            session_id=state.session_id,
            warnings=list(state.warnings),
        )


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def _parse_cursor(value: str) -> tuple[int, int]:
    line, sep, col = value.partition(":")
    try:
        if not sep:
            raise ValueError
        cursor = (int(line), int(col))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LINE:COL, got {value!r}") from None
    if cursor[0] < 1 or cursor[1] < 0:
        raise argparse.ArgumentTypeError(f"cursor out of range: {value!r}")
    return cursor


def build_parser():
    """Build and return the argument parser."""
    from .config import _UNSET

    parser = argparse.ArgumentParser(
        prog="quill",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options]",
        description="Chat with Gemini (or a Gemini/Claude/Codex CLI) about a folder of Markdown notes.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument("question", nargs="?", default=None, help="The question for the model.")
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model name, or one of gemini-cli, claude-cli, codex-cli.",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="Gemini API key (default: $GEMINI_API_KEY or $GOOGLE_API_KEY).",
    )
    parser.add_argument("--base-url", default=_UNSET, help="Gemini API base URL.")
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Request timeout in seconds for the hosted API (default: 120).",
    )
    parser.add_argument(
        "--workspace",
        default=_UNSET,
        help="Directory of notes the tools operate on (default: current directory).",
    )
    parser.add_argument(
        "--active-note",
        default=None,
        metavar="PATH",
        help="Note treated as the one open in the editor.",
    )
    parser.add_argument(
        "--cursor",
        type=_parse_cursor,
        default=None,
        metavar="LINE:COL",
        help=(
            "Cursor in the active note (1-based line, 0-based column) used by "
            "insert_at_cursor. Without it, insertions are appended."
        ),
    )
    parser.add_argument(
        "--system-prompt", default=_UNSET, help="System prompt sent with every request."
    )
    parser.add_argument(
        "--store",
        action="append",
        default=None,
        metavar="NAME",
        help="Retrieval store to search (repeatable).",
    )
    parser.add_argument(
        "--web-search",
        action="store_true",
        default=_UNSET,
        help="Ground answers on Google Search (disables tools and stores).",
    )
    parser.add_argument(
        "--allow-write",
        action="store_true",
        default=_UNSET,
        help="Offer the note-creating and note-editing tools.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help=f"Maximum model invocations per question (default: {DEFAULT_MAX_ITERATIONS}).",
    )
    parser.add_argument(
        "--chat-id", default=None, help="Chat id used to look up CLI session ids."
    )
    parser.add_argument(
        "--sessions-file",
        default=_UNSET,
        metavar="FILE",
        help="JSON file persisting CLI session ids between invocations.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "--verify",
        metavar="PROVIDER",
        default=None,
        help="Check that a CLI backend (gemini-cli, claude-cli, codex-cli) is installed and logged in.",
    )
    parser.add_argument("--list-models", action="store_true", help="List known models and exit.")
    parser.add_argument(
        "--list-stores", action="store_true", help="List retrieval stores for the API key and exit."
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress progress output on stderr.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Log internal diagnostics to stderr."
    )
    return parser


def _setup_logging(debug: bool) -> None:
    root = logging.getLogger("quill")
    if debug:
        root.setLevel(logging.DEBUG)
        root.addHandler(fmt.log_handler())
    else:
        root.setLevel(logging.WARNING)


def _print_event(verbose: bool):
    def on_event(event):
        if isinstance(event, TextDelta):
            sys.stdout.write(event.text)
            sys.stdout.flush()
        elif not verbose:
            return
        elif isinstance(event, RetrievalUsed):
            if event.web_search:
                fmt.web_search_used()
            if event.sources:
                fmt.retrieval_used(list(event.sources))
        elif isinstance(event, SessionId):
            fmt.session_info("session", event.session_id)
        elif isinstance(event, StreamError):
            fmt.warning(event.message)
        elif isinstance(event, Aborted):
            fmt.warning("response aborted")

    return on_event


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("quill")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    from .config import _UNSET, apply_config_to_args, generate_config, load_config

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    try:
        workspace = args.workspace if args.workspace is not _UNSET else "."
        apply_config_to_args(args, load_config(workspace))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)
    _setup_logging(args.debug)

    if args.list_models:
        from .models import available_models, build_adapters

        adapters = build_adapters(
            api_key=args.api_key, base_url=args.base_url, timeout=args.timeout
        )
        models = available_models(adapters)
        for info in models:
            print(f"{info.name}\t{info.display_name}")
        if not models:
            fmt.warning("no models available: set GEMINI_API_KEY or install a CLI backend")
        sys.exit(0)

    try:
        if args.verify:
            sys.exit(_verify(args.verify))
        if args.list_stores:
            _list_stores(args)
            sys.exit(0)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        chat = _make_chat(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    if args.repl:
        repl_loop(chat, verbose=args.verbose)
        sys.exit(0)

    sys.exit(_run_question(chat, args))


def _verify(provider: str) -> int:
    from .cli_providers import get_cli_adapter

    try:
        adapter = get_cli_adapter(provider)
    except ValueError as e:
        raise ConfigError(str(e))
    result = adapter.verify()
    fmt.verify_result(adapter.display_name, result.success, result.stage, result.error)
    return 0 if result.success else 1


def _list_stores(args) -> None:
    from .gemini import API_BASE, list_file_search_stores

    if not args.api_key:
        raise ConfigError("--list-stores needs an API key (set GEMINI_API_KEY or pass --api-key)")
    stores = list_file_search_stores(args.api_key, base_url=args.base_url or API_BASE)
    for store in stores:
        print(f"{store['name']}\t{store['display_name']}")


def _make_chat(args):
    from .session import Chat
    from .sessions import JsonSessionStore, SessionRegistry

    sessions = JsonSessionStore(args.sessions_file) if args.sessions_file else SessionRegistry()
    return Chat(
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        timeout=args.timeout,
        workspace=args.workspace,
        active_note=args.active_note,
        cursor=args.cursor,
        allow_write=args.allow_write,
        store_names=args.store,
        web_search=args.web_search,
        system_prompt=args.system_prompt,
        max_iterations=args.max_iterations,
        sessions=sessions,
        chat_id=args.chat_id,
        on_event=_print_event(args.verbose),
        verbose=args.verbose,
    )


def _with_sigint_abort(chat, fn):
    """Run fn() with Ctrl-C mapped to chat.abort() instead of KeyboardInterrupt."""
    previous = signal.signal(signal.SIGINT, lambda signum, frame: chat.abort())
    try:
        return fn()
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_question(chat, args) -> int:
    from .report import ReportCollector

    report = ReportCollector() if args.report else None

    def _write_report(outcome, result=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model,
            provider=model_info(args.model).provider,
            settings={
                "max_iterations": args.max_iterations,
                "allow_write": args.allow_write,
                "stores": list(args.store or []),
                "web_search": args.web_search,
                "workspace": os.path.abspath(args.workspace),
            },
            outcome=outcome,
            answer=result.text if result else None,
            exit_code=exit_code,
            iterations=result.iterations if result else report.max_iteration_seen,
            error_message=error_message,
            retrieval_sources=result.retrieval_sources if result else None,
            web_search_used=result.web_search_used if result else False,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        result = _with_sigint_abort(chat, lambda: chat.send(args.question, report=report))
    except AgentError as e:
        print(file=sys.stdout, flush=True)
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        return 1

    print()
    for warning in result.warnings:
        fmt.warning(warning)
    if result.aborted:
        if args.verbose:
            fmt.completion(result.iterations, "aborted")
        _write_report("aborted", result, exit_code=EXIT_ABORTED)
        return EXIT_ABORTED
    if args.verbose:
        fmt.completion(result.iterations, "ok")
    _write_report("success", result)
    return 0


def repl_loop(chat, *, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(chat.workspace, ".quill", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "quill> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break
        if line == "/new":
            chat.new_chat()
            fmt.info(f"started a new chat ({chat.chat_id})")
            continue

        try:
            result = _with_sigint_abort(chat, lambda: chat.send(line))
        except AgentError as e:
            print()
            fmt.error(str(e))
            continue
        print()
        for warning in result.warnings:
            fmt.warning(warning)
        if result.aborted:
            fmt.warning("interrupted, response aborted.")


if __name__ == "__main__":
    main()
