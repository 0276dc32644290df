"""Adapters for command-line AI backends (Gemini CLI, Claude CLI, Codex CLI).

Each invocation spawns one child process in the workspace root with stdin
closed and streams its stdout. None of these backends can call workspace
tools; claude and codex can resume a previous conversation by session id.
"""

import logging
import os
import sys
from dataclasses import dataclass

from .adapter import Capabilities, ChatRequest, ProviderAdapter, StreamState
from .decoder import RawTextDecoder, StreamDecoder
from .events import StreamError
from .messages import Message
from .report import TransportError
from .transport import ProcessTransport, run_command

logger = logging.getLogger(__name__)

AVAILABILITY_TIMEOUT = 30
VERIFY_TIMEOUT = 60
STDERR_TAIL = 500


@dataclass
class VerifyResult:
    success: bool
    stage: str  # "version" or "login"
    error: str | None = None


def format_history_as_prompt(messages: list[Message], system_prompt: str = "") -> str:
    """Flatten a conversation into the single prompt a CLI backend accepts.

    Every message but the last is labelled User/Assistant; the last message
    is appended only if it came from the user.
    """
    parts = []
    if system_prompt:
        parts.append(f"System: {system_prompt}\n")
    for msg in messages[:-1]:
        role = "User" if msg.role == "user" else "Assistant"
        parts.append(f"{role}: {msg.text}\n")
    if messages and messages[-1].role == "user":
        parts.append(f"User: {messages[-1].text}")
    return "\n".join(parts)


def latest_user_text(messages: list[Message]) -> str:
    if messages and messages[-1].role == "user":
        return messages[-1].text
    return ""


def _is_windows(platform: str | None = None) -> bool:
    return (platform or sys.platform) == "win32"


class CliAdapter(ProviderAdapter):
    """Shared behaviour of the CLI backends.

    Subclasses set ``command`` (the bare executable name), ``npm_script``
    (path of the npm global entry point below %APPDATA%), the install hint
    and account name used by verify(), and implement build_args().
    """

    command = ""
    npm_script: tuple[str, ...] = ()
    install_package = ""
    account = ""
    hello_args: tuple[str, ...] = ("-p", "Hello")

    def __init__(self, *, timeout: float | None = None):
        self.timeout = timeout
        self._available = False

    # -- executable resolution -------------------------------------------

    def candidate_paths(self, environ) -> list[str]:
        """POSIX locations checked before falling back to PATH."""
        return []

    def resolve_command(
        self,
        args: list[str],
        *,
        platform: str | None = None,
        environ=None,
    ) -> list[str]:
        """Return the full argv for running this backend with ``args``."""
        environ = os.environ if environ is None else environ
        if _is_windows(platform):
            appdata = environ.get("APPDATA")
            if appdata and self.npm_script:
                script = "\\".join((appdata, "npm", "node_modules", *self.npm_script))
                return ["node", script, *args]
            fallback = self.windows_fallback(environ)
            if fallback:
                return [fallback, *args]
        else:
            for path in self.candidate_paths(environ):
                if os.path.isfile(path):
                    return [path, *args]
        return [self.command, *args]

    def windows_fallback(self, environ) -> str | None:
        return None

    # -- health checks ---------------------------------------------------

    def is_available(self) -> bool:
        """Run the version check once; only a successful result is remembered."""
        if not self._available:
            argv = self.resolve_command(["--version"])
            self._available = run_command(argv, timeout=AVAILABILITY_TIMEOUT) == 0
        return self._available

    def verify(self) -> VerifyResult:
        """Check the backend is installed, then that it is logged in."""
        argv = self.resolve_command(["--version"])
        if run_command(argv, timeout=AVAILABILITY_TIMEOUT) != 0:
            return VerifyResult(
                success=False,
                stage="version",
                error=(
                    f"{self.display_name} not found. Install it with "
                    f"`npm install -g {self.install_package}`"
                ),
            )
        argv = self.resolve_command(list(self.hello_args))
        if run_command(argv, timeout=VERIFY_TIMEOUT) != 0:
            return VerifyResult(
                success=False,
                stage="login",
                error=(
                    f"Please run '{self.command}' in terminal to log in "
                    f"with your {self.account} account"
                ),
            )
        return VerifyResult(success=True, stage="login")

    # -- invocation ------------------------------------------------------

    def build_args(self, request: ChatRequest) -> list[str]:
        raise NotImplementedError

    def resumes(self, request: ChatRequest) -> bool:
        return bool(
            self.capabilities.supports_session_resumption and request.session_id
        )

    def prompt_for(self, request: ChatRequest) -> str:
        if self.resumes(request):
            return latest_user_text(request.messages)
        return format_history_as_prompt(request.messages, request.system_prompt)

    def open_transport(self, request: ChatRequest):
        argv = self.resolve_command(self.build_args(request))
        return ProcessTransport(
            argv,
            cwd=request.workspace_dir or os.getcwd(),
            timeout=self.timeout,
        )

    def make_decoder(self):
        return StreamDecoder(prefix=None)

    def check_exit(self, result) -> None:
        if result.returncode != 0:
            tail = result.diagnostic[-STDERR_TAIL:] if result.diagnostic else ""
            message = f"{self.display_name} exited with code {result.returncode}"
            if tail:
                message += f": {tail}"
            raise TransportError(message)

    def finalize(self, result, decoder, state: StreamState):
        decoder.close()
        self.check_exit(result)
        return []


class GeminiCliAdapter(CliAdapter):
    name = "gemini-cli"
    display_name = "Gemini CLI"
    capabilities = Capabilities()
    command = "gemini"
    npm_script = ("@google", "gemini-cli", "dist", "index.js")
    install_package = "@google/gemini-cli"
    account = "Google"

    def build_args(self, request: ChatRequest) -> list[str]:
        return ["-p", self.prompt_for(request)]

    def make_decoder(self):
        return RawTextDecoder()

    def interpret(self, payload: str, state: StreamState):
        return [state.text_delta(payload)]

    def finalize(self, result, decoder, state: StreamState):
        rest = decoder.close()  # partial UTF-8 sequence at end of output
        self.check_exit(result)
        if rest:
            return [state.text_delta(rest)]
        return []


class ClaudeCliAdapter(CliAdapter):
    name = "claude-cli"
    display_name = "Claude CLI"
    capabilities = Capabilities(supports_session_resumption=True)
    command = "claude"
    npm_script = ("@anthropic-ai", "claude-code", "cli.js")
    install_package = "@anthropic-ai/claude-code"
    account = "Anthropic"
    hello_args = ("-p", "Hello", "--output-format", "text")

    def candidate_paths(self, environ) -> list[str]:
        paths = []
        home = environ.get("HOME")
        if home:
            paths.append(os.path.join(home, ".local", "bin", "claude"))
            paths.append(os.path.join(home, ".npm-global", "bin", "claude"))
        paths.append("/opt/homebrew/bin/claude")
        paths.append("/usr/local/bin/claude")
        return paths

    def windows_fallback(self, environ) -> str | None:
        local = environ.get("LOCALAPPDATA")
        if local:
            return "\\".join((local, "Programs", "claude", "claude.exe"))
        return None

    def build_args(self, request: ChatRequest) -> list[str]:
        args = []
        if self.resumes(request):
            args += ["--resume", request.session_id]
        args += ["-p", self.prompt_for(request), "--output-format", "stream-json", "--verbose"]
        return args

    def interpret(self, payload: dict, state: StreamState):
        events = []
        kind = payload.get("type")
        if kind == "assistant":
            message = payload.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                    events.append(state.text_delta(block["text"]))
        elif kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                events.append(state.text_delta(delta["text"]))
        elif kind == "error":
            err = payload.get("error")
            message = (
                (err.get("message") if isinstance(err, dict) else None)
                or payload.get("message")
                or "Unknown error"
            )
            events.append(StreamError(str(message), fatal=False))

        sid = payload.get("session_id")
        if not sid and kind == "result":
            data = payload.get("data")
            if isinstance(data, dict):
                sid = data.get("session_id")
        events.extend(state.session(sid))
        return events


class CodexCliAdapter(CliAdapter):
    name = "codex-cli"
    display_name = "Codex CLI"
    capabilities = Capabilities(supports_session_resumption=True)
    command = "codex"
    npm_script = ("@openai", "codex", "bin", "codex.js")
    install_package = "@openai/codex"
    account = "OpenAI"
    hello_args = ("exec", "Hello", "--json", "--skip-git-repo-check")

    def build_args(self, request: ChatRequest) -> list[str]:
        args = ["exec", "--json", "--skip-git-repo-check"]
        if self.resumes(request):
            args += ["resume", request.session_id]
        args.append(self.prompt_for(request))
        return args

    def interpret(self, payload: dict, state: StreamState):
        kind = payload.get("type")
        if kind == "thread.started":
            return state.session(payload.get("thread_id"))
        if kind == "item.completed":
            item = payload.get("item") or {}
            if item.get("type") == "agent_message" and item.get("text"):
                return [state.text_delta(item["text"])]
            return []
        if kind == "error":
            message = payload.get("message") or payload.get("error") or "Unknown error"
            if isinstance(message, dict):
                message = message.get("message") or "Unknown error"
            return [StreamError(str(message), fatal=False)]
        return []


CLI_ADAPTERS = {
    cls.name: cls for cls in (GeminiCliAdapter, ClaudeCliAdapter, CodexCliAdapter)
}


def get_cli_adapter(name: str) -> CliAdapter:
    try:
        return CLI_ADAPTERS[name]()
    except KeyError:
        raise ValueError(f"unknown CLI provider {name!r}") from None
