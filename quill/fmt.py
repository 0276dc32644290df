"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def log_handler(level: int = logging.DEBUG) -> RichHandler:
    """A logging handler that writes through the same stderr console."""
    handler = RichHandler(console=_console, show_path=False, rich_tracebacks=True)
    handler.setLevel(level)
    return handler


# -- Iteration structure -----------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int | None) -> None:
    title = f"Iteration {n}/{max_n}"
    if token_est is not None:
        title += f" (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def adapter_timing(provider: str, elapsed: float, outcome: str) -> None:
    style = "green" if outcome in ("final", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  {escape(provider)} responded in {elapsed:.1f}s", style=style)
    text.append(f"  outcome={escape(outcome)}", style=style)
    _console.print(text)


def spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  ✓ Finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Finished: {iterations} iterations, outcome={outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Retrieval ---------------------------------------------------------------


def retrieval_used(sources: list[str]) -> None:
    line = Text()
    line.append("  [retrieval] ", style="cyan")
    unique = list(dict.fromkeys(sources))
    line.append(f"{len(unique)} source(s)", style="dim")
    _console.print(line)
    for src in unique:
        _console.print(Text(f"    {src}", style="dim"))


def web_search_used() -> None:
    _console.print(Text("  [web search] answer grounded on Google Search", style="cyan"))


def session_info(provider: str, session_id: str) -> None:
    _console.print(Text(f"  [{provider}] session {session_id}", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def verify_result(provider: str, success: bool, stage: str, msg: str | None) -> None:
    line = Text()
    if success:
        line.append(f"  ✓ {provider}: installed and logged in", style="bold green")
    else:
        line.append(f"  ✗ {provider} ({stage}): ", style="bold red")
        line.append(msg or "failed", style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. /new starts a new chat, /exit or Ctrl-D quits, "
            "Ctrl-C aborts a response.",
            style="dim",
        )
    )
