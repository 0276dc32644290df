"""Configuration file loading and merging for quill.

Reads TOML config from ~/.config/quill/config.toml (global) and
<workspace>/quill.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .models import DEFAULT_MODEL
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

WEB_SEARCH = "__websearch__"
DEFAULT_MAX_ITERATIONS = 10
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "system_prompt": str,
    "search": list,
    "allow_write": bool,
    "max_iterations": int,
    "timeout": (int, float),
    "workspace": str,
    "sessions_file": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"search"}
_PATH_KEYS = ("workspace", "sessions_file")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "system_prompt": "",
    "store": [],
    "web_search": False,
    "allow_write": False,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "timeout": None,
    "workspace": ".",
    "sessions_file": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "quill"
    return Path.home() / ".config" / "quill"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "max_iterations" in config and config["max_iterations"] < 1:
        raise ConfigError(f"{source}: 'max_iterations' must be at least 1")
    if "timeout" in config and config["timeout"] <= 0:
        raise ConfigError(f"{source}: 'timeout' must be positive")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    for key in _PATH_KEYS:
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # Strip unknown keys after warning (keep only known ones for downstream)
    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def split_search(search: list[str]) -> tuple[list[str], bool]:
    """Split a ``search`` list into (store names, web search flag)."""
    stores = [s for s in search if s != WEB_SEARCH]
    return stores, WEB_SEARCH in search


# --- Public API ---


def load_config(workspace: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(workspace).resolve() / "quill.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    # Project overrides global (shallow)
    return {**global_config, **project_config}


def resolve_api_key(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var)
        if value:
            return value
    return None


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    ``search`` fans out to --store and --web-search; ``color`` controls the
    --color/--no-color pair. Remaining _UNSET sentinels are replaced with
    hardcoded defaults from _ARGPARSE_DEFAULTS. The API key falls back to
    the environment last.
    """
    # Dests that use None as sentinel (argparse append actions can't use _UNSET)
    _NONE_SENTINEL_DESTS = {"store"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    if "search" in config and _is_unset("store") and _is_unset("web_search"):
        args.store, args.web_search = split_search(config["search"])

    for key, value in config.items():
        if key in ("color", "search"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, list(default) if isinstance(default, list) else default)

    args.api_key = resolve_api_key(args.api_key)


def config_to_chat_kwargs(config: dict) -> dict:
    """Convert config dict to Chat constructor kwargs.

    ``search`` becomes store_names/web_search, ``quiet`` is dropped along
    with the other keys that only matter to the command line.
    """
    kwargs: dict = {}
    _DROP_KEYS = {"color", "quiet", "sessions_file", "timeout"}
    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key == "search":
            kwargs["store_names"], kwargs["web_search"] = split_search(value)
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# quill configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<workspace>/quill.toml' if project else '~/.config/quill/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"   # or "gemini-cli", "claude-cli", "codex-cli"',
        '# api_key = "..."            # prefer GEMINI_API_KEY; this is a fallback',
        '# base_url = "https://generativelanguage.googleapis.com/v1beta"',
        "# timeout = 120",
        "",
        "# --- Conversation ---",
        '# system_prompt = "You are a helpful assistant for my notes."',
        "# max_iterations = 10",
        '# search = ["my-store"]      # retrieval store names, or ["__websearch__"]',
        "",
        "# --- Workspace ---",
        '# workspace = "~/notes"',
        "# allow_write = false",
        '# sessions_file = "~/.local/state/quill/sessions.json"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
