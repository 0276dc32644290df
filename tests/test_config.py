"""Tests for quill.config: TOML config file loading, merging, and CLI integration."""

import argparse
import sys
import tomllib

import pytest

from quill.config import (
    _UNSET,
    DEFAULT_MAX_ITERATIONS,
    WEB_SEARCH,
    ConfigError,
    apply_config_to_args,
    config_to_chat_kwargs,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
    split_search,
)
from quill.models import DEFAULT_MODEL


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "timeout": _UNSET,
        "workspace": _UNSET,
        "system_prompt": _UNSET,
        "store": None,  # append action uses None sentinel
        "web_search": _UNSET,
        "allow_write": _UNSET,
        "max_iterations": _UNSET,
        "sessions_file": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def _no_env_keys(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "quill" / "config.toml", 'model = "claude-cli"\n')
        result = load_config(tmp_path / "project")
        assert result["model"] == "claude-cli"

    def test_project_only(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        _write_toml(tmp_path / "quill.toml", "max_iterations = 4\n")
        assert load_config(tmp_path)["max_iterations"] == 4

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "quill" / "config.toml", "max_iterations = 3\nquiet = true\n")
        _write_toml(tmp_path / "quill.toml", "max_iterations = 7\n")
        result = load_config(tmp_path)
        assert result["max_iterations"] == 7
        assert result["quiet"] is True

    def test_unknown_keys_warn(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        _write_toml(tmp_path / "quill.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        _write_toml(tmp_path / "quill.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["max_iterations"] == DEFAULT_MAX_ITERATIONS
        assert parsed["model"] == DEFAULT_MODEL

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Type validation
# ===========================================================================


class TestTypeValidation:
    @pytest.fixture(autouse=True)
    def _empty_global(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))

    def test_string_where_int_expected(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", 'max_iterations = "many"\n')
        with pytest.raises(ConfigError, match="max_iterations.*expected int.*got str"):
            load_config(tmp_path)

    def test_bool_for_int_field_raises(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", "max_iterations = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_int_for_float_field(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", "timeout = 30\n")
        assert load_config(tmp_path)["timeout"] == 30

    def test_mixed_type_search_list(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", 'search = ["kb", 3]\n')
        with pytest.raises(ConfigError, match=r"search\[1\]"):
            load_config(tmp_path)

    def test_zero_iterations(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", "max_iterations = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_negative_timeout(self, tmp_path):
        _write_toml(tmp_path / "quill.toml", "timeout = -1.5\n")
        with pytest.raises(ConfigError, match="must be positive"):
            load_config(tmp_path)


# ===========================================================================
# Path resolution
# ===========================================================================


class TestPathResolution:
    def test_relative_workspace_resolves_to_config_parent(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        _write_toml(tmp_path / "quill.toml", 'workspace = "notes"\n')
        assert load_config(tmp_path)["workspace"] == str(tmp_path.resolve() / "notes")

    def test_absolute_path_unchanged(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        target = tmp_path / "state" / "s.json"
        _write_toml(tmp_path / "quill.toml", f'sessions_file = "{target.as_posix()}"\n')
        assert load_config(tmp_path)["sessions_file"] == str(target)

    def test_home_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        _write_toml(tmp_path / "quill.toml", 'sessions_file = "~/s.json"\n')
        assert load_config(tmp_path)["sessions_file"] == str(tmp_path / "home" / "s.json")

    def test_global_paths_resolve_against_global_dir(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "quill" / "config.toml", 'sessions_file = "sessions.json"\n')
        result = load_config(tmp_path / "project")
        assert result["sessions_file"] == str(global_dir / "quill" / "sessions.json")


# ===========================================================================
# Merging into argparse
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "codex-cli", "max_iterations": 3})
        assert args.model == "codex-cli"
        assert args.max_iterations == 3

    def test_cli_beats_config(self):
        args = _make_args(model="claude-cli")
        apply_config_to_args(args, {"model": "codex-cli"})
        assert args.model == "claude-cli"

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == DEFAULT_MODEL
        assert args.max_iterations == DEFAULT_MAX_ITERATIONS
        assert args.store == []
        assert args.web_search is False
        assert args.allow_write is False
        assert args.workspace == "."
        assert args.system_prompt == ""
        assert args.timeout is None
        assert args.api_key is None

    def test_store_true_flag_present_beats_config(self):
        args = _make_args(allow_write=True)
        apply_config_to_args(args, {"allow_write": False})
        assert args.allow_write is True

    def test_search_fans_out(self):
        args = _make_args()
        apply_config_to_args(args, {"search": ["kb", WEB_SEARCH]})
        assert args.store == ["kb"]
        assert args.web_search is True

    def test_cli_store_beats_config_search(self):
        args = _make_args(store=["cli-store"])
        apply_config_to_args(args, {"search": ["kb"]})
        assert args.store == ["cli-store"]
        assert args.web_search is False

    def test_color_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_no_color_cli_overrides_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False

    def test_default_list_is_fresh(self):
        a, b = _make_args(), _make_args()
        apply_config_to_args(a, {})
        apply_config_to_args(b, {})
        a.store.append("x")
        assert b.store == []

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "from-env")
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.api_key == "from-env"

    def test_config_api_key_beats_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "from-env")
        args = _make_args()
        apply_config_to_args(args, {"api_key": "from-config"})
        assert args.api_key == "from-config"


class TestApiKey:
    def test_explicit(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env")
        assert resolve_api_key("explicit") == "explicit"

    def test_env_order(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "gemini")
        monkeypatch.setenv("GOOGLE_API_KEY", "google")
        assert resolve_api_key(None) == "gemini"

    def test_missing(self):
        assert resolve_api_key(None) is None

    def test_api_key_in_git_repo_warns(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "quill.toml", 'api_key = "secret"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


class TestConfigToChatKwargs:
    def test_search_split(self):
        kwargs = config_to_chat_kwargs({"search": [WEB_SEARCH], "model": "gemini-2.5-pro"})
        assert kwargs == {"store_names": [], "web_search": True, "model": "gemini-2.5-pro"}

    def test_dropped_keys(self):
        kwargs = config_to_chat_kwargs(
            {"color": True, "quiet": True, "sessions_file": "x", "timeout": 3}
        )
        assert kwargs == {}

    def test_accepted_by_chat(self, tmp_path):
        from quill.session import Chat

        kwargs = config_to_chat_kwargs(
            {
                "model": "claude-cli",
                "system_prompt": "hi",
                "search": ["kb"],
                "allow_write": True,
                "max_iterations": 2,
                "workspace": str(tmp_path),
            }
        )
        chat = Chat(**kwargs)
        assert chat.store_names == ["kb"]
        assert chat.allow_write is True
        assert chat.loop.max_iterations == 2

    def test_split_search(self):
        assert split_search(["a", WEB_SEARCH, "b"]) == (["a", "b"], True)


class TestGlobalConfigDir:
    def test_respects_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / "quill"

    def test_default_home(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        if sys.platform == "win32":
            monkeypatch.setenv("USERPROFILE", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "quill"
