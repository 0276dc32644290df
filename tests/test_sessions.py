"""Tests for the session registry and its JSON-backed variant."""

import json

import pytest

from quill.report import ConfigError
from quill.sessions import JsonSessionStore, SessionRegistry


class TestSessionRegistry:
    def test_roundtrip(self):
        reg = SessionRegistry()
        reg.set("chat1", "claude-cli", "s-1")
        assert reg.get("chat1", "claude-cli") == "s-1"
        assert reg.get("chat1", "codex-cli") is None
        assert reg.get("chat2", "claude-cli") is None

    def test_keyed_per_provider(self):
        reg = SessionRegistry()
        reg.set("c", "claude-cli", "a")
        reg.set("c", "codex-cli", "b")
        assert reg.all() == {"c": {"claude-cli": "a", "codex-cli": "b"}}

    def test_overwrite(self):
        reg = SessionRegistry()
        reg.set("c", "claude-cli", "a")
        reg.set("c", "claude-cli", "b")
        assert reg.get("c", "claude-cli") == "b"

    def test_none_chat_id_is_ignored(self):
        reg = SessionRegistry()
        reg.set(None, "claude-cli", "a")
        assert reg.get(None, "claude-cli") is None
        assert reg.all() == {}
        reg.clear(None)

    def test_clear(self):
        reg = SessionRegistry()
        reg.set("c", "claude-cli", "a")
        reg.set("d", "claude-cli", "b")
        reg.clear("c")
        assert reg.get("c", "claude-cli") is None
        assert reg.get("d", "claude-cli") == "b"

    def test_all_is_a_copy(self):
        reg = SessionRegistry()
        reg.set("c", "claude-cli", "a")
        reg.all()["c"]["claude-cli"] = "tampered"
        assert reg.get("c", "claude-cli") == "a"


class TestJsonSessionStore:
    def test_missing_file_starts_empty(self, tmp_path):
        store = JsonSessionStore(tmp_path / "sessions.json")
        assert store.all() == {}
        assert not (tmp_path / "sessions.json").exists()

    def test_persists_and_reloads(self, tmp_path):
        path = tmp_path / "state" / "sessions.json"
        JsonSessionStore(path).set("c", "claude-cli", "abc")
        assert json.loads(path.read_text()) == {"c": {"claude-cli": "abc"}}
        assert JsonSessionStore(path).get("c", "claude-cli") == "abc"
        assert not path.with_name("sessions.json.tmp").exists()

    def test_clear_persists(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = JsonSessionStore(path)
        store.set("c", "codex-cli", "t1")
        store.clear("c")
        assert json.loads(path.read_text()) == {}

    def test_unchanged_value_does_not_write(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = JsonSessionStore(path)
        store.set("c", "claude-cli", "a")
        path.unlink()
        store.set("c", "claude-cli", "a")
        assert not path.exists()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{nope")
        with pytest.raises(ConfigError, match="invalid JSON"):
            JsonSessionStore(path)

    def test_non_object(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="expected a JSON object"):
            JsonSessionStore(path)

    def test_skips_malformed_entries(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({"a": "x", "b": {"claude-cli": "s", "codex-cli": 3}}))
        assert JsonSessionStore(path).all() == {"b": {"claude-cli": "s"}}
