"""Per-chat, per-provider session ids for CLI backends that can resume."""

import json
import logging
import os
import threading
from pathlib import Path

from .report import ConfigError

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory mapping of (chat_id, provider) -> session id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, dict[str, str]] = {}

    def get(self, chat_id: str | None, provider: str) -> str | None:
        if chat_id is None:
            return None
        with self._lock:
            return self._sessions.get(chat_id, {}).get(provider)

    def set(self, chat_id: str | None, provider: str, session_id: str) -> None:
        if chat_id is None:
            return
        with self._lock:
            current = self._sessions.setdefault(chat_id, {})
            if current.get(provider) == session_id:
                return
            current[provider] = session_id
            snapshot = self._snapshot()
        logger.debug("session for %s/%s is now %s", chat_id, provider, session_id)
        self._changed(snapshot)

    def clear(self, chat_id: str | None) -> None:
        """Forget every provider session of a chat (the "new chat" action)."""
        if chat_id is None:
            return
        with self._lock:
            if self._sessions.pop(chat_id, None) is None:
                return
            snapshot = self._snapshot()
        self._changed(snapshot)

    def all(self) -> dict[str, dict[str, str]]:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> dict[str, dict[str, str]]:
        return {chat: dict(providers) for chat, providers in self._sessions.items()}

    def _changed(self, snapshot: dict) -> None:
        pass


class JsonSessionStore(SessionRegistry):
    """SessionRegistry persisted to a JSON file, rewritten on every change."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        self._sessions = self._load()

    def _load(self) -> dict[str, dict[str, str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise ConfigError(f"cannot read sessions file {self.path}: {e}")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self.path}: invalid JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{self.path}: expected a JSON object")
        sessions = {}
        for chat_id, providers in data.items():
            if not isinstance(providers, dict):
                continue
            sessions[str(chat_id)] = {
                str(p): str(sid) for p, sid in providers.items() if isinstance(sid, str)
            }
        return sessions

    def _changed(self, snapshot: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, self.path)
