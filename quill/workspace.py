"""Filesystem workspace: a directory of Markdown notes behind the Workspace interface."""

import logging
import os
import re
from pathlib import Path

from .gateway import Workspace, WorkspaceError

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"
CONTEXT_CHARS = 100
MAX_FOLDER_DEPTH = 3
MAX_FOLDERS = 100
EDIT_MODES = ("replace", "append", "prepend", "full")


def safe_resolve(path: str, base_dir: str | Path) -> Path:
    """Resolve ``path`` against ``base_dir``, refusing anything outside it.

    Symlinks are resolved on both sides before the containment check.

    Raises:
        WorkspaceError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    p = Path(path)
    resolved = p.resolve() if p.is_absolute() else (base / p).resolve()
    if resolved == base or resolved.is_relative_to(base):
        return resolved
    raise WorkspaceError(f"Path {path!r} is outside the workspace")


def _strip_suffix(name: str) -> str:
    name = name.strip()
    if name.lower().endswith(NOTE_SUFFIX):
        return name[: -len(NOTE_SUFFIX)]
    return name


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def filename_score(query: str, filename: str) -> int:
    q = query.lower()
    f = filename.lower()
    if not q:
        return 0
    if f == q:
        return 100
    if f.startswith(q):
        return 80
    if re.search(r"(?<![0-9a-z])" + re.escape(q) + r"(?![0-9a-z])", f):
        return 70
    if q in f:
        return 50
    if re.search(".*".join(re.escape(c) for c in q), f):
        return 30
    return 0


def content_score(query: str, content: str) -> tuple[int, int]:
    """Return (score, match_count) for a case-insensitive content match."""
    q = query.lower()
    c = content.lower()
    if not q:
        return 0, 0
    count = 0
    pos = c.find(q)
    while pos != -1:
        count += 1
        pos = c.find(q, pos + 1)
    if count == 0:
        return 0, 0
    score = 40 + min(count * 5, 30)
    if q in c[:200]:
        score += 20
    return score, count


def match_context(content: str, query: str, context_chars: int = CONTEXT_CHARS) -> str | None:
    idx = content.lower().find(query.lower())
    if idx == -1:
        return None
    start = max(0, idx - context_chars)
    end = min(len(content), idx + len(query) + context_chars)
    snippet = re.sub(r"\s+", " ", content[start:end])
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet += "..."
    return snippet


def apply_edit(original: str, mode: str, new_text: str, old_text: str | None = None) -> str:
    if mode == "replace":
        if old_text is None:
            raise WorkspaceError("old_text is required for replace mode")
        if old_text not in original:
            raise WorkspaceError("old_text not found in note")
        return original.replace(old_text, new_text, 1)
    if mode == "append":
        return original + "\n" + new_text
    if mode == "prepend":
        return new_text + "\n" + original
    if mode == "full":
        return new_text
    raise WorkspaceError(f"Invalid mode: {mode}")


def insert_at(content: str, text: str, line: int, col: int) -> str:
    """Insert ``text`` at a 1-based line / 0-based column position."""
    lines = content.split("\n")
    row = min(max(line, 1), len(lines)) - 1
    current = lines[row]
    col = min(max(col, 0), len(current))
    lines[row] = current[:col] + text + current[col:]
    return "\n".join(lines)


class FilesystemWorkspace(Workspace):
    """Notes are ``*.md`` files below ``root``; hidden directories are skipped.

    ``active_note`` is a path (relative to root or absolute) standing in for
    the note open in the editor, and ``cursor`` a (line, column) pair in it.
    """

    def __init__(self, root, active_note=None, cursor=None):
        self.root = Path(root).resolve()
        self.active_note = active_note
        self.cursor = cursor

    # -- helpers ---------------------------------------------------------

    def _note_path(self, name: str) -> Path:
        return safe_resolve(_strip_suffix(name) + NOTE_SUFFIX, self.root)

    def _rel(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)

    def _walk_notes(self, base: Path, recursive: bool = True):
        for dirpath, dirs, files in os.walk(base):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for filename in sorted(files):
                if filename.startswith(".") or not filename.endswith(NOTE_SUFFIX):
                    continue
                yield Path(dirpath) / filename
            if not recursive:
                break

    def _active_path(self) -> Path:
        if not self.active_note:
            raise WorkspaceError("No active file (no note is open)")
        path = safe_resolve(self.active_note, self.root)
        if not path.is_file():
            raise WorkspaceError(f"Active note not found: {self.active_note}")
        return path

    # -- reads -----------------------------------------------------------

    def read(self, name: str) -> str:
        path = self._note_path(name)
        if not path.is_file():
            raise WorkspaceError(f"Note not found: {name}")
        return path.read_text(encoding="utf-8", errors="replace")

    def read_active(self) -> dict:
        path = self._active_path()
        return {
            "name": path.stem,
            "path": self._rel(path),
            "content": path.read_text(encoding="utf-8", errors="replace"),
        }

    def active_info(self) -> dict:
        info: dict = {"workspace": str(self.root), "cwd": os.getcwd()}
        try:
            path = self._active_path()
        except WorkspaceError as e:
            info["note"] = None
            info["message"] = str(e)
            return info
        content = path.read_text(encoding="utf-8", errors="replace")
        info["note"] = {
            "name": path.stem,
            "path": self._rel(path),
            "full_path": str(path),
            "line_count": content.count("\n") + 1,
            "size": path.stat().st_size,
            "modified": False,
            "filetype": "markdown",
        }
        return info

    def list_notes(self, folder=None, recursive=False) -> list[dict]:
        base = safe_resolve(folder, self.root) if folder else self.root
        if not base.is_dir():
            return []
        return [
            {"name": p.stem, "path": self._rel(p)}
            for p in self._walk_notes(base, recursive=recursive)
        ]

    def list_folders(self, max_depth=MAX_FOLDER_DEPTH, max_count=MAX_FOLDERS) -> list[str]:
        folders = []
        for dirpath, dirs, _files in os.walk(self.root):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            depth = len(Path(dirpath).relative_to(self.root).parts)
            if depth >= max_depth:
                dirs[:] = []
                continue
            for d in dirs:
                folders.append(self._rel(Path(dirpath) / d))
                if len(folders) >= max_count:
                    return folders
        return folders

    def search(self, query: str, search_type: str = "both", limit: int = 10) -> list[dict]:
        results = []
        for path in self._walk_notes(self.root):
            name = path.stem
            entry: dict = {"name": name, "path": self._rel(path)}
            fname = filename_score(query, name) if search_type != "content" else 0

            if search_type == "filename":
                if fname > 0:
                    entry.update(score=fname, match_type="filename")
                    results.append(entry)
                continue

            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.debug("skipping unreadable note %s: %s", path, e)
                continue
            cscore, count = content_score(query, content)
            context = match_context(content, query) if cscore > 0 else None

            if search_type == "content":
                if cscore > 0:
                    entry.update(
                        score=cscore,
                        match_count=count,
                        match_type="content",
                        context=context,
                    )
                    results.append(entry)
                continue

            total = fname + cscore * 0.7
            if total <= 0:
                continue
            if fname > 0 and cscore == 0:
                match_type = "filename"
            elif fname == 0:
                match_type = "content"
            else:
                match_type = "both"
            entry.update(
                score=total,
                filename_score=fname,
                content_score=cscore,
                match_count=count,
                match_type=match_type,
                context=context,
            )
            results.append(entry)

        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:limit]

    # -- writes ----------------------------------------------------------

    def create(self, name, content, folder=None, tags=None) -> None:
        rel = _strip_suffix(name) + NOTE_SUFFIX
        if folder:
            rel = str(Path(folder) / rel)
        path = safe_resolve(rel, self.root)
        if path.exists():
            raise WorkspaceError(f"Note already exists: {name}")
        if tags:
            front = "---\ntags:\n" + "".join(f"  - {t}\n" for t in tags) + "---\n\n"
            content = front + content
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("created note %s", path)

    def create_folder(self, path: str) -> None:
        target = safe_resolve(path, self.root)
        if target.is_dir():
            raise WorkspaceError(f"Folder already exists: {path}")
        target.mkdir(parents=True)

    def rename(self, old_path: str, new_path: str) -> None:
        src = self._note_path(old_path)
        dst = self._note_path(new_path)
        if not src.is_file():
            raise WorkspaceError(f"Note not found: {old_path}")
        if dst.exists():
            raise WorkspaceError(f"Target already exists: {new_path}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.rename(dst)

    def update(self, name, mode, new_text, old_text=None) -> None:
        path = self._note_path(name)
        if not path.is_file():
            raise WorkspaceError(f"Note not found: {name}")
        original = path.read_text(encoding="utf-8")
        path.write_text(apply_edit(original, mode, new_text, old_text), encoding="utf-8")

    def write_active(self, mode, new_text, old_text=None) -> str:
        path = self._active_path()
        original = path.read_text(encoding="utf-8")
        if mode == "insert_at_cursor":
            if self.cursor is None:
                updated = original + "\n" + new_text
            else:
                updated = insert_at(original, new_text, *self.cursor)
        else:
            updated = apply_edit(original, mode, new_text, old_text)
        path.write_text(updated, encoding="utf-8")
        return path.name
