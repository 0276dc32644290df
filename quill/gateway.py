"""Tool execution gateway: routes model tool calls to a Workspace.

execute() never raises. Every outcome, including unknown tools, missing
arguments and handler crashes, comes back as a ToolResult so the agent loop
can hand it to the model.
"""

import logging

from .messages import ToolResult
from .tools import get_tool

logger = logging.getLogger(__name__)

EMPTY_SEARCH_HINT = (
    "No local files found. The information may be available in the RAG file "
    "search store. Please answer based on the RAG context if available."
)


class WorkspaceError(Exception):
    """An expected, user-facing failure from a workspace operation."""


class Workspace:
    """Interface the gateway delegates to. Implementations raise
    WorkspaceError for expected failures (missing note, bad mode, ...)."""

    def read(self, name: str) -> str:
        raise NotImplementedError

    def read_active(self) -> dict:
        """Return {"name", "path", "content"} for the active note."""
        raise NotImplementedError

    def active_info(self) -> dict:
        raise NotImplementedError

    def search(self, query: str, search_type: str = "both", limit: int = 10) -> list[dict]:
        raise NotImplementedError

    def list_notes(self, folder: str | None = None, recursive: bool = False) -> list[dict]:
        raise NotImplementedError

    def list_folders(self) -> list[str]:
        raise NotImplementedError

    def create(self, name, content, folder=None, tags=None) -> None:
        raise NotImplementedError

    def create_folder(self, path: str) -> None:
        raise NotImplementedError

    def rename(self, old_path: str, new_path: str) -> None:
        raise NotImplementedError

    def update(self, name, mode, new_text, old_text=None) -> None:
        raise NotImplementedError

    def write_active(self, mode, new_text, old_text=None) -> str:
        """Edit the active note; returns its display name."""
        raise NotImplementedError


class ToolGateway:
    def __init__(self, workspace: Workspace):
        self.workspace = workspace
        self._handlers = {
            "read_note": self._read_note,
            "get_active_note_info": self._get_active_note_info,
            "search_notes": self._search_notes,
            "list_notes": self._list_notes,
            "list_folders": self._list_folders,
            "create_note": self._create_note,
            "create_folder": self._create_folder,
            "rename_note": self._rename_note,
            "update_note": self._update_note,
            "write_to_buffer": self._write_to_buffer,
        }

    def execute(self, name: str, arguments: dict | None) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return _fail(name, f"Unknown tool: {name}")
        args = arguments if isinstance(arguments, dict) else {}

        missing = _missing_required(name, args)
        if missing:
            verb = "is" if len(missing) == 1 else "are"
            return _fail(name, f"{', '.join(missing)} {verb} required")

        try:
            payload = handler(args)
        except WorkspaceError as e:
            return _fail(name, str(e))
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            return _fail(name, f"Tool execution error: {e}")
        return ToolResult(tool_call_name=name, success=True, payload=payload)

    # -- handlers --------------------------------------------------------

    def _read_note(self, args):
        if args.get("active"):
            note = self.workspace.read_active()
            return {"name": note["name"], "path": note["path"], "content": note["content"]}
        if not args.get("name"):
            raise WorkspaceError("name or active is required")
        return {"name": args["name"], "content": self.workspace.read(args["name"])}

    def _get_active_note_info(self, args):
        return {"info": self.workspace.active_info()}

    def _search_notes(self, args):
        results = self.workspace.search(
            args["query"],
            args.get("search_type") or "both",
            _int_arg(args.get("limit"), 10),
        )
        payload = {"results": results, "count": len(results)}
        if not results:
            payload["hint"] = EMPTY_SEARCH_HINT
        return payload

    def _list_notes(self, args):
        notes = self.workspace.list_notes(args.get("folder") or None, bool(args.get("recursive")))
        return {"notes": notes, "count": len(notes)}

    def _list_folders(self, args):
        folders = self.workspace.list_folders()
        return {"folders": folders, "count": len(folders)}

    def _create_note(self, args):
        self.workspace.create(
            args["name"], args["content"], args.get("folder"), args.get("tags")
        )
        return {"message": f"Note created: {args['name']}"}

    def _create_folder(self, args):
        self.workspace.create_folder(args["path"])
        return {"message": f"Folder created: {args['path']}"}

    def _rename_note(self, args):
        self.workspace.rename(args["old_path"], args["new_path"])
        return {"message": f"Note renamed from {args['old_path']} to {args['new_path']}"}

    def _update_note(self, args):
        if args["mode"] == "replace" and args.get("old_text") is None:
            raise WorkspaceError("old_text is required for replace mode")
        self.workspace.update(args["name"], args["mode"], args["new_text"], args.get("old_text"))
        return {"message": f"Note updated: {args['name']}"}

    def _write_to_buffer(self, args):
        if args["mode"] == "replace" and args.get("old_text") is None:
            raise WorkspaceError("old_text is required for replace mode")
        display = self.workspace.write_active(args["mode"], args["new_text"], args.get("old_text"))
        return {"message": f"Buffer updated: {display}"}


def _fail(name: str, message: str) -> ToolResult:
    logger.debug("tool %s failed: %s", name, message)
    return ToolResult(tool_call_name=name, success=False, error_message=message)


def _missing_required(name: str, args: dict) -> list[str]:
    tool = get_tool(name)
    if tool is None:
        return []
    required = tool["parameters"].get("required", [])
    return [r for r in required if args.get(r) is None]


def _int_arg(value, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return n if n > 0 else default
