"""Tool catalogue offered to the model, and the tool-mode policy."""

import copy

TOOL_MODES = ("all", "no_search", "none")

READ_NOTE_TOOL = {
    "name": "read_note",
    "description": (
        "Read the contents of a note. Use 'name' to specify a note, "
        "or set 'active' to true to read the currently active note."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "name": {
                "type": "string",
                "description": "The name or path of the note to read (without .md extension).",
            },
            "active": {
                "type": "boolean",
                "description": "If true, read the currently active note.",
            },
        },
    },
}

GET_ACTIVE_NOTE_INFO_TOOL = {
    "name": "get_active_note_info",
    "description": (
        "Get workspace info and metadata about the currently active note. "
        "Always returns the workspace path, even if no note is active."
    ),
    "parameters": {"type": "object", "properties": {}},
}

SEARCH_NOTES_TOOL = {
    "name": "search_notes",
    "description": (
        "Search for notes by filename or content. "
        "Returns matching notes with relevance scores."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query."},
            "search_type": {
                "type": "string",
                "enum": ["filename", "content", "both"],
                "description": (
                    "'filename' for name matching, 'content' for full-text, "
                    "'both' for combined. Defaults to 'both'."
                ),
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of results to return (default: 10).",
            },
        },
        "required": ["query"],
    },
}

LIST_NOTES_TOOL = {
    "name": "list_notes",
    "description": "List all notes in a folder or the entire workspace.",
    "parameters": {
        "type": "object",
        "properties": {
            "folder": {
                "type": "string",
                "description": "Folder path to list (empty for root).",
            },
            "recursive": {
                "type": "boolean",
                "description": "If true, include notes in subfolders.",
            },
        },
    },
}

LIST_FOLDERS_TOOL = {
    "name": "list_folders",
    "description": "List all folders in the workspace.",
    "parameters": {"type": "object", "properties": {}},
}

CREATE_NOTE_TOOL = {
    "name": "create_note",
    "description": "Create a new note with the specified content.",
    "parameters": {
        "type": "object",
        "properties": {
            "name": {
                "type": "string",
                "description": "Name of the note (without .md extension).",
            },
            "content": {"type": "string", "description": "Content of the note."},
            "folder": {
                "type": "string",
                "description": "Folder to create the note in (optional).",
            },
            "tags": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Tags to add to the note frontmatter (optional).",
            },
        },
        "required": ["name", "content"],
    },
}

CREATE_FOLDER_TOOL = {
    "name": "create_folder",
    "description": "Create a new folder at the specified path.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path of the folder to create."},
        },
        "required": ["path"],
    },
}

RENAME_NOTE_TOOL = {
    "name": "rename_note",
    "description": "Rename or move a note to a new path.",
    "parameters": {
        "type": "object",
        "properties": {
            "old_path": {"type": "string", "description": "Current path of the note."},
            "new_path": {"type": "string", "description": "New path for the note."},
        },
        "required": ["old_path", "new_path"],
    },
}

UPDATE_NOTE_TOOL = {
    "name": "update_note",
    "description": (
        "Update a note's content. Modes: 'replace' replaces old_text, "
        "'append' adds to the end, 'prepend' adds to the beginning, "
        "'full' replaces the entire content."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Name or path of the note to edit."},
            "mode": {
                "type": "string",
                "enum": ["replace", "append", "prepend", "full"],
                "description": "Edit mode.",
            },
            "old_text": {
                "type": "string",
                "description": "Text to replace (required for 'replace' mode).",
            },
            "new_text": {"type": "string", "description": "New text to insert."},
        },
        "required": ["name", "mode", "new_text"],
    },
}

WRITE_TO_BUFFER_TOOL = {
    "name": "write_to_buffer",
    "description": (
        "Write content directly to the currently active note. Modes: 'replace' "
        "replaces old_text, 'append' adds to the end, 'prepend' adds to the "
        "beginning, 'full' replaces the entire content, 'insert_at_cursor' "
        "inserts at the cursor position, or appends when no cursor is known."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "mode": {
                "type": "string",
                "enum": ["replace", "append", "prepend", "full", "insert_at_cursor"],
                "description": "Edit mode.",
            },
            "old_text": {
                "type": "string",
                "description": "Text to replace (required for 'replace' mode).",
            },
            "new_text": {"type": "string", "description": "New text to insert."},
        },
        "required": ["mode", "new_text"],
    },
}

READ_TOOLS = [READ_NOTE_TOOL, GET_ACTIVE_NOTE_INFO_TOOL]
SEARCH_TOOLS = [SEARCH_NOTES_TOOL, LIST_NOTES_TOOL, LIST_FOLDERS_TOOL]
WRITE_TOOLS = [
    CREATE_NOTE_TOOL,
    CREATE_FOLDER_TOOL,
    RENAME_NOTE_TOOL,
    UPDATE_NOTE_TOOL,
    WRITE_TO_BUFFER_TOOL,
]
TOOLS = READ_TOOLS + SEARCH_TOOLS + WRITE_TOOLS

SEARCH_TOOL_NAMES = frozenset(t["name"] for t in SEARCH_TOOLS)
MUTATING_TOOL_NAMES = frozenset(t["name"] for t in WRITE_TOOLS)

# Models that misbehave when function calling is combined with file search.
RETRIEVAL_TOOL_INCOMPATIBLE = frozenset({"gemini-2.5-flash"})


def get_tool_mode(
    model_info,
    *,
    web_search: bool = False,
    retrieval: bool = False,
) -> str:
    """Decide which subset of the catalogue a run may use."""
    if model_info.is_cli:
        return "none"
    if not model_info.supports_tools:
        return "none"
    if web_search:
        return "none"
    if retrieval:
        if not model_info.retrieval_with_tools:
            return "none"
        return "no_search"
    return "all"


def filter_tools(tools: list[dict], mode: str, allow_write: bool) -> list[dict]:
    """Apply a tool mode and the write permission to an arbitrary catalogue."""
    if mode not in TOOL_MODES:
        raise ValueError(f"unknown tool mode {mode!r}")
    if mode == "none":
        return []
    out = []
    for tool in tools:
        name = tool["name"]
        if mode == "no_search" and name in SEARCH_TOOL_NAMES:
            continue
        if not allow_write and name in MUTATING_TOOL_NAMES:
            continue
        out.append(copy.deepcopy(tool))
    return out


def get_enabled_tools(mode: str = "all", allow_write: bool = False) -> list[dict]:
    return filter_tools(TOOLS, mode, allow_write)


def get_tool(name: str) -> dict | None:
    for tool in TOOLS:
        if tool["name"] == name:
            return tool
    return None
