"""Public library API for quill: the Chat class."""

import os
import uuid

from .agent import DEFAULT_MAX_ITERATIONS, AgentLoop, RunResult, RunStatus
from .gateway import ToolGateway
from .messages import Attachment, Message, coerce_messages
from .models import DEFAULT_MODEL, build_adapters
from .report import ConfigError
from .sessions import SessionRegistry
from .workspace import FilesystemWorkspace


def new_chat_id() -> str:
    return uuid.uuid4().hex


class Chat:
    """Programmatic interface to the agent loop for one conversation.

    Stores configuration as plain attributes and keeps the message history
    between calls to send(). Only a finalized or aborted run changes the
    history; a failed run leaves it as it was.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        workspace: str = ".",
        active_note: str | None = None,
        cursor: tuple[int, int] | None = None,
        allow_write: bool = False,
        store_names=None,
        web_search: bool = False,
        system_prompt: str = "",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        sessions: SessionRegistry | None = None,
        chat_id: str | None = None,
        on_event=None,
        verbose: bool = False,
        adapters: dict | None = None,
        gateway=None,
    ):
        if not os.path.isdir(workspace):
            raise ConfigError(f"workspace is not a directory: {workspace}")
        self.model = model
        self.workspace = workspace
        self.allow_write = allow_write
        self.store_names = list(store_names or [])
        self.web_search = web_search
        self.system_prompt = system_prompt or ""
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.chat_id = chat_id or new_chat_id()
        self.messages: list[Message] = []

        if adapters is None:
            adapters = build_adapters(api_key=api_key, base_url=base_url, timeout=timeout)
        if gateway is None:
            gateway = ToolGateway(
                FilesystemWorkspace(workspace, active_note=active_note, cursor=cursor)
            )
        self.loop = AgentLoop(
            adapters,
            gateway,
            sessions=self.sessions,
            max_iterations=max_iterations,
            on_event=on_event,
            verbose=verbose,
            workspace_dir=os.path.abspath(workspace),
        )

    def send(self, text: str, attachments=(), *, report=None) -> RunResult:
        """Send one user message and run the loop to completion."""
        msg = Message(
            role="user",
            text=text,
            attachments=[
                a if isinstance(a, Attachment) else Attachment(**a) for a in attachments
            ],
        )
        result = self.loop.run(
            [*self.messages, msg],
            model=self.model,
            system_prompt=self.system_prompt,
            store_names=self.store_names,
            web_search=self.web_search,
            allow_write=self.allow_write,
            chat_id=self.chat_id,
            report=report,
        )
        if result.status in (RunStatus.FINALIZED, RunStatus.ABORTED):
            self.messages = coerce_messages(result.messages)
        return result

    def abort(self) -> bool:
        """Abort the in-flight run. Safe to call from any thread."""
        return self.loop.abort()

    def new_chat(self) -> None:
        """Forget the history and any CLI session, and start a fresh chat id."""
        self.sessions.clear(self.chat_id)
        self.messages = []
        self.chat_id = new_chat_id()
