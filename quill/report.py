"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown model, bad API key, etc.)."""


class TransportError(AgentError):
    """The network call or child process failed (non-zero exit, connection error)."""


class ProtocolError(AgentError):
    """The backend answered with a well-formed error object."""


class IterationLimitError(AgentError):
    """The model kept requesting tools past the iteration ceiling."""


class ReportCollector:
    """Accumulates events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.adapter_calls = 0
        self.total_adapter_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0
        self.session_ids: list[str] = []

    def record_adapter_call(
        self,
        iteration: int,
        provider: str,
        duration: float,
        outcome: str,
        *,
        token_est: int | None = None,
        text_length: int = 0,
        tool_calls: int = 0,
    ):
        self.adapter_calls += 1
        self.total_adapter_time += duration
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration
        event = {
            "iteration": iteration,
            "type": "adapter_call",
            "provider": provider,
            "duration_s": round(duration, 3),
            "outcome": outcome,
            "text_length": text_length,
            "tool_calls": tool_calls,
        }
        if token_est is not None:
            event["prompt_tokens_est"] = token_est
        self.events.append(event)

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_session(self, iteration: int, provider: str, session_id: str):
        self.session_ids.append(session_id)
        self.events.append(
            {
                "iteration": iteration,
                "type": "session",
                "provider": provider,
                "session_id": session_id,
            }
        )

    def record_abort(self, iteration: int):
        self.events.append({"iteration": iteration, "type": "abort"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
        retrieval_sources: list[str] | None = None,
        web_search_used: bool = False,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": iterations,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "adapter_calls": self.adapter_calls,
                "total_adapter_time_s": round(self.total_adapter_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "retrieval_sources": list(retrieval_sources or []),
                "web_search_used": web_search_used,
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a subsequent write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
