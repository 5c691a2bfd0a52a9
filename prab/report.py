"""Error taxonomy and the JSONL session recorder."""

import json
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong value types, etc.)."""


class ProviderError(AgentError):
    """Raised when the model provider call fails.

    The message keeps the provider's own wording so callers can classify it.
    """


def session_log_name(started: datetime) -> str:
    return f"session-{started.strftime('%Y%m%d-%H%M%S')}.jsonl"


class SessionRecorder:
    """Append-only JSONL sink for one interactive session.

    Constructed explicitly and passed to the session, loop and executor.
    ``open()`` creates the file, every event is flushed and fsynced as it
    is written, and ``close()`` releases the handle. A recorder built with
    ``enabled=False`` accepts all calls and writes nothing.
    """

    def __init__(self, log_dir: Path | str | None = None, *, enabled: bool = True):
        self.enabled = enabled and log_dir is not None
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.session_id = uuid.uuid4().hex[:12]
        self.started = datetime.now()
        self.path: Path | None = None
        self.event_count = 0
        self._fh = None

    @classmethod
    def disabled(cls) -> "SessionRecorder":
        return cls(None, enabled=False)

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> None:
        if not self.enabled or self._fh is not None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.log_dir / session_log_name(self.started)
        self._fh = open(self.path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._fh is None:
            return
        self._fh.close()
        self._fh = None

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    # -- core writer ---------------------------------------------------------

    def record(
        self,
        event: str,
        message: str,
        *,
        level: str = "info",
        data: dict | None = None,
        duration_ms: float | None = None,
    ) -> None:
        if self._fh is None:
            return
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "level": level,
            "event": event,
            "message": message,
        }
        if data:
            entry["data"] = data
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 1)
        self._fh.write(json.dumps(entry, default=str, ensure_ascii=False) + "\n")
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self.event_count += 1

    # -- typed events --------------------------------------------------------

    def session_start(self, base_dir: str, model_id: str) -> None:
        self.record(
            "session_start",
            "Session started",
            data={"base_dir": base_dir, "model": model_id, "pid": os.getpid()},
        )

    def prompt_received(self, text: str) -> None:
        self.record(
            "prompt_received",
            _preview(text),
            data={"length": len(text)},
        )

    def context_attached(self, paths: list[str]) -> None:
        self.record(
            "context_attached",
            f"{len(paths)} file(s) mentioned",
            data={"files": paths},
        )

    def iteration(self, n: int, max_n: int) -> None:
        self.record("iteration", f"Iteration {n}/{max_n}", level="debug")

    def api_request(self, model_id: str, message_count: int, tool_count: int) -> None:
        self.record(
            "api_request",
            f"Request to {model_id}",
            data={"messages": message_count, "tools": tool_count},
        )

    def api_response(self, duration_ms: float, has_tool_calls: bool, content_length: int) -> None:
        self.record(
            "api_response",
            "Response received",
            data={"tool_calls": has_tool_calls, "content_length": content_length},
            duration_ms=duration_ms,
        )

    def api_error(self, error: str, error_type: str) -> None:
        self.record(
            "api_error",
            error,
            level="error",
            data={"error_type": error_type},
        )

    def ai_response(self, text: str) -> None:
        self.record("ai_response", _preview(text), data={"length": len(text)})

    def ai_tool_decision(self, calls: list) -> None:
        self.record(
            "ai_tool_decision",
            f"Model requested {len(calls)} tool call(s)",
            data={"tools": [c.name for c in calls]},
        )

    def tool_start(self, name: str, args: dict) -> None:
        self.record("tool_start", name, data={"args": args})

    def tool_success(self, name: str, output: str, duration_ms: float) -> None:
        self.record(
            "tool_success",
            name,
            data={"output_length": len(output)},
            duration_ms=duration_ms,
        )

    def tool_error(self, name: str, error: str, duration_ms: float | None = None) -> None:
        self.record(
            "tool_error",
            name,
            level="error",
            data={"error": error},
            duration_ms=duration_ms,
        )

    def tool_cancelled(self, name: str) -> None:
        self.record("tool_cancelled", f"{name} declined by user", level="warning")

    def model_init(self, model_id: str, ok: bool, error: str | None = None) -> None:
        data = {"model": model_id, "ok": ok}
        if error:
            data["error"] = error
        self.record("model_init", model_id, level="info" if ok else "error", data=data)

    def model_switch(self, old: str, new: str) -> None:
        self.record("model_switch", f"{old} -> {new}", data={"from": old, "to": new})

    def prompt_complete(self, iterations: int, duration_ms: float, exhausted: bool) -> None:
        self.record(
            "prompt_complete",
            "Turn complete",
            data={"iterations": iterations, "exhausted": exhausted},
            duration_ms=duration_ms,
        )

    def prompt_failed(self, error: str, error_type: str, duration_ms: float) -> None:
        self.record(
            "prompt_failed",
            error,
            level="error",
            data={"error_type": error_type},
            duration_ms=duration_ms,
        )

    def warning(self, message: str, data: dict | None = None) -> None:
        self.record("warning", message, level="warning", data=data)

    def error(self, message: str, data: dict | None = None) -> None:
        self.record("error", message, level="error", data=data)


def _preview(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# -- replay ------------------------------------------------------------------


def list_session_logs(log_dir: Path) -> list[Path]:
    """Return session logs in ``log_dir``, oldest first."""
    if not log_dir.is_dir():
        return []
    return sorted(log_dir.glob("session-*.jsonl"))


def _parse_line(line: str) -> dict | None:
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def load_events(path: Path) -> list[dict]:
    """Parse a session log. Lines that are not valid JSON are skipped."""
    with open(path, encoding="utf-8") as f:
        return [e for e in map(_parse_line, f) if e is not None]


def follow_events(path: Path, *, poll_interval: float = 0.5):
    """Yield every event in ``path``, then keep yielding events as they are appended.

    Runs until the consumer stops iterating or the wait is interrupted. A
    trailing line without its newline is held back until it is complete.
    """
    pending = ""
    with open(path, encoding="utf-8") as f:
        while True:
            chunk = f.readline()
            if not chunk:
                time.sleep(poll_interval)
                continue
            pending += chunk
            if not pending.endswith("\n"):
                continue
            event = _parse_line(pending)
            pending = ""
            if event is not None:
                yield event


@dataclass
class LogSummary:
    """Counts shown after a session log replay."""

    prompts: int = 0
    api_requests: int = 0
    ai_responses: int = 0
    tool_calls: int = 0
    errors: int = 0

    def add(self, event: dict) -> None:
        name = event.get("event")
        if name == "prompt_received":
            self.prompts += 1
        elif name == "api_request":
            self.api_requests += 1
        elif name == "ai_response":
            self.ai_responses += 1
        elif name == "tool_start":
            self.tool_calls += 1
        if event.get("level") == "error":
            self.errors += 1


def summarize_events(events) -> LogSummary:
    summary = LogSummary()
    for event in events:
        summary.add(event)
    return summary
