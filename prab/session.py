"""Conversation handler: owns the message history for one interactive session."""

import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable

from .config import merge_error_patterns
from .context import find_mentioned_files, get_file_tree
from .executor import ToolExecutor
from .provider import ModelProvider, Usage
from .report import SessionRecorder
from .tools import ToolRegistry

# Case-insensitive substrings used to classify provider failures.
DEFAULT_ERROR_PATTERNS: dict[str, list[str]] = {
    "rate_limit": ["rate limit", "rate_limit", "too many requests", "429"],
    "model_unavailable": ["model not found", "not available", "overloaded", "503", "502"],
    "auth_error": ["auth", "api key", "unauthorized", "401"],
    "model_error": [
        "rate limit",
        "rate_limit",
        "quota exceeded",
        "model not found",
        "model is not available",
        "model_not_available",
        "overloaded",
        "capacity",
        "too many requests",
        "429",
        "503",
        "502",
        "service unavailable",
        "timeout",
        "context length",
        "maximum context",
        "token limit",
    ],
}

ERROR_TYPES = ("rate_limit", "model_unavailable", "auth_error")


def classify_error(message: str, patterns: dict[str, list[str]] | None = None) -> str:
    """Map a provider error message to rate_limit, model_unavailable, auth_error or unknown."""
    table = patterns or DEFAULT_ERROR_PATTERNS
    lowered = message.lower()
    for bucket in ERROR_TYPES:
        if any(p.lower() in lowered for p in table.get(bucket, ())):
            return bucket
    return "unknown"


def is_model_error(message: str, patterns: dict[str, list[str]] | None = None) -> bool:
    """True when switching to another model might get past the failure."""
    table = patterns or DEFAULT_ERROR_PATTERNS
    lowered = message.lower()
    return any(p.lower() in lowered for p in table.get("model_error", ()))


@dataclass
class UsageStats:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0

    def add(self, usage: Usage) -> None:
        self.prompt_tokens += usage.input_tokens
        self.completion_tokens += usage.output_tokens
        self.total_tokens += usage.total_tokens


@dataclass
class TurnResult:
    """Outcome of one ``process_user_input`` call. Never raised, always returned."""

    success: bool
    answer: str | None = None
    exhausted: bool = False
    iterations: int = 0
    attached_files: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    is_model_error: bool = False


def mention_note(paths: list[str]) -> str:
    return "(Files in this project that may be relevant: " + ", ".join(paths) + ")"


class ChatSession:
    """Holds the conversation and runs user turns through the agent loop.

    The first message is always the system prompt; ``clear_history`` is the
    only way back to it. Provider failures come back as a failed
    TurnResult with the turn's messages removed.
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        executor: ToolExecutor,
        *,
        system_prompt: str,
        base_dir: str | Path = ".",
        max_iterations: int = 10,
        recorder: SessionRecorder | None = None,
        error_patterns: dict[str, list[str]] | None = None,
        file_tree: Callable[[], list[str]] | None = None,
        on_text: Callable[[str], None] | None = None,
        verbose: bool = True,
    ):
        self.provider = provider
        self.registry = registry
        self.executor = executor
        self.base_dir = Path(base_dir)
        self.max_iterations = max_iterations
        self.recorder = recorder or SessionRecorder.disabled()
        self.error_patterns = merge_error_patterns(DEFAULT_ERROR_PATTERNS, error_patterns)
        self.file_tree = file_tree or (lambda: get_file_tree(self.base_dir))
        self.on_text = on_text
        self.verbose = verbose
        self.usage = UsageStats()
        self.messages: list[dict] = [{"role": "system", "content": system_prompt}]

    # -- turn processing -----------------------------------------------------

    def attach_mentioned_files(self, text: str) -> list[str]:
        return find_mentioned_files(text, self.file_tree())

    def process_user_input(self, text: str) -> TurnResult:
        from .agent import run_agent_loop

        self.recorder.prompt_received(text)
        t0 = time.monotonic()

        attached = self.attach_mentioned_files(text)
        content = text
        if attached:
            self.recorder.context_attached(attached)
            content = f"{text}\n\n{mention_note(attached)}"

        mark = len(self.messages)
        self.messages.append({"role": "user", "content": content})

        try:
            answer, exhausted, iterations = run_agent_loop(
                self.messages,
                self.provider,
                self.registry,
                self.executor,
                max_iterations=self.max_iterations,
                usage=self.usage,
                recorder=self.recorder,
                on_text=self.on_text,
                verbose=self.verbose,
            )
        except KeyboardInterrupt:
            # A half-finished turn may end on unanswered tool calls.
            del self.messages[mark:]
            raise
        except Exception as e:
            # Abandon the whole turn so a retry starts from the same history.
            del self.messages[mark:]
            message = str(e) or type(e).__name__
            error_type = classify_error(message, self.error_patterns)
            elapsed = (time.monotonic() - t0) * 1000
            self.recorder.api_error(message, error_type)
            self.recorder.prompt_failed(message, error_type, elapsed)
            return TurnResult(
                success=False,
                attached_files=attached,
                error=message,
                error_type=error_type,
                is_model_error=is_model_error(message, self.error_patterns),
            )

        self.recorder.prompt_complete(iterations, (time.monotonic() - t0) * 1000, exhausted)
        return TurnResult(
            success=True,
            answer=answer,
            exhausted=exhausted,
            iterations=iterations,
            attached_files=attached,
        )

    # -- session state -------------------------------------------------------

    def clear_history(self) -> int:
        """Drop everything after the system message. Returns how many were removed."""
        dropped = len(self.messages) - 1
        del self.messages[1:]
        return dropped

    def message_count(self) -> int:
        return len(self.messages)

    def usage_stats(self) -> UsageStats:
        return replace(self.usage)

    def update_model_provider(self, provider: ModelProvider) -> None:
        old = self.provider.model_id
        self.provider = provider
        self.recorder.model_switch(old, provider.model_id)

    def switch_model(self, model_id: str) -> None:
        old = self.provider.model_id
        self.provider.set_model(model_id)
        self.recorder.model_switch(old, model_id)
