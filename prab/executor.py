"""Tool executor: confirmation gating, session memory and result mapping."""

import json
import logging
import time

from pydantic import ValidationError

from . import fmt
from .report import SessionRecorder
from .safety import SafetyPolicy
from .tools import ToolCall, ToolRegistry, ToolResult, validation_message

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Operation cancelled by user"
MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 300


def canonical_args(args: dict) -> str:
    """Deterministic JSON for an argument map: sorted keys, no whitespace."""
    return json.dumps(args, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def confirmation_key(name: str, args: dict) -> str:
    return f"{name}:{canonical_args(args)}"


class ToolExecutor:
    """Runs tool calls through the safety policy.

    Confirmations the user asked to remember are kept in ``remembered`` for
    the life of the executor, keyed by ``confirmation_key``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: SafetyPolicy,
        *,
        recorder: SessionRecorder | None = None,
        verbose: bool = True,
    ):
        self.registry = registry
        self.policy = policy
        self.recorder = recorder or SessionRecorder.disabled()
        self.verbose = verbose
        self.remembered: set[str] = set()

    def clear_session_overrides(self) -> int:
        n = len(self.remembered)
        self.remembered.clear()
        return n

    def _announce(self, call: ToolCall) -> None:
        if not self.verbose:
            return
        pretty = json.dumps(call.args, indent=2, ensure_ascii=False, default=str)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(call.name, pretty)

    def execute_single(self, call: ToolCall) -> ToolResult:
        tool = self.registry.get(call.name)
        if tool is None:
            known = ", ".join(self.registry.names())
            result = ToolResult.fail(f"Tool '{call.name}' not found. Available tools: {known}")
            self.recorder.tool_error(call.name, result.error)
            if self.verbose:
                fmt.tool_error(call.name, result.error)
            return result

        self._announce(call)
        self.recorder.tool_start(call.name, call.args)
        t0 = time.monotonic()
        try:
            try:
                params = tool.validate(call.args)
            except ValidationError as e:
                result = ToolResult.fail(validation_message(call.name, e))
            else:
                result = self._confirm_and_run(tool, call, params)
        except Exception as e:
            logger.exception("tool %s raised", call.name)
            result = ToolResult.fail(str(e) or f"{type(e).__name__} raised in {call.name}")
        elapsed = time.monotonic() - t0

        if result.error == CANCELLED_MESSAGE:
            return result
        if result.success:
            self.recorder.tool_success(call.name, result.output, elapsed * 1000)
            if self.verbose:
                fmt.tool_result(call.name, elapsed, result.output[:MAX_RESULT_PREVIEW])
        else:
            self.recorder.tool_error(call.name, result.error, elapsed * 1000)
            if self.verbose:
                fmt.tool_error(call.name, result.error)
        return result

    def _confirm_and_run(self, tool, call: ToolCall, params) -> ToolResult:
        if self.policy.should_confirm(tool, call.args):
            key = confirmation_key(call.name, call.args)
            if key not in self.remembered:
                answer = self.policy.request_confirmation(tool, call.args)
                if not answer.confirmed:
                    self.recorder.tool_cancelled(call.name)
                    if self.verbose:
                        fmt.tool_cancelled(call.name)
                    return ToolResult.fail(CANCELLED_MESSAGE)
                if answer.remember:
                    self.remembered.add(key)
        return tool.execute(params)

    def execute_multiple(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Run calls in order. A failure never stops the rest of the batch."""
        return [self.execute_single(call) for call in calls]


def format_results_as_messages(calls: list[ToolCall], results: list[ToolResult]) -> list[dict]:
    """One tool-role message per call, in call order."""
    if len(calls) != len(results):
        raise ValueError(f"{len(calls)} calls but {len(results)} results")
    return [
        {
            "role": "tool",
            "tool_call_id": call.id,
            "name": call.name,
            "content": result.as_content(),
        }
        for call, result in zip(calls, results)
    ]
