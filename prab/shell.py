"""The bash tool: run a shell command with a timeout and a deny list."""

import os
import re
import shlex
import signal
import subprocess
import sys
import threading
from pathlib import Path

from pydantic import BaseModel, Field

from .config import DEFAULT_BASH_MAX_TIMEOUT, DEFAULT_BASH_TIMEOUT
from .tools import Tool, ToolResult

MAX_CAPTURE_BYTES = 1024 * 1024  # 1 MB per stream
MAX_INLINE_OUTPUT = 30 * 1024  # 30 KB returned to the model
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

# Commands rejected before any process is spawned.
BLOCKED_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bmkfs(\.\w+)?\b"), "filesystem format"),
    (re.compile(r"\bdd\s+if="), "raw disk write"),
    (re.compile(r">\s*/dev/(sd|hd|nvme|disk)"), "write to a block device"),
    (re.compile(r"\bchmod\s+-R\s+777\b"), "recursive world-writable chmod"),
    (re.compile(r"\bchown\s+-R\b"), "recursive chown"),
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bomb"),
]


_COMMAND_SEPARATORS = re.compile(r"\|\||&&|[;&|\n]")


def _words(segment: str) -> list[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        return segment.split()


def recursive_delete_targets(command: str) -> list[str] | None:
    """Return the operands of the recursive ``rm`` calls in ``command``.

    Short flags (``-rf``, ``-f -R``) and ``--recursive`` are recognised in
    any position, and quotes are removed from operands. Returns None when
    no ``rm`` in the command is recursive.
    """
    found = None
    for segment in _COMMAND_SEPARATORS.split(command):
        words = _words(segment)
        # Any word naming rm counts, so sudo, xargs and /bin/rm are covered.
        starts = [i for i, w in enumerate(words) if os.path.basename(w) == "rm"]
        if not starts:
            continue
        recursive = False
        operands = []
        end_of_options = False
        for word in words[starts[0] + 1 :]:
            if end_of_options or not word.startswith("-") or word == "-":
                operands.append(word)
            elif word == "--":
                end_of_options = True
            elif word == "--recursive":
                recursive = True
            elif not word.startswith("--") and ("r" in word or "R" in word):
                recursive = True
        if recursive:
            found = (found or []) + operands
    return found


def is_root_path(path: str) -> bool:
    """True for ``/``, ``//`` and ``/*`` style spellings of the filesystem root."""
    return path.startswith("/") and path.rstrip("/*") == ""


def blocked_reason(command: str) -> str | None:
    """Return why ``command`` is refused, or None when it may run."""
    targets = recursive_delete_targets(command) or []
    if any(is_root_path(t) for t in targets):
        return "recursive delete of the filesystem root"
    for pattern, reason in BLOCKED_PATTERNS:
        if pattern.search(command):
            return reason
    return None


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the command runs in its own session so the whole group can be
    signalled. On Windows, taskkill /T handles the tree.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable, give up


class _StreamReader(threading.Thread):
    """Drain one pipe into memory, keeping at most MAX_CAPTURE_BYTES."""

    def __init__(self, stream):
        super().__init__(daemon=True)
        self.stream = stream
        self.chunks: list[bytes] = []
        self.size = 0
        self.truncated = False

    def run(self):
        try:
            while True:
                chunk = self.stream.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining to avoid pipe backpressure
                kept = chunk[: MAX_CAPTURE_BYTES - self.size]
                self.chunks.append(kept)
                self.size += len(kept)
                if self.size >= MAX_CAPTURE_BYTES:
                    self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def text(self) -> str:
        out = b"".join(self.chunks).decode("utf-8", errors="replace")
        if self.truncated:
            out += "\n[output truncated at 1MB]"
        return out


def run_shell(command: str, cwd: Path, timeout_s: float) -> tuple[str, str, int | None, bool]:
    """Run ``command`` through the platform shell.

    Returns (stdout, stderr, exit_code, timed_out). exit_code is None when
    the process was killed for exceeding the timeout.
    """
    if sys.platform == "win32":
        argv = ["cmd.exe", "/c", command]
    else:
        argv = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    proc = subprocess.Popen(argv, **popen_kwargs)

    readers = [_StreamReader(proc.stdout), _StreamReader(proc.stderr)]
    for r in readers:
        r.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    for r in readers:
        r.join(timeout=2)
    proc.stdout.close()
    proc.stderr.close()

    exit_code = None if timed_out else proc.returncode
    return readers[0].text(), readers[1].text(), exit_code, timed_out


def _clip(text: str) -> str:
    if len(text) <= MAX_INLINE_OUTPUT:
        return text
    dropped = len(text) - MAX_INLINE_OUTPUT
    return text[:MAX_INLINE_OUTPUT] + f"\n[... {dropped} more characters not shown]"


class BashParams(BaseModel):
    command: str = Field(description="The shell command to execute")
    description: str | None = Field(
        default=None, description="Short description of what the command does"
    )
    timeout: int | None = Field(
        default=None, description="Timeout in milliseconds (default 120000, max 600000)"
    )


class BashTool(Tool):
    name = "bash"
    description = (
        "Execute a shell command in the working directory. "
        "Use for running tests, builds, package managers and other CLI tools."
    )
    Params = BashParams
    requires_confirmation = True
    destructive = True

    def __init__(
        self,
        base_dir: str | Path = ".",
        *,
        default_timeout: float = DEFAULT_BASH_TIMEOUT,
        max_timeout: float = DEFAULT_BASH_MAX_TIMEOUT,
    ):
        self.base_dir = Path(base_dir).resolve()
        self.default_timeout_ms = int(default_timeout * 1000)
        self.max_timeout_ms = int(max_timeout * 1000)

    def effective_timeout_ms(self, requested: int | None) -> int:
        # Out-of-range requests fall back to the default rather than the ceiling.
        if requested is None or requested <= 0 or requested > self.max_timeout_ms:
            return self.default_timeout_ms
        return requested

    def execute(self, params: BashParams) -> ToolResult:
        command = params.command.strip()
        if not command:
            return ToolResult.fail("Command is empty")

        reason = blocked_reason(command)
        if reason is not None:
            return ToolResult.fail(
                f"Command blocked for safety ({reason}): {command}",
                command=command,
                blocked=True,
            )

        timeout_ms = self.effective_timeout_ms(params.timeout)
        try:
            stdout, stderr, exit_code, timed_out = run_shell(
                command, self.base_dir, timeout_ms / 1000
            )
        except OSError as e:
            return ToolResult.fail(f"Failed to start command: {e}", command=command)

        meta = {"command": command, "exit_code": exit_code, "timeout_ms": timeout_ms}
        if timed_out:
            return ToolResult.fail(f"Command timed out after {timeout_ms}ms: {command}", **meta)

        combined = stdout.rstrip("\n")
        if stderr.strip():
            combined += f"\n[stderr]\n{stderr.rstrip()}"
        combined = _clip(combined) or "(no output)"

        if exit_code != 0:
            return ToolResult.fail(
                f"Command failed: {command}\nExit code: {exit_code}\nOutput:\n{combined}",
                **meta,
            )
        return ToolResult.ok(f"Command executed: {command}\n\nOutput:\n{combined}", **meta)
