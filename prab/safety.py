"""Confirmation policy for tool calls.

``should_confirm`` is a three-branch decision table evaluated in order:

1. auto-confirm with safe mode off: ask only for catastrophic operations;
2. safe mode on: ask for every destructive tool;
3. otherwise: ask when the tool requires confirmation.
"""

import json
import re
from dataclasses import dataclass
from typing import Callable

from . import fmt
from .config import Preferences
from .shell import recursive_delete_targets
from .tools import Tool

# Shell commands that always need a human, even under auto-confirm. Every
# recursive rm is also in this class, whatever its target.
CATASTROPHIC_COMMANDS = [
    re.compile(r"\brm\s+.*\s/\*"),
    re.compile(r">\s*/dev/(?!null\b|stdout\b|stderr\b|tty\b)"),
    re.compile(r"\bdd\s+if="),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r"\bformat\s+[a-z]:", re.IGNORECASE),
]


@dataclass
class Confirmation:
    confirmed: bool
    remember: bool = False


def _default_prompt(tool: Tool, description: str, dangerous: bool) -> Confirmation:
    fmt.confirmation_panel(tool.name, description, dangerous)
    if not fmt.ask_yes_no("Proceed?", default=False):
        return Confirmation(False)
    remember = fmt.ask_yes_no("Remember this choice for the session?", default=False)
    return Confirmation(True, remember)


def is_extremely_dangerous(tool_name: str, args: dict) -> bool:
    if tool_name == "git_push":
        return bool(args.get("force"))
    if tool_name == "git_branch":
        return args.get("action") == "delete"
    if tool_name == "bash":
        command = str(args.get("command", ""))
        if recursive_delete_targets(command) is not None:
            return True
        return any(p.search(command) for p in CATASTROPHIC_COMMANDS)
    return False


def describe_operation(tool_name: str, args: dict) -> str:
    """One-line human description of a concrete call."""
    if tool_name == "write_file":
        return f"Write to file: {args.get('file_path')}"
    if tool_name == "edit_file":
        search = str(args.get("search", ""))[:50]
        return f'Edit file: {args.get("file_path")} (replace "{search}...")'
    if tool_name == "bash":
        return f"Execute command: {args.get('command')}"
    if tool_name == "git_commit":
        files = args.get("files") or []
        return f'Create git commit ({len(files)} files): "{args.get("message")}"'
    if tool_name == "git_push":
        force = " (FORCE)" if args.get("force") else ""
        return f"Push to remote{force}: {args.get('branch') or 'current branch'}"
    if tool_name == "git_branch":
        return f"{args.get('action')} branch: {args.get('name') or 'N/A'}"
    return json.dumps(args, indent=2, default=str)


class SafetyPolicy:
    """Decides when a human must approve a tool call and asks them.

    ``preferences`` is read on every decision, so toggling it at runtime
    takes effect for the next call. ``prompt`` can be replaced for tests or
    non-interactive front ends.
    """

    def __init__(
        self,
        preferences: Preferences,
        prompt: Callable[[Tool, str, bool], Confirmation] | None = None,
    ):
        self.preferences = preferences
        self.prompt = prompt or _default_prompt

    def should_confirm(self, tool: Tool, args: dict) -> bool:
        prefs = self.preferences
        if prefs.auto_confirm and not prefs.safe_mode:
            return is_extremely_dangerous(tool.name, args)
        if prefs.safe_mode and tool.destructive:
            return True
        return tool.requires_confirmation

    def is_extremely_dangerous(self, tool: Tool, args: dict) -> bool:
        return is_extremely_dangerous(tool.name, args)

    def describe(self, tool: Tool, args: dict) -> str:
        return describe_operation(tool.name, args)

    def request_confirmation(self, tool: Tool, args: dict) -> Confirmation:
        dangerous = self.is_extremely_dangerous(tool, args)
        result = self.prompt(tool, self.describe(tool, args), dangerous)
        if not result.confirmed:
            return Confirmation(False, False)
        return result
