"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr. Streamed assistant text goes to stdout so the
answer can be piped.
"""

import json
import sys

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def stream_text(delta: str) -> None:
    sys.stdout.write(delta)
    sys.stdout.flush()


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_cancelled(name: str) -> None:
    _console.print(Text(f"  ⊘ {name} cancelled", style="yellow"))


# -- Confirmation ------------------------------------------------------------


def confirmation_panel(tool_name: str, description: str, dangerous: bool) -> None:
    style = "bold red" if dangerous else "yellow"
    title = "Dangerous operation" if dangerous else "Confirm operation"
    body = Text()
    body.append(f"{tool_name}\n", style="bold")
    body.append(description)
    _console.print(Panel(body, title=title, border_style=style, expand=False))


def ask_yes_no(question: str, default: bool = False) -> bool:
    return Confirm.ask(f"  {question}", default=default, console=_console)


def ask_text(question: str) -> str:
    return Prompt.ask(f"  {question}", default="", show_default=False, console=_console)


# -- Todos -------------------------------------------------------------------

_TODO_MARKS = {
    "pending": ("○", "dim"),
    "in_progress": ("◐", "yellow"),
    "completed": ("●", "green"),
}


def todo_list(items: list) -> None:
    if not items:
        _console.print(Text("  No todos.", style="dim"))
        return
    _console.print(Text("  Todos:", style="bold"))
    for item in items:
        mark, style = _TODO_MARKS.get(item.status, ("?", "dim"))
        label = item.active_form if item.status == "in_progress" else item.content
        line = Text()
        line.append(f"    {mark} ", style=style)
        line.append(label, style="strike dim" if item.status == "completed" else style)
        _console.print(line)


# -- Session information -----------------------------------------------------


def usage(stats, model_id: str) -> None:
    table = Table(title="Session usage", title_justify="left", show_header=False)
    table.add_column("key", style="cyan")
    table.add_column("value", justify="right")
    table.add_row("Model", escape(model_id))
    table.add_row("Requests", str(stats.request_count))
    table.add_row("Prompt tokens", f"{stats.prompt_tokens:,}")
    table.add_row("Completion tokens", f"{stats.completion_tokens:,}")
    table.add_row("Total tokens", f"{stats.total_tokens:,}")
    _console.print(table)


def tool_table(tools: list) -> None:
    table = Table(title=f"Tools ({len(tools)})", title_justify="left")
    table.add_column("Name", style="bold")
    table.add_column("Parameters", style="dim")
    table.add_column("Confirm")
    table.add_column("Description")
    for tool in tools:
        table.add_row(
            tool.name,
            ", ".join(tool.param_names()),
            "destructive" if tool.destructive else ("yes" if tool.requires_confirmation else ""),
            escape(tool.description),
        )
    _console.print(table)


def model_table(models: list, current: str) -> None:
    table = Table(title="Models", title_justify="left")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Model")
    table.add_column("Context", justify="right")
    table.add_column("Tools")
    table.add_column("Description", style="dim")
    for i, m in enumerate(models, 1):
        name = f"* {m.id}" if m.id == current else f"  {m.id}"
        table.add_row(
            str(i),
            escape(name),
            m.context_label,
            "yes" if m.supports_tools else "no",
            escape(m.description),
        )
    _console.print(table)


def settings(preferences, temperature: float, max_iterations: int) -> None:
    _console.print(Text("  Settings:", style="bold"))
    _console.print(Text(f"    auto-confirm    {_onoff(preferences.auto_confirm)}"))
    _console.print(Text(f"    safe-mode       {_onoff(preferences.safe_mode)}"))
    _console.print(Text(f"    temperature     {temperature}"))
    _console.print(Text(f"    max iterations  {max_iterations}"))


def _onoff(flag: bool) -> str:
    return "on" if flag else "off"


_LEVEL_STYLES = {"error": "red", "warning": "yellow", "debug": "dim"}


def log_event(event: dict, details: bool = False) -> None:
    line = Text()
    stamp = event.get("timestamp", "")[11:19]
    line.append(f"{stamp} ", style="dim")
    line.append(f"{event.get('event', '?'):<18}", style="cyan")
    line.append(
        str(event.get("message", "")),
        style=_LEVEL_STYLES.get(event.get("level", ""), ""),
    )
    if event.get("duration_ms") is not None:
        line.append(f"  ({event['duration_ms']}ms)", style="dim")
    _console.print(line)
    if details and event.get("data"):
        data = json.dumps(event["data"], default=str, ensure_ascii=False)
        if len(data) > 200:
            data = data[:200] + "..."
        _console.print(Text(f"{'':27}{data}", style="dim"))


def log_summary(summary) -> None:
    rows = [
        ("Prompts", summary.prompts),
        ("API requests", summary.api_requests),
        ("AI responses", summary.ai_responses),
        ("Tool calls", summary.tool_calls),
        ("Errors", summary.errors),
    ]
    body = Text()
    for i, (label, count) in enumerate(rows):
        style = "red" if label == "Errors" and count else ""
        body.append(f"{label:<14}{count:>6}", style=style)
        if i < len(rows) - 1:
            body.append("\n")
    _console.print(Panel(body, title="Session summary", border_style="cyan", expand=False))


def log_list(rows: list) -> None:
    """Table of session logs; rows are (name, started, events, summary)."""
    table = Table(title="Session logs", title_justify="left")
    table.add_column("Log")
    table.add_column("Started", style="dim")
    table.add_column("Events", justify="right")
    table.add_column("Prompts", justify="right")
    table.add_column("Errors", justify="right")
    for name, started, events, summary in rows:
        table.add_row(
            escape(name),
            started,
            str(events),
            str(summary.prompts),
            str(summary.errors),
        )
    _console.print(table)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    _console.print(Text(f"  ✓ {msg}", style="green"))


def context_stats(label: str, count: int) -> None:
    _console.print(Text(f"  {label}: {count}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(model_id: str) -> None:
    _console.print(Text(f"prab ({model_id})", style="bold cyan"))
    _console.print(Text("Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
