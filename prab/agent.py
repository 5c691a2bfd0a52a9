import argparse
import functools
import json
import logging
import os
import sys
import time
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    _UNSET,
    DEFAULT_MODEL,
    Preferences,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
    save_global_config,
)
from .context import build_context_message, get_file_tree, is_git_repo
from .executor import ToolExecutor, format_results_as_messages
from .file_tools import EditFileTool, GlobTool, GrepTool, ReadFileTool, WriteFileTool
from .git_tools import (
    GitAddTool,
    GitBranchTool,
    GitCommitTool,
    GitDiffTool,
    GitLogTool,
    GitPushTool,
    GitStatusTool,
)
from .provider import (
    MODEL_CATALOG,
    LiteLLMProvider,
    ModelProvider,
    fetch_available_models,
    format_context_window,
    group_models_by_owner,
    validate_model_id,
)
from .report import (
    AgentError,
    ConfigError,
    LogSummary,
    SessionRecorder,
    follow_events,
    list_session_logs,
    load_events,
    summarize_events,
)
from .safety import SafetyPolicy
from .session import ChatSession, UsageStats
from .shell import BashTool
from .todo import TodoList, TodoTool
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
ITERATION_LIMIT_WARNING = "Maximum iteration limit reached."


@functools.cache
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def build_system_prompt(registry: ToolRegistry, context_message: str = "") -> str:
    template = SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    prompt = template.replace("{tools}", registry.manifest())
    return prompt.replace("{context}", context_message).rstrip() + "\n"


def build_registry(
    base_dir: Path,
    todos: TodoList,
    *,
    bash_timeout: float,
    bash_max_timeout: float,
    verbose: bool = True,
) -> ToolRegistry:
    return ToolRegistry(
        [
            ReadFileTool(base_dir),
            WriteFileTool(base_dir),
            EditFileTool(base_dir),
            GlobTool(base_dir),
            GrepTool(base_dir),
            BashTool(base_dir, default_timeout=bash_timeout, max_timeout=bash_max_timeout),
            GitStatusTool(base_dir),
            GitAddTool(base_dir),
            GitDiffTool(base_dir),
            GitLogTool(base_dir),
            GitCommitTool(base_dir),
            GitBranchTool(base_dir),
            GitPushTool(base_dir),
            TodoTool(todos, verbose=verbose),
        ]
    )


def run_agent_loop(
    messages: list,
    provider: ModelProvider,
    registry: ToolRegistry,
    executor: ToolExecutor,
    *,
    max_iterations: int,
    usage: UsageStats,
    recorder: SessionRecorder,
    on_text=None,
    verbose: bool = True,
) -> tuple[str | None, bool, int]:
    """Run the tool-calling loop until a final answer or the iteration cap.

    Mutates ``messages`` in place: one assistant message per model response,
    plus one tool message per executed call. Provider errors propagate.
    Returns (final_answer, exhausted, iterations).
    """
    tools = registry.declarations()
    iterations = 0

    while iterations < max_iterations:
        iterations += 1
        recorder.iteration(iterations, max_iterations)
        if verbose:
            fmt.turn_header(iterations, max_iterations, estimate_tokens(messages, tools))

        recorder.api_request(provider.model_id, len(messages), len(tools))
        t0 = time.monotonic()
        parts: list[str] = []
        calls = []
        for chunk in provider.stream_chat(messages, tools):
            if chunk.content:
                parts.append(chunk.content)
                if on_text is not None:
                    on_text(chunk.content)
            if chunk.tool_calls:
                calls = chunk.tool_calls
            if chunk.usage is not None:
                usage.add(chunk.usage)
        usage.request_count += 1
        text = "".join(parts)
        if text and on_text is not None:
            on_text("\n")
        recorder.api_response((time.monotonic() - t0) * 1000, bool(calls), len(text))

        if not calls:
            messages.append({"role": "assistant", "content": text})
            recorder.ai_response(text)
            return text, False, iterations

        recorder.ai_tool_decision(calls)
        messages.append(
            {
                "role": "assistant",
                "content": text,
                "tool_calls": [c.to_openai() for c in calls],
            }
        )
        results = executor.execute_multiple(calls)
        messages.extend(format_results_as_messages(calls, results))

    recorder.warning(ITERATION_LIMIT_WARNING, {"iterations": iterations})
    if verbose:
        fmt.warning(ITERATION_LIMIT_WARNING)
    return None, True, iterations


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="prab",
        usage="%(prog)s [options] [question]",
        description="A terminal coding assistant backed by Groq-hosted models, with file, shell and git tools.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer a single question and exit. Without it, start an interactive session.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session, sending the question first if one is given.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help=f"Model id (default: {DEFAULT_MODEL}).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="Groq API key (default: $GROQ_API_KEY).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Project directory the tools operate on (default: current directory).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model calls per question (default: 10).",
    )
    parser.add_argument(
        "--auto-confirm",
        action="store_true",
        default=_UNSET,
        help="Skip routine confirmations. Catastrophic operations still ask. Needs --no-safe-mode.",
    )
    safe = parser.add_mutually_exclusive_group()
    safe.add_argument(
        "--safe-mode",
        dest="safe_mode",
        action="store_true",
        help="Always confirm destructive tools (default).",
    )
    safe.add_argument(
        "--no-safe-mode",
        dest="safe_mode",
        action="store_false",
        help="Only confirm tools that ask for it.",
    )
    parser.set_defaults(safe_mode=_UNSET)
    color = parser.add_mutually_exclusive_group()
    color.add_argument("--color", action="store_true", default=_UNSET, help="Force colored output.")
    color.add_argument("--no-color", action="store_true", default=_UNSET, help="Disable colored output.")
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only the answer is printed.",
    )
    parser.add_argument(
        "--no-session-log",
        action="store_true",
        default=_UNSET,
        help="Do not write a JSONL session log.",
    )
    parser.add_argument(
        "--show-log",
        nargs="?",
        const="latest",
        default=None,
        metavar="FILE",
        help="Print a recorded session log (the latest one when FILE is omitted) and exit.",
    )
    parser.add_argument(
        "--list-logs",
        action="store_true",
        help="List recorded session logs, newest first, and exit.",
    )
    parser.add_argument(
        "--follow",
        action="store_true",
        help="With --show-log, keep printing events as the session writes them (Ctrl-C stops).",
    )
    parser.add_argument(
        "--log-details",
        action="store_true",
        help="With --show-log, also print each event's data.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (prab.toml) variant.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("prab-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    try:
        config = load_config(args.base_dir)
        apply_config_to_args(args, config)
        fmt.init(color=args.color, no_color=args.no_color)
        args.verbose = not args.quiet
        args.config_dir = config["config_dir"]

        log_dir = args.config_dir / "logs"
        if args.list_logs:
            sys.exit(list_logs(log_dir))
        if args.show_log is not None:
            sys.exit(
                show_log(args.show_log, log_dir, follow=args.follow, details=args.log_details)
            )

        sys.exit(_run_main(args))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def show_log(which: str, log_dir: Path, *, follow: bool = False, details: bool = False) -> int:
    if which == "latest":
        logs = list_session_logs(log_dir)
        if not logs:
            fmt.info(f"no session logs in {log_dir}")
            return 1
        path = logs[-1]
    else:
        path = Path(which)
    if not path.is_file():
        raise AgentError(f"no such log file: {path}")
    fmt.info(str(path))
    summary = LogSummary()
    if follow:
        fmt.info("following, press Ctrl-C to stop")
        events = follow_events(path)
    else:
        events = load_events(path)
    try:
        for event in events:
            fmt.log_event(event, details=details)
            summary.add(event)
    except KeyboardInterrupt:
        print(file=sys.stderr)  # newline after ^C
    fmt.log_summary(summary)
    return 0


def list_logs(log_dir: Path) -> int:
    logs = list_session_logs(log_dir)
    if not logs:
        fmt.info(f"no session logs in {log_dir}")
        return 1
    rows = []
    for path in reversed(logs):
        events = load_events(path)
        started = events[0].get("timestamp", "")[:19].replace("T", " ") if events else ""
        rows.append((path.name, started, len(events), summarize_events(events)))
    fmt.log_list(rows)
    return 0


def _run_main(args) -> int:
    base_dir = Path(args.base_dir).resolve()
    if not base_dir.is_dir():
        raise ConfigError(f"base directory does not exist: {args.base_dir}")
    interactive = args.repl or args.question is None

    api_key = resolve_api_key(args.api_key)
    if not api_key and interactive:
        api_key = _ask_api_key()
        if api_key:
            _save_settings(args.config_dir, {"api_key": api_key})
    if not api_key:
        raise ConfigError("no API key: set GROQ_API_KEY or pass --api-key")

    if args.auto_confirm and args.safe_mode and args.verbose:
        fmt.info("auto-confirm has no effect while safe mode is on (use --no-safe-mode)")

    preferences = Preferences(auto_confirm=args.auto_confirm, safe_mode=args.safe_mode)
    recorder = SessionRecorder(args.config_dir / "logs", enabled=not args.no_session_log)

    provider = LiteLLMProvider(temperature=args.temperature, max_tokens=args.max_tokens)
    provider.initialize(api_key, args.model)
    valid, _, suggestion = validate_model_id(provider.model_id)
    if not valid and args.verbose:
        hint = f" (did you mean {suggestion}?)" if suggestion else ""
        fmt.warning(f"{provider.model_id} is not in the known model list{hint}")

    todos = TodoList(base_dir)
    registry = build_registry(
        base_dir,
        todos,
        bash_timeout=args.bash_timeout,
        bash_max_timeout=args.bash_max_timeout,
        verbose=args.verbose,
    )
    executor = ToolExecutor(
        registry, SafetyPolicy(preferences), recorder=recorder, verbose=args.verbose
    )
    files = get_file_tree(base_dir)
    session = ChatSession(
        provider,
        registry,
        executor,
        system_prompt=build_system_prompt(registry, build_context_message(base_dir, files)),
        base_dir=base_dir,
        max_iterations=args.max_iterations,
        recorder=recorder,
        error_patterns=args.error_patterns,
        on_text=fmt.stream_text,
        verbose=args.verbose,
    )

    with recorder:
        recorder.session_start(str(base_dir), provider.model_id)
        recorder.model_init(provider.model_id, True)
        if args.verbose:
            fmt.model_info(f"Model: {provider.model_id}, {registry.count()} tools")
            if recorder.path is not None:
                fmt.model_info(f"Session log: {recorder.path}")

        if not interactive:
            result = run_turn(session, args.question, interactive=False)
            if not result.success:
                return 1
            return 2 if result.exhausted else 0

        repl_loop(
            session,
            preferences=preferences,
            todos=todos,
            api_key=api_key,
            initial=args.question,
            verbose=args.verbose,
            config_dir=args.config_dir,
        )
    return 0


# -- turns and model-error recovery ------------------------------------------


def run_turn(
    session: ChatSession, text: str, *, interactive: bool = True, config_dir: Path | None = None
):
    """Process one input, offering a model switch and retry after model errors."""
    while True:
        result = session.process_user_input(text)
        if result.success:
            if result.attached_files and session.verbose:
                fmt.context_stats("Referenced files", len(result.attached_files))
            return result

        fmt.error(f"{result.error} [{result.error_type}]")
        if not (interactive and result.is_model_error):
            return result
        if not fmt.ask_yes_no("Switch to a different model?", default=True):
            return result
        if not _choose_model(session, config_dir):
            return result
        if not fmt.ask_yes_no("Retry your last message?", default=True):
            return result


def _choose_model(session: ChatSession, config_dir: Path | None = None) -> bool:
    models = list(MODEL_CATALOG.values())
    current = session.provider.model_id
    fmt.model_table(models, current)
    choice = fmt.ask_text("Model number or id (empty to cancel)").strip()
    if not choice:
        return False
    if choice.isdigit() and 1 <= int(choice) <= len(models):
        model_id = models[int(choice) - 1].id
    else:
        model_id = choice
    if model_id == current:
        fmt.info(f"already using {model_id}")
        return False
    session.switch_model(model_id)
    fmt.success(f"Switched to {model_id}")
    _save_settings(config_dir, {"model": model_id}, session.recorder)
    return True


def _save_settings(
    config_dir: Path | None, updates: dict, recorder: SessionRecorder | None = None
) -> None:
    """Write runtime changes back to the global config. No-op without a config dir."""
    if config_dir is None:
        return
    try:
        path = save_global_config(updates, config_dir)
    except (AgentError, OSError) as e:
        fmt.warning(f"could not save settings: {e}")
        if recorder is not None:
            recorder.error(f"could not save settings: {e}", {"keys": sorted(updates)})
        return
    fmt.info(f"saved to {path}")


# -- REPL commands -----------------------------------------------------------


def _ask_api_key() -> str | None:
    from prompt_toolkit import prompt

    try:
        key = prompt("Groq API key: ", is_password=True).strip()
    except (EOFError, KeyboardInterrupt):
        return None
    return key or None


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                      Show this help message\n"
        "  /model [id]                Show or switch the model\n"
        "  /models                    List models available to your API key\n"
        "  /usage                     Token and request counts for this session\n"
        "  /tools                     List the tools the model can call\n"
        "  /todos                     Show the todo list\n"
        "  /clear-todos               Remove all todos\n"
        "  /context                   Show the project context\n"
        "  /clear                     Reset the conversation to the system prompt\n"
        "  /forget                    Forget remembered confirmations\n"
        "  /settings [name on|off]    Show or change auto-confirm / safe-mode\n"
        "  /api-key                   Enter a new API key\n"
        "  /exit, /quit               Exit"
    )


def _repl_model(session: ChatSession, arg: str, config_dir: Path | None = None) -> None:
    arg = arg.strip()
    if not arg:
        _choose_model(session, config_dir)
        return
    valid, error, suggestion = validate_model_id(arg)
    if not valid:
        hint = f" Did you mean {suggestion}?" if suggestion else ""
        fmt.warning(f"{error}.{hint} Switching anyway.")
    if arg == session.provider.model_id:
        fmt.info(f"already using {arg}")
        return
    session.switch_model(arg)
    fmt.success(f"Switched to {arg}")
    _save_settings(config_dir, {"model": arg}, session.recorder)


def _repl_models(api_key: str) -> None:
    try:
        models = fetch_available_models(api_key)
    except AgentError as e:
        fmt.warning(str(e))
        return
    for owner, group in group_models_by_owner(models).items():
        fmt.info(f"{owner}:")
        for m in group:
            ctx = format_context_window(m.context_window) if m.context_window else "?"
            fmt.info(f"  {m.id}  ({ctx} context)")


def _repl_context(session: ChatSession) -> None:
    files = session.file_tree()
    fmt.info(f"Working directory: {session.base_dir}")
    fmt.info(f"Git repository: {'yes' if is_git_repo(session.base_dir) else 'no'}")
    fmt.context_stats("Project files", len(files))
    fmt.context_stats("Messages in conversation", session.message_count())


def _repl_clear(session: ChatSession) -> None:
    dropped = session.clear_history()
    fmt.info(f"context cleared ({dropped} messages removed)")


_SETTING_NAMES = {"auto-confirm": "auto_confirm", "safe-mode": "safe_mode"}


def _repl_settings(
    arg: str, preferences: Preferences, session: ChatSession, config_dir: Path | None = None
) -> None:
    parts = arg.split()
    if not parts:
        temperature = getattr(session.provider, "temperature", None)
        fmt.settings(preferences, temperature, session.max_iterations)
        return
    if len(parts) != 2 or parts[0] not in _SETTING_NAMES or parts[1] not in ("on", "off"):
        fmt.warning("usage: /settings [auto-confirm|safe-mode on|off]")
        return
    name = _SETTING_NAMES[parts[0]]
    setattr(preferences, name, parts[1] == "on")
    fmt.success(f"{parts[0]} {parts[1]}")
    _save_settings(config_dir, {name: parts[1] == "on"}, session.recorder)
    if preferences.auto_confirm and preferences.safe_mode:
        fmt.info("auto-confirm only applies while safe-mode is off")


def _repl_api_key(session: ChatSession, config_dir: Path | None = None) -> str | None:
    key = _ask_api_key()
    if not key:
        fmt.warning("API key unchanged")
        return None
    session.provider.initialize(key, session.provider.model_id)
    session.recorder.model_init(session.provider.model_id, True)
    fmt.success("API key updated")
    _save_settings(config_dir, {"api_key": key}, session.recorder)
    return key


def repl_loop(
    session: ChatSession,
    *,
    preferences: Preferences,
    todos: TodoList,
    api_key: str,
    initial: str | None = None,
    verbose: bool = True,
    config_dir: Path | None = None,
) -> None:
    """Interactive read-eval-print loop.

    With ``config_dir`` set, model, API key and /settings changes are saved
    to the global config so the next session starts with them.
    """
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(session.base_dir, ".prab", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "prab> ")])

    if verbose:
        fmt.repl_banner(session.provider.model_id)
        if todos.items:
            fmt.todo_list(todos.items)

    pending = initial
    while True:
        if pending is not None:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = prompt_session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)  # newline after ^D / ^C
                break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/model":
            _repl_model(session, cmd_arg, config_dir)
        elif cmd == "/models":
            _repl_models(api_key)
        elif cmd == "/usage":
            fmt.usage(session.usage_stats(), session.provider.model_id)
        elif cmd == "/tools":
            fmt.tool_table(session.registry.get_all())
        elif cmd == "/todos":
            fmt.todo_list(todos.items)
        elif cmd == "/clear-todos":
            fmt.success(f"Todos cleared ({todos.clear()} removed)")
        elif cmd == "/context":
            _repl_context(session)
        elif cmd == "/clear":
            _repl_clear(session)
        elif cmd == "/forget":
            n = session.executor.clear_session_overrides()
            fmt.info(f"forgot {n} remembered confirmation(s)")
        elif cmd == "/settings":
            _repl_settings(cmd_arg, preferences, session, config_dir)
        elif cmd == "/api-key":
            api_key = _repl_api_key(session, config_dir) or api_key
        elif cmd.startswith("/") and cmd[1:].replace("-", "").isalpha():
            fmt.warning(f"unknown command {cmd}, type /help")
        else:
            try:
                result = run_turn(session, line, config_dir=config_dir)
            except KeyboardInterrupt:
                fmt.warning("interrupted, question aborted.")
                continue
            if result.exhausted and verbose:
                fmt.info("use a follow-up message to let the assistant continue")


if __name__ == "__main__":
    main()
