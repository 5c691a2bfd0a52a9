"""Tests for the CLI: argument parsing, main(), run_turn and repl_loop."""

import sys
import tomllib
from unittest.mock import MagicMock, patch

import pytest

from prab import agent, fmt
from prab.agent import _repl_help, build_parser, main, repl_loop, run_turn
from prab.config import _UNSET, Preferences
from prab.provider import LiteLLMProvider, StreamChunk
from prab.report import ProviderError, SessionRecorder, load_events
from prab.todo import TodoItem, TodoList
from prab.tools import ToolCall

from .test_session import _session
from .test_agent_loop import _calls, _text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _prompt_session(*lines):
    """A PromptSession stand-in that returns ``lines`` then raises EOFError."""
    mock = MagicMock()
    mock.prompt.side_effect = [*lines, EOFError]
    return mock


def _repl(session, tmp_path, *lines, preferences=None, todos=None, config_dir=None):
    session.base_dir = tmp_path
    with patch("prompt_toolkit.PromptSession", return_value=_prompt_session(*lines)):
        repl_loop(
            session,
            preferences=preferences or Preferences(),
            todos=todos or TodoList(tmp_path),
            api_key="k",
            verbose=False,
            config_dir=config_dir,
        )


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("GROQ_API_KEY", "gsk_test")
    monkeypatch.setattr("prab.agent.build_context_message", lambda base, files=None: "ctx")
    project = tmp_path / "proj"
    project.mkdir()
    return project


def _main(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["prab", *argv])
    with pytest.raises(SystemExit) as exc:
        main()
    return exc.value.code


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParser:
    def test_defaults_are_unset(self):
        args = build_parser().parse_args([])
        assert args.question is None
        assert args.model is _UNSET
        assert args.safe_mode is _UNSET
        assert args.max_iterations is _UNSET
        assert args.show_log is None

    def test_flags(self):
        args = build_parser().parse_args(
            ["--model", "qwen/qwen3-32b", "--no-safe-mode", "--auto-confirm", "-q", "fix it"]
        )
        assert args.model == "qwen/qwen3-32b"
        assert args.safe_mode is False
        assert args.auto_confirm is True
        assert args.quiet is True
        assert args.question == "fix it"

    def test_show_log_default_latest(self):
        assert build_parser().parse_args(["--show-log"]).show_log == "latest"

    def test_log_flags(self):
        args = build_parser().parse_args(["--show-log", "--follow", "--log-details"])
        assert args.follow and args.log_details
        assert not args.list_logs
        assert build_parser().parse_args(["--list-logs"]).list_logs

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    def test_init_config(self, monkeypatch, capsys):
        assert _main(monkeypatch, "--init-config", "--project") == 0
        assert "prab.toml" in capsys.readouterr().out

    def test_one_shot_answer_on_stdout(self, cli_env, monkeypatch, capsys):
        def fake_stream(self, messages, tools):
            assert messages[0]["role"] == "system"
            assert messages[-1] == {"role": "user", "content": "what is 2+2?"}
            yield StreamChunk(content="4")

        monkeypatch.setattr(LiteLLMProvider, "stream_chat", fake_stream)
        code = _main(monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "-q", "what is 2+2?")
        assert code == 0
        assert capsys.readouterr().out == "4\n"

    def test_one_shot_exhausted_exits_2(self, cli_env, monkeypatch):
        def fake_stream(self, messages, tools):
            yield StreamChunk(tool_calls=[ToolCall("c1", "glob", {"pattern": "*.py"})])

        monkeypatch.setattr(LiteLLMProvider, "stream_chat", fake_stream)
        code = _main(
            monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "-q",
            "--max-iterations", "2", "loop",
        )
        assert code == 2

    def test_one_shot_provider_failure_exits_1(self, cli_env, monkeypatch, capsys):
        def fake_stream(self, messages, tools):
            raise ProviderError("AuthenticationError: 401 Unauthorized")
            yield

        monkeypatch.setattr(LiteLLMProvider, "stream_chat", fake_stream)
        code = _main(monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "-q", "hi")
        assert code == 1
        assert "auth_error" in capsys.readouterr().err

    def test_missing_api_key(self, cli_env, monkeypatch, capsys):
        monkeypatch.delenv("GROQ_API_KEY")
        code = _main(monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "hi")
        assert code == 1
        assert "no API key" in capsys.readouterr().err

    def test_bad_base_dir(self, cli_env, monkeypatch, capsys):
        code = _main(monkeypatch, "--base-dir", str(cli_env / "nope"), "hi")
        assert code == 1
        assert "base directory does not exist" in capsys.readouterr().err

    def test_session_log_written_and_shown(self, cli_env, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr(
            LiteLLMProvider, "stream_chat", lambda self, m, t: iter([StreamChunk(content="ok")])
        )
        assert _main(monkeypatch, "--base-dir", str(cli_env), "-q", "hi") == 0
        logs = list((tmp_path / "xdg" / "prab" / "logs").glob("session-*.jsonl"))
        assert len(logs) == 1
        capsys.readouterr()

        assert _main(monkeypatch, "--base-dir", str(cli_env), "--show-log") == 0
        err = capsys.readouterr().err
        assert "session_start" in err
        assert "prompt_complete" in err
        assert "Session summary" in err
        assert "Prompts            1" in err
        assert "API requests       1" in err
        assert "Errors             0" in err

    def _record_session(self, cli_env, monkeypatch, capsys):
        monkeypatch.setattr(
            LiteLLMProvider, "stream_chat", lambda self, m, t: iter([StreamChunk(content="ok")])
        )
        assert _main(monkeypatch, "--base-dir", str(cli_env), "-q", "hi") == 0
        capsys.readouterr()

    def test_list_logs(self, cli_env, monkeypatch, capsys):
        assert _main(monkeypatch, "--base-dir", str(cli_env), "--list-logs") == 1
        assert "no session logs" in capsys.readouterr().err

        self._record_session(cli_env, monkeypatch, capsys)
        assert _main(monkeypatch, "--base-dir", str(cli_env), "--list-logs") == 0
        err = capsys.readouterr().err
        assert "Session logs" in err
        assert "session-" in err

    def test_show_log_details(self, cli_env, monkeypatch, capsys):
        self._record_session(cli_env, monkeypatch, capsys)
        assert _main(monkeypatch, "--base-dir", str(cli_env), "--show-log", "--log-details") == 0
        assert '"model": "openai/gpt-oss-20b"' in capsys.readouterr().err

    def test_show_log_follow_stops_on_ctrl_c(self, cli_env, monkeypatch, capsys):
        self._record_session(cli_env, monkeypatch, capsys)

        def interrupt(seconds):
            raise KeyboardInterrupt

        monkeypatch.setattr("prab.report.time.sleep", interrupt)
        assert _main(monkeypatch, "--base-dir", str(cli_env), "--show-log", "--follow") == 0
        err = capsys.readouterr().err
        assert "prompt_complete" in err
        assert "Session summary" in err

    def test_prompted_api_key_is_saved(self, cli_env, monkeypatch, tmp_path):
        monkeypatch.delenv("GROQ_API_KEY")
        monkeypatch.setattr(agent, "_ask_api_key", lambda: "gsk_typed")
        with patch("prompt_toolkit.PromptSession", return_value=_prompt_session()):
            assert _main(monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "-q") == 0
        config_file = tmp_path / "xdg" / "prab" / "config.toml"
        assert tomllib.loads(config_file.read_text())["api_key"] == "gsk_typed"

        # The next run finds the key without asking.
        def no_prompt():
            raise AssertionError("asked for a key")

        monkeypatch.setattr(agent, "_ask_api_key", no_prompt)
        monkeypatch.setattr(
            LiteLLMProvider, "stream_chat", lambda self, m, t: iter([StreamChunk(content="ok")])
        )
        assert _main(monkeypatch, "--base-dir", str(cli_env), "--no-session-log", "-q", "hi") == 0


# ---------------------------------------------------------------------------
# run_turn: model-error recovery
# ---------------------------------------------------------------------------


class TestRunTurn:
    def test_switch_and_retry(self, monkeypatch):
        s = _session([ProviderError("RateLimitError: rate limit exceeded"), _text("recovered")])
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: True)
        monkeypatch.setattr(fmt, "ask_text", lambda q: "llama-3.1-8b-instant")
        result = run_turn(s, "hello")
        assert result.success
        assert result.answer == "recovered"
        assert s.provider.model_id == "llama-3.1-8b-instant"
        assert [m["role"] for m in s.messages] == ["system", "user", "assistant"]

    def test_decline_switch(self, monkeypatch):
        s = _session([ProviderError("429 too many requests")])
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: False)
        result = run_turn(s, "hello")
        assert not result.success
        assert s.provider.model_id == "fake-model"

    def test_non_model_error_not_offered(self, monkeypatch):
        s = _session([ProviderError("401 Unauthorized")])
        asked = []
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: asked.append(q))
        assert not run_turn(s, "hello").success
        assert asked == []

    def test_one_shot_never_prompts(self, monkeypatch):
        s = _session([ProviderError("429 too many requests")])
        asked = []
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: asked.append(q))
        assert not run_turn(s, "hello", interactive=False).success
        assert asked == []

    def test_switch_by_number(self, monkeypatch):
        s = _session([ProviderError("503 overloaded"), _text("ok")])
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: True)
        monkeypatch.setattr(fmt, "ask_text", lambda q: "2")
        assert run_turn(s, "hello").success
        assert s.provider.model_id == "openai/gpt-oss-120b"

    def test_switched_model_saved(self, monkeypatch, tmp_path):
        s = _session([ProviderError("503 overloaded"), _text("ok")])
        monkeypatch.setattr(fmt, "ask_yes_no", lambda q, default=False: True)
        monkeypatch.setattr(fmt, "ask_text", lambda q: "qwen/qwen3-32b")
        assert run_turn(s, "hello", config_dir=tmp_path).success
        assert tomllib.loads((tmp_path / "config.toml").read_text()) == {"model": "qwen/qwen3-32b"}


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def test_help_prints_commands(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        for cmd in ["/model", "/models", "/usage", "/tools", "/todos", "/clear", "/forget", "/exit"]:
            assert cmd in err

    def test_exit_command(self, tmp_path):
        s = _session([])
        _repl(s, tmp_path, "/exit", "never reached")
        assert s.message_count() == 1

    def test_eof(self, tmp_path):
        s = _session([])
        _repl(s, tmp_path)
        assert s.message_count() == 1

    def test_message_history_persists(self, tmp_path):
        s = _session([_text("one"), _text("two")])
        _repl(s, tmp_path, "first", "", "second")
        assert [m["content"] for m in s.messages if m["role"] == "assistant"] == ["one", "two"]
        assert (tmp_path / ".prab").is_dir()

    def test_clear(self, tmp_path):
        s = _session([_text("one"), _text("two")])
        _repl(s, tmp_path, "first", "/clear", "second")
        assert [m["role"] for m in s.messages] == ["system", "user", "assistant"]
        assert s.messages[1]["content"] == "second"

    def test_forget(self, tmp_path):
        s = _session([])
        s.executor.remembered.add("bash:{}")
        _repl(s, tmp_path, "/forget")
        assert s.executor.remembered == set()

    def test_settings_toggle(self, tmp_path):
        s = _session([])
        prefs = Preferences()
        _repl(s, tmp_path, "/settings safe-mode off", "/settings auto-confirm on", preferences=prefs)
        assert prefs == Preferences(auto_confirm=True, safe_mode=False)

    def test_settings_bad_usage(self, tmp_path, capsys):
        s = _session([])
        prefs = Preferences()
        _repl(s, tmp_path, "/settings colour on", preferences=prefs)
        assert prefs == Preferences()
        assert "usage: /settings" in capsys.readouterr().err

    def test_model_switch(self, tmp_path):
        s = _session([])
        _repl(s, tmp_path, "/model qwen/qwen3-32b")
        assert s.provider.model_id == "qwen/qwen3-32b"
        assert not (tmp_path / "config.toml").exists()

    def test_changes_saved_to_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr(agent, "_ask_api_key", lambda: "gsk_new")
        cfg = tmp_path / "cfg"
        s = _session([])
        _repl(
            s,
            tmp_path,
            "/model qwen/qwen3-32b",
            "/settings safe-mode off",
            "/settings auto-confirm on",
            "/api-key",
            config_dir=cfg,
        )
        saved = tomllib.loads((cfg / "config.toml").read_text())
        assert saved == {
            "model": "qwen/qwen3-32b",
            "safe_mode": False,
            "auto_confirm": True,
            "api_key": "gsk_new",
        }

    def test_save_failure_warns_and_is_logged(self, tmp_path, capsys):
        blocker = tmp_path / "cfg"
        blocker.write_text("not a directory")
        rec = SessionRecorder(tmp_path / "logs")
        s = _session([], recorder=rec)
        with rec:
            _repl(s, tmp_path, "/model qwen/qwen3-32b", config_dir=blocker)
        assert s.provider.model_id == "qwen/qwen3-32b"
        assert "could not save settings" in capsys.readouterr().err
        errors = [e for e in load_events(rec.path) if e["event"] == "error"]
        assert errors[0]["data"] == {"keys": ["model"]}

    def test_clear_todos(self, tmp_path):
        s = _session([])
        todos = TodoList(tmp_path)
        todos.items.append(TodoItem("1", "a", "doing a"))
        _repl(s, tmp_path, "/clear-todos", todos=todos)
        assert todos.items == []

    def test_unknown_command_not_sent(self, tmp_path, capsys):
        s = _session([])
        _repl(s, tmp_path, "/bogus")
        assert s.message_count() == 1
        assert "unknown command /bogus" in capsys.readouterr().err

    def test_info_commands(self, tmp_path, capsys):
        s = _session([_text("hi")])
        _repl(s, tmp_path, "hello", "/usage", "/tools", "/todos", "/context")
        err = capsys.readouterr().err
        assert "Requests" in err
        assert "greet" in err
        assert "No todos" in err
        assert "Messages in conversation: 3" in err

    def test_ctrl_c_during_turn(self, tmp_path):
        s = _session([KeyboardInterrupt(), _text("after")])
        _repl(s, tmp_path, "first", "second")
        assert [m["content"] for m in s.messages if m["role"] == "assistant"] == ["after"]

    def test_tool_turn_in_repl(self, tmp_path):
        s = _session([_calls(("c1", "greet", {"name": "a"})), _text("done")])
        _repl(s, tmp_path, "say hi to a")
        assert s.message_count() == 5

    def test_initial_question(self, tmp_path):
        s = _session([_text("answer")])
        s.base_dir = tmp_path
        with patch("prompt_toolkit.PromptSession", return_value=_prompt_session()):
            repl_loop(
                s,
                preferences=Preferences(),
                todos=TodoList(tmp_path),
                api_key="k",
                initial="question",
                verbose=False,
            )
        assert s.messages[1]["content"] == "question"


class TestReplModels:
    def test_models_listing(self, capsys):
        from prab.provider import RemoteModel

        with patch.object(
            agent,
            "fetch_available_models",
            return_value=[RemoteModel("m1", "Meta", 8192), RemoteModel("m2", "OpenAI", None)],
        ):
            agent._repl_models("k")
        err = capsys.readouterr().err
        assert "Meta:" in err
        assert "m1  (8K context)" in err
        assert "m2  (? context)" in err

    def test_models_error(self, capsys):
        with patch.object(agent, "fetch_available_models", side_effect=ProviderError("offline")):
            agent._repl_models("k")
        assert "offline" in capsys.readouterr().err
