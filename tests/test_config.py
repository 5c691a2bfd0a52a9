"""Tests for prab.config: TOML loading, merging, and CLI integration."""

import argparse
import stat
import sys
import tomllib

import pytest

from prab.config import (
    _UNSET,
    ConfigError,
    Preferences,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
    save_global_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "temperature": _UNSET,
        "max_tokens": _UNSET,
        "max_iterations": _UNSET,
        "auto_confirm": _UNSET,
        "safe_mode": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
        "no_session_log": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def xdg(tmp_path, monkeypatch):
    home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    return home / "prab"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestGlobalConfigDir:
    def test_xdg(self, xdg):
        assert global_config_dir() == xdg

    def test_home_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "prab"


class TestLoadConfig:
    def test_no_files(self, xdg, tmp_path):
        project = tmp_path / "proj"
        project.mkdir()
        config = load_config(project)
        assert config == {"config_dir": xdg}

    def test_project_overrides_global(self, xdg, tmp_path):
        project = tmp_path / "proj"
        _write_toml(xdg / "config.toml", 'model = "llama-3.1-8b-instant"\ntemperature = 0.2\n')
        _write_toml(project / "prab.toml", 'model = "qwen/qwen3-32b"\n')
        config = load_config(project)
        assert config["model"] == "qwen/qwen3-32b"
        assert config["temperature"] == 0.2

    def test_error_patterns_merged(self, xdg, tmp_path):
        project = tmp_path / "proj"
        _write_toml(xdg / "config.toml", '[error_patterns]\nrate_limit = ["slow down"]\n')
        _write_toml(
            project / "prab.toml",
            '[error_patterns]\nrate_limit = ["back off", "slow down"]\nmodel_error = ["gone"]\n',
        )
        config = load_config(project)
        assert config["error_patterns"] == {
            "rate_limit": ["slow down", "back off"],
            "model_error": ["gone"],
        }

    def test_invalid_toml(self, xdg, tmp_path):
        _write_toml(tmp_path / "prab.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, xdg, tmp_path):
        _write_toml(tmp_path / "prab.toml", 'max_iterations = "ten"\n')
        with pytest.raises(ConfigError, match="max_iterations"):
            load_config(tmp_path)

    def test_bool_rejected_for_number(self, xdg, tmp_path):
        _write_toml(tmp_path / "prab.toml", "temperature = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_non_positive(self, xdg, tmp_path):
        _write_toml(tmp_path / "prab.toml", "bash_timeout = 0\n")
        with pytest.raises(ConfigError, match="must be positive"):
            load_config(tmp_path)

    def test_unknown_bucket(self, xdg, tmp_path):
        _write_toml(tmp_path / "prab.toml", '[error_patterns]\nnope = ["x"]\n')
        with pytest.raises(ConfigError, match="unknown bucket"):
            load_config(tmp_path)

    def test_timeout_pair_across_files(self, xdg, tmp_path):
        project = tmp_path / "proj"
        _write_toml(xdg / "config.toml", "bash_max_timeout = 60\n")
        _write_toml(project / "prab.toml", "bash_timeout = 90\n")
        with pytest.raises(ConfigError, match="bash_max_timeout"):
            load_config(project)

    def test_unknown_key_warns(self, xdg, tmp_path, capsys):
        _write_toml(tmp_path / "prab.toml", "mystery = 1\n")
        config = load_config(tmp_path)
        assert "mystery" not in config
        assert "unknown config key 'mystery'" in capsys.readouterr().err

    def test_api_key_in_git_project_warns(self, xdg, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "prab.toml", 'api_key = "gsk_x"\n')
        load_config(tmp_path)
        assert "GROQ_API_KEY" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# CLI merge
# ---------------------------------------------------------------------------


class TestApplyConfigToArgs:
    def test_defaults_fill_unset(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == "openai/gpt-oss-20b"
        assert args.temperature == 0.7
        assert args.max_iterations == 10
        assert args.safe_mode is True
        assert args.auto_confirm is False
        assert args.bash_timeout == 120
        assert args.error_patterns == {}

    def test_cli_beats_config(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "config-model", "max_iterations": 4})
        assert args.model == "cli-model"
        assert args.max_iterations == 4

    def test_color_key_sets_pair(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_color_wins(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True
        assert args.no_color is False

    def test_config_dir_not_copied(self, tmp_path):
        args = _make_args()
        apply_config_to_args(args, {"config_dir": tmp_path})
        assert not hasattr(args, "config_dir")


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------


class TestSaveGlobalConfig:
    def test_creates_file(self, xdg, tmp_path):
        path = save_global_config({"model": "qwen/qwen3-32b"})
        assert path == xdg / "config.toml"
        assert tomllib.loads(path.read_text())["model"] == "qwen/qwen3-32b"
        assert load_config(tmp_path)["model"] == "qwen/qwen3-32b"

    def test_keeps_existing_keys_tables_and_comments(self, xdg):
        _write_toml(
            xdg / "config.toml",
            '# my settings\ntemperature = 0.2\n\n[error_patterns]\nrate_limit = ["slow down"]\n',
        )
        save_global_config({"auto_confirm": True, "temperature": 0.5})
        text = (xdg / "config.toml").read_text()
        assert "# my settings" in text
        parsed = tomllib.loads(text)
        assert parsed["temperature"] == 0.5
        assert parsed["auto_confirm"] is True
        assert parsed["error_patterns"] == {"rate_limit": ["slow down"]}

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_api_key_file_is_private(self, xdg):
        path = save_global_config({"api_key": "gsk_saved"})
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_explicit_dir(self, tmp_path):
        path = save_global_config({"safe_mode": False}, tmp_path / "cfg")
        assert tomllib.loads(path.read_text()) == {"safe_mode": False}

    @pytest.mark.parametrize(
        "updates", [{"nope": 1}, {"error_patterns": {}}, {"auto_confirm": "yes"}]
    )
    def test_rejected_updates(self, xdg, updates):
        with pytest.raises(ConfigError):
            save_global_config(updates)
        assert not (xdg / "config.toml").exists()

    def test_invalid_existing_toml(self, xdg):
        _write_toml(xdg / "config.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            save_global_config({"model": "x"})


class TestMisc:
    def test_resolve_api_key(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "env-key")
        assert resolve_api_key("explicit") == "explicit"
        assert resolve_api_key(None) == "env-key"
        monkeypatch.delenv("GROQ_API_KEY")
        assert resolve_api_key(None) is None

    def test_preferences_defaults(self):
        prefs = Preferences()
        assert prefs.safe_mode and not prefs.auto_confirm

    @pytest.mark.parametrize("project", [False, True])
    def test_generated_config_is_valid_toml(self, project):
        text = generate_config(project=project)
        assert "prab.toml" in text if project else "config.toml" in text
        # Everything is commented out; uncommenting the keys must parse.
        body = "\n".join(
            line[2:].split("  #")[0]
            for line in text.splitlines()
            if line.startswith("# ") and "=" in line and "[" not in line.split("=")[0]
        )
        parsed = tomllib.loads(body)
        assert parsed["model"] == "openai/gpt-oss-20b"
