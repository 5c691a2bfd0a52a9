"""Configuration file loading and merging for prab.

Reads TOML config from ~/.config/prab/config.toml (global) and
<base_dir>/prab.toml (project). Precedence: CLI > project > global > defaults.
Settings changed at runtime are written back to the global file with tomlkit,
which keeps the user's comments and layout.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import ParseError

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_MODEL = "openai/gpt-oss-20b"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_BASH_TIMEOUT = 120  # seconds
DEFAULT_BASH_MAX_TIMEOUT = 600  # seconds


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "temperature": (int, float),
    "max_tokens": int,
    "max_iterations": int,
    "auto_confirm": bool,
    "safe_mode": bool,
    "bash_timeout": (int, float),
    "bash_max_timeout": (int, float),
    "color": bool,
    "quiet": bool,
    "no_session_log": bool,
    "error_patterns": dict,
}

ERROR_PATTERN_BUCKETS = ("rate_limit", "model_unavailable", "auth_error", "model_error")

_POSITIVE_KEYS = {"max_tokens", "max_iterations", "bash_timeout", "bash_max_timeout"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "temperature": DEFAULT_TEMPERATURE,
    "max_tokens": None,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "auto_confirm": False,
    "safe_mode": True,
    "bash_timeout": DEFAULT_BASH_TIMEOUT,
    "bash_max_timeout": DEFAULT_BASH_MAX_TIMEOUT,
    "color": False,
    "no_color": False,
    "quiet": False,
    "no_session_log": False,
    "error_patterns": {},
}


@dataclass
class Preferences:
    """Runtime confirmation preferences, read by the safety policy on every call."""

    auto_confirm: bool = False
    safe_mode: bool = True


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "prab"
    return Path.home() / ".config" / "prab"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is dict:
        return "table"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_error_patterns(table: dict, source: str) -> None:
    for bucket, patterns in table.items():
        if bucket not in ERROR_PATTERN_BUCKETS:
            raise ConfigError(
                f"{source}: error_patterns.{bucket}: unknown bucket, expected one of: "
                f"{', '.join(ERROR_PATTERN_BUCKETS)}"
            )
        if not isinstance(patterns, list):
            raise ConfigError(
                f"{source}: error_patterns.{bucket}: expected list, got {type(patterns).__name__}"
            )
        for i, p in enumerate(patterns):
            if not isinstance(p, str):
                raise ConfigError(
                    f"{source}: error_patterns.{bucket}[{i}]: expected string, got {type(p).__name__}"
                )


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, reject it for numeric fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    if "error_patterns" in config:
        _validate_error_patterns(config["error_patterns"], source)

    timeout = config.get("bash_timeout")
    ceiling = config.get("bash_max_timeout")
    if timeout is not None and ceiling is not None and timeout > ceiling:
        raise ConfigError(f"{source}: 'bash_timeout' must be <= 'bash_max_timeout'")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using GROQ_API_KEY instead.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def merge_error_patterns(*tables: dict | None) -> dict[str, list[str]]:
    """Merge pattern tables bucket by bucket, keeping first-seen order without duplicates."""
    merged: dict[str, list[str]] = {}
    for table in tables:
        for bucket, patterns in (table or {}).items():
            existing = merged.setdefault(bucket, [])
            existing.extend(p for p in patterns if p not in existing)
    return merged


# --- Public API ---


def load_config(base_dir: Path | str) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    ``error_patterns`` tables are merged bucket by bucket instead of
    overwritten. The returned dict also carries ``config_dir``.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "prab.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    global_patterns = global_config.pop("error_patterns", None)
    project_patterns = project_config.pop("error_patterns", None)
    merged = {**global_config, **project_config}

    patterns = merge_error_patterns(global_patterns, project_patterns)
    if patterns:
        merged["error_patterns"] = patterns

    # The pair can conflict across files even when each file is valid.
    timeout = merged.get("bash_timeout")
    ceiling = merged.get("bash_max_timeout")
    if timeout is not None and ceiling is not None and timeout > ceiling:
        raise ConfigError(
            "'bash_timeout' must be <= 'bash_max_timeout' "
            "(set across global and project config)"
        )

    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Values still equal to _UNSET take the config value; remaining sentinels
    are then replaced with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(explicit: str | None) -> str | None:
    """CLI/config key first, then the GROQ_API_KEY environment variable."""
    return explicit or os.environ.get("GROQ_API_KEY") or None


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# prab configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/prab.toml' if project else '~/.config/prab/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "gsk_..."             # prefer GROQ_API_KEY; this is a fallback',
        f"# temperature = {DEFAULT_TEMPERATURE}",
        "# max_tokens = 4096",
        "",
        "# --- Agent behaviour ---",
        f"# max_iterations = {DEFAULT_MAX_ITERATIONS}",
        f"# bash_timeout = {DEFAULT_BASH_TIMEOUT}          # seconds",
        f"# bash_max_timeout = {DEFAULT_BASH_MAX_TIMEOUT}      # seconds",
        "",
        "# --- Confirmation ---",
        "# auto_confirm = false   # skip routine prompts (catastrophic ops still ask)",
        "# safe_mode = true       # always confirm destructive tools",
        "",
        "# --- UI / logging ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "# no_session_log = false",
        "",
        "# --- Provider error classification (extends the built-in lists) ---",
        "# [error_patterns]",
        '# rate_limit = ["slow down"]',
        '# model_unavailable = ["decommissioned"]',
        '# auth_error = ["invalid_api_key"]',
        '# model_error = ["decommissioned"]',
        "",
    ]
    return "\n".join(lines)


def save_global_config(updates: dict, config_dir: Path | None = None) -> Path:
    """Write ``updates`` into the global config.toml and return its path.

    Existing keys, tables and comments are kept. The file is made
    owner-only when it holds an API key.
    """
    for key in updates:
        if key not in CONFIG_KEYS or key == "error_patterns":
            raise ConfigError(f"cannot save config key {key!r}")
    _validate_config(updates, "settings")

    path = (config_dir or global_config_dir()) / "config.toml"
    if path.is_file():
        try:
            doc = tomlkit.parse(path.read_text(encoding="utf-8"))
        except ParseError as e:
            raise ConfigError(f"{path}: invalid TOML: {e}") from e
    else:
        doc = tomlkit.document()
        doc.add(tomlkit.comment("prab configuration file (see prab --init-config)"))
    for key, value in updates.items():
        doc[key] = value

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tomlkit.dumps(doc), encoding="utf-8")
    if "api_key" in doc:
        os.chmod(path, 0o600)
    return path
