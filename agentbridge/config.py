"""Configuration file loading and merging for agentbridge.

Reads TOML config from ~/.config/agentbridge/config.toml (global) and
<base_dir>/agentbridge.toml (project). Precedence: CLI > project > global > defaults.
Environment variables still override the provider knobs at call time.
"""

import argparse
import os
import re
import sys
import tomllib
from pathlib import Path
from typing import Any

from .provider import MAX_TIMEOUT, parse_provider
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "tools": bool,
    "include_dataset": bool,
    "include_last_error": bool,
    "include_script": bool,
    "timeout": int,
    "unsafe": bool,
    "codex_bin": str,
    "gemini_bin": str,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "none",
    "tools": True,
    "include_dataset": True,
    "include_last_error": False,
    "include_script": False,
    "timeout": None,
    "unsafe": False,
    "codex_bin": None,
    "gemini_bin": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}

_BIN_KEYS = ("codex_bin", "gemini_bin")


# --- Internal helpers ---


def _global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "agentbridge"
    return Path.home() / ".config" / "agentbridge"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for bad values. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for int fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config:
        try:
            parse_provider(config["provider"])
        except ConfigError as e:
            raise ConfigError(f"{source}: {e}") from None

    if "timeout" in config and not 0 < config["timeout"] <= MAX_TIMEOUT:
        raise ConfigError(
            f"{source}: 'timeout' must be between 1 and {MAX_TIMEOUT} seconds"
        )


_PATH_LIKE = re.compile(r"^(?:[/~]|\.\.?/)")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve path-like executable overrides against the config file's directory.

    Bare names ("codex") are left alone so they are still looked up on PATH.
    """
    for key in _BIN_KEYS:
        value = config.get(key)
        if not value or not _PATH_LIKE.match(value):
            continue
        expanded = Path(value).expanduser()
        if expanded.is_absolute():
            config[key] = str(expanded)
        else:
            config[key] = str(config_dir / value)


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


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = _global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "agentbridge.toml"
    project_config = _load_single(project_path, str(project_path))
    _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are replaced with hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted); color is a display concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# agentbridge configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/agentbridge.toml' if project else '~/.config/agentbridge/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider ---",
        '# provider = "codex"            # "codex" | "gemini"',
        '# codex_bin = "~/.local/bin/codex"',
        '# gemini_bin = "gemini"',
        "# timeout = 300                 # seconds, 1..3600",
        "# unsafe = false                # codex without sandbox or approvals",
        "",
        "# --- Assistant behaviour ---",
        "# tools = true                  # let the model request read-only context",
        "# include_dataset = true",
        "# include_last_error = false",
        "# include_script = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
