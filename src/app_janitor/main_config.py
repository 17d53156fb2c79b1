"""!
@brief Configuration file loading and option resolution for the CLI.
@details Options resolve with CLI arguments first, then JSON config file
values (``--config``), then built-in defaults. Config keys use hyphens where
the argparse attributes use underscores.
"""
from __future__ import annotations

import argparse
import json
import pathlib
import sys

from . import constants


def load_config_file(config_path: str | None) -> dict[str, object]:
    """!
    @brief Load and parse a JSON configuration file.
    @param config_path Path to the JSON config file, or None to skip.
    @returns Dictionary of configuration options, empty if no file specified.
    @raises SystemExit if the file cannot be read or parsed.
    """
    if not config_path:
        return {}

    path = pathlib.Path(config_path).expanduser().resolve()
    if not path.exists():
        print(f"Error: Configuration file not found: {path}", file=sys.stderr)
        raise SystemExit(1)

    try:
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            print(
                f"Error: Configuration file must contain a JSON object: {path}",
                file=sys.stderr,
            )
            raise SystemExit(1)
        return config
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in configuration file: {path}\n{e}", file=sys.stderr)
        raise SystemExit(1) from e
    except OSError as e:
        print(f"Error: Cannot read configuration file: {path}\n{e}", file=sys.stderr)
        raise SystemExit(1) from e


def collect_options(args: argparse.Namespace) -> dict[str, object]:
    """!
    @brief Translate parsed CLI arguments into runtime options.
    @details Options are resolved with the following precedence (highest first):
    1. CLI arguments explicitly specified
    2. JSON config file values (if --config provided)
    3. Built-in defaults
    @param args Parsed command-line arguments.
    @returns Dictionary of runtime options.
    """
    config = load_config_file(getattr(args, "config", None))

    def _get(attr: str, default: object = None, config_key: str | None = None, is_bool: bool = False) -> object:
        """Get option value with CLI > config > default precedence."""
        cli_val = getattr(args, attr, None)
        cfg_key = config_key or attr.replace("_", "-")

        if is_bool:
            if cli_val:
                return True
            if cfg_key in config:
                return bool(config[cfg_key])
            return bool(default)

        if cli_val is not None:
            return cli_val
        if cfg_key in config:
            return config[cfg_key]
        return default

    no_persist = bool(getattr(args, "no_persist", False))
    persist = False if no_persist else bool(config.get("persist", True))

    timeout = _get("timeout", None)
    status_cache = _get("status_cache_seconds", constants.STATUS_CACHE_SECONDS)
    package_timeout = _get("package_enumeration_timeout", constants.PACKAGE_ENUMERATION_TIMEOUT)

    try:
        options: dict[str, object] = {
            "scripts_dir": pathlib.Path(str(_get("scripts_dir", constants.DEFAULT_SCRIPTS_DIRECTORY))).expanduser(),
            "cache_dir": pathlib.Path(str(_get("cache_dir", constants.DEFAULT_CACHE_DIRECTORY))).expanduser(),
            "logdir": _get("logdir", None),
            "items": _get("items", None),
            "timeout": float(timeout) if timeout is not None else None,  # type: ignore[arg-type]
            "parallel": _get("parallel", False, is_bool=True),
            "persist": persist,
            "status_cache_seconds": float(status_cache),  # type: ignore[arg-type]
            "package_enumeration_timeout": float(package_timeout),  # type: ignore[arg-type]
        }
    except (TypeError, ValueError) as e:
        print(f"Error: Invalid numeric option in configuration: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    return options


__all__ = ["collect_options", "load_config_file"]
