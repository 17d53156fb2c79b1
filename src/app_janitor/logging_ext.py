"""!
@brief Structured logging helpers for App Janitor.
@details Two streams are configured side by side: a human-readable text log
and a JSONL event log for automation. Both rotate on disk. Startup metadata
from :mod:`app_janitor.version` is recorded so log bundles from different
runs can be told apart.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import sys
import uuid
from logging import handlers
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

from . import version

HUMAN_LOGGER_NAME = "app_janitor.human"
"""!
@brief Logger name for human-readable output.
"""

MACHINE_LOGGER_NAME = "app_janitor.machine"
"""!
@brief Logger name for JSONL telemetry output.
"""

HUMAN_LOG_FILENAME = "app-janitor.log"
MACHINE_LOG_FILENAME = "app-janitor.jsonl"

_ROTATE_BYTES = 1_048_576
_ROTATE_BACKUPS = 5

_STANDARD_RECORD_KEYS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys() | {"message", "asctime", "channel"}
)

_CURRENT_LOG_DIRECTORY: Path | None = None
_RUN_METADATA: Dict[str, object] | None = None


class _ChannelFilter(logging.Filter):
    """!
    @brief Stamp a fixed ``channel`` attribute on every record of a logger.
    """

    def __init__(self, channel: str) -> None:
        super().__init__()
        self._channel = channel

    def filter(self, record: logging.LogRecord) -> bool:
        record.channel = self._channel
        return True


class _JsonLineFormatter(logging.Formatter):
    """!
    @brief Format ``LogRecord`` instances as single-line JSON objects.
    @details Standard metadata (timestamp, level, logger, message) is merged
    with any ``extra`` attributes supplied by the caller. Values that cannot be
    serialised are replaced by their ``repr``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise override
        payload: Dict[str, object] = {
            "timestamp": _iso_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "channel": getattr(record, "channel", "machine"),
        }
        payload.update(_extract_extras(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False)
        except TypeError:
            sanitized = {key: _coerce_json(value) for key, value in payload.items()}
            return json.dumps(sanitized, ensure_ascii=False)


def _iso_timestamp(created: float) -> str:
    moment = _dt.datetime.fromtimestamp(created, tz=_dt.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_extras(record: logging.LogRecord) -> Dict[str, object]:
    """!
    @brief Collect non-standard attributes from a log record.
    """

    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_RECORD_KEYS}


def _coerce_json(value: object) -> object:
    try:
        json.dumps(value)
    except TypeError:
        if isinstance(value, Mapping):
            return {str(key): _coerce_json(item) for key, item in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [_coerce_json(item) for item in value]
        return repr(value)
    return value


def _configure_logger(
    logger: logging.Logger,
    formatter: logging.Formatter,
    handlers_to_add: Iterable[logging.Handler],
) -> None:
    """!
    @brief Reset a logger and attach the supplied handlers.
    """

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for flt in list(logger.filters):
        logger.removeFilter(flt)
    for handler in handlers_to_add:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False


def _rotating_file(path: Path) -> handlers.RotatingFileHandler:
    return handlers.RotatingFileHandler(
        path,
        maxBytes=_ROTATE_BYTES,
        backupCount=_ROTATE_BACKUPS,
        encoding="utf-8",
    )


def setup_logging(
    root_dir: Path,
    *,
    json_to_stdout: bool = False,
    console_level: int | None = None,
    level: int = logging.INFO,
) -> Tuple[logging.Logger, logging.Logger]:
    """!
    @brief Set up the human and machine loggers.
    @details The directory is created when missing. Both streams write
    rotating files; the machine stream can additionally be mirrored to stdout
    and the human stream to stderr.
    @param root_dir Directory receiving ``app-janitor.log`` and ``app-janitor.jsonl``.
    @param json_to_stdout Mirror machine events to stdout.
    @param console_level When set, echo human records at or above this level to stderr.
    @param level Minimum level recorded by both loggers.
    @returns ``(human_logger, machine_logger)``.
    """

    global _CURRENT_LOG_DIRECTORY

    root_dir.mkdir(parents=True, exist_ok=True)
    _CURRENT_LOG_DIRECTORY = root_dir

    human_logger = logging.getLogger(HUMAN_LOGGER_NAME)
    machine_logger = logging.getLogger(MACHINE_LOGGER_NAME)
    human_logger.setLevel(level)
    machine_logger.setLevel(level)

    human_formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s [%(channel)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    human_handlers: list[logging.Handler] = [_rotating_file(root_dir / HUMAN_LOG_FILENAME)]
    if console_level is not None:
        console = logging.StreamHandler(stream=sys.stderr)
        console.setLevel(console_level)
        human_handlers.append(console)

    machine_handlers: list[logging.Handler] = [_rotating_file(root_dir / MACHINE_LOG_FILENAME)]
    if json_to_stdout:
        machine_handlers.append(logging.StreamHandler(stream=sys.stdout))

    _configure_logger(human_logger, human_formatter, human_handlers)
    _configure_logger(machine_logger, _JsonLineFormatter(), machine_handlers)

    human_logger.addFilter(_ChannelFilter("human"))
    machine_logger.addFilter(_ChannelFilter("machine"))

    _emit_run_metadata(human_logger, machine_logger)

    return human_logger, machine_logger


def get_human_logger() -> logging.Logger:
    """!
    @brief Retrieve the configured human-readable logger.
    """

    return logging.getLogger(HUMAN_LOGGER_NAME)


def get_machine_logger() -> logging.Logger:
    """!
    @brief Retrieve the configured machine/JSON logger.
    """

    return logging.getLogger(MACHINE_LOGGER_NAME)


def get_log_directory() -> Path | None:
    return _CURRENT_LOG_DIRECTORY


def get_run_metadata() -> Mapping[str, object] | None:
    """!
    @brief Return the most recent run metadata payload.
    @details Contains ``run_id`` (UUID4 hex), an ISO-8601 UTC ``timestamp``,
    the version/build identifiers, and the log directory.
    """

    return dict(_RUN_METADATA) if _RUN_METADATA is not None else None


def _emit_run_metadata(human_logger: logging.Logger, machine_logger: logging.Logger) -> None:
    global _RUN_METADATA

    moment = _dt.datetime.now(tz=_dt.timezone.utc)
    _RUN_METADATA = {
        "run_id": uuid.uuid4().hex,
        "timestamp": moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "version": version.__version__,
        "build": version.__build__,
        "python": sys.version.split()[0],
        "logdir": str(_CURRENT_LOG_DIRECTORY) if _CURRENT_LOG_DIRECTORY else None,
    }

    human_logger.info(
        "App Janitor %s (%s) starting, run %s",
        version.__version__,
        version.__build__,
        _RUN_METADATA["run_id"],
    )
    machine_logger.info("run_start", extra={"event": "run_start", "run": dict(_RUN_METADATA)})


__all__ = [
    "HUMAN_LOGGER_NAME",
    "HUMAN_LOG_FILENAME",
    "MACHINE_LOGGER_NAME",
    "MACHINE_LOG_FILENAME",
    "get_human_logger",
    "get_log_directory",
    "get_machine_logger",
    "get_run_metadata",
    "setup_logging",
]
