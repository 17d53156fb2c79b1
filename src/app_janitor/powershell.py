"""!
@file powershell.py
@brief Scripting subsystem used for queries and removal scripts.
@details Inline queries return their output lines; script files stream a
terminal transcript (command, start time, raw output, end time, return value)
to the caller's progress sink. Failures surface through a small exception
taxonomy: :class:`ExecutionPolicyBlocked`, :class:`ScriptExecutionError` and
:class:`OperationCancelled`.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from . import exec_utils
from .errors import ExecutionPolicyBlocked, OperationCancelled, ScriptExecutionError
from .models import ProgressSink, report_progress

if TYPE_CHECKING:
    from .cancellation import CancellationToken

__all__ = [
    "POWERSHELL_EXECUTABLE",
    "build_command",
    "execute_script_file",
    "is_policy_block",
    "run_json_query",
    "run_query",
]

_logger = logging.getLogger(__name__)

POWERSHELL_EXECUTABLE = "powershell.exe"
_BASE_ARGUMENTS = ("-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass")

_POLICY_MARKERS = (
    "running scripts is disabled",
    "pssecurityexception",
    "unauthorizedaccess",
    "is not digitally signed",
    "cannot be loaded because the execution of scripts",
)
"""!
@brief Lower-case fragments PowerShell prints when execution policy refuses a script.
"""


def build_command(command: str | None = None, *, script_path: Path | None = None) -> list[str]:
    """!
    @brief Build the PowerShell argument vector for an inline command or a script file.
    """

    arguments = [POWERSHELL_EXECUTABLE, *_BASE_ARGUMENTS]
    if script_path is not None:
        arguments.extend(["-File", str(script_path)])
    else:
        arguments.extend(["-Command", command or ""])
    return arguments


def is_policy_block(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _POLICY_MARKERS)


def _raise_for_result(result: exec_utils.CommandResult, description: str) -> None:
    """!
    @brief Translate a failed :class:`CommandResult` into the exception taxonomy.
    """

    if result.cancelled:
        raise OperationCancelled(f"{description} cancelled")
    combined = f"{result.stdout}\n{result.stderr}"
    failed = result.returncode != 0 or bool(result.error)
    if failed and is_policy_block(combined):
        raise ExecutionPolicyBlocked(
            f"{description} blocked by execution policy",
            returncode=result.returncode,
            output=combined.strip(),
        )
    if result.timed_out:
        raise ScriptExecutionError(f"{description} timed out", output=combined.strip())
    if result.returncode == 127:
        raise ScriptExecutionError(f"{POWERSHELL_EXECUTABLE} is not available", returncode=127)
    if result.error:
        raise ScriptExecutionError(f"{description} failed: {result.error}", output=combined.strip())
    if result.returncode != 0:
        raise ScriptExecutionError(
            f"{description} exited with code {result.returncode}",
            returncode=result.returncode,
            output=combined.strip(),
        )


def run_query(
    command: str,
    *,
    timeout: float | None,
    event: str = "powershell_query",
    cancel_token: "CancellationToken | None" = None,
) -> list[str]:
    """!
    @brief Run an inline PowerShell command and return its non-empty output lines.
    @throws ScriptExecutionError on timeout or non-zero exit.
    @throws ExecutionPolicyBlocked when policy refused the command.
    @throws OperationCancelled when ``cancel_token`` fired.
    """

    result = exec_utils.run_command(
        build_command(command),
        event=event,
        timeout=timeout,
        cancel_token=cancel_token,
    )
    _raise_for_result(result, "PowerShell query")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def run_json_query(
    command: str,
    *,
    timeout: float | None,
    event: str = "powershell_query",
) -> list[dict[str, object]]:
    """!
    @brief Run ``command | ConvertTo-Json`` and normalise the payload to a list.
    @details ``ConvertTo-Json`` emits an object for a single result and an
    array for several; both shapes come back as a list of dictionaries.
    """

    lines = run_query(f"{command} | ConvertTo-Json -Compress", timeout=timeout, event=event)
    if not lines:
        return []
    try:
        data = json.loads("".join(lines))
    except json.JSONDecodeError as exc:
        raise ScriptExecutionError(f"Unparseable JSON from PowerShell: {exc}") from exc
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [entry for entry in data if isinstance(entry, dict)]
    return []


def _timestamp() -> str:
    return _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def execute_script_file(
    script_path: Path,
    *,
    progress: ProgressSink | None = None,
    cancel_token: "CancellationToken | None" = None,
    timeout: float | None = None,
    event: str = "script_execute",
    slot: str = "",
) -> str:
    """!
    @brief Execute a PowerShell script file and stream its transcript.
    @details The transcript is framed with ``Command``/``Start Time`` and
    ``End Time``/``Process return value`` metadata lines so a terminal view
    can render it as-is.
    @param script_path Script to run.
    @param progress Optional sink receiving one record per transcript line.
    @param cancel_token Kills the child when cancelled.
    @param timeout Optional ceiling in seconds.
    @param event Base name for machine events.
    @param slot Progress lane label forwarded on every record.
    @returns Captured standard output.
    """

    command = build_command(script_path=script_path)

    def emit(line: str) -> None:
        report_progress(progress, terminal_output=line, slot=slot)

    emit(f"Command: {subprocess.list2cmdline(command)}")
    emit(f"Start Time: {_timestamp()}")
    emit("---")

    result = exec_utils.run_command(
        command,
        event=event,
        timeout=timeout,
        cancel_token=cancel_token,
        extra={"script": str(script_path)},
    )

    for line in (result.stdout + "\n" + result.stderr).splitlines():
        if line.strip():
            emit(line.rstrip())
    emit("---")
    emit(f"End Time: {_timestamp()}")
    emit(f"Process return value: {result.returncode}")

    _logger.debug("Script %s finished with %s", script_path, result.returncode)
    _raise_for_result(result, f"Script {script_path.name}")
    return result.stdout
