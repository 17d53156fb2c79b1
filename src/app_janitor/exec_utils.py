"""!
@brief Subprocess execution helpers with sanitised environments.
@details Every external tool (PowerShell, winget, choco, schtasks, vendor
uninstallers) runs through :func:`run_command` so machine events, timeouts,
and cancellation behave the same everywhere. Child processes never inherit
Python virtual-environment variables.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from . import logging_ext

if TYPE_CHECKING:
    from .cancellation import CancellationToken

_SANITIZE_BLOCKLIST = {
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONWARNINGS",
    "VIRTUAL_ENV",
    "PIP_REQUIRE_VIRTUALENV",
    "CONDA_PREFIX",
    "CONDA_DEFAULT_ENV",
    "PYENV_VERSION",
    "POETRY_ACTIVE",
    "__PYVENV_LAUNCHER__",
}

_CANCEL_POLL_SECONDS = 0.25
"""!
@brief Interval at which a running child checks its cancellation token.
"""


@dataclass
class CommandResult:
    """!
    @brief Outcome information from :func:`run_command`.
    @details ``returncode`` is 127 when the executable is missing. ``cancelled``
    and ``timed_out`` mark children that were killed before finishing.
    """

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float
    skipped: bool = False
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not (self.timed_out or self.cancelled or self.error)


_GLOBAL_TIMEOUT: float | None = None


def set_global_timeout(timeout_seconds: float | int | None) -> None:
    """!
    @brief Apply a global timeout cap for all subprocess calls.
    @details :func:`run_command` uses the smaller of the caller's timeout and
    this cap, which is how the CLI ``--timeout`` flag bounds every step.
    """

    global _GLOBAL_TIMEOUT
    if timeout_seconds is None:
        _GLOBAL_TIMEOUT = None
        return
    try:
        parsed = float(timeout_seconds)
    except (TypeError, ValueError):
        _GLOBAL_TIMEOUT = None
    else:
        _GLOBAL_TIMEOUT = parsed if parsed > 0 else None


def _resolve_timeout(requested: float | int | None) -> float | int | None:
    if _GLOBAL_TIMEOUT is None:
        return requested
    if requested is None:
        return _GLOBAL_TIMEOUT
    return min(_GLOBAL_TIMEOUT, requested)


def sanitize_environment(
    *,
    base_env: Mapping[str, str] | None = None,
    inherit: bool = True,
    extra: Mapping[str, str] | None = None,
    remove: Iterable[str] | None = None,
) -> MutableMapping[str, str]:
    """!
    @brief Produce a subprocess environment stripped of virtualenv artefacts.
    @param base_env Source mapping to copy prior to sanitisation.
    @param inherit Start from :data:`os.environ` when ``base_env`` is ``None``.
    @param extra Overrides applied after sanitisation.
    @param remove Additional variable names to drop.
    @returns Mutable mapping ready for subprocess invocation.
    """

    if base_env is not None:
        environment: MutableMapping[str, str] = {
            str(k): str(v) for k, v in base_env.items() if v is not None
        }
    elif inherit:
        environment = {str(k): str(v) for k, v in os.environ.items() if v is not None}
    else:
        environment = {}

    for key in _SANITIZE_BLOCKLIST:
        environment.pop(key, None)
    for key in remove or ():
        environment.pop(key, None)
    for key, value in (extra or {}).items():
        environment[str(key)] = str(value)

    return environment


class _EventEmitter:
    """!
    @brief Builds and emits the ``<event>_*`` machine records of one call.
    """

    def __init__(
        self,
        event: str,
        command: Sequence[str],
        *,
        timeout: Any,
        cwd: str | None,
        extra: Mapping[str, object] | None,
    ) -> None:
        self._event = event
        self._call: dict[str, object] = {"command": list(command), "timeout": timeout}
        if cwd:
            self._call["cwd"] = cwd
        self._extra = {k: v for k, v in (extra or {}).items() if k not in {"event", "result", "call"}}

    def emit(self, suffix: str, *, level: str = "info", result: Mapping[str, object] | None = None, **fields: object) -> None:
        name = f"{self._event}_{suffix}"
        payload: dict[str, object] = {"event": name, "call": dict(self._call)}
        payload.update(self._extra)
        payload.update(fields)
        if result is not None:
            payload["result"] = dict(result)
        getattr(logging_ext.get_machine_logger(), level)(name, extra=payload)


def _result_payload(
    *,
    return_code: int,
    duration: float,
    stdout: str = "",
    stderr: str = "",
    error: str | None = None,
    timed_out: bool = False,
) -> dict[str, object]:
    return {
        "rc": return_code,
        "duration_ms": round(duration * 1000, 3),
        "stdout": stdout,
        "stderr": stderr,
        "error": error,
        "timed_out": timed_out,
    }


def _run_cancellable(
    command_list: Sequence[str] | str,
    *,
    timeout: Any,
    env: Mapping[str, str],
    cwd: str | None,
    token: "CancellationToken",
) -> tuple[subprocess.CompletedProcess[str] | None, bool]:
    """!
    @brief Run a child while polling ``token``.
    @returns ``(completed, cancelled)``; ``completed`` is ``None`` on cancellation.
    @throws subprocess.TimeoutExpired when ``timeout`` elapses first.
    """

    deadline = None if timeout is None else time.monotonic() + float(timeout)
    process = subprocess.Popen(  # noqa: S603 - intentional command execution
        command_list if isinstance(command_list, str) else list(command_list),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=dict(env),
        cwd=cwd,
    )
    while True:
        if token.cancelled:
            process.kill()
            process.communicate()
            return None, True
        wait = _CANCEL_POLL_SECONDS
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                process.kill()
                stdout, stderr = process.communicate()
                raise subprocess.TimeoutExpired(command_list, timeout, output=stdout, stderr=stderr)
            wait = min(wait, remaining)
        try:
            stdout, stderr = process.communicate(timeout=wait)
        except subprocess.TimeoutExpired:
            continue
        return subprocess.CompletedProcess(command_list, process.returncode, stdout, stderr), False


def run_command(
    command: Sequence[str] | str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
    env_overrides: Mapping[str, str] | None = None,
    env_remove: Iterable[str] | None = None,
    cwd: str | None = None,
    cancel_token: "CancellationToken | None" = None,
) -> CommandResult:
    """!
    @brief Execute ``command`` with consistent logging and environment hygiene.
    @details Emits ``<event>_plan`` before and ``<event>_result`` after the call,
    or one of ``_dry_run``, ``_missing``, ``_timeout``, ``_cancelled`` and
    ``_error``. Failures never raise; they are reported through the returned
    :class:`CommandResult`.
    @param command Sequence of command arguments, or a complete command line that
    is handed to the child unchanged.
    @param event Base name for structured log events.
    @param timeout Optional timeout in seconds, capped by :func:`set_global_timeout`.
    @param dry_run Echo the command without spawning it.
    @param human_message Optional message emitted to the human logger first.
    @param extra Additional metadata merged into machine log payloads.
    @param env Explicit environment mapping to start from prior to sanitisation.
    @param inherit_env Whether to inherit :data:`os.environ` when ``env`` is ``None``.
    @param env_overrides Mapping applied after sanitisation.
    @param env_remove Additional variables to remove from the environment.
    @param cwd Working directory for the child.
    @param cancel_token When given, the child is killed as soon as the token is cancelled.
    @returns :class:`CommandResult` describing the observed outcome.
    """

    human_logger = logging_ext.get_human_logger()

    command_list = [command] if isinstance(command, str) else [str(part) for part in command]
    # Strings are complete command lines and reach the child unquoted.
    popen_args: Sequence[str] | str = command if isinstance(command, str) else command_list
    effective_timeout: Any = _resolve_timeout(timeout)
    emitter = _EventEmitter(event, command_list, timeout=effective_timeout, cwd=cwd, extra=extra)
    emitter.emit("plan", dry_run=dry_run)

    if dry_run:
        human_logger.info("%s [dry-run]", human_message or f"Would execute {' '.join(command_list)}")
        emitter.emit("dry_run", result=_result_payload(return_code=0, duration=0.0))
        return CommandResult(command=command_list, returncode=0, stdout="", stderr="", duration=0.0, skipped=True)

    if human_message:
        human_logger.info(human_message)

    sanitized_env = sanitize_environment(
        base_env=env,
        inherit=inherit_env,
        extra=env_overrides,
        remove=env_remove,
    )

    start = time.monotonic()
    try:
        if cancel_token is None:
            completed: subprocess.CompletedProcess[str] | None = subprocess.run(  # noqa: S603
                popen_args,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                check=False,
                env=sanitized_env,
                cwd=cwd,
            )
            cancelled = False
        else:
            completed, cancelled = _run_cancellable(
                popen_args,
                timeout=effective_timeout,
                env=sanitized_env,
                cwd=cwd,
                token=cancel_token,
            )
    except FileNotFoundError as exc:
        duration = time.monotonic() - start
        human_logger.error("Command not found: %s", command_list[0])
        emitter.emit(
            "missing",
            level="error",
            result=_result_payload(return_code=127, duration=duration, error=str(exc)),
        )
        return CommandResult(
            command=command_list,
            returncode=127,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )
    except subprocess.TimeoutExpired as exc:
        duration = time.monotonic() - start
        stdout = str(exc.stdout or "")
        stderr = str(exc.stderr or "")
        human_logger.error("Command timed out after %.1fs: %s", duration, command_list[0])
        emitter.emit(
            "timeout",
            level="error",
            result=_result_payload(
                return_code=1,
                duration=duration,
                stdout=stdout,
                stderr=stderr,
                error="timeout",
                timed_out=True,
            ),
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            timed_out=True,
            error="timeout",
        )
    except OSError as exc:
        duration = time.monotonic() - start
        human_logger.error("Failed to execute %s: %s", command_list[0], exc)
        emitter.emit(
            "error",
            level="error",
            result=_result_payload(return_code=1, duration=duration, error=str(exc)),
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )

    duration = time.monotonic() - start
    if cancelled or completed is None:
        human_logger.warning("Command cancelled: %s", command_list[0])
        emitter.emit(
            "cancelled",
            level="warning",
            result=_result_payload(return_code=1, duration=duration, error="cancelled"),
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout="",
            stderr="",
            duration=duration,
            cancelled=True,
            error="cancelled",
        )

    emitter.emit(
        "result",
        result=_result_payload(
            return_code=completed.returncode,
            duration=duration,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        ),
    )
    if completed.returncode != 0:
        human_logger.warning("Command %s exited with %s", command_list[0], completed.returncode)

    return CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        duration=duration,
    )


__all__ = ["CommandResult", "run_command", "sanitize_environment", "set_global_timeout"]
