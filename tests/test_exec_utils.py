"""!
@brief Exec utils behaviour tests.
@details Validates environment sanitisation, dry-run flows, cancellation and
subprocess logging behaviour for :mod:`app_janitor.exec_utils`.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import exec_utils  # noqa: E402
from app_janitor.cancellation import CancellationToken  # noqa: E402


class _StubLogger:
    """!
    @brief Lightweight logger capturing structured log calls.
    """

    def __init__(self) -> None:
        self.records: List[tuple[str, str, Dict[str, object]]] = []

    def _record(self, level: str, message: str, args: tuple[object, ...], kwargs: Dict[str, object]) -> None:
        text = message % args if args else message
        self.records.append((level, text, dict(kwargs)))

    def info(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("info", message, args, kwargs)

    def warning(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("warning", message, args, kwargs)

    def error(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("error", message, args, kwargs)


@pytest.fixture
def stub_loggers(monkeypatch: pytest.MonkeyPatch) -> tuple[_StubLogger, _StubLogger]:
    human_logger = _StubLogger()
    machine_logger = _StubLogger()
    monkeypatch.setattr(exec_utils.logging_ext, "get_human_logger", lambda: human_logger)
    monkeypatch.setattr(exec_utils.logging_ext, "get_machine_logger", lambda: machine_logger)
    return human_logger, machine_logger


@pytest.fixture(autouse=True)
def _reset_global_timeout():
    yield
    exec_utils.set_global_timeout(None)


def test_sanitize_environment_strips_blocklist_and_overrides() -> None:
    """!
    @brief Ensure sanitisation removes Python-specific variables and applies overrides.
    """

    base_env = {"PYTHONPATH": "should_remove", "VIRTUAL_ENV": "venv", "KEEP": "1", "LANG": "C"}

    sanitized = exec_utils.sanitize_environment(
        base_env=base_env,
        inherit=False,
        extra={"NEW": "value"},
        remove=["KEEP"],
    )

    assert "PYTHONPATH" not in sanitized
    assert "VIRTUAL_ENV" not in sanitized
    assert "KEEP" not in sanitized
    assert sanitized["LANG"] == "C"
    assert sanitized["NEW"] == "value"


def test_run_command_dry_run_logs_without_invocation(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief Dry-run execution should skip subprocess invocation while logging intent.
    """

    human_logger, machine_logger = stub_loggers
    calls: List[List[str]] = []

    def fake_run(*args: object, **kwargs: object) -> None:  # pragma: no cover - should not be called
        calls.append(list(args[0]))
        raise AssertionError("subprocess.run should not be invoked in dry-run mode")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(
        ["powershell", "-Command", "Write-Host"],
        event="sample",
        dry_run=True,
        human_message="Executing sample",
    )

    assert result.skipped is True
    assert result.returncode == 0
    assert not calls
    assert machine_logger.records[0][1] == "sample_plan"
    assert machine_logger.records[0][2]["extra"]["call"]["command"] == ["powershell", "-Command", "Write-Host"]
    assert machine_logger.records[1][1] == "sample_dry_run"
    assert machine_logger.records[1][2]["extra"]["call"]["command"] == ["powershell", "-Command", "Write-Host"]
    assert "[dry-run]" in human_logger.records[0][1]


def test_run_command_executes_with_sanitized_environment(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief Execute path should sanitise the environment before invoking subprocesses.
    """

    _, machine_logger = stub_loggers
    captured_env: Dict[str, str] = {}

    def fake_run(command, *, capture_output, text, timeout, check, env, cwd):
        captured_env.update(env)
        return SimpleNamespace(returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(
        ["cmd"],
        event="sanity",
        env={"PYTHONPATH": "value", "KEEP": "1"},
        inherit_env=False,
        env_overrides={"EXTRA": "2"},
        env_remove=["KEEP"],
    )

    assert result.stdout == "ok"
    assert result.ok
    assert captured_env.get("PYTHONPATH") is None
    assert captured_env.get("KEEP") is None
    assert captured_env["EXTRA"] == "2"
    assert machine_logger.records[-1][1] == "sanity_result"
    assert machine_logger.records[-1][2]["extra"]["result"]["rc"] == 0


def test_run_command_non_zero_exit_is_reported_not_raised(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief Non-zero exit codes come back on the result and log a warning.
    """

    human_logger, machine_logger = stub_loggers

    def fake_run(command, *, capture_output, text, timeout, check, env, cwd):
        assert check is False
        return SimpleNamespace(returncode=5, stdout="", stderr="boom")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(["cmd"], event="failure")

    assert result.returncode == 5
    assert result.stderr == "boom"
    assert not result.ok
    assert machine_logger.records[-1][1] == "failure_result"
    assert machine_logger.records[-1][2]["extra"]["result"]["rc"] == 5
    warning_messages = [record for record in human_logger.records if record[0] == "warning"]
    assert warning_messages and "exited with" in warning_messages[0][1]


def test_run_command_passes_command_line_string_unchanged(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief A string command reaches :func:`subprocess.run` as one untouched command line.
    """

    _, machine_logger = stub_loggers
    line = '"C:\\Program Files\\App\\unins000.exe" /LOG="C:\\Program Files\\App\\u.log" /VERYSILENT'
    seen: List[object] = []

    def fake_run(command, *, capture_output, text, timeout, check, env, cwd):
        seen.append(command)
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(line, event="vendor_uninstall")

    assert seen == [line]
    assert result.command == [line]
    assert machine_logger.records[0][2]["extra"]["call"]["command"] == [line]


def test_run_command_missing_executable_returns_127(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    _, machine_logger = stub_loggers

    def fake_run(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(["winget", "export"], event="winget_export")

    assert result.returncode == 127
    assert result.error
    assert machine_logger.records[-1][1] == "winget_export_missing"


def test_run_command_timeout_marks_result(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief Timeouts are reported through ``timed_out`` with the partial output kept.
    """

    def fake_run(command, *, timeout, **kwargs):
        raise subprocess.TimeoutExpired(command, timeout, output="partial", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(["powershell.exe"], event="slow", timeout=3)

    assert result.timed_out is True
    assert result.returncode == 1
    assert result.stdout == "partial"


def test_global_timeout_caps_requested_timeout(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    captured: Dict[str, object] = {}

    def fake_run(command, *, capture_output, text, timeout, check, env, cwd):
        captured.setdefault("timeouts", []).append(timeout)
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)
    exec_utils.set_global_timeout(10)

    exec_utils.run_command(["cmd"], event="capped", timeout=600)
    exec_utils.run_command(["cmd"], event="uncapped")
    exec_utils.run_command(["cmd"], event="shorter", timeout=2)

    assert captured["timeouts"] == [10.0, 10.0, 2]


class _FakeProcess:
    """!
    @brief Stand-in for :class:`subprocess.Popen` that never finishes on its own.
    """

    instances: List["_FakeProcess"] = []

    def __init__(self, command, **kwargs) -> None:
        self.command = command
        self.kwargs = kwargs
        self.killed = False
        self.returncode = None
        _FakeProcess.instances.append(self)

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def communicate(self, timeout=None):
        if self.killed:
            return "", ""
        raise subprocess.TimeoutExpired(self.command, timeout)


def test_run_command_cancel_token_kills_child(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    """!
    @brief A cancelled token kills the running child and flags the result.
    """

    _, machine_logger = stub_loggers
    _FakeProcess.instances.clear()
    monkeypatch.setattr(exec_utils.subprocess, "Popen", _FakeProcess)
    monkeypatch.setattr(exec_utils, "_CANCEL_POLL_SECONDS", 0.01)

    token = CancellationToken()
    token.cancel()

    result = exec_utils.run_command(["powershell.exe", "-File", "x.ps1"], event="script", cancel_token=token)

    assert result.cancelled is True
    assert result.returncode == 1
    assert _FakeProcess.instances[0].killed is True
    assert machine_logger.records[-1][1] == "script_cancelled"


def test_run_command_with_token_returns_completed_output(monkeypatch: pytest.MonkeyPatch, stub_loggers) -> None:
    class _Finishing:
        def __init__(self, command, **kwargs) -> None:
            self.returncode = 0

        def kill(self) -> None:  # pragma: no cover - not expected
            raise AssertionError("should not be killed")

        def communicate(self, timeout=None):
            return "done\n", ""

    monkeypatch.setattr(exec_utils.subprocess, "Popen", _Finishing)

    result = exec_utils.run_command(["cmd"], event="token", cancel_token=CancellationToken())

    assert result.ok
    assert result.stdout == "done\n"
