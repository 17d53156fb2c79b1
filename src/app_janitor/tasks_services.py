"""!
@brief Scheduled task helpers for persisted removal scripts.
@details Wraps ``schtasks.exe`` to register, query and delete the tasks that
re-run removal scripts at startup or logon. Failures are logged and reported
as ``False``; a missing ``schtasks.exe`` (exit code 127) is treated the same.
"""
from __future__ import annotations

import subprocess
from pathlib import Path

from . import constants, exec_utils, logging_ext
from .models import RemovalScript

SCHTASKS_EXECUTABLE = "schtasks.exe"


def task_action(script_path: Path) -> str:
    """!
    @brief Command line the scheduled task runs for ``script_path``.
    """

    return subprocess.list2cmdline(
        ["powershell.exe", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", str(script_path)]
    )


def is_registered(task_name: str) -> bool:
    """!
    @brief Return ``True`` when ``schtasks /Query`` knows ``task_name``.
    """

    result = exec_utils.run_command(
        [SCHTASKS_EXECUTABLE, "/Query", "/TN", task_name],
        event="task_query",
        timeout=constants.SCHTASKS_TIMEOUT,
        extra={"task": task_name},
    )
    return result.returncode == 0 and not result.error


def register(script: RemovalScript) -> bool:
    """!
    @brief Register (or replace) the scheduled task for ``script``.
    @details The script file is written first when it is not yet on disk. The
    task runs as ``SYSTEM`` with highest privileges, at startup when
    ``run_on_startup`` is set and at logon otherwise.
    @returns ``True`` when the task was created.
    """

    human_logger = logging_ext.get_human_logger()
    if script.actual_script_path is None:
        human_logger.warning("Cannot register %s: script path unknown", script.target_scheduled_task_name)
        return False

    path = Path(script.actual_script_path)
    if not path.exists():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(script.content, encoding="utf-8")
        except OSError as exc:
            human_logger.warning("Cannot write %s before registering its task: %s", path, exc)
            return False

    trigger = "ONSTART" if script.run_on_startup else "ONLOGON"
    task = script.target_scheduled_task_name
    result = exec_utils.run_command(
        [
            SCHTASKS_EXECUTABLE,
            "/Create",
            "/TN",
            task,
            "/TR",
            task_action(path),
            "/SC",
            trigger,
            "/RU",
            "SYSTEM",
            "/RL",
            "HIGHEST",
            "/F",
        ],
        event="task_register",
        timeout=constants.SCHTASKS_TIMEOUT,
        human_message=f"Registering scheduled task {task}",
        extra={"task": task, "trigger": trigger, "script": str(path)},
    )

    if result.returncode == 127:
        human_logger.warning("schtasks.exe unavailable; cannot register %s", task)
        return False
    if result.returncode == 0 and not result.error:
        human_logger.info("Registered scheduled task %s (%s)", task, trigger)
        return True
    human_logger.warning(
        "schtasks exited with %s registering %s: %s",
        result.returncode,
        task,
        result.stderr.strip(),
    )
    return False


def unregister(task_name: str) -> bool:
    """!
    @brief Delete ``task_name``; an absent task counts as success.
    """

    human_logger = logging_ext.get_human_logger()

    if not is_registered(task_name):
        human_logger.debug("Scheduled task %s is not registered", task_name)
        return True

    result = exec_utils.run_command(
        [SCHTASKS_EXECUTABLE, "/Delete", "/TN", task_name, "/F"],
        event="task_delete",
        timeout=constants.SCHTASKS_TIMEOUT,
        human_message=f"Deleting scheduled task {task_name}",
        extra={"task": task_name},
    )

    if result.returncode == 127:
        human_logger.debug("schtasks.exe unavailable; cannot delete %s", task_name)
        return False
    if result.returncode == 0 and not result.error:
        human_logger.info("Deleted scheduled task %s", task_name)
        return True
    human_logger.debug(
        "schtasks exited with %s for %s: %s",
        result.returncode,
        task_name,
        result.stderr.strip(),
    )
    return False


__all__ = ["SCHTASKS_EXECUTABLE", "is_registered", "register", "task_action", "unregister"]
