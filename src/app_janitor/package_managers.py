"""!
@file package_managers.py
@brief WinGet (primary) and Chocolatey (secondary) package-manager collaborators.
@details Both clients expose the same narrow surface: ``installed_ids()``,
``is_installed(id)`` and ``uninstall(id, source, display_name, token)``.
Enumeration failures degrade to an empty set; uninstall failures return
``False``. Only cancellation raises.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Set

from . import constants, exec_utils, logging_ext
from .errors import OperationCancelled

if TYPE_CHECKING:
    from .cancellation import CancellationToken

__all__ = ["ChocolateyClient", "PackageManager", "WinGetClient"]

_logger = logging.getLogger(__name__)


class PackageManager(Protocol):
    """!
    @brief Interface shared by the package-manager collaborators.
    """

    name: str

    def installed_ids(self) -> Set[str]: ...

    def is_installed(self, package_id: str) -> bool: ...

    def uninstall(
        self,
        package_id: str,
        source: str | None = None,
        display_name: str | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> bool: ...


def _check_cancelled(result: exec_utils.CommandResult) -> None:
    if result.cancelled:
        raise OperationCancelled("Uninstall cancelled by user")


class WinGetClient:
    """!
    @brief Wrapper around ``winget.exe``.
    @param cache_dir Directory receiving the ``winget export`` JSON file.
    """

    name = "winget"

    def __init__(self, *, cache_dir: Path = constants.DEFAULT_CACHE_DIRECTORY, executable: str = "winget") -> None:
        self._cache_dir = cache_dir
        self._executable = executable

    def installed_ids(self) -> Set[str]:
        """!
        @brief Return installed package identifiers from ``winget export``.
        """

        export_path = self._cache_dir / "winget-packages.json"
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            export_path.unlink(missing_ok=True)
        except OSError as exc:
            _logger.warning("Cannot prepare WinGet export path %s: %s", export_path, exc)
            return set()

        result = exec_utils.run_command(
            [self._executable, "export", "-o", str(export_path), "--nowarn", "--disable-interactivity"],
            event="winget_export",
            timeout=constants.WINGET_EXPORT_TIMEOUT,
        )
        if result.returncode != 0 or not export_path.exists():
            _logger.warning("WinGet export failed with exit code %s", result.returncode)
            return set()

        try:
            document = json.loads(export_path.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as exc:
            _logger.warning("Unreadable WinGet export %s: %s", export_path, exc)
            return set()
        return parse_export(document)

    def is_installed(self, package_id: str) -> bool:
        wanted = package_id.lower()
        return any(candidate.lower() == wanted for candidate in self.installed_ids())

    def uninstall(
        self,
        package_id: str,
        source: str | None = None,
        display_name: str | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> bool:
        command = [
            self._executable,
            "uninstall",
            "--id",
            package_id,
            "--silent",
            "--accept-source-agreements",
            "--force",
            "--disable-interactivity",
        ]
        if source:
            command.extend(["--source", source])
        result = exec_utils.run_command(
            command,
            event="winget_uninstall",
            timeout=constants.WINGET_UNINSTALL_TIMEOUT,
            human_message=f"Uninstalling {display_name or package_id} with WinGet",
            extra={"package_id": package_id, "source": source},
            cancel_token=cancel_token,
        )
        _check_cancelled(result)
        return result.returncode == 0 and not result.error


def parse_export(document: object) -> Set[str]:
    """!
    @brief Collect ``Sources[].Packages[].PackageIdentifier`` from a WinGet export.
    """

    found: Set[str] = set()
    if not isinstance(document, dict):
        return found
    for source in document.get("Sources") or []:
        if not isinstance(source, dict):
            continue
        for package in source.get("Packages") or []:
            if isinstance(package, dict) and package.get("PackageIdentifier"):
                found.add(str(package["PackageIdentifier"]))
    return found


class ChocolateyClient:
    """!
    @brief Wrapper around ``choco.exe``.
    """

    name = "chocolatey"

    def __init__(self, executable: str | None = None) -> None:
        self._executable = executable

    def _resolve_executable(self) -> str | None:
        if self._executable:
            return self._executable
        if constants.CHOCOLATEY_EXECUTABLE.exists():
            return str(constants.CHOCOLATEY_EXECUTABLE)
        return shutil.which("choco")

    def installed_ids(self) -> Set[str]:
        """!
        @brief Return installed package ids from ``choco list -r`` (``id|version`` lines).
        """

        executable = self._resolve_executable()
        if not executable:
            logging_ext.get_human_logger().debug("Chocolatey is not installed")
            return set()
        result = exec_utils.run_command(
            [executable, "list", "-r"],
            event="choco_list",
            timeout=constants.CHOCO_LIST_TIMEOUT,
        )
        if result.returncode != 0:
            return set()
        return parse_list_output(result.stdout)

    def is_installed(self, package_id: str) -> bool:
        wanted = package_id.lower()
        return any(candidate.lower() == wanted for candidate in self.installed_ids())

    def uninstall(
        self,
        package_id: str,
        source: str | None = None,
        display_name: str | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> bool:
        executable = self._resolve_executable()
        if not executable:
            logging_ext.get_human_logger().warning("Chocolatey is not installed; cannot remove %s", package_id)
            return False
        result = exec_utils.run_command(
            [executable, "uninstall", package_id, "-y", "--no-progress"],
            event="choco_uninstall",
            timeout=constants.CHOCO_UNINSTALL_TIMEOUT,
            human_message=f"Uninstalling {display_name or package_id} with Chocolatey",
            extra={"package_id": package_id},
            cancel_token=cancel_token,
        )
        _check_cancelled(result)
        return result.returncode in constants.SUCCESS_EXIT_CODES and not result.error


def parse_list_output(output: str) -> Set[str]:
    found: Set[str] = set()
    for line in output.splitlines():
        package_id, _, _ = line.strip().partition("|")
        if package_id and " " not in package_id:
            found.add(package_id)
    return found
