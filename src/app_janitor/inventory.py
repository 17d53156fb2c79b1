"""!
@file inventory.py
@brief System enumeration queries used as detection tiers.
@details Each query answers one question about the host (installed
capabilities, enabled features, installed package names, installed Win32
programs) from exactly one source. Failures raise
:class:`DetectionTierFailure`; choosing the next source is the detection
engine's job, not this module's.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import List, Set

from . import constants, powershell, registry_tools
from .errors import AppJanitorError, DetectionTierFailure
from .matching import InstalledProgram

__all__ = ["SystemInventory"]

_logger = logging.getLogger(__name__)

_CAPABILITY_QUERY = (
    "Get-WindowsCapability -Online | Where-Object State -eq 'Installed' | "
    "Select-Object -ExpandProperty Name"
)
_FEATURE_QUERY = (
    "Get-WindowsOptionalFeature -Online | Where-Object State -eq 'Enabled' | "
    "Select-Object -ExpandProperty FeatureName"
)
_APPX_QUERY = "Get-AppxPackage -AllUsers | Select-Object -ExpandProperty Name"
_STORE_PROGRAM_QUERY = (
    "Get-CimInstance -ClassName Win32_InstalledStoreProgram | Select-Object -ExpandProperty Name"
)
_WIN32_PROGRAM_QUERY = "Get-CimInstance -ClassName Win32_InstalledWin32Program | Select-Object Name, Vendor"

_ENUMERATION_SCRIPT = """\
$ErrorActionPreference = 'SilentlyContinue'
$names = New-Object System.Collections.Generic.HashSet[string]
foreach ($package in Get-AppxPackage) { [void]$names.Add($package.Name) }
foreach ($package in Get-AppxProvisionedPackage -Online) { [void]$names.Add($package.DisplayName) }
$names | Sort-Object
"""


class SystemInventory:
    """!
    @brief Live queries against the servicing stack, AppX, WMI and the registry.
    @param cache_dir Directory for the temporary enumeration script.
    @param package_timeout Ceiling for the primary package enumeration.
    """

    def __init__(
        self,
        *,
        cache_dir: Path | None = None,
        package_timeout: float = constants.PACKAGE_ENUMERATION_TIMEOUT,
    ) -> None:
        self._cache_dir = cache_dir
        self._package_timeout = package_timeout

    def _query(self, tier: str, command: str, timeout: float) -> Set[str]:
        try:
            return set(powershell.run_query(command, timeout=timeout, event=f"inventory_{tier}"))
        except AppJanitorError as exc:
            raise DetectionTierFailure(tier, str(exc)) from exc

    def installed_capabilities(self) -> Set[str]:
        return self._query("capabilities", _CAPABILITY_QUERY, constants.SERVICING_QUERY_TIMEOUT)

    def enabled_features(self) -> Set[str]:
        return self._query("features", _FEATURE_QUERY, constants.SERVICING_QUERY_TIMEOUT)

    def appx_packages(self) -> Set[str]:
        """!
        @brief Primary package tier: all-users AppX enumeration, bounded by a short timeout.
        """

        return self._query("appx", _APPX_QUERY, self._package_timeout)

    def store_programs(self) -> Set[str]:
        """!
        @brief WMI package tier: ``Win32_InstalledStoreProgram`` names.
        """

        return self._query("wmi", _STORE_PROGRAM_QUERY, constants.WMI_QUERY_TIMEOUT)

    def registry_hint_packages(self) -> Set[str]:
        """!
        @brief Package names implied by uninstall subkeys (OneNote, OneDrive).
        """

        found: Set[str] = set()
        roots = [constants.MACHINE_UNINSTALL_ROOTS[0], (constants.HKCU, constants.UNINSTALL_SUBKEY)]
        for root, path in roots:
            subkeys = [name.lower() for name in registry_tools.list_subkeys(root, path)]
            for fragment, package in constants.REGISTRY_DETECTION_HINTS:
                if any(fragment.lower() in name for name in subkeys):
                    found.add(package)
        return found

    def script_packages(self) -> Set[str]:
        """!
        @brief Last-resort tier: run an enumeration script for per-user and provisioned packages.
        """

        directory = self._cache_dir or Path(tempfile.gettempdir())
        try:
            directory.mkdir(parents=True, exist_ok=True)
            script_path = directory / "EnumeratePackages.ps1"
            script_path.write_text(_ENUMERATION_SCRIPT, encoding="utf-8")
        except OSError as exc:
            raise DetectionTierFailure("script", f"cannot write enumeration script: {exc}") from exc
        try:
            output = powershell.execute_script_file(
                script_path,
                timeout=constants.SCRIPT_ENUMERATION_TIMEOUT,
                event="inventory_script",
            )
        except AppJanitorError as exc:
            raise DetectionTierFailure("script", str(exc)) from exc
        finally:
            script_path.unlink(missing_ok=True)
        return {line.strip() for line in output.splitlines() if line.strip()}

    def win32_programs(self) -> List[InstalledProgram]:
        """!
        @brief Installed Win32 programs as reported by WMI.
        """

        try:
            rows = powershell.run_json_query(
                _WIN32_PROGRAM_QUERY,
                timeout=constants.WMI_QUERY_TIMEOUT,
                event="inventory_win32",
            )
        except AppJanitorError as exc:
            raise DetectionTierFailure("win32", str(exc)) from exc
        return [(str(row.get("Name") or ""), str(row.get("Vendor") or "")) for row in rows if row.get("Name")]

    def registry_programs(self) -> List[InstalledProgram]:
        """!
        @brief Installed programs from the uninstall keys, skipping system components.
        """

        programs: List[InstalledProgram] = []
        roots = [*constants.MACHINE_UNINSTALL_ROOTS, (constants.HKCU, constants.UNINSTALL_SUBKEY)]
        for root, path in roots:
            for subkey in registry_tools.list_subkeys(root, path):
                values = registry_tools.read_values(root, f"{path}\\{subkey}")
                if values.get("SystemComponent") == 1:
                    continue
                display_name = values.get("DisplayName")
                if display_name:
                    programs.append((str(display_name), str(values.get("Publisher") or "")))
        _logger.debug("Registry reports %d installed programs", len(programs))
        return programs
