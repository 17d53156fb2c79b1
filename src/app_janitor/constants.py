"""!
@brief Static data shared by detection, uninstall and removal modules.
@details Centralises registry roots, the on-disk script layout, scheduled-task
names, subprocess timeouts, and the handful of well-known package names the
bulk removal script treats specially.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Tuple

try:  # pragma: no cover - Windows registry handles are optional on test hosts.
    import winreg
except ImportError:  # pragma: no cover - test hosts use the numeric handles below.
    winreg = None  # type: ignore[assignment]


if winreg is not None:  # pragma: no branch - deterministic assignments.
    HKLM = winreg.HKEY_LOCAL_MACHINE
    HKCU = winreg.HKEY_CURRENT_USER
    HKCR = winreg.HKEY_CLASSES_ROOT
    HKU = winreg.HKEY_USERS
else:  # pragma: no cover - exercised implicitly in non-Windows CI.
    HKLM = 0x80000002
    HKCU = 0x80000001
    HKCR = 0x80000000
    HKU = 0x80000003


REGISTRY_ROOTS: Dict[str, int] = {
    "HKLM": HKLM,
    "HKEY_LOCAL_MACHINE": HKLM,
    "HKCU": HKCU,
    "HKEY_CURRENT_USER": HKCU,
    "HKCR": HKCR,
    "HKEY_CLASSES_ROOT": HKCR,
    "HKU": HKU,
    "HKEY_USERS": HKU,
}
"""!
@brief Hive prefixes accepted in catalog registry settings.
"""

UNINSTALL_SUBKEY = r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall"
"""!
@brief Per-hive path holding ``UninstallString`` entries.
"""

MACHINE_UNINSTALL_ROOTS: Tuple[Tuple[int, str], ...] = (
    (HKLM, UNINSTALL_SUBKEY),
    (HKLM, r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall"),
)
"""!
@brief Machine-wide 64-bit and 32-bit-on-64 uninstall roots, in search order.
"""

REGISTRY_DETECTION_HINTS: Tuple[Tuple[str, str], ...] = (
    ("OneNote", "Microsoft.Office.OneNote"),
    ("OneDrive", "Microsoft.OneDriveSync"),
)
"""!
@brief Uninstall subkey fragments that imply an AppX-style package is present.
"""

_PROGRAM_DATA = Path(os.environ.get("ProgramData", r"C:\ProgramData"))
_LOCAL_APP_DATA = Path(os.environ.get("LOCALAPPDATA", str(Path.home() / "AppData" / "Local")))

DEFAULT_SCRIPTS_DIRECTORY = _PROGRAM_DATA / "AppJanitor" / "Scripts"
"""!
@brief Fixed directory that holds the bulk and dedicated removal scripts.
"""

DEFAULT_SCRIPT_LOG_DIRECTORY = _PROGRAM_DATA / "AppJanitor" / "Logs"
"""!
@brief Directory the generated PowerShell scripts write their own log into.
"""

DEFAULT_LOG_DIRECTORY = _LOCAL_APP_DATA / "AppJanitor" / "logs"
"""!
@brief Default directory for the human/JSONL log streams.
"""

DEFAULT_CACHE_DIRECTORY = _LOCAL_APP_DATA / "AppJanitor" / "Cache"
"""!
@brief Scratch directory for package-manager exports.
"""

BULK_SCRIPT_NAME = "BloatRemoval"
BULK_SCRIPT_FILENAME = f"{BULK_SCRIPT_NAME}.ps1"
BULK_TASK_NAME = "AppJanitor\\BloatRemoval"
"""!
@brief File and scheduled-task identity of the generic bulk removal script.
"""

SCRIPT_LOG_ROTATE_BYTES = 512_000
"""!
@brief Size at which the generated scripts truncate their own log file.
"""

PACKAGE_ENUMERATION_TIMEOUT = 15
SERVICING_QUERY_TIMEOUT = 120
WMI_QUERY_TIMEOUT = 60
SCRIPT_ENUMERATION_TIMEOUT = 120
WINGET_EXPORT_TIMEOUT = 30
WINGET_UNINSTALL_TIMEOUT = 600
CHOCO_LIST_TIMEOUT = 15
CHOCO_UNINSTALL_TIMEOUT = 600
REGISTRY_UNINSTALL_TIMEOUT = 900
SCHTASKS_TIMEOUT = 60
STATUS_CACHE_SECONDS = 300.0
"""!
@brief Subprocess ceilings (seconds) and the single-source status cache lifetime.
"""

CHOCOLATEY_EXECUTABLE = _PROGRAM_DATA / "chocolatey" / "bin" / "choco.exe"
"""!
@brief Default Chocolatey install location, checked before ``PATH``.
"""

XBOX_FIXUP_PACKAGES: Tuple[str, ...] = (
    "Microsoft.GamingApp",
    "Microsoft.XboxGamingOverlay",
    "Microsoft.XboxGameOverlay",
)
"""!
@brief Packages whose removal pulls the Game DVR registry fix-up into the bulk script.
"""

TEAMS_PACKAGE = "MSTeams"
ONENOTE_SPECIAL = "OneNote"
ONENOTE_PROCESSES: Tuple[str, ...] = ("OneNote", "ONENOTE", "ONENOTEM")

UTILITY_KEYWORDS: Tuple[str, ...] = (
    "helper",
    "updater",
    "installer",
    "uninstall",
    "add-in",
    "plugin",
    "addon",
    "extension",
)
"""!
@brief Display-name fragments that mark an installed program as an auxiliary tool.
"""

SUCCESS_EXIT_CODES: Tuple[int, ...] = (0, 1641, 3010)
"""!
@brief Installer exit codes treated as success (3010/1641 request a reboot).
"""

__all__ = [
    "BULK_SCRIPT_FILENAME",
    "BULK_SCRIPT_NAME",
    "BULK_TASK_NAME",
    "CHOCOLATEY_EXECUTABLE",
    "CHOCO_LIST_TIMEOUT",
    "CHOCO_UNINSTALL_TIMEOUT",
    "DEFAULT_CACHE_DIRECTORY",
    "DEFAULT_LOG_DIRECTORY",
    "DEFAULT_SCRIPTS_DIRECTORY",
    "DEFAULT_SCRIPT_LOG_DIRECTORY",
    "HKCR",
    "HKCU",
    "HKLM",
    "HKU",
    "MACHINE_UNINSTALL_ROOTS",
    "ONENOTE_PROCESSES",
    "ONENOTE_SPECIAL",
    "PACKAGE_ENUMERATION_TIMEOUT",
    "REGISTRY_DETECTION_HINTS",
    "REGISTRY_ROOTS",
    "REGISTRY_UNINSTALL_TIMEOUT",
    "SCHTASKS_TIMEOUT",
    "SCRIPT_ENUMERATION_TIMEOUT",
    "SCRIPT_LOG_ROTATE_BYTES",
    "SERVICING_QUERY_TIMEOUT",
    "STATUS_CACHE_SECONDS",
    "SUCCESS_EXIT_CODES",
    "TEAMS_PACKAGE",
    "UNINSTALL_SUBKEY",
    "UTILITY_KEYWORDS",
    "WINGET_EXPORT_TIMEOUT",
    "WINGET_UNINSTALL_TIMEOUT",
    "WMI_QUERY_TIMEOUT",
    "XBOX_FIXUP_PACKAGES",
]
