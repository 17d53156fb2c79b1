"""!
@brief Elevation and user-context helpers.
@details When the process was elevated with a different account than the
one signed in at the console, ``HKCU`` points at the wrong profile. The
helpers here resolve the interactive user's SID so per-user registry lookups
can go through ``HKU\\<SID>`` instead.
"""
from __future__ import annotations

import ctypes
import os
from typing import Tuple

from . import constants, logging_ext, powershell, registry_tools
from .errors import AppJanitorError

_PROFILE_LIST = r"SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList"
_INTERACTIVE_USER_QUERY = "(Get-CimInstance -ClassName Win32_ComputerSystem).UserName"


def is_admin() -> bool:
    """!
    @brief Determine whether the current process token has administrative rights.
    """

    if os.name != "nt":
        return False
    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
        return bool(shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def current_username() -> str:
    """!
    @brief Return the account name of the current process, best-effort.
    """

    for candidate in (os.getlogin, lambda: os.environ.get("USERNAME"), lambda: os.environ.get("USER")):
        try:
            value = candidate()
        except OSError:
            value = None
        if value:
            return str(value)
    return ""


def interactive_username() -> str:
    """!
    @brief Return the console user's name without domain prefix, or ``""``.
    """

    try:
        lines = powershell.run_query(_INTERACTIVE_USER_QUERY, timeout=15, event="interactive_user")
    except AppJanitorError as exc:
        logging_ext.get_human_logger().debug("Interactive user lookup failed: %s", exc)
        return ""
    if not lines:
        return ""
    return lines[0].rsplit("\\", 1)[-1]


def sid_for_username(username: str) -> str | None:
    """!
    @brief Map a user name to a SID through the ``ProfileList`` registry key.
    """

    if not username:
        return None
    suffix = "\\" + username.lower()
    for sid in registry_tools.list_subkeys(constants.HKLM, _PROFILE_LIST):
        profile_path = registry_tools.get_value(constants.HKLM, f"{_PROFILE_LIST}\\{sid}", "ProfileImagePath")
        if isinstance(profile_path, str) and profile_path.lower().endswith(suffix):
            return sid
    return None


def is_elevated_as_other_user() -> bool:
    """!
    @brief ``True`` when an admin token belongs to someone other than the console user.
    """

    if not is_admin():
        return False
    interactive = interactive_username()
    return bool(interactive) and interactive.lower() != current_username().lower()


def user_uninstall_root() -> Tuple[int, str]:
    """!
    @brief Return the uninstall key of the interactive user's hive.
    @details Falls back to ``HKCU`` when the interactive SID cannot be resolved.
    """

    if is_elevated_as_other_user():
        sid = sid_for_username(interactive_username())
        if sid:
            logging_ext.get_human_logger().debug("Using HKU\\%s for per-user uninstall entries", sid)
            return constants.HKU, f"{sid}\\{constants.UNINSTALL_SUBKEY}"
    return constants.HKCU, constants.UNINSTALL_SUBKEY


__all__ = [
    "current_username",
    "interactive_username",
    "is_admin",
    "is_elevated_as_other_user",
    "sid_for_username",
    "user_uninstall_root",
]
