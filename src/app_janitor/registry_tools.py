"""!
@brief Registry helpers.
@details Thin wrappers over ``winreg`` used by detection (uninstall-key
enumeration), the registry uninstall fallback, and post-removal registry
settings. Read helpers swallow missing keys; write helpers raise ``OSError``
so callers decide how loudly to fail.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Tuple

from . import logging_ext
from .models import RegistrySetting

try:  # pragma: no cover - exercised through mocks on non-Windows platforms.
    import winreg
except ImportError:  # pragma: no cover - handled gracefully during tests.
    winreg = None  # type: ignore[assignment]


def _ensure_winreg() -> None:
    """!
    @brief Raise an informative error when ``winreg`` is unavailable.
    """

    if winreg is None:  # pragma: no cover - simplifies non-Windows test runs.
        raise FileNotFoundError("Windows registry APIs are unavailable on this platform")


@contextmanager
def open_key(root: int, path: str, access: int | None = None) -> Iterator[Any]:
    """!
    @brief Context manager around ``winreg.OpenKey`` that always closes the handle.
    """

    _ensure_winreg()
    access_mask = access if access is not None else winreg.KEY_READ  # type: ignore[union-attr]
    handle = winreg.OpenKey(root, path, 0, access_mask)  # type: ignore[union-attr]
    try:
        yield handle
    finally:
        winreg.CloseKey(handle)  # type: ignore[union-attr]


def iter_subkeys(root: int, path: str) -> Iterator[str]:
    """!
    @brief Yield subkey names for ``root``/``path``.
    """

    _ensure_winreg()
    with open_key(root, path) as handle:
        subkey_count, _, _ = winreg.QueryInfoKey(handle)  # type: ignore[union-attr]
        for index in range(subkey_count):
            yield winreg.EnumKey(handle, index)  # type: ignore[union-attr]


def list_subkeys(root: int, path: str) -> List[str]:
    """!
    @brief Return subkey names for ``root``/``path``, or an empty list when absent.
    """

    try:
        return list(iter_subkeys(root, path))
    except OSError:
        return []


def iter_values(root: int, path: str) -> Iterator[Tuple[str, Any]]:
    _ensure_winreg()
    with open_key(root, path) as handle:
        _, value_count, _ = winreg.QueryInfoKey(handle)  # type: ignore[union-attr]
        for index in range(value_count):
            name, value, _ = winreg.EnumValue(handle, index)  # type: ignore[union-attr]
            yield name, value


def read_values(root: int, path: str) -> Dict[str, Any]:
    """!
    @brief Read all values beneath ``root``/``path`` into a dictionary.
    @returns Empty dictionary when the key cannot be opened.
    """

    try:
        return dict(iter_values(root, path))
    except OSError:
        return {}


def get_value(root: int, path: str, value_name: str, default: Any | None = None) -> Any | None:
    try:
        _ensure_winreg()
        with open_key(root, path) as handle:
            value, _ = winreg.QueryValueEx(handle, value_name)  # type: ignore[union-attr]
            return value
    except OSError:
        return default


def key_exists(root: int, path: str) -> bool:
    try:
        _ensure_winreg()
        with open_key(root, path):
            return True
    except OSError:
        return False


def set_value(root: int, path: str, name: str, value: object, value_type: str = "REG_DWORD") -> None:
    """!
    @brief Create ``root``/``path`` when needed and write one value.
    @throws OSError when the key cannot be created or written.
    @throws ValueError for unknown ``value_type`` names.
    """

    _ensure_winreg()
    type_code = getattr(winreg, value_type.upper(), None)
    if not isinstance(type_code, int):
        raise ValueError(f"Unsupported registry value type: {value_type}")
    handle = winreg.CreateKeyEx(root, path, 0, winreg.KEY_SET_VALUE)  # type: ignore[union-attr]
    try:
        winreg.SetValueEx(handle, name, 0, type_code, value)  # type: ignore[union-attr]
    finally:
        winreg.CloseKey(handle)  # type: ignore[union-attr]


def apply_settings(settings: Iterable[RegistrySetting]) -> List[str]:
    """!
    @brief Write every setting, continuing past individual failures.
    @returns Descriptions of the settings that could not be written.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    failures: List[str] = []

    for setting in settings:
        try:
            set_value(setting.root, setting.path, setting.name, setting.value, setting.value_type)
        except (OSError, ValueError) as exc:
            failures.append(setting.describe())
            human_logger.warning("Could not apply registry setting %s: %s", setting.describe(), exc)
            machine_logger.warning(
                "registry_setting_failed",
                extra={"event": "registry_setting_failed", "setting": setting.describe(), "error": str(exc)},
            )
        else:
            human_logger.debug("Applied registry setting %s", setting.describe())

    return failures


def hive_name(root: int) -> str:
    """!
    @brief Provide a friendly identifier for a registry hive.
    """

    mapping = {
        getattr(winreg, "HKEY_LOCAL_MACHINE", 0x80000002): "HKLM",  # type: ignore[union-attr]
        getattr(winreg, "HKEY_CURRENT_USER", 0x80000001): "HKCU",  # type: ignore[union-attr]
        getattr(winreg, "HKEY_USERS", 0x80000003): "HKU",  # type: ignore[union-attr]
        getattr(winreg, "HKEY_CLASSES_ROOT", 0x80000000): "HKCR",  # type: ignore[union-attr]
    }
    return mapping.get(root, hex(root))


__all__ = [
    "apply_settings",
    "get_value",
    "hive_name",
    "iter_subkeys",
    "iter_values",
    "key_exists",
    "list_subkeys",
    "open_key",
    "read_values",
    "set_value",
]
