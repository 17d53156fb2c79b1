"""!
@brief Registry helper tests.
@details ``winreg`` is never touched: value writes and key enumeration are
intercepted so the helpers' error handling can be checked on any platform.
"""

from __future__ import annotations

import json
import pathlib
import sys
from typing import List, Tuple

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import constants, logging_ext, registry_tools  # noqa: E402
from app_janitor.models import RegistrySetting  # noqa: E402


def test_apply_settings_continues_past_failures(monkeypatch, tmp_path) -> None:
    """!
    @brief One unwritable value must not stop the remaining settings.
    """

    logging_ext.setup_logging(tmp_path)
    written: List[Tuple[int, str, str, object, str]] = []

    def fake_set_value(root, path, name, value, value_type="REG_DWORD"):
        if name == "Locked":
            raise PermissionError("access denied")
        written.append((root, path, name, value, value_type))

    monkeypatch.setattr(registry_tools, "set_value", fake_set_value)
    settings = [
        RegistrySetting(hive="HKLM", path="SOFTWARE\\Policies\\A", name="Locked", value=1),
        RegistrySetting(hive="HKCU", path="Software\\B", name="Enabled", value="0", value_type="REG_SZ"),
    ]

    failures = registry_tools.apply_settings(settings)

    assert failures == ["HKLM\\SOFTWARE\\Policies\\A\\Locked"]
    assert written == [(constants.HKCU, "Software\\B", "Enabled", "0", "REG_SZ")]
    events = [
        json.loads(line)
        for line in (tmp_path / "app-janitor.jsonl").read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    assert any(event.get("event") == "registry_setting_failed" for event in events)


def test_read_helpers_swallow_missing_keys(monkeypatch) -> None:
    def missing(root, path):
        raise FileNotFoundError(path)

    monkeypatch.setattr(registry_tools, "iter_subkeys", missing)
    monkeypatch.setattr(registry_tools, "iter_values", missing)

    assert registry_tools.list_subkeys(constants.HKLM, "SOFTWARE\\Nope") == []
    assert registry_tools.read_values(constants.HKLM, "SOFTWARE\\Nope") == {}


@pytest.mark.skipif(registry_tools.winreg is not None, reason="covers hosts without winreg")
def test_write_helpers_raise_without_winreg() -> None:
    with pytest.raises(OSError):
        registry_tools.set_value(constants.HKCU, "Software\\X", "Y", 1)
    assert registry_tools.get_value(constants.HKCU, "Software\\X", "Y", default="fallback") == "fallback"
    assert registry_tools.key_exists(constants.HKCU, "Software\\X") is False


def test_hive_name_known_and_unknown_roots() -> None:
    assert registry_tools.hive_name(constants.HKLM) == "HKLM"
    assert registry_tools.hive_name(constants.HKU) == "HKU"
    assert registry_tools.hive_name(0x1234) == "0x1234"
