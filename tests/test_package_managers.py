"""!
@brief WinGet and Chocolatey client tests.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import exec_utils, package_managers  # noqa: E402
from app_janitor.errors import OperationCancelled  # noqa: E402
from app_janitor.package_managers import ChocolateyClient, WinGetClient  # noqa: E402


def _command_result(
    command: Sequence[str],
    *,
    returncode: int = 0,
    stdout: str = "",
    cancelled: bool = False,
    error: str | None = None,
) -> exec_utils.CommandResult:
    return exec_utils.CommandResult(
        command=[str(part) for part in command],
        returncode=returncode,
        stdout=stdout,
        stderr="",
        duration=0.0,
        cancelled=cancelled,
        error=error,
    )


_EXPORT = {
    "$schema": "https://aka.ms/winget-packages.schema.2.0.json",
    "Sources": [
        {
            "SourceDetails": {"Name": "winget"},
            "Packages": [{"PackageIdentifier": "Spotify.Spotify"}, {"PackageIdentifier": "Zoom.Zoom"}],
        },
        {"SourceDetails": {"Name": "msstore"}, "Packages": [{"PackageIdentifier": "9NKSQGP7F2NH"}]},
    ],
}


def test_parse_export_collects_identifiers() -> None:
    assert package_managers.parse_export(_EXPORT) == {"Spotify.Spotify", "Zoom.Zoom", "9NKSQGP7F2NH"}
    assert package_managers.parse_export([]) == set()
    assert package_managers.parse_export({"Sources": [{"Packages": [{}]}]}) == set()


def test_parse_list_output_reads_id_version_lines() -> None:
    output = "vlc|3.0.20\n7zip|23.1.0\nChocolatey v2.2.2\n\n"
    assert package_managers.parse_list_output(output) == {"vlc", "7zip"}


def test_winget_installed_ids_reads_export_file(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    commands: List[List[str]] = []

    def fake_run(command, *, event, **kwargs):
        commands.append(list(command))
        export_path = Path(command[command.index("-o") + 1])
        export_path.write_text(json.dumps(_EXPORT), encoding="utf-8-sig")
        return _command_result(command)

    monkeypatch.setattr(package_managers.exec_utils, "run_command", fake_run)

    client = WinGetClient(cache_dir=tmp_path)

    assert client.installed_ids() == {"Spotify.Spotify", "Zoom.Zoom", "9NKSQGP7F2NH"}
    assert commands[0][:2] == ["winget", "export"]
    assert client.is_installed("zoom.zoom") is True


def test_winget_installed_ids_degrades_to_empty(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(
        package_managers.exec_utils,
        "run_command",
        lambda command, *, event, **kwargs: _command_result(command, returncode=127, error="missing"),
    )
    assert WinGetClient(cache_dir=tmp_path).installed_ids() == set()


def test_winget_uninstall_passes_source_and_silent_flags(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    captured = {}

    def fake_run(command, *, event, **kwargs):
        captured["command"] = list(command)
        captured["event"] = event
        return _command_result(command)

    monkeypatch.setattr(package_managers.exec_utils, "run_command", fake_run)

    assert WinGetClient(cache_dir=tmp_path).uninstall("9NKSQGP7F2NH", "msstore", "WhatsApp") is True
    command = captured["command"]
    assert command[:4] == ["winget", "uninstall", "--id", "9NKSQGP7F2NH"]
    assert "--silent" in command
    assert command[-2:] == ["--source", "msstore"]
    assert captured["event"] == "winget_uninstall"


def test_winget_uninstall_cancelled_raises(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(
        package_managers.exec_utils,
        "run_command",
        lambda command, *, event, **kwargs: _command_result(command, returncode=1, cancelled=True, error="cancelled"),
    )
    with pytest.raises(OperationCancelled):
        WinGetClient(cache_dir=tmp_path).uninstall("Spotify.Spotify")


def test_chocolatey_missing_is_not_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(package_managers.shutil, "which", lambda name: None)
    monkeypatch.setattr(package_managers.constants, "CHOCOLATEY_EXECUTABLE", Path("/nonexistent/choco.exe"))
    client = ChocolateyClient()

    assert client.installed_ids() == set()
    assert client.uninstall("vlc") is False


def test_chocolatey_list_and_uninstall(monkeypatch: pytest.MonkeyPatch) -> None:
    commands: List[List[str]] = []

    def fake_run(command, *, event, **kwargs):
        commands.append(list(command))
        if command[1] == "list":
            return _command_result(command, stdout="vlc|3.0.20\n")
        return _command_result(command, returncode=3010)

    monkeypatch.setattr(package_managers.exec_utils, "run_command", fake_run)
    client = ChocolateyClient(executable="choco.exe")

    assert client.is_installed("VLC") is True
    assert client.uninstall("vlc") is True
    assert commands[-1] == ["choco.exe", "uninstall", "vlc", "-y", "--no-progress"]
