"""!
@brief Dedicated removal routines for items the bulk script cannot handle.
@details The set of dedicated handlers is closed: :class:`DedicatedHandler`
lists them and :data:`HANDLERS` maps each one to its script file, scheduled
task and renderer. Unknown item ids are rejected with
:class:`UnknownHandlerType` when a handler is looked up.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List

from .bulk_script import render_preamble
from .errors import UnknownHandlerType
from .models import RemovalScript


class DedicatedHandler(enum.Enum):
    """!
    @brief Items that own a dedicated removal routine, keyed by catalog item id.
    """

    EDGE = "windows-app-edge"
    ONEDRIVE = "windows-app-onedrive"


@dataclass(frozen=True)
class HandlerSpec:
    """!
    @brief On-disk and scheduler identity of one dedicated routine.
    """

    script_name: str
    task_name: str
    run_on_startup: bool
    render: Callable[[], str]

    @property
    def filename(self) -> str:
        return f"{self.script_name}.ps1"


_EDGE_BODY = r'''
Write-Log "Starting Microsoft Edge removal"

foreach ($name in @('msedge', 'MicrosoftEdgeUpdate', 'MicrosoftEdgeUpdateCore')) {
    Get-Process -Name $name -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue
}

# setup.exe refuses a system-level uninstall unless the developer override is present.
$devKey = 'HKLM:\SOFTWARE\WOW6432Node\Microsoft\EdgeUpdateDev'
New-Item -Path $devKey -Force -ErrorAction SilentlyContinue | Out-Null
Set-ItemProperty -Path $devKey -Name 'AllowUninstall' -Value 1 -Type DWord -ErrorAction SilentlyContinue

$installers = @(Get-ChildItem -Path "${env:ProgramFiles(x86)}\Microsoft\Edge\Application\*\Installer\setup.exe" -ErrorAction SilentlyContinue)
if ($installers.Count -eq 0) {
    Write-Log "Edge installer not found; skipping setup.exe uninstall"
}
foreach ($installer in $installers) {
    Write-Log "Running $($installer.FullName)"
    $process = Start-Process -FilePath $installer.FullName -ArgumentList '--uninstall --system-level --verbose-logging --force-uninstall' -Wait -PassThru -ErrorAction SilentlyContinue
    if ($process) { Write-Log "Edge setup exited with code $($process.ExitCode)" }
}

foreach ($package in @(Get-AppxPackage -AllUsers -Name 'Microsoft.MicrosoftEdge*' -ErrorAction SilentlyContinue)) {
    try {
        Remove-AppxPackage -Package $package.PackageFullName -AllUsers -ErrorAction Stop
        Write-Log "Removed package $($package.PackageFullName)"
    } catch {
        Write-Log "Failed to remove $($package.PackageFullName): $($_.Exception.Message)"
    }
}

Get-ScheduledTask -TaskName 'MicrosoftEdgeUpdateTask*' -ErrorAction SilentlyContinue | Unregister-ScheduledTask -Confirm:$false -ErrorAction SilentlyContinue

$updateKey = 'HKLM:\SOFTWARE\Microsoft\EdgeUpdate'
New-Item -Path $updateKey -Force -ErrorAction SilentlyContinue | Out-Null
Set-ItemProperty -Path $updateKey -Name 'DoNotUpdateToEdgeWithChromium' -Value 1 -Type DWord -ErrorAction SilentlyContinue

foreach ($shortcut in @(
    "$env:PUBLIC\Desktop\Microsoft Edge.lnk",
    "$env:ProgramData\Microsoft\Windows\Start Menu\Programs\Microsoft Edge.lnk"
)) {
    Remove-Item -Path $shortcut -Force -ErrorAction SilentlyContinue
}

Write-Log "Microsoft Edge removal completed"
'''

_ONEDRIVE_BODY = r'''
Write-Log "Starting OneDrive removal"

Get-Process -Name 'OneDrive' -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue

$setups = @(
    "$env:SystemRoot\System32\OneDriveSetup.exe",
    "$env:SystemRoot\SysWOW64\OneDriveSetup.exe"
) + @(Get-ChildItem -Path "$env:ProgramFiles\Microsoft OneDrive\*\OneDriveSetup.exe", "$env:LOCALAPPDATA\Microsoft\OneDrive\*\OneDriveSetup.exe" -ErrorAction SilentlyContinue | ForEach-Object { $_.FullName })

$ran = $false
foreach ($setup in $setups) {
    if (-not (Test-Path $setup)) { continue }
    $arguments = if ($setup -like "$env:ProgramFiles*") { '/uninstall /allusers' } else { '/uninstall' }
    Write-Log "Running $setup $arguments"
    $process = Start-Process -FilePath $setup -ArgumentList $arguments -Wait -PassThru -ErrorAction SilentlyContinue
    if ($process) { Write-Log "OneDriveSetup exited with code $($process.ExitCode)" }
    $ran = $true
}
if (-not $ran) { Write-Log "OneDriveSetup.exe not found" }

foreach ($leftover in @(
    "$env:LOCALAPPDATA\Microsoft\OneDrive",
    "$env:ProgramData\Microsoft OneDrive",
    "$env:SystemDrive\OneDriveTemp"
)) {
    if (Test-Path $leftover) {
        Remove-Item -Path $leftover -Recurse -Force -ErrorAction SilentlyContinue
        Write-Log "Removed $leftover"
    }
}

$policyKey = 'HKLM:\SOFTWARE\Policies\Microsoft\Windows\OneDrive'
New-Item -Path $policyKey -Force -ErrorAction SilentlyContinue | Out-Null
Set-ItemProperty -Path $policyKey -Name 'DisableFileSyncNGSC' -Value 1 -Type DWord -ErrorAction SilentlyContinue

foreach ($clsidRoot in @('Registry::HKEY_CLASSES_ROOT\CLSID', 'Registry::HKEY_CLASSES_ROOT\Wow6432Node\CLSID')) {
    $clsid = "$clsidRoot\{018D5C66-4533-4307-9B53-224DE2ED1FE6}"
    if (Test-Path $clsid) {
        Set-ItemProperty -Path $clsid -Name 'System.IsPinnedToNameSpaceTree' -Value 0 -Type DWord -ErrorAction SilentlyContinue
    }
}

Get-ScheduledTask -TaskName 'OneDrive*' -ErrorAction SilentlyContinue | Unregister-ScheduledTask -Confirm:$false -ErrorAction SilentlyContinue

Write-Log "OneDrive removal completed"
'''


def _banner(title: str) -> str:
    return f"<#\n    App Janitor {title} removal script\n#>\n"


def render_edge_script() -> str:
    return _banner("Microsoft Edge") + render_preamble("EdgeRemovalLog.txt") + _EDGE_BODY


def render_onedrive_script() -> str:
    return _banner("OneDrive") + render_preamble("OneDriveRemovalLog.txt") + _ONEDRIVE_BODY


HANDLERS: Dict[DedicatedHandler, HandlerSpec] = {
    DedicatedHandler.EDGE: HandlerSpec(
        script_name="EdgeRemoval",
        task_name="AppJanitor\\EdgeRemoval",
        run_on_startup=True,
        render=render_edge_script,
    ),
    DedicatedHandler.ONEDRIVE: HandlerSpec(
        script_name="OneDriveRemoval",
        task_name="AppJanitor\\OneDriveRemoval",
        run_on_startup=False,
        render=render_onedrive_script,
    ),
}


def handler_for_item_id(item_id: str) -> DedicatedHandler:
    """!
    @brief Map a catalog item id onto its dedicated handler.
    @throws UnknownHandlerType when no dedicated routine exists for ``item_id``.
    """

    try:
        return DedicatedHandler(item_id.strip().lower())
    except ValueError as exc:
        raise UnknownHandlerType(f"No dedicated removal handler for '{item_id}'") from exc


def has_handler(item_id: str) -> bool:
    return item_id.strip().lower() in {handler.value for handler in DedicatedHandler}


def removal_script(handler: DedicatedHandler, scripts_dir: Path, content: str | None = None) -> RemovalScript:
    """!
    @brief Build the :class:`RemovalScript` record for ``handler`` inside ``scripts_dir``.
    @param content Script text; the handler's own renderer is used when omitted.
    """

    spec = HANDLERS[handler]
    return RemovalScript(
        name=spec.script_name,
        content=content if content is not None else spec.render(),
        target_scheduled_task_name=spec.task_name,
        run_on_startup=spec.run_on_startup,
        actual_script_path=scripts_dir / spec.filename,
    )


def all_scripts(scripts_dir: Path) -> List[RemovalScript]:
    """!
    @brief Records for every dedicated handler, whether or not its file exists.
    """

    return [removal_script(handler, scripts_dir, content="") for handler in DedicatedHandler]


__all__ = [
    "DedicatedHandler",
    "HANDLERS",
    "HandlerSpec",
    "all_scripts",
    "handler_for_item_id",
    "has_handler",
    "removal_script",
    "render_edge_script",
    "render_onedrive_script",
]
