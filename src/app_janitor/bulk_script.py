"""!
@brief Render and parse the generic bulk removal script.
@details The bulk script doubles as the record of pending removals. Its
``DATA`` section holds four arrays (packages, capabilities, optional features,
special apps). :func:`render_script` turns a :class:`BulkEntries` value into
script text and :func:`extract_entries` reads it back; neither touches the
file system. Rendering is deterministic: equal entries give identical text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PureWindowsPath
from typing import Dict, Iterable, Tuple

from . import constants
from .models import ItemDefinition, ItemKind

SCRIPT_FORMAT_VERSION = 1
BULK_LOG_FILENAME = "BloatRemovalLog.txt"

ARRAY_NAMES: Dict[str, str] = {
    "packages": "packages",
    "capabilities": "capabilities",
    "optional_features": "optionalFeatures",
    "special_apps": "specialApps",
}
"""!
@brief Field name to PowerShell variable name for each ``DATA`` array.
"""

_ARRAY_PATTERNS: Dict[str, "re.Pattern[str]"] = {}


def _normalise(values: Iterable[str]) -> Tuple[str, ...]:
    """!
    @brief Drop blanks and case-insensitive duplicates, then sort case-insensitively.
    """

    seen: Dict[str, str] = {}
    for value in values:
        text = str(value).strip()
        if text and text.casefold() not in seen:
            seen[text.casefold()] = text
    return tuple(sorted(seen.values(), key=lambda text: (text.casefold(), text)))


def _relates_to_special(special: str, removed_name: str) -> bool:
    return special.casefold() == constants.ONENOTE_SPECIAL.casefold() and "onenote" in removed_name.casefold()


@dataclass(frozen=True)
class BulkEntries:
    """!
    @brief In-memory form of the bulk script's ``DATA`` section.
    """

    packages: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    optional_features: Tuple[str, ...] = ()
    special_apps: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for field_name in ARRAY_NAMES:
            object.__setattr__(self, field_name, _normalise(getattr(self, field_name)))

    @classmethod
    def from_items(cls, items: Iterable[ItemDefinition]) -> "BulkEntries":
        """!
        @brief Sort items into arrays by kind; OneNote packages also add the ``OneNote`` special.
        """

        packages, capabilities, features, specials = [], [], [], []
        for item in items:
            if item.kind is ItemKind.CAPABILITY:
                capabilities.append(item.capability_name)
            elif item.kind is ItemKind.FEATURE:
                features.append(item.optional_feature_name)
            elif item.appx_package_name:
                packages.append(item.appx_package_name)
                if "onenote" in item.appx_package_name.casefold():
                    specials.append(constants.ONENOTE_SPECIAL)
        return cls(tuple(packages), tuple(capabilities), tuple(features), tuple(specials))

    @property
    def is_empty(self) -> bool:
        return not (self.packages or self.capabilities or self.optional_features or self.special_apps)

    def merge(self, other: "BulkEntries") -> "BulkEntries":
        return BulkEntries(
            self.packages + other.packages,
            self.capabilities + other.capabilities,
            self.optional_features + other.optional_features,
            self.special_apps + other.special_apps,
        )

    def subtract(self, names: Iterable[str]) -> "BulkEntries":
        """!
        @brief Remove ``names`` from every array, case-insensitively.
        @details A special entry also goes when a removed name relates to it,
        for instance any removed package containing ``OneNote``.
        """

        removed = [str(name) for name in names if str(name).strip()]
        folded = {name.casefold() for name in removed}

        def keep(values: Tuple[str, ...]) -> Tuple[str, ...]:
            return tuple(value for value in values if value.casefold() not in folded)

        specials = tuple(
            special
            for special in keep(self.special_apps)
            if not any(_relates_to_special(special, name) for name in removed)
        )
        return BulkEntries(keep(self.packages), keep(self.capabilities), keep(self.optional_features), specials)

    @property
    def needs_xbox_fixup(self) -> bool:
        wanted = {name.casefold() for name in constants.XBOX_FIXUP_PACKAGES}
        return any(package.casefold() in wanted for package in self.packages)

    @property
    def needs_teams_stop(self) -> bool:
        return any(package.casefold() == constants.TEAMS_PACKAGE.casefold() for package in self.packages)

    def count(self) -> int:
        return sum(len(getattr(self, field_name)) for field_name in ARRAY_NAMES)


# ----------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------
def _array_pattern(array_name: str) -> "re.Pattern[str]":
    pattern = _ARRAY_PATTERNS.get(array_name)
    if pattern is None:
        pattern = re.compile(rf"\${re.escape(array_name)}\s*=\s*@\(\s*(.*?)\s*\)", re.DOTALL | re.IGNORECASE)
        _ARRAY_PATTERNS[array_name] = pattern
    return pattern


def _unquote(line: str) -> str:
    text = line.strip(" \t\r,")
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return text[1:-1].replace("''", "'")
    return text.strip("'\"")


def extract_array(content: str, array_name: str) -> Tuple[str, ...]:
    """!
    @brief Read one ``$name = @(...)`` array out of script text.
    @returns Entries with surrounding whitespace, commas and quotes trimmed;
    doubled single quotes inside single-quoted entries are unescaped.
    """

    match = _array_pattern(array_name).search(content)
    if match is None:
        return ()
    entries = (_unquote(line) for line in match.group(1).split("\n"))
    return tuple(entry for entry in entries if entry)


def extract_entries(content: str) -> BulkEntries:
    return BulkEntries(**{field: extract_array(content, name) for field, name in ARRAY_NAMES.items()})


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------
_BANNER = r'''<#
    App Janitor bulk removal script (format {version})

    Removes the AppX packages, Windows capabilities, optional features and
    special applications listed in the DATA section below. The file is
    regenerated whenever entries are added or removed; edits to the DATA
    arrays are picked up, edits elsewhere are not preserved.
#>
'''

_ELEVATION = r'''
$principal = New-Object Security.Principal.WindowsPrincipal([Security.Principal.WindowsIdentity]::GetCurrent())
if (-not $principal.IsInRole([Security.Principal.WindowsBuiltInRole]::Administrator)) {
    try {
        Start-Process powershell.exe -ArgumentList "-NoProfile -ExecutionPolicy Bypass -File `"$PSCommandPath`"" -Verb RunAs
    } catch {
        Write-Host "Administrator rights are required to run this script."
    }
    exit
}
'''

_LOGGING = r'''
$logFolder = '{log_folder}'
$logFile = Join-Path $logFolder '{log_file}'
if (-not (Test-Path $logFolder)) {
    New-Item -ItemType Directory -Path $logFolder -Force | Out-Null
}

function Write-Log {
    param([string]$Message)
    if ((Test-Path $logFile) -and (Get-Item $logFile).Length -gt {rotate_bytes}) {
        Remove-Item $logFile -Force -ErrorAction SilentlyContinue
        "$(Get-Date -Format 'yyyy-MM-dd HH:mm:ss') - Log rotated" | Out-File -FilePath $logFile -Encoding utf8
    }
    "$(Get-Date -Format 'yyyy-MM-dd HH:mm:ss') - $Message" | Out-File -FilePath $logFile -Append -Encoding utf8
    Write-Host $Message
}
'''

_DATA_BANNER = """
# ---------------------------------------------------------------------------
# DATA
# ---------------------------------------------------------------------------
"""

_MAIN_START = r'''
# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------
Write-Log "Starting bloat removal"
'''

_TEAMS_STOP = r'''
Get-Process | Where-Object { $_.Name -like '*teams*' } | Stop-Process -Force -ErrorAction SilentlyContinue
'''

_APPX_REMOVAL = r'''
$installedPackages = Get-AppxPackage -AllUsers -ErrorAction SilentlyContinue
$provisionedPackages = Get-AppxProvisionedPackage -Online -ErrorAction SilentlyContinue

foreach ($package in $packages) {
    foreach ($entry in @($provisionedPackages | Where-Object DisplayName -eq $package)) {
        try {
            Remove-AppxProvisionedPackage -Online -PackageName $entry.PackageName -ErrorAction Stop | Out-Null
            Write-Log "Deprovisioned $($entry.PackageName)"
        } catch {
            Write-Log "Failed to deprovision $($entry.PackageName): $($_.Exception.Message)"
        }
    }
}

foreach ($package in $packages) {
    $found = @($installedPackages | Where-Object Name -eq $package)
    if ($found.Count -eq 0) {
        Write-Log "Package not installed: $package"
        continue
    }
    foreach ($entry in $found) {
        try {
            Remove-AppxPackage -Package $entry.PackageFullName -AllUsers -ErrorAction Stop
            Write-Log "Removed package $($entry.PackageFullName)"
        } catch {
            Write-Log "Failed to remove $($entry.PackageFullName): $($_.Exception.Message)"
        }
    }
}
'''

_CAPABILITY_REMOVAL = r'''
if ($capabilities.Count -gt 0) {
    $allCapabilities = Get-WindowsCapability -Online -ErrorAction SilentlyContinue
    foreach ($capability in $capabilities) {
        $found = @($allCapabilities | Where-Object { $_.Name -like "$capability*" -and $_.State -eq 'Installed' })
        if ($found.Count -eq 0) {
            Write-Log "Capability not installed: $capability"
            continue
        }
        foreach ($entry in $found) {
            try {
                Remove-WindowsCapability -Online -Name $entry.Name -ErrorAction Stop | Out-Null
                Write-Log "Removed capability $($entry.Name)"
            } catch {
                Write-Log "Failed to remove capability $($entry.Name): $($_.Exception.Message)"
            }
        }
    }
}
'''

_FEATURE_REMOVAL = r'''
$enabledFeatures = @()
foreach ($feature in $optionalFeatures) {
    $state = Get-WindowsOptionalFeature -Online -FeatureName $feature -ErrorAction SilentlyContinue
    if ($state -and $state.State -eq 'Enabled') {
        $enabledFeatures += $feature
    } else {
        Write-Log "Feature not enabled: $feature"
    }
}
if ($enabledFeatures.Count -gt 0) {
    Write-Log "Disabling features: $($enabledFeatures -join ', ')"
    Disable-WindowsOptionalFeature -Online -FeatureName $enabledFeatures -NoRestart -ErrorAction SilentlyContinue | Out-Null
}
'''

_SPECIAL_REMOVAL = r'''
$uninstallRoots = @(
    'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall',
    'HKCU:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall'
)
foreach ($specialApp in $specialApps) {
    if ($specialApp -ne 'OneNote') {
        Write-Log "Unknown special app: $specialApp"
        continue
    }
    foreach ($name in @({onenote_processes})) {
        Get-Process -Name $name -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue
    }
    $ran = $false
    foreach ($root in $uninstallRoots) {
        $keys = @(Get-ChildItem -Path $root -ErrorAction SilentlyContinue | Where-Object { $_.PSChildName -like "$specialApp*" })
        foreach ($key in $keys) {
            $command = (Get-ItemProperty -Path $key.PSPath -ErrorAction SilentlyContinue).UninstallString
            if (-not $command) { continue }
            $silent = if ($command -like '*OfficeClickToRun.exe*') { 'DisplayLevel=False' } else { '/silent' }
            if ($command -match '^"([^"]+)"(.*)$') {
                Start-Process -FilePath $Matches[1] -ArgumentList "$($Matches[2].Trim()) $silent" -NoNewWindow -Wait -ErrorAction SilentlyContinue
            } else {
                Start-Process -FilePath $command -ArgumentList $silent -NoNewWindow -Wait -ErrorAction SilentlyContinue
            }
            $ran = $true
            Write-Log "Ran uninstaller for $specialApp"
        }
    }
    if (-not $ran) { Write-Log "No uninstaller found for $specialApp" }
}
'''

_XBOX_FIXUP = r'''
# Game DVR keeps prompting for the removed Xbox overlay unless capture is switched off.
$userRoot = 'HKCU'
if ($env:USERNAME -eq 'SYSTEM' -or $env:USERPROFILE -like '*\system32\config\systemprofile') {
    $userRoot = $null
    $consoleUser = (Get-CimInstance -ClassName Win32_ComputerSystem -ErrorAction SilentlyContinue).UserName
    if ($consoleUser) {
        $shortName = $consoleUser.Split('\')[-1]
        $profileList = 'HKLM:\SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList'
        foreach ($profileKey in Get-ChildItem $profileList -ErrorAction SilentlyContinue) {
            $imagePath = (Get-ItemProperty $profileKey.PSPath -ErrorAction SilentlyContinue).ProfileImagePath
            if ($imagePath -and $imagePath.EndsWith("\$shortName")) {
                $userRoot = "HKU\$($profileKey.PSChildName)"
                break
            }
        }
    }
}
if ($userRoot) {
    reg add "$userRoot\SOFTWARE\Microsoft\Windows\CurrentVersion\GameDVR" /v AppCaptureEnabled /t REG_DWORD /d 0 /f 2>$null | Out-Null
    reg add "$userRoot\System\GameConfigStore" /v GameDVR_Enabled /t REG_DWORD /d 0 /f 2>$null | Out-Null
    Write-Log "Applied Game DVR settings to $userRoot"
} else {
    Write-Log "Could not resolve the signed-in user for Game DVR settings"
}
'''

_FOOTER = '''
Write-Log "Bloat removal completed"
'''


def _quote(value: str) -> str:
    return value.replace("'", "''")


def _render_array(variable: str, values: Tuple[str, ...]) -> str:
    lines = [f"${variable} = @("]
    lines.extend(f"    '{_quote(value)}'" for value in values)
    lines.append(")")
    return "\n".join(lines) + "\n"


def render_preamble(log_file: str, *, log_directory: str | PureWindowsPath | None = None) -> str:
    """!
    @brief Self-elevation check plus the ``Write-Log`` helper shared by all generated scripts.
    @param log_file File name of the script's own log inside ``log_directory``.
    """

    log_folder = str(log_directory or constants.DEFAULT_SCRIPT_LOG_DIRECTORY)
    logging_block = (
        _LOGGING.replace("{log_folder}", log_folder)
        .replace("{log_file}", log_file)
        .replace("{rotate_bytes}", str(constants.SCRIPT_LOG_ROTATE_BYTES))
    )
    return _ELEVATION + logging_block


def render_script(entries: BulkEntries, *, log_directory: str | PureWindowsPath | None = None) -> str:
    """!
    @brief Generate the full bulk removal script for ``entries``.
    @details The Teams process stop and the Game DVR fix-up are included only
    when the package array contains the packages that need them.
    """

    processes = ", ".join(f"'{name}'" for name in constants.ONENOTE_PROCESSES)

    parts = [
        _BANNER.replace("{version}", str(SCRIPT_FORMAT_VERSION)),
        render_preamble(BULK_LOG_FILENAME, log_directory=log_directory),
        _DATA_BANNER,
    ]
    for field_name, variable in ARRAY_NAMES.items():
        parts.append(_render_array(variable, getattr(entries, field_name)))
    parts.append(_MAIN_START)
    if entries.needs_teams_stop:
        parts.append(_TEAMS_STOP)
    parts.extend([_APPX_REMOVAL, _CAPABILITY_REMOVAL, _FEATURE_REMOVAL])
    parts.append(_SPECIAL_REMOVAL.replace("{onenote_processes}", processes))
    if entries.needs_xbox_fixup:
        parts.append(_XBOX_FIXUP)
    parts.append(_FOOTER)
    return "".join(parts)


__all__ = [
    "ARRAY_NAMES",
    "BULK_LOG_FILENAME",
    "BulkEntries",
    "SCRIPT_FORMAT_VERSION",
    "extract_array",
    "extract_entries",
    "render_preamble",
    "render_script",
]
