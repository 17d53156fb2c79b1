"""!
@brief Uninstall method selection and fallback execution for single items.
@details :class:`UninstallMethodResolver` picks WinGet, Chocolatey, or a raw
registry ``UninstallString`` for an item, then walks a fixed fallback chain
when the chosen mechanism fails. Step failures are recovered locally;
cancellation ends the chain immediately and is reported as cancelled.
"""
from __future__ import annotations

import ntpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence, Tuple

from . import constants, elevation, exec_utils, logging_ext, registry_tools
from .errors import OperationCancelled, UninstallMethodExhausted
from .matching import is_fuzzy_match
from .models import (
    DetectionSource,
    ItemDefinition,
    OperationResult,
    ProgressSink,
    UninstallMethod,
    report_progress,
)
from .package_managers import ChocolateyClient, PackageManager, WinGetClient

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .detect import DetectionEngine

_INSTALL_GUID = re.compile(r"/I(\{[0-9A-F-]+\})", re.IGNORECASE)
_MSI_QUIET = re.compile(r"/(quiet|qn)\b", re.IGNORECASE)
_INNO_SILENT = re.compile(r"/(very)?silent\b", re.IGNORECASE)


@dataclass(frozen=True)
class UninstallCommand:
    """!
    @brief Executable path and argument string split out of an ``UninstallString``.
    """

    file: str
    arguments: str

    def command_line(self) -> str:
        """!
        @brief Quoted executable followed by the argument string exactly as stored.
        """

        return f'"{self.file}" {self.arguments}'.rstrip()


@dataclass(frozen=True)
class RegistryUninstallEntry:
    """!
    @brief Uninstall key that matched an item's display name.
    """

    display_name: str
    uninstall_string: str
    key: str


def parse_uninstall_string(uninstall_string: str) -> UninstallCommand:
    """!
    @brief Split an ``UninstallString`` into executable and arguments.
    @details A leading quoted path ends at the closing quote; otherwise the
    string splits at the first space; otherwise it is all executable.
    """

    text = uninstall_string.strip()
    if text.startswith('"'):
        closing = text.find('"', 1)
        if closing > 0:
            return UninstallCommand(text[1:closing], text[closing + 1 :].strip())
        return UninstallCommand(text.strip('"'), "")
    file, _, arguments = text.partition(" ")
    return UninstallCommand(file, arguments.strip())


def append_silent_flags(file: str, arguments: str) -> str:
    """!
    @brief Add unattended-mode switches that are not already present.
    @details ``msiexec`` gets ``/X{GUID}`` in place of ``/I{GUID}`` plus
    ``/quiet /norestart``; executables whose name contains ``unins`` or
    ``setup`` get ``/VERYSILENT /NORESTART``.
    """

    name = ntpath.basename(file).lower()
    result = arguments
    if "msiexec" in name:
        result = _INSTALL_GUID.sub(r"/X\1", result)
        if not _MSI_QUIET.search(result):
            result += " /quiet /norestart"
    elif "unins" in name or "setup" in name:
        if not _INNO_SILENT.search(result):
            result += " /VERYSILENT /NORESTART"
    return result.strip()


def build_silent_command(uninstall_string: str) -> UninstallCommand:
    parsed = parse_uninstall_string(uninstall_string)
    return UninstallCommand(parsed.file, append_silent_flags(parsed.file, parsed.arguments))


def uninstall_roots() -> List[Tuple[int, str]]:
    """!
    @brief Uninstall keys searched for a display name, in order.
    @details Machine-wide 64-bit, machine-wide 32-bit, then the interactive
    user's hive.
    """

    return [*constants.MACHINE_UNINSTALL_ROOTS, elevation.user_uninstall_root()]


def find_registry_uninstall(
    display_name: str,
    roots: Optional[Iterable[Tuple[int, str]]] = None,
) -> Optional[RegistryUninstallEntry]:
    """!
    @brief Locate the first uninstall entry whose ``DisplayName`` fuzzily matches.
    """

    for root, path in roots if roots is not None else uninstall_roots():
        for subkey in registry_tools.list_subkeys(root, path):
            key_path = f"{path}\\{subkey}"
            values = registry_tools.read_values(root, key_path)
            candidate = str(values.get("DisplayName") or "")
            uninstall_string = str(values.get("UninstallString") or "")
            if candidate and uninstall_string and is_fuzzy_match(display_name, candidate):
                return RegistryUninstallEntry(
                    display_name=candidate,
                    uninstall_string=uninstall_string,
                    key=f"{registry_tools.hive_name(root)}\\{key_path}",
                )
    return None


class UninstallMethodResolver:
    """!
    @brief Choose and run the uninstall mechanism for one item.
    @param winget Primary package manager.
    @param chocolatey Secondary package manager.
    @param registry_lookup Display-name to uninstall-entry lookup.
    @param detection Engine whose caches are invalidated after a successful uninstall.
    """

    def __init__(
        self,
        *,
        winget: Optional[PackageManager] = None,
        chocolatey: Optional[PackageManager] = None,
        registry_lookup: Callable[[str], Optional[RegistryUninstallEntry]] = find_registry_uninstall,
        detection: "DetectionEngine | None" = None,
    ) -> None:
        self._winget = winget if winget is not None else WinGetClient()
        self._chocolatey = chocolatey if chocolatey is not None else ChocolateyClient()
        self._registry_lookup = registry_lookup
        self._detection = detection

    # ------------------------------------------------------------------
    # Method selection
    # ------------------------------------------------------------------
    def resolve(self, item: ItemDefinition) -> UninstallMethod:
        """!
        @brief Pick the preferred uninstall mechanism for ``item``.
        """

        if item.detected_via is DetectionSource.CHOCOLATEY and item.choco_package_id:
            return UninstallMethod.CHOCOLATEY
        if item.detected_via is DetectionSource.REGISTRY and self._registry_lookup(item.name) is not None:
            return UninstallMethod.REGISTRY
        if item.ms_store_id or item.winget_package_id:
            return UninstallMethod.WINGET
        if item.choco_package_id and self._chocolatey.is_installed(item.choco_package_id):
            return UninstallMethod.CHOCOLATEY
        if self._registry_lookup(item.name) is not None:
            return UninstallMethod.REGISTRY
        return UninstallMethod.NONE

    @staticmethod
    def fallback_chain(method: UninstallMethod, item: ItemDefinition) -> Sequence[UninstallMethod]:
        """!
        @brief Mechanisms tried in order, starting with ``method``.
        """

        if method is UninstallMethod.WINGET:
            chain = [UninstallMethod.WINGET]
            if item.choco_package_id:
                chain.append(UninstallMethod.CHOCOLATEY)
            chain.append(UninstallMethod.REGISTRY)
            return chain
        if method is UninstallMethod.CHOCOLATEY:
            return [UninstallMethod.CHOCOLATEY, UninstallMethod.REGISTRY]
        if method is UninstallMethod.REGISTRY:
            return [UninstallMethod.REGISTRY]
        return []

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def execute(
        self,
        item: ItemDefinition,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> OperationResult[bool]:
        """!
        @brief Uninstall ``item`` through the resolved mechanism and its fallbacks.
        @returns Succeeded, failed (naming the item) or cancelled; never raises.
        """

        human_logger = logging_ext.get_human_logger()
        machine_logger = logging_ext.get_machine_logger()

        try:
            method = self.resolve(item)
            machine_logger.info(
                "uninstall_method",
                extra={"event": "uninstall_method", "item": item.id, "method": method.value},
            )
            if method is UninstallMethod.NONE:
                human_logger.warning("No uninstall method available for %s", item.name)
                return OperationResult.failed(f"No uninstall method available for {item.name}")

            for step in self.fallback_chain(method, item):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                report_progress(progress, progress=0, status_text=f"Uninstalling {item.name} via {step.value}...")
                succeeded = self._attempt(step, item, cancel_token)
                machine_logger.info(
                    "uninstall_attempt",
                    extra={"event": "uninstall_attempt", "item": item.id, "method": step.value, "success": succeeded},
                )
                if succeeded:
                    self._after_success(item)
                    report_progress(progress, progress=100, status_text=f"{item.name} uninstalled", is_completion=True)
                    return OperationResult.succeeded(True, f"{item.name} uninstalled via {step.value}")
                human_logger.info("Uninstall of %s via %s failed", item.name, step.value)

            exhausted = UninstallMethodExhausted(item.name)
            human_logger.error(str(exhausted))
            return OperationResult.failed(str(exhausted))
        except OperationCancelled:
            human_logger.info("Uninstall of %s was cancelled by user", item.name)
            return OperationResult.cancelled("Uninstall cancelled by user")
        except Exception as exc:  # noqa: BLE001 - public boundary returns a result object
            human_logger.exception("Failed to uninstall %s", item.name)
            return OperationResult.failed(str(exc))

    def _attempt(
        self,
        step: UninstallMethod,
        item: ItemDefinition,
        cancel_token: "CancellationToken | None",
    ) -> bool:
        """!
        @brief Run one fallback step; anything but cancellation counts as failure.
        """

        try:
            if step is UninstallMethod.WINGET:
                return self._uninstall_winget(item, cancel_token)
            if step is UninstallMethod.CHOCOLATEY:
                return self._uninstall_chocolatey(item, cancel_token)
            if step is UninstallMethod.REGISTRY:
                return self._uninstall_registry(item, cancel_token)
        except OperationCancelled:
            raise
        except Exception as exc:  # noqa: BLE001 - a throwing step is a failed step
            logging_ext.get_human_logger().warning("%s uninstall of %s raised: %s", step.value, item.name, exc)
        return False

    def _uninstall_winget(self, item: ItemDefinition, cancel_token: "CancellationToken | None") -> bool:
        if item.ms_store_id:
            package_id, source = item.ms_store_id, "msstore"
        elif item.winget_package_id:
            package_id, source = item.winget_package_id[0], "winget"
        else:
            return False
        return self._winget.uninstall(package_id, source, item.name, cancel_token)

    def _uninstall_chocolatey(self, item: ItemDefinition, cancel_token: "CancellationToken | None") -> bool:
        if not item.choco_package_id:
            return False
        return self._chocolatey.uninstall(item.choco_package_id, None, item.name, cancel_token)

    def _uninstall_registry(self, item: ItemDefinition, cancel_token: "CancellationToken | None") -> bool:
        entry = self._registry_lookup(item.name)
        if entry is None:
            logging_ext.get_human_logger().warning("No uninstall string found for %s", item.name)
            return False

        command = build_silent_command(entry.uninstall_string)
        result = exec_utils.run_command(
            command.command_line(),
            event="registry_uninstall",
            timeout=constants.REGISTRY_UNINSTALL_TIMEOUT,
            human_message=f"Running uninstaller for {entry.display_name}",
            extra={"item": item.id, "key": entry.key},
            cancel_token=cancel_token,
        )
        if result.cancelled:
            raise OperationCancelled("Uninstall cancelled by user")
        return result.returncode in constants.SUCCESS_EXIT_CODES and not result.error

    def _after_success(self, item: ItemDefinition) -> None:
        failures = registry_tools.apply_settings(item.registry_settings)
        if failures:
            logging_ext.get_human_logger().warning(
                "%s removed, but %d registry setting(s) could not be applied", item.name, len(failures)
            )
        if self._detection is not None:
            self._detection.invalidate()


__all__ = [
    "RegistryUninstallEntry",
    "UninstallCommand",
    "UninstallMethodResolver",
    "append_silent_flags",
    "build_silent_command",
    "find_registry_uninstall",
    "parse_uninstall_string",
    "uninstall_roots",
]
