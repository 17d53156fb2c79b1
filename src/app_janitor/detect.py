"""!
@brief Installation-state detection for capabilities, features and packages.
@details :class:`DetectionEngine` resolves one boolean per item by querying
the servicing stack, package enumeration sources and package managers in a
fixed order. Tier failures are logged and treated as "not found by this
tier"; the engine itself never raises from :meth:`DetectionEngine.resolve_status`.

Two caches live on the engine instance: installed package-manager ids
(fetched lazily, kept until :meth:`DetectionEngine.invalidate`) and a
time-boxed per-item status cache backing :meth:`DetectionEngine.is_installed`.
"""
from __future__ import annotations

import dataclasses
import threading
import time
from collections import Counter
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from . import constants, logging_ext
from .errors import AppJanitorError, DetectionTierFailure
from .inventory import SystemInventory
from .matching import InstalledProgram, match_package_id
from .models import DetectionSource, ItemDefinition, ItemKind
from .package_managers import ChocolateyClient, PackageManager, WinGetClient

_MANAGER_SOURCES: Dict[str, DetectionSource] = {
    "winget": DetectionSource.WINGET,
    "chocolatey": DetectionSource.CHOCOLATEY,
}


def capability_matches(installed_name: str, base_name: str) -> bool:
    """!
    @brief Match an installed capability (``Name~~~~1.2.3``) against a base name.
    @details Capability identities carry a ``~``-separated version suffix, so
    ``Foo`` matches ``Foo~~~~1.2.3`` but not ``Foobar~~~~1.0``.
    """

    installed = installed_name.lower()
    base = base_name.lower()
    return installed == base or installed.startswith(base + "~")


class DetectionEngine:
    """!
    @brief Resolve installed/enabled status for item definitions.
    @param inventory Source of servicing-stack, package and program queries.
    @param package_managers Package managers consulted for installed ids, primary first.
    @param status_cache_seconds Lifetime of :meth:`is_installed` answers.
    @param clock Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        inventory: Optional[SystemInventory] = None,
        package_managers: Optional[Sequence[PackageManager]] = None,
        status_cache_seconds: float = constants.STATUS_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inventory = inventory if inventory is not None else SystemInventory()
        self._package_managers: List[PackageManager] = (
            list(package_managers) if package_managers is not None else [WinGetClient(), ChocolateyClient()]
        )
        self._status_cache_seconds = status_cache_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._manager_ids: Optional[Dict[str, DetectionSource]] = None
        self._status_cache: Dict[str, Tuple[float, bool]] = {}
        self._last_sources: Dict[str, DetectionSource] = {}

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def invalidate(self) -> None:
        """!
        @brief Drop the package-manager id cache and the status cache.
        @details Call after any install or uninstall that may change what is present.
        """

        with self._lock:
            self._manager_ids = None
            self._status_cache.clear()
        logging_ext.get_machine_logger().info("detection_cache_invalidated", extra={"event": "detection_cache_invalidated"})

    def _package_manager_ids(self) -> Dict[str, DetectionSource]:
        with self._lock:
            if self._manager_ids is not None:
                return self._manager_ids
        fetched: Dict[str, DetectionSource] = {}
        for manager in self._package_managers:
            source = _MANAGER_SOURCES.get(manager.name, DetectionSource.WINGET)
            try:
                ids = manager.installed_ids()
            except (AppJanitorError, OSError) as exc:
                self._tier_failed(DetectionTierFailure(manager.name, str(exc)))
                continue
            for package_id in ids:
                fetched.setdefault(package_id.lower(), source)
        with self._lock:
            if self._manager_ids is None:
                self._manager_ids = fetched
            return self._manager_ids

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve_status(self, items: Iterable[ItemDefinition]) -> Dict[str, bool]:
        """!
        @brief Resolve install state for every item.
        @details Capabilities and features are answered by one batched query
        each. Package items go through AppX enumeration, then WMI, then a
        script-based enumeration, stopping at the first tier that returns
        anything. Items still unresolved are checked against installed
        package-manager ids, and external applications finally against the
        installed Win32 programs.
        @returns Mapping with exactly one entry per input item id.
        """

        item_list = list({item.id: item for item in items}.values())
        status: Dict[str, bool] = {item.id: False for item in item_list}
        sources: Dict[str, DetectionSource] = {item.id: DetectionSource.NONE for item in item_list}
        counts: Counter[str] = Counter()

        stages = (
            self._resolve_capabilities,
            self._resolve_features,
            self._resolve_packages,
            self._resolve_package_manager_ids,
            self._resolve_external_programs,
        )
        for stage in stages:
            try:
                stage(item_list, status, sources, counts)
            except Exception as exc:  # noqa: BLE001 - detection must always return a full map
                logging_ext.get_human_logger().exception("Detection stage %s failed: %s", stage.__name__, exc)

        counts["not_found"] = sum(1 for value in status.values() if not value)
        self._last_sources = dict(sources)
        logging_ext.get_human_logger().info(
            "Detection: %d/%d installed (%s)",
            len(status) - counts["not_found"],
            len(status),
            ", ".join(f"{key}={value}" for key, value in sorted(counts.items())),
        )
        logging_ext.get_machine_logger().info(
            "detection_summary",
            extra={"event": "detection_summary", "counts": dict(counts), "items": len(status)},
        )
        return status

    def annotate(self, items: Iterable[ItemDefinition]) -> List[ItemDefinition]:
        """!
        @brief Return copies of ``items`` with ``is_installed`` and ``detected_via`` filled in.
        """

        item_list = list(items)
        status = self.resolve_status(item_list)
        sources = self._last_sources
        return [
            dataclasses.replace(
                item,
                is_installed=status.get(item.id, False),
                detected_via=sources.get(item.id, DetectionSource.NONE),
            )
            for item in item_list
        ]

    def is_installed(self, item: ItemDefinition) -> bool:
        """!
        @brief Single-item check backed by the time-boxed status cache.
        """

        now = self._clock()
        with self._lock:
            cached = self._status_cache.get(item.id)
            if cached is not None and now - cached[0] < self._status_cache_seconds:
                return cached[1]
        installed = self.resolve_status([item]).get(item.id, False)
        with self._lock:
            self._status_cache[item.id] = (self._clock(), installed)
        return installed

    @property
    def last_sources(self) -> Mapping[str, DetectionSource]:
        return dict(self._last_sources)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _tier_failed(self, failure: DetectionTierFailure) -> None:
        logging_ext.get_human_logger().warning("Detection tier %s failed: %s", failure.tier, failure)
        logging_ext.get_machine_logger().warning(
            "detection_tier_failure",
            extra={"event": "detection_tier_failure", "tier": failure.tier, "error": str(failure)},
        )

    def _resolve_capabilities(self, items, status, sources, counts) -> None:
        wanted = [item for item in items if item.kind is ItemKind.CAPABILITY]
        if not wanted:
            return
        try:
            installed = self._inventory.installed_capabilities()
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
            return
        for item in wanted:
            if any(capability_matches(name, item.capability_name) for name in installed):
                status[item.id] = True
                sources[item.id] = DetectionSource.CAPABILITY
                counts["capability"] += 1

    def _resolve_features(self, items, status, sources, counts) -> None:
        wanted = [item for item in items if item.kind is ItemKind.FEATURE]
        if not wanted:
            return
        try:
            enabled = {name.lower() for name in self._inventory.enabled_features()}
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
            return
        for item in wanted:
            if item.optional_feature_name.lower() in enabled:
                status[item.id] = True
                sources[item.id] = DetectionSource.FEATURE
                counts["feature"] += 1

    def _installed_packages(self) -> Dict[str, DetectionSource]:
        """!
        @brief Walk the package tiers and return the first non-empty answer.
        """

        try:
            names = self._inventory.appx_packages()
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
        else:
            if names:
                return {name.lower(): DetectionSource.APPX for name in names}

        try:
            store_names = self._inventory.store_programs()
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
        else:
            found = {name.lower(): DetectionSource.REGISTRY for name in self._inventory.registry_hint_packages()}
            found.update({name.lower(): DetectionSource.WMI for name in store_names})
            if found:
                return found

        try:
            names = self._inventory.script_packages()
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
            return {}
        return {name.lower(): DetectionSource.APPX for name in names}

    def _resolve_packages(self, items, status, sources, counts) -> None:
        wanted = [item for item in items if item.kind is ItemKind.PACKAGE and item.appx_package_name]
        if not wanted:
            return
        installed = self._installed_packages()
        for item in wanted:
            for name in (item.appx_package_name, *item.sub_packages):
                source = installed.get(name.lower())
                if source is not None:
                    status[item.id] = True
                    sources[item.id] = source
                    counts["package"] += 1
                    break

    def _resolve_package_manager_ids(self, items, status, sources, counts) -> None:
        wanted = [
            item
            for item in items
            if item.kind is ItemKind.PACKAGE and not status[item.id] and item.has_package_manager_id
        ]
        if not wanted:
            return
        known = self._package_manager_ids()
        for item in wanted:
            candidates = [*item.winget_package_id, item.ms_store_id, item.choco_package_id]
            for package_id in filter(None, candidates):
                source = known.get(package_id.lower())
                if source is not None:
                    status[item.id] = True
                    sources[item.id] = source
                    counts["package_manager"] += 1
                    break

    def _resolve_external_programs(self, items, status, sources, counts) -> None:
        wanted = [item for item in items if item.is_external and not status[item.id] and item.winget_package_id]
        if not wanted:
            return
        programs: List[Tuple[InstalledProgram, DetectionSource]] = []
        try:
            programs.extend((program, DetectionSource.WMI) for program in self._inventory.win32_programs())
        except DetectionTierFailure as failure:
            self._tier_failed(failure)
        programs.extend((program, DetectionSource.REGISTRY) for program in self._inventory.registry_programs())
        if not programs:
            return

        by_name: Dict[str, DetectionSource] = {}
        for (name, _), source in programs:
            by_name.setdefault(name, source)
        program_list = [program for program, _ in programs]
        for item in wanted:
            for package_id in item.winget_package_id:
                matched = match_package_id(package_id, program_list)
                if matched is not None:
                    status[item.id] = True
                    sources[item.id] = by_name.get(matched, DetectionSource.REGISTRY)
                    counts["program"] += 1
                    logging_ext.get_human_logger().debug("%s matched installed program %s", item.name, matched)
                    break


def installed_ids(status: Mapping[str, bool]) -> Set[str]:
    """!
    @brief Ids reported as installed by :meth:`DetectionEngine.resolve_status`.
    """

    return {item_id for item_id, present in status.items() if present}


__all__ = ["DetectionEngine", "capability_matches", "installed_ids"]
