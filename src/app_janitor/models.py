"""!
@brief Data model shared by the detection and removal engine.
@details Item definitions arrive from an external catalog and are treated as
immutable; detection hands back annotated copies rather than mutating them.
Result and outcome types keep "cancelled" and "deferred" distinct from
"failed" all the way to the caller.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from . import constants

T = TypeVar("T")


class ItemKind(enum.Enum):
    """!
    @brief Detection routing for an item, derived from which name field is set.
    """

    CAPABILITY = "capability"
    FEATURE = "feature"
    PACKAGE = "package"


class DetectionSource(enum.Enum):
    """!
    @brief Provenance tag recording which tier last confirmed an item's presence.
    """

    NONE = "none"
    CAPABILITY = "capability"
    FEATURE = "feature"
    APPX = "appx"
    WMI = "wmi"
    WINGET = "winget"
    CHOCOLATEY = "chocolatey"
    REGISTRY = "registry"


class UninstallMethod(enum.Enum):
    """!
    @brief Removal mechanism chosen for a single item.
    @details WinGet is the primary package manager, Chocolatey the secondary.
    """

    WINGET = "winget"
    CHOCOLATEY = "chocolatey"
    REGISTRY = "registry"
    NONE = "none"


class RemovalOutcome(enum.Enum):
    """!
    @brief Tri-state result of running a removal script.
    """

    SUCCESS = "success"
    DEFERRED_TO_SCHEDULED_TASK = "deferred"
    FAILED = "failed"


class ResultStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    DEFERRED = "deferred"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RegistrySetting:
    """!
    @brief One registry value written after an item was removed.
    @details ``hive`` accepts the short or long hive names from
    :data:`constants.REGISTRY_ROOTS`; ``value_type`` is a ``winreg`` type name
    such as ``REG_DWORD`` or ``REG_SZ``.
    """

    hive: str
    path: str
    name: str
    value: object
    value_type: str = "REG_DWORD"

    @property
    def root(self) -> int:
        try:
            return constants.REGISTRY_ROOTS[self.hive.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown registry hive: {self.hive}") from exc

    def describe(self) -> str:
        return f"{self.hive}\\{self.path}\\{self.name}"


def _as_tuple(value: object) -> Tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(part) for part in value if str(part).strip())  # type: ignore[union-attr]


@dataclass(frozen=True)
class ItemDefinition:
    """!
    @brief Identity and addressing for one manageable unit.
    @details At most one of ``capability_name`` and ``optional_feature_name`` may
    be set; it decides the item's :class:`ItemKind`. Package items need an
    ``appx_package_name`` unless they are external applications addressed only
    through package-manager identifiers. A ``removal_script`` callable marks the
    item as owning a dedicated removal routine.
    """

    id: str
    name: str
    appx_package_name: str = ""
    capability_name: str = ""
    optional_feature_name: str = ""
    winget_package_id: Tuple[str, ...] = ()
    ms_store_id: str = ""
    choco_package_id: str = ""
    sub_packages: Tuple[str, ...] = ()
    registry_settings: Tuple[RegistrySetting, ...] = ()
    removal_script: Optional[Callable[[], str]] = field(default=None, compare=False, repr=False)
    detected_via: DetectionSource = DetectionSource.NONE
    is_installed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "winget_package_id", _as_tuple(self.winget_package_id))
        object.__setattr__(self, "sub_packages", _as_tuple(self.sub_packages))
        object.__setattr__(self, "registry_settings", tuple(self.registry_settings or ()))
        if not self.id:
            raise ValueError("Item definitions need a non-empty id")
        if self.capability_name and self.optional_feature_name:
            raise ValueError(f"{self.id}: capability and optional feature names are mutually exclusive")
        if self.kind is ItemKind.PACKAGE and not self.appx_package_name and not self.has_package_manager_id:
            raise ValueError(f"{self.id}: package items need an AppX package name or a package-manager id")

    @property
    def kind(self) -> ItemKind:
        if self.capability_name:
            return ItemKind.CAPABILITY
        if self.optional_feature_name:
            return ItemKind.FEATURE
        return ItemKind.PACKAGE

    @property
    def is_external(self) -> bool:
        """!
        @brief ``True`` for package items known only through package-manager ids.
        """

        return self.kind is ItemKind.PACKAGE and not self.appx_package_name

    @property
    def has_package_manager_id(self) -> bool:
        return bool(self.winget_package_id or self.ms_store_id or self.choco_package_id)

    @property
    def has_dedicated_removal(self) -> bool:
        return self.removal_script is not None

    @property
    def removal_name(self) -> str:
        """!
        @brief Name written into the bulk script arrays for this item.
        """

        return self.capability_name or self.optional_feature_name or self.appx_package_name


@dataclass
class RemovalScript:
    """!
    @brief A named, persisted removal script and its scheduler registration.
    """

    name: str
    content: str
    target_scheduled_task_name: str
    run_on_startup: bool = False
    actual_script_path: Optional[Path] = None


@dataclass(frozen=True)
class ProgressDetail:
    """!
    @brief One record of the progress stream exposed to callers.
    @details ``slot`` names the parallel lane the record belongs to; it is
    empty for sequential work.
    """

    progress: float = 0.0
    status_text: str = ""
    terminal_output: Optional[str] = None
    is_completion: bool = False
    slot: str = ""


ProgressSink = Callable[[ProgressDetail], None]


def report_progress(sink: Optional[ProgressSink], **fields: object) -> None:
    """!
    @brief Forward a :class:`ProgressDetail` to ``sink`` when one is attached.
    """

    if sink is not None:
        sink(ProgressDetail(**fields))  # type: ignore[arg-type]


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """!
    @brief Outcome of a public entry point.
    @details ``success`` is true for both plain and deferred success; callers
    distinguish the two through :attr:`is_deferred`.
    """

    status: ResultStatus
    result: Optional[T] = None
    message: str = ""

    @classmethod
    def succeeded(cls, result: T, message: str = "") -> "OperationResult[T]":
        return cls(ResultStatus.SUCCEEDED, result, message)

    @classmethod
    def deferred(cls, result: T, message: str = "") -> "OperationResult[T]":
        return cls(ResultStatus.DEFERRED, result, message)

    @classmethod
    def failed(cls, message: str, result: Optional[T] = None) -> "OperationResult[T]":
        return cls(ResultStatus.FAILED, result, message)

    @classmethod
    def cancelled(cls, message: str = "Operation cancelled by user") -> "OperationResult[T]":
        return cls(ResultStatus.CANCELLED, None, message)

    @property
    def success(self) -> bool:
        return self.status in (ResultStatus.SUCCEEDED, ResultStatus.DEFERRED)

    @property
    def is_deferred(self) -> bool:
        return self.status is ResultStatus.DEFERRED

    @property
    def is_cancelled(self) -> bool:
        return self.status is ResultStatus.CANCELLED

    def to_dict(self) -> Dict[str, object]:
        return {"status": self.status.value, "result": self.result, "message": self.message}


__all__ = [
    "DetectionSource",
    "ItemDefinition",
    "ItemKind",
    "OperationResult",
    "ProgressDetail",
    "ProgressSink",
    "RegistrySetting",
    "RemovalOutcome",
    "RemovalScript",
    "ResultStatus",
    "UninstallMethod",
    "report_progress",
]
