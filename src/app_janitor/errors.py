"""!
@brief Exception taxonomy for detection, uninstall and removal flows.
@details Tier and fallback-step failures are recovered where they are raised;
only :class:`OperationCancelled` crosses step boundaries on purpose. Public
entry points translate everything here into result objects.
"""
from __future__ import annotations


class AppJanitorError(Exception):
    """!
    @brief Base class for errors raised by App Janitor modules.
    """


class DetectionTierFailure(AppJanitorError):
    """!
    @brief One detection tier could not produce an answer.
    @details Raised by inventory queries and caught by the detection engine,
    which falls through to the next tier.
    """

    def __init__(self, tier: str, message: str) -> None:
        super().__init__(f"{tier}: {message}")
        self.tier = tier


class UninstallMethodExhausted(AppJanitorError):
    """!
    @brief Every applicable uninstall mechanism failed, or none applied.
    """

    def __init__(self, item_name: str, message: str | None = None) -> None:
        super().__init__(message or f"No uninstall method succeeded for {item_name}")
        self.item_name = item_name


class ScriptExecutionError(AppJanitorError):
    """!
    @brief The scripting subsystem reported a failed run.
    @details ``returncode`` is ``None`` when the process never produced one
    (timeout or launch failure).
    """

    def __init__(self, message: str, *, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ExecutionPolicyBlocked(ScriptExecutionError):
    """!
    @brief PowerShell refused to run a script because of execution policy.
    """


class OperationCancelled(AppJanitorError):
    """!
    @brief A cooperative cancellation request was observed.
    """


class UnknownHandlerType(AppJanitorError, ValueError):
    """!
    @brief No dedicated removal handler exists for the requested tag or item id.
    """


class CatalogError(AppJanitorError):
    """!
    @brief An item catalog file is missing, unreadable or malformed.
    """


__all__ = [
    "AppJanitorError",
    "CatalogError",
    "DetectionTierFailure",
    "ExecutionPolicyBlocked",
    "OperationCancelled",
    "ScriptExecutionError",
    "UninstallMethodExhausted",
    "UnknownHandlerType",
]
