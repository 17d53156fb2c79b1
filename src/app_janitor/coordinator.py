"""!
@brief Top-level removal orchestration.
@details :class:`RemovalCoordinator` routes items with a dedicated removal
routine through :meth:`RemovalScriptStore.execute_dedicated` and batches the
rest into one :meth:`RemovalScriptStore.execute_bulk` call. Afterwards it
either persists the scripts as scheduled tasks or removes every artifact.
Every public method returns an :class:`OperationResult` and never raises.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from . import constants, dedicated_scripts, logging_ext
from .cancellation import CancellationToken
from .errors import OperationCancelled, UnknownHandlerType
from .models import ItemDefinition, OperationResult, ProgressSink, RemovalOutcome, report_progress
from .script_store import RemovalScriptStore

DEFERRED_MESSAGE = "Items will be removed at next startup"

ItemLookup = Callable[[str], Optional[ItemDefinition]]


def slot_name(item: ItemDefinition) -> str:
    """!
    @brief Progress lane label for a dedicated item.
    """

    try:
        handler = dedicated_scripts.handler_for_item_id(item.id)
    except UnknownHandlerType:
        return item.name
    return dedicated_scripts.HANDLERS[handler].script_name


def partition(items: Sequence[ItemDefinition]) -> Tuple[List[ItemDefinition], List[ItemDefinition]]:
    """!
    @brief Split ``items`` into (dedicated, bulk) preserving order.
    """

    dedicated = [item for item in items if item.has_dedicated_removal]
    bulk = [item for item in items if not item.has_dedicated_removal]
    return dedicated, bulk


class RemovalCoordinator:
    """!
    @brief Remove one or many items and finalise script persistence.
    @param store Script store executing the removals.
    @param lookup Catalog access by item id, either a mapping or a callable.
    @param cancel_token Token shared by every operation of this coordinator.
    @param progress Default progress sink.
    """

    def __init__(
        self,
        store: RemovalScriptStore,
        lookup: Mapping[str, ItemDefinition] | ItemLookup,
        *,
        cancel_token: CancellationToken | None = None,
        progress: Optional[ProgressSink] = None,
    ) -> None:
        self.store = store
        self._lookup: ItemLookup = lookup.get if isinstance(lookup, Mapping) else lookup  # type: ignore[assignment]
        self.cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self._progress = progress
        self.last_outcomes: Dict[str, RemovalOutcome] = {}

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------
    def uninstall_one(self, item_id: str, *, progress: Optional[ProgressSink] = None) -> OperationResult[bool]:
        """!
        @brief Remove the catalog item ``item_id``.
        """

        human_logger = logging_ext.get_human_logger()
        sink = progress or self._progress
        try:
            item = self._lookup(item_id)
            if item is None:
                human_logger.info("Item '%s' not found in definitions", item_id)
                return OperationResult.failed("App not found")

            human_logger.info("Removing %s (%s)", item.name, item.kind.value)
            self.cancel_token.raise_if_cancelled()
            if item.has_dedicated_removal:
                outcome = self.store.execute_dedicated(item, progress=sink, cancel_token=self.cancel_token)
            else:
                outcome = self.store.execute_bulk([item], progress=sink, cancel_token=self.cancel_token)
            self.last_outcomes = {item.id: outcome}
            self.cancel_token.raise_if_cancelled()

            if outcome is RemovalOutcome.SUCCESS:
                return OperationResult.succeeded(True)
            if outcome is RemovalOutcome.DEFERRED_TO_SCHEDULED_TASK:
                return OperationResult.deferred(True, DEFERRED_MESSAGE)
            return OperationResult.failed("Removal failed")
        except OperationCancelled:
            human_logger.info("Removal of '%s' was cancelled", item_id)
            return OperationResult.cancelled("Operation was cancelled")
        except Exception as exc:  # noqa: BLE001 - public boundary returns a result object
            human_logger.exception("Failed to remove '%s'", item_id)
            return OperationResult.failed(str(exc))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def uninstall_many(
        self,
        items: Sequence[ItemDefinition],
        *,
        persist: bool = True,
        progress: Optional[ProgressSink] = None,
    ) -> OperationResult[int]:
        """!
        @brief Run dedicated items one after another, then the bulk batch once.
        """

        human_logger = logging_ext.get_human_logger()
        sink = progress or self._progress
        if not items:
            return OperationResult.failed("No apps provided")

        try:
            dedicated, bulk = partition(items)
            human_logger.info("Removing %d items (%d dedicated, %d bulk)", len(items), len(dedicated), len(bulk))
            outcomes: Dict[str, RemovalOutcome] = {}

            for item in dedicated:
                self.cancel_token.raise_if_cancelled()
                outcomes[slot_name(item)] = self.store.execute_dedicated(
                    item, progress=sink, cancel_token=self.cancel_token
                )
            if bulk:
                self.cancel_token.raise_if_cancelled()
                outcomes[constants.BULK_SCRIPT_NAME] = self.store.execute_bulk(
                    bulk, progress=sink, cancel_token=self.cancel_token
                )
            self.cancel_token.raise_if_cancelled()

            self._finalise(items, persist)
            return self._aggregate(items, outcomes)
        except OperationCancelled:
            human_logger.info("Batch removal was cancelled")
            return OperationResult.cancelled("Operation was cancelled")
        except Exception as exc:  # noqa: BLE001 - public boundary returns a result object
            human_logger.exception("Failed to remove items")
            return OperationResult.failed(str(exc))

    def uninstall_many_parallel(
        self,
        items: Sequence[ItemDefinition],
        *,
        persist: bool = True,
        progress: Optional[ProgressSink] = None,
    ) -> OperationResult[int]:
        """!
        @brief Run each dedicated item and the bulk batch concurrently.
        @details Every lane reports progress under its own slot name and ends
        with a completion record. All lanes are joined before persistence or
        cleanup runs. Lanes share a child of :attr:`cancel_token`: cancelling
        the coordinator stops every lane, and a lane error stops its siblings
        without cancelling the coordinator.
        """

        human_logger = logging_ext.get_human_logger()
        sink = progress or self._progress
        if not items:
            return OperationResult.failed("No apps provided")

        batch_token = self.cancel_token.child()
        dedicated, bulk = partition(items)
        lanes: List[Tuple[str, Callable[[str], RemovalOutcome]]] = []
        for item in dedicated:
            lanes.append((slot_name(item), self._dedicated_lane(item, sink, batch_token)))
        if bulk:
            lanes.append((constants.BULK_SCRIPT_NAME, self._bulk_lane(bulk, sink, batch_token)))
        human_logger.info("Running %d removal lanes in parallel: %s", len(lanes), ", ".join(name for name, _ in lanes))

        try:
            with ThreadPoolExecutor(max_workers=len(lanes), thread_name_prefix="removal") as pool:
                futures = [(name, pool.submit(lane, name)) for name, lane in lanes]
                outcomes: Dict[str, RemovalOutcome] = {}
                errors: List[Exception] = []
                for name, future in futures:
                    try:
                        outcomes[name] = future.result()
                    except Exception as exc:  # noqa: BLE001 - collected, re-raised below
                        errors.append(exc)
                        batch_token.cancel()
            # Lanes stopped by a sibling's error report that error, not a cancellation.
            lane_errors = [exc for exc in errors if not isinstance(exc, OperationCancelled)]
            if lane_errors:
                raise lane_errors[0]
            self.cancel_token.raise_if_cancelled()
            if errors:
                raise errors[0]

            self._finalise(items, persist)
            return self._aggregate(items, outcomes)
        except OperationCancelled:
            human_logger.info("Parallel removal was cancelled")
            return OperationResult.cancelled("Operation was cancelled")
        except Exception as exc:  # noqa: BLE001 - public boundary returns a result object
            human_logger.exception("Failed to remove items in parallel")
            return OperationResult.failed(str(exc))

    def _dedicated_lane(
        self,
        item: ItemDefinition,
        sink: Optional[ProgressSink],
        token: CancellationToken,
    ) -> Callable[[str], RemovalOutcome]:
        def run(slot: str) -> RemovalOutcome:
            token.raise_if_cancelled()
            outcome = self.store.execute_dedicated(item, progress=sink, cancel_token=token, slot=slot)
            report_progress(sink, progress=100, status_text=item.name, is_completion=True, slot=slot)
            return outcome

        return run

    def _bulk_lane(
        self,
        items: List[ItemDefinition],
        sink: Optional[ProgressSink],
        token: CancellationToken,
    ) -> Callable[[str], RemovalOutcome]:
        def run(slot: str) -> RemovalOutcome:
            token.raise_if_cancelled()
            outcome = self.store.execute_bulk(items, progress=sink, cancel_token=token, slot=slot)
            report_progress(sink, progress=100, status_text="Removing Apps", is_completion=True, slot=slot)
            return outcome

        return run

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------
    def _finalise(self, items: Sequence[ItemDefinition], persist: bool) -> None:
        human_logger = logging_ext.get_human_logger()
        if persist:
            human_logger.info("Persisting removal scripts")
            self.store.persist(items)
        else:
            human_logger.info("Cleaning up all removal artifacts")
            self.store.cleanup_all()

    def _aggregate(self, items: Sequence[ItemDefinition], outcomes: Dict[str, RemovalOutcome]) -> OperationResult[int]:
        self.last_outcomes = dict(outcomes)
        count = len(items)
        failed = sorted(name for name, outcome in outcomes.items() if outcome is RemovalOutcome.FAILED)
        deferred = any(outcome is RemovalOutcome.DEFERRED_TO_SCHEDULED_TASK for outcome in outcomes.values())

        if deferred:
            result: OperationResult[int] = OperationResult.deferred(count, DEFERRED_MESSAGE)
        elif failed:
            result = OperationResult.failed(f"Removal failed for: {', '.join(failed)}", count)
        else:
            result = OperationResult.succeeded(count)

        human_logger = logging_ext.get_human_logger()
        if result.is_deferred:
            human_logger.warning("%d items deferred to scheduled task", count)
        elif result.success:
            human_logger.info("Successfully removed %d items", count)
        else:
            human_logger.error(result.message)
        logging_ext.get_machine_logger().info(
            "removal_batch_result",
            extra={
                "event": "removal_batch_result",
                "status": result.status.value,
                "items": count,
                "outcomes": {name: outcome.value for name, outcome in outcomes.items()},
            },
        )
        return result


__all__ = ["DEFERRED_MESSAGE", "RemovalCoordinator", "partition", "slot_name"]
