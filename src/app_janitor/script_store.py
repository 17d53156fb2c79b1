"""!
@brief Removal script persistence, execution and scheduler registration.
@details :class:`RemovalScriptStore` owns the scripts directory. The bulk
script is read, merged and regenerated through :mod:`bulk_script`; dedicated
scripts are written verbatim under the fixed file name of their handler.
Script runs are mapped onto :class:`RemovalOutcome`:

- normal completion is ``SUCCESS``;
- an execution-policy refusal is ``DEFERRED_TO_SCHEDULED_TASK`` and leaves the
  script plus a scheduled task behind to run later;
- any other script failure is logged as a warning and still counts as
  ``SUCCESS`` (partial removal is progress);
- cancellation is ``FAILED``.

Bulk mutations are read-merge-write without a file lock. Callers serialize
them; :class:`coordinator.RemovalCoordinator` does.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Iterable, List, Optional

from . import constants, dedicated_scripts, logging_ext, powershell, tasks_services
from .bulk_script import BulkEntries, extract_entries, render_script
from .errors import ExecutionPolicyBlocked, OperationCancelled, ScriptExecutionError, UnknownHandlerType
from .models import ItemDefinition, ProgressSink, RemovalOutcome, RemovalScript, report_progress

if TYPE_CHECKING:
    from .cancellation import CancellationToken


def write_atomic(path: Path, content: str) -> None:
    """!
    @brief Replace ``path`` with ``content`` in one step.
    @details Text goes to a temporary sibling first and is moved into place
    with :func:`os.replace`, so readers see either the old or the new file.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(handle, "w", encoding="utf-8", newline="\n") as stream:
            stream.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


class RemovalScriptStore:
    """!
    @brief Bulk and dedicated removal scripts in one scripts directory.
    @param scripts_dir Directory holding ``BloatRemoval.ps1`` and the dedicated scripts.
    @param scheduler Scheduler collaborator exposing ``is_registered``, ``register`` and ``unregister``.
    @param script_timeout Optional ceiling for one script run in seconds.
    @param log_directory Directory the generated scripts log into.
    """

    def __init__(
        self,
        scripts_dir: Path = constants.DEFAULT_SCRIPTS_DIRECTORY,
        *,
        scheduler: ModuleType | object = tasks_services,
        script_timeout: float | None = None,
        log_directory: Path | None = None,
    ) -> None:
        self.scripts_dir = Path(scripts_dir)
        self._scheduler = scheduler
        self._script_timeout = script_timeout
        self._log_directory = log_directory

    # ------------------------------------------------------------------
    # Bulk script state
    # ------------------------------------------------------------------
    @property
    def bulk_script_path(self) -> Path:
        return self.scripts_dir / constants.BULK_SCRIPT_FILENAME

    def _bulk_record(self, content: str) -> RemovalScript:
        return RemovalScript(
            name=constants.BULK_SCRIPT_NAME,
            content=content,
            target_scheduled_task_name=constants.BULK_TASK_NAME,
            run_on_startup=False,
            actual_script_path=self.bulk_script_path,
        )

    def read_bulk_entries(self) -> BulkEntries:
        """!
        @brief Entries currently recorded in the bulk script; empty when it does not exist.
        """

        try:
            content = self.bulk_script_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return BulkEntries()
        return extract_entries(content)

    def _write_bulk(self, entries: BulkEntries, event: str) -> RemovalScript:
        content = render_script(entries, log_directory=self._log_directory)
        write_atomic(self.bulk_script_path, content)
        logging_ext.get_machine_logger().info(
            event,
            extra={
                "event": event,
                "path": str(self.bulk_script_path),
                "packages": len(entries.packages),
                "capabilities": len(entries.capabilities),
                "optional_features": len(entries.optional_features),
                "special_apps": len(entries.special_apps),
            },
        )
        return self._bulk_record(content)

    def add_to_bulk(self, items: Iterable[ItemDefinition]) -> Optional[RemovalScript]:
        """!
        @brief Merge ``items`` into the bulk script and rewrite it.
        @returns The written script, or ``None`` when nothing would be recorded.
        """

        additions = BulkEntries.from_items(item for item in items if not item.has_dedicated_removal)
        if additions.is_empty:
            return None
        merged = self.read_bulk_entries().merge(additions)
        logging_ext.get_human_logger().info(
            "Recording %d bulk removal entries in %s", merged.count(), self.bulk_script_path
        )
        return self._write_bulk(merged, "bulk_script_write")

    def remove_from_bulk(self, items: Iterable[ItemDefinition]) -> bool:
        """!
        @brief Take ``items`` out of the bulk script.
        @details When no entries remain the script file is deleted and its
        scheduled task unregistered.
        @returns ``False`` when the script could not be rewritten or removed.
        """

        human_logger = logging_ext.get_human_logger()
        if not self.bulk_script_path.exists():
            human_logger.debug("%s does not exist; nothing to remove", self.bulk_script_path)
            return True

        names: List[str] = []
        for item in items:
            names.extend(filter(None, (item.removal_name, item.appx_package_name, *item.sub_packages)))

        try:
            current = self.read_bulk_entries()
            remaining = current.subtract(names)
            if remaining == current:
                return True
            if remaining.is_empty:
                human_logger.info("Bulk removal script is empty; deleting it")
                self.bulk_script_path.unlink(missing_ok=True)
                self._scheduler.unregister(constants.BULK_TASK_NAME)
                logging_ext.get_machine_logger().info(
                    "bulk_script_remove",
                    extra={"event": "bulk_script_remove", "path": str(self.bulk_script_path), "deleted": True},
                )
                return True
            self._write_bulk(remaining, "bulk_script_remove")
            return True
        except OSError as exc:
            human_logger.error("Unable to update %s: %s", self.bulk_script_path, exc)
            return False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def execute_bulk(
        self,
        items: Iterable[ItemDefinition],
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: "CancellationToken | None" = None,
        slot: str = "",
    ) -> RemovalOutcome:
        """!
        @brief Record ``items`` in the bulk script and run it.
        """

        item_list = list(items)
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            report_progress(progress, progress=10, status_text="Creating removal script...", slot=slot)
            script = self.add_to_bulk(item_list)
        except OperationCancelled:
            return self._finish(constants.BULK_SCRIPT_NAME, RemovalOutcome.FAILED, "cancelled before start")
        except OSError as exc:
            logging_ext.get_human_logger().error("Unable to write the bulk removal script: %s", exc)
            return self._finish(constants.BULK_SCRIPT_NAME, RemovalOutcome.FAILED, str(exc))
        if script is None:
            logging_ext.get_human_logger().info("No bulk removal entries; skipping script run")
            return RemovalOutcome.SUCCESS
        return self._run(script, progress=progress, cancel_token=cancel_token, slot=slot)

    def execute_dedicated(
        self,
        item: ItemDefinition,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: "CancellationToken | None" = None,
        slot: str = "",
    ) -> RemovalOutcome:
        """!
        @brief Write and run the dedicated removal script for ``item``.
        """

        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            handler = dedicated_scripts.handler_for_item_id(item.id)
            content = item.removal_script() if item.removal_script is not None else None
            script = dedicated_scripts.removal_script(handler, self.scripts_dir, content)
            report_progress(progress, progress=10, status_text=f"Creating {item.name} removal script...", slot=slot)
            write_atomic(script.actual_script_path, script.content)  # type: ignore[arg-type]
        except OperationCancelled:
            return self._finish(item.id, RemovalOutcome.FAILED, "cancelled before start")
        except UnknownHandlerType as exc:
            logging_ext.get_human_logger().error(str(exc))
            return self._finish(item.id, RemovalOutcome.FAILED, str(exc))
        except Exception as exc:  # noqa: BLE001 - outcome is reported, not raised
            logging_ext.get_human_logger().exception("Unable to prepare removal script for %s", item.name)
            return self._finish(item.id, RemovalOutcome.FAILED, str(exc))
        return self._run(script, progress=progress, cancel_token=cancel_token, slot=slot)

    def _run(
        self,
        script: RemovalScript,
        *,
        progress: Optional[ProgressSink],
        cancel_token: "CancellationToken | None",
        slot: str,
    ) -> RemovalOutcome:
        human_logger = logging_ext.get_human_logger()
        path = script.actual_script_path
        if path is None:
            human_logger.error("%s has no script path; nothing to run", script.name)
            return self._finish(script.name, RemovalOutcome.FAILED, "no script path")

        report_progress(progress, progress=40, status_text=f"Executing {script.name}...", slot=slot)
        try:
            powershell.execute_script_file(
                path,
                progress=progress,
                cancel_token=cancel_token,
                timeout=self._script_timeout,
                event="script_execute",
                slot=slot,
            )
        except ExecutionPolicyBlocked as exc:
            human_logger.warning("%s was blocked by execution policy; deferring to scheduled task", script.name)
            registered = self._scheduler.register(script)
            if not registered:
                human_logger.warning("Scheduled task %s could not be registered", script.target_scheduled_task_name)
            return self._finish(script.name, RemovalOutcome.DEFERRED_TO_SCHEDULED_TASK, str(exc))
        except OperationCancelled:
            human_logger.info("%s was cancelled", script.name)
            return self._finish(script.name, RemovalOutcome.FAILED, "cancelled")
        except ScriptExecutionError as exc:
            human_logger.warning("%s reported errors, continuing: %s", script.name, exc)
            return self._finish(script.name, RemovalOutcome.SUCCESS, str(exc))

        report_progress(progress, progress=100, status_text=f"{script.name} completed", slot=slot)
        return self._finish(script.name, RemovalOutcome.SUCCESS, "")

    @staticmethod
    def _finish(name: str, outcome: RemovalOutcome, detail: str) -> RemovalOutcome:
        logging_ext.get_machine_logger().info(
            "removal_outcome",
            extra={"event": "removal_outcome", "script": name, "outcome": outcome.value, "detail": detail},
        )
        return outcome

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _on_disk(self, script: RemovalScript) -> Optional[RemovalScript]:
        path = script.actual_script_path
        try:
            script.content = path.read_text(encoding="utf-8")  # type: ignore[union-attr]
        except (OSError, AttributeError):
            return None
        return script

    def persist(self, all_items: Iterable[ItemDefinition]) -> None:
        """!
        @brief Register scheduled tasks for scripts that exist on disk.
        @details Dedicated scripts of ``all_items`` and the bulk script are
        re-read and (re-)registered; missing files are skipped with a warning.
        """

        human_logger = logging_ext.get_human_logger()
        candidates: List[RemovalScript] = []
        for item in all_items:
            if not item.has_dedicated_removal:
                continue
            try:
                handler = dedicated_scripts.handler_for_item_id(item.id)
            except UnknownHandlerType as exc:
                human_logger.warning(str(exc))
                continue
            candidates.append(dedicated_scripts.removal_script(handler, self.scripts_dir, content=""))

        for script in candidates:
            found = self._on_disk(script)
            if found is None:
                human_logger.warning("Script not found: %s", script.actual_script_path)
                continue
            self._scheduler.register(found)

        bulk = self._on_disk(self._bulk_record(""))
        if bulk is not None:
            self._scheduler.register(bulk)

    def cleanup_all(self) -> None:
        """!
        @brief Unregister every known task and delete every known script file.
        """

        human_logger = logging_ext.get_human_logger()
        scripts = [self._bulk_record(""), *dedicated_scripts.all_scripts(self.scripts_dir)]
        for script in scripts:
            self._scheduler.unregister(script.target_scheduled_task_name)
            path = script.actual_script_path
            try:
                if path is not None and path.exists():
                    path.unlink()
                    human_logger.info("Deleted %s", path)
            except OSError as exc:
                human_logger.warning("Unable to delete %s: %s", path, exc)


__all__ = ["RemovalScriptStore", "write_atomic"]
