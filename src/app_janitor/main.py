"""!
@brief Primary entry point for the App Janitor CLI.
@details Parses the command line, resolves options against an optional JSON
config file, sets up the human/JSONL log streams and dispatches to one of the
modes: ``--status`` (detection table), ``--uninstall`` (package-manager or
registry uninstall of one item), ``--remove`` (script-based removal of one or
more items) and ``--cleanup`` (delete every persisted removal artifact).
Ctrl+C cancels the running operation through its shared cancellation token.
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import signal
import sys
from typing import Iterable, List, Mapping, Optional

from . import (
    catalog,
    constants,
    elevation,
    exec_utils,
    logging_ext,
    main_config,
    version,
)
from .cancellation import CancellationToken
from .coordinator import RemovalCoordinator
from .detect import DetectionEngine
from .errors import CatalogError
from .inventory import SystemInventory
from .models import ItemDefinition, OperationResult, ProgressDetail, ProgressSink
from .package_managers import ChocolateyClient, WinGetClient
from .script_store import RemovalScriptStore
from .uninstall_resolver import UninstallMethodResolver

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2


def build_arg_parser() -> argparse.ArgumentParser:
    """!
    @brief Create the top-level argument parser.
    """

    parser = argparse.ArgumentParser(prog="app-janitor", add_help=True)
    metadata = version.build_info()
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"{metadata['version']} ({metadata['build']})",
    )

    modes = parser.add_mutually_exclusive_group(required=True)
    modes.add_argument("--status", action="store_true", help="Show which catalog items are installed.")
    modes.add_argument("--uninstall", metavar="ID", help="Uninstall one item via WinGet, Chocolatey or the registry.")
    modes.add_argument("--remove", metavar="ID", nargs="+", help="Remove items through removal scripts.")
    modes.add_argument("--cleanup", action="store_true", help="Delete every persisted removal script and task.")

    parser.add_argument("--items", metavar="FILE", help="JSON item catalog.")
    parser.add_argument("--config", metavar="FILE", help="JSON configuration file.")
    parser.add_argument("--scripts-dir", metavar="DIR", help="Directory for removal scripts.")
    parser.add_argument("--cache-dir", metavar="DIR", help="Directory for package-manager exports.")
    parser.add_argument("--no-persist", action="store_true", help="Do not leave removal scripts or tasks behind.")
    parser.add_argument("--parallel", action="store_true", help="Run dedicated and bulk removals concurrently.")
    parser.add_argument("--logdir", metavar="DIR", help="Directory for human/JSONL log output.")
    parser.add_argument("--timeout", metavar="SEC", type=float, help="Ceiling for every subprocess call.")
    parser.add_argument("--quiet", action="store_true", help="Minimal console output (errors only).")
    parser.add_argument("--json", action="store_true", help="Mirror structured events to stdout.")
    return parser


def _resolve_log_directory(candidate: Optional[object]) -> pathlib.Path:
    """!
    @brief Determine the log directory, falling back to the per-user default.
    """

    if candidate:
        return pathlib.Path(str(candidate)).expanduser().resolve()
    expanded = constants.DEFAULT_LOG_DIRECTORY.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded


def _bootstrap_logging(args: argparse.Namespace, options: Mapping[str, object]) -> tuple[logging.Logger, logging.Logger]:
    """!
    @brief Initialize human and machine loggers using :mod:`logging_ext` helpers.
    @returns A tuple of configured human and machine loggers.
    """

    logdir = _resolve_log_directory(options.get("logdir"))
    quiet = bool(getattr(args, "quiet", False))
    human_logger, machine_logger = logging_ext.setup_logging(
        logdir,
        json_to_stdout=bool(getattr(args, "json", False)),
        console_level=logging.ERROR if quiet else logging.WARNING,
    )
    if quiet:
        human_logger.setLevel(logging.ERROR)
    return human_logger, machine_logger


def _console_progress(quiet: bool) -> ProgressSink:
    """!
    @brief Progress sink printing status lines to stdout.
    @details Transcript lines go to the human log only.
    """

    human_logger = logging_ext.get_human_logger()

    def sink(detail: ProgressDetail) -> None:
        prefix = f"[{detail.slot}] " if detail.slot else ""
        if detail.terminal_output is not None:
            human_logger.debug("%s%s", prefix, detail.terminal_output)
            return
        if detail.status_text and not quiet:
            print(f"{prefix}{detail.status_text}", flush=True)

    return sink


def _load_catalog(options: Mapping[str, object]) -> List[ItemDefinition]:
    items_path = options.get("items")
    if not items_path:
        print("Error: an item catalog is required (--items FILE or \"items\" in --config)", file=sys.stderr)
        raise SystemExit(EXIT_FAILED)
    try:
        return catalog.load_items(str(items_path))
    except CatalogError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_FAILED) from exc


def _select(items: Iterable[ItemDefinition], wanted: Iterable[str]) -> List[ItemDefinition]:
    by_id = catalog.index_by_id(list(items))
    missing = [item_id for item_id in wanted if item_id not in by_id]
    if missing:
        print(f"Error: unknown item id(s): {', '.join(missing)}", file=sys.stderr)
        raise SystemExit(EXIT_FAILED)
    return [by_id[item_id] for item_id in dict.fromkeys(wanted)]


def _build_detection(options: Mapping[str, object]) -> DetectionEngine:
    cache_dir = pathlib.Path(str(options["cache_dir"]))
    return DetectionEngine(
        inventory=SystemInventory(
            cache_dir=cache_dir,
            package_timeout=float(options["package_enumeration_timeout"]),  # type: ignore[arg-type]
        ),
        package_managers=[WinGetClient(cache_dir=cache_dir), ChocolateyClient()],
        status_cache_seconds=float(options["status_cache_seconds"]),  # type: ignore[arg-type]
    )


def _exit_code(result: OperationResult) -> int:
    if result.is_cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if result.success else EXIT_FAILED


def _report(result: OperationResult, *, as_json: bool, quiet: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict()))
    elif not quiet or not result.success:
        label = {"succeeded": "OK", "deferred": "DEFERRED", "failed": "FAILED", "cancelled": "CANCELLED"}
        message = f": {result.message}" if result.message else ""
        print(f"{label[result.status.value]}{message}")


def _run_status(items: List[ItemDefinition], options: Mapping[str, object], *, as_json: bool) -> int:
    annotated = _build_detection(options).annotate(items)
    if as_json:
        rows = [
            {"id": item.id, "name": item.name, "installed": item.is_installed, "source": item.detected_via.value}
            for item in annotated
        ]
        print(json.dumps(rows, indent=2))
        return EXIT_OK

    id_width = max([len("ID"), *(len(item.id) for item in annotated)])
    name_width = max([len("NAME"), *(len(item.name) for item in annotated)])
    print(f"{'ID':<{id_width}}  {'NAME':<{name_width}}  INSTALLED  SOURCE")
    for item in annotated:
        installed = "yes" if item.is_installed else "no"
        print(f"{item.id:<{id_width}}  {item.name:<{name_width}}  {installed:<9}  {item.detected_via.value}")
    return EXIT_OK


def _run_uninstall(
    item: ItemDefinition,
    options: Mapping[str, object],
    token: CancellationToken,
    sink: ProgressSink,
) -> OperationResult:
    detection = _build_detection(options)
    cache_dir = pathlib.Path(str(options["cache_dir"]))
    resolver = UninstallMethodResolver(
        winget=WinGetClient(cache_dir=cache_dir),
        chocolatey=ChocolateyClient(),
        detection=detection,
    )
    annotated = detection.annotate([item])[0]
    return resolver.execute(annotated, progress=sink, cancel_token=token)


def main(argv: Optional[Iterable[str]] = None) -> int:
    """!
    @brief Entry point invoked by the console script.
    @returns Process exit code integer.
    """

    parser = build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    options = main_config.collect_options(args)
    human_log, machine_log = _bootstrap_logging(args, options)
    exec_utils.set_global_timeout(options["timeout"])  # type: ignore[arg-type]

    quiet = bool(args.quiet)
    as_json = bool(args.json)
    mode = "status" if args.status else "uninstall" if args.uninstall else "remove" if args.remove else "cleanup"
    logged_options = {key: str(value) if isinstance(value, pathlib.Path) else value for key, value in options.items()}
    machine_log.info("startup", extra={"event": "startup", "data": {"mode": mode, "options": logged_options}})
    if not elevation.is_admin():
        human_log.warning("Not running elevated; removals will likely fail or be deferred")

    token = CancellationToken()
    sink = _console_progress(quiet or as_json)
    store = RemovalScriptStore(
        pathlib.Path(str(options["scripts_dir"])),
        script_timeout=options["timeout"],  # type: ignore[arg-type]
    )

    if mode == "cleanup":
        store.cleanup_all()
        _report(OperationResult.succeeded(True, "Removal artifacts deleted"), as_json=as_json, quiet=quiet)
        return EXIT_OK

    items = _load_catalog(options)
    if mode == "status":
        return _run_status(items, options, as_json=as_json)

    def _cancel(signum, frame) -> None:  # noqa: ARG001 - signal handler signature
        human_log.warning("Cancellation requested")
        token.cancel()

    previous = signal.signal(signal.SIGINT, _cancel)
    try:
        if mode == "uninstall":
            (item,) = _select(items, [args.uninstall])
            result: OperationResult = _run_uninstall(item, options, token, sink)
        else:
            selected = _select(items, args.remove)
            coordinator = RemovalCoordinator(store, catalog.index_by_id(items), cancel_token=token, progress=sink)
            if options["parallel"]:
                result = coordinator.uninstall_many_parallel(selected, persist=bool(options["persist"]))
            else:
                result = coordinator.uninstall_many(selected, persist=bool(options["persist"]))
    finally:
        signal.signal(signal.SIGINT, previous)

    machine_log.info("finished", extra={"event": "finished", "data": result.to_dict()})
    _report(result, as_json=as_json, quiet=quiet)
    return _exit_code(result)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
