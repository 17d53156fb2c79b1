"""!
@brief Removal script store tests.
@details Bulk script bookkeeping, outcome mapping for script runs and the
persist/cleanup passes, with PowerShell and ``schtasks`` replaced by doubles.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import constants, dedicated_scripts, logging_ext, script_store  # noqa: E402
from app_janitor.cancellation import CancellationToken  # noqa: E402
from app_janitor.errors import ExecutionPolicyBlocked, OperationCancelled, ScriptExecutionError  # noqa: E402
from app_janitor.models import ItemDefinition, RemovalOutcome, RemovalScript  # noqa: E402
from app_janitor.script_store import RemovalScriptStore  # noqa: E402


class _FakeScheduler:
    """!
    @brief Records scheduled task registrations instead of calling ``schtasks``.
    """

    def __init__(self, *, register_result: bool = True) -> None:
        self.registered: List[RemovalScript] = []
        self.unregistered: List[str] = []
        self.register_result = register_result

    def is_registered(self, task_name: str) -> bool:
        return any(script.target_scheduled_task_name == task_name for script in self.registered)

    def register(self, script: RemovalScript) -> bool:
        self.registered.append(script)
        return self.register_result

    def unregister(self, task_name: str) -> bool:
        self.unregistered.append(task_name)
        return True


def _news() -> ItemDefinition:
    return ItemDefinition(id="news", name="News", appx_package_name="Microsoft.BingNews")


def _weather() -> ItemDefinition:
    return ItemDefinition(id="weather", name="Weather", appx_package_name="Microsoft.BingWeather")


def _edge() -> ItemDefinition:
    return ItemDefinition(
        id="windows-app-edge",
        name="Microsoft Edge",
        appx_package_name="Microsoft.MicrosoftEdge.Stable",
        removal_script=dedicated_scripts.render_edge_script,
    )


@pytest.fixture
def scheduler() -> _FakeScheduler:
    return _FakeScheduler()


@pytest.fixture
def store(tmp_path, scheduler) -> RemovalScriptStore:
    logging_ext.setup_logging(tmp_path / "logs")
    return RemovalScriptStore(tmp_path / "scripts", scheduler=scheduler)


@pytest.fixture
def executed(monkeypatch: pytest.MonkeyPatch) -> List[Path]:
    runs: List[Path] = []

    def fake_execute(script_path, **kwargs):
        runs.append(Path(script_path))
        return ""

    monkeypatch.setattr(script_store.powershell, "execute_script_file", fake_execute)
    return runs


def _raising(exc: Exception):
    def fake_execute(script_path, **kwargs):
        raise exc

    return fake_execute


def test_write_atomic_replaces_content(tmp_path) -> None:
    target = tmp_path / "nested" / "script.ps1"
    script_store.write_atomic(target, "one")
    script_store.write_atomic(target, "two")

    assert target.read_text(encoding="utf-8") == "two"
    assert [path.name for path in target.parent.iterdir()] == ["script.ps1"]


def test_add_to_bulk_merges_with_existing_entries(store) -> None:
    store.add_to_bulk([_news()])
    script = store.add_to_bulk([_weather(), _news()])

    assert script is not None
    assert script.target_scheduled_task_name == constants.BULK_TASK_NAME
    assert store.read_bulk_entries().packages == ("Microsoft.BingNews", "Microsoft.BingWeather")


def test_add_to_bulk_ignores_dedicated_items(store) -> None:
    assert store.add_to_bulk([_edge()]) is None
    assert not store.bulk_script_path.exists()


def test_remove_from_bulk_rewrites_remaining_entries(store, scheduler) -> None:
    store.add_to_bulk([_news(), _weather()])

    assert store.remove_from_bulk([_news()]) is True

    assert store.read_bulk_entries().packages == ("Microsoft.BingWeather",)
    assert scheduler.unregistered == []


def test_removing_last_entry_deletes_script_and_task(store, scheduler) -> None:
    """!
    @brief An empty bulk script must not linger on disk or in the scheduler.
    """

    store.add_to_bulk([_news()])

    assert store.remove_from_bulk([_news()]) is True

    assert not store.bulk_script_path.exists()
    assert scheduler.unregistered == [constants.BULK_TASK_NAME]


def test_remove_from_bulk_without_script_is_a_no_op(store, scheduler) -> None:
    assert store.remove_from_bulk([_news()]) is True
    assert scheduler.unregistered == []


def test_execute_bulk_success(store, executed) -> None:
    seen = []
    outcome = store.execute_bulk([_news()], progress=seen.append)

    assert outcome is RemovalOutcome.SUCCESS
    assert executed == [store.bulk_script_path]
    assert seen[0].status_text == "Creating removal script..."
    assert seen[-1].progress == 100


def test_execute_bulk_with_nothing_to_record_skips_run(store, executed) -> None:
    assert store.execute_bulk([]) is RemovalOutcome.SUCCESS
    assert executed == []


def test_policy_block_defers_to_scheduled_task(store, scheduler, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        script_store.powershell,
        "execute_script_file",
        _raising(ExecutionPolicyBlocked("blocked", returncode=1, output="running scripts is disabled")),
    )

    outcome = store.execute_bulk([_news()])

    assert outcome is RemovalOutcome.DEFERRED_TO_SCHEDULED_TASK
    assert [script.target_scheduled_task_name for script in scheduler.registered] == [constants.BULK_TASK_NAME]
    assert store.bulk_script_path.exists()

    events = [
        json.loads(line)
        for line in (tmp_path / "logs" / "app-janitor.jsonl").read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    outcome_event = next(event for event in events if event.get("event") == "removal_outcome")
    assert outcome_event["outcome"] == "deferred"


def test_script_errors_still_count_as_success(store, monkeypatch) -> None:
    monkeypatch.setattr(
        script_store.powershell,
        "execute_script_file",
        _raising(ScriptExecutionError("exited with code 1", returncode=1)),
    )

    assert store.execute_bulk([_news()]) is RemovalOutcome.SUCCESS


def test_cancellation_during_run_is_failed(store, monkeypatch) -> None:
    monkeypatch.setattr(script_store.powershell, "execute_script_file", _raising(OperationCancelled("stop")))

    assert store.execute_bulk([_news()]) is RemovalOutcome.FAILED


def test_cancelled_token_prevents_script_creation(store, executed) -> None:
    token = CancellationToken()
    token.cancel()

    assert store.execute_bulk([_news()], cancel_token=token) is RemovalOutcome.FAILED
    assert store.execute_dedicated(_edge(), cancel_token=token) is RemovalOutcome.FAILED
    assert executed == []
    assert not store.bulk_script_path.exists()


def test_script_without_path_fails_without_running(store, executed) -> None:
    script = RemovalScript(name="Orphan", content="", target_scheduled_task_name="AppJanitor\\Orphan")

    assert store._run(script, progress=None, cancel_token=None, slot="") is RemovalOutcome.FAILED
    assert executed == []


def test_execute_dedicated_writes_fixed_file(store, executed) -> None:
    outcome = store.execute_dedicated(_edge(), slot="EdgeRemoval")

    expected = store.scripts_dir / "EdgeRemoval.ps1"
    assert outcome is RemovalOutcome.SUCCESS
    assert executed == [expected]
    assert "Edge" in expected.read_text(encoding="utf-8")
    assert not store.bulk_script_path.exists()


def test_execute_dedicated_unknown_handler_fails(store, executed) -> None:
    item = ItemDefinition(id="mystery", name="Mystery", appx_package_name="Mystery.App", removal_script=lambda: "x")

    assert store.execute_dedicated(item) is RemovalOutcome.FAILED
    assert executed == []


def test_persist_registers_existing_scripts_and_warns_on_missing(store, scheduler, executed, tmp_path) -> None:
    store.execute_bulk([_news()])
    onedrive = ItemDefinition(
        id="windows-app-onedrive",
        name="OneDrive",
        appx_package_name="Microsoft.OneDriveSync",
        removal_script=dedicated_scripts.render_onedrive_script,
    )

    store.persist([_news(), _edge(), onedrive])

    names = [script.target_scheduled_task_name for script in scheduler.registered]
    assert names == [constants.BULK_TASK_NAME]
    assert scheduler.registered[0].content
    human_log = (tmp_path / "logs" / "app-janitor.log").read_text(encoding="utf-8")
    assert "Script not found" in human_log


def test_persist_registers_dedicated_scripts_with_triggers(store, scheduler, executed) -> None:
    store.execute_dedicated(_edge())

    store.persist([_edge()])

    (script,) = scheduler.registered
    assert script.target_scheduled_task_name == "AppJanitor\\EdgeRemoval"
    assert script.run_on_startup is True
    assert script.content.strip()


def test_cleanup_all_removes_every_artifact(store, scheduler, executed) -> None:
    store.execute_bulk([_news()])
    store.execute_dedicated(_edge())

    store.cleanup_all()

    assert list(store.scripts_dir.glob("*.ps1")) == []
    assert set(scheduler.unregistered) == {
        constants.BULK_TASK_NAME,
        "AppJanitor\\EdgeRemoval",
        "AppJanitor\\OneDriveRemoval",
    }
