"""!
@brief Detection engine tests.
@details Tier ordering, failure fall-through, capability name matching and
cache behaviour of :class:`app_janitor.detect.DetectionEngine`, driven by an
in-memory inventory instead of live PowerShell queries.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Dict, List, Set

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import detect, logging_ext  # noqa: E402
from app_janitor.errors import DetectionTierFailure  # noqa: E402
from app_janitor.models import DetectionSource, ItemDefinition  # noqa: E402


class _FakeInventory:
    """!
    @brief Inventory double; a value that is an exception instance is raised.
    """

    def __init__(self, **answers: object) -> None:
        self.answers: Dict[str, object] = {
            "installed_capabilities": set(),
            "enabled_features": set(),
            "appx_packages": set(),
            "store_programs": set(),
            "registry_hint_packages": set(),
            "script_packages": set(),
            "win32_programs": [],
            "registry_programs": [],
        }
        self.answers.update(answers)
        self.calls: List[str] = []

    def _answer(self, name: str):
        self.calls.append(name)
        value = self.answers[name]
        if isinstance(value, BaseException):
            raise value
        return value

    def installed_capabilities(self):
        return self._answer("installed_capabilities")

    def enabled_features(self):
        return self._answer("enabled_features")

    def appx_packages(self):
        return self._answer("appx_packages")

    def store_programs(self):
        return self._answer("store_programs")

    def registry_hint_packages(self):
        return self._answer("registry_hint_packages")

    def script_packages(self):
        return self._answer("script_packages")

    def win32_programs(self):
        return self._answer("win32_programs")

    def registry_programs(self):
        return self._answer("registry_programs")


class _FakeManager:
    def __init__(self, name: str, ids: Set[str]) -> None:
        self.name = name
        self.ids = ids
        self.calls = 0

    def installed_ids(self) -> Set[str]:
        self.calls += 1
        return set(self.ids)


def _engine(inventory: _FakeInventory, *managers: _FakeManager, **kwargs) -> detect.DetectionEngine:
    return detect.DetectionEngine(inventory=inventory, package_managers=list(managers), **kwargs)


@pytest.fixture(autouse=True)
def _logs(tmp_path) -> None:
    logging_ext.setup_logging(tmp_path)


def test_capability_matches_requires_tilde_boundary() -> None:
    assert detect.capability_matches("Foo~~~~1.2.3", "Foo")
    assert detect.capability_matches("foo", "Foo")
    assert not detect.capability_matches("Foobar~~~~1.0", "Foo")


def test_capabilities_and_features_use_batched_queries() -> None:
    inventory = _FakeInventory(
        installed_capabilities={"Foobar~~~~1.0", "Browser.InternetExplorer~~~~0.0.11.0"},
        enabled_features={"Recall"},
    )
    items = [
        ItemDefinition(id="cap-foo", name="Foo", capability_name="Foo"),
        ItemDefinition(id="cap-ie", name="IE", capability_name="Browser.InternetExplorer"),
        ItemDefinition(id="feat-recall", name="Recall", optional_feature_name="recall"),
    ]

    status = _engine(inventory).resolve_status(items)

    assert status == {"cap-foo": False, "cap-ie": True, "feat-recall": True}
    assert inventory.calls.count("installed_capabilities") == 1
    assert inventory.calls.count("enabled_features") == 1


def test_package_tier_falls_through_to_wmi_when_appx_throws(tmp_path) -> None:
    """!
    @brief An AppX failure is logged and the WMI tier answers instead.
    """

    inventory = _FakeInventory(
        appx_packages=DetectionTierFailure("appx", "timed out"),
        store_programs={"Microsoft.BingNews"},
        script_packages=AssertionError("script tier must not run"),
    )
    item = ItemDefinition(id="news", name="News", appx_package_name="Microsoft.BingNews")
    engine = _engine(inventory)

    status = engine.resolve_status([item])

    assert status == {"news": True}
    assert engine.last_sources["news"] is DetectionSource.WMI
    assert "script_packages" not in inventory.calls

    events = [
        json.loads(line)
        for line in (tmp_path / "app-janitor.jsonl").read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    failure = next(event for event in events if event.get("event") == "detection_tier_failure")
    assert failure["tier"] == "appx"


def test_non_empty_appx_answer_stops_package_tiers() -> None:
    inventory = _FakeInventory(appx_packages={"Microsoft.BingWeather"})
    item = ItemDefinition(id="weather", name="Weather", appx_package_name="Microsoft.BingWeather")

    status = _engine(inventory).resolve_status([item])

    assert status["weather"] is True
    assert "store_programs" not in inventory.calls
    assert "script_packages" not in inventory.calls


def test_script_tier_used_when_earlier_tiers_are_empty() -> None:
    inventory = _FakeInventory(script_packages={"Microsoft.People"})
    item = ItemDefinition(id="people", name="People", appx_package_name="microsoft.people")
    engine = _engine(inventory)

    assert engine.resolve_status([item]) == {"people": True}
    assert engine.last_sources["people"] is DetectionSource.APPX
    assert inventory.calls.index("store_programs") < inventory.calls.index("script_packages")


def test_registry_hints_mark_package_installed() -> None:
    inventory = _FakeInventory(
        store_programs={"Microsoft.Something"},
        registry_hint_packages={"Microsoft.Office.OneNote"},
    )
    item = ItemDefinition(id="onenote", name="OneNote", appx_package_name="Microsoft.Office.OneNote")
    engine = _engine(inventory)

    assert engine.resolve_status([item]) == {"onenote": True}
    assert engine.last_sources["onenote"] is DetectionSource.REGISTRY


def test_sub_packages_count_as_presence() -> None:
    inventory = _FakeInventory(appx_packages={"Microsoft.XboxGamingOverlay"})
    item = ItemDefinition(
        id="xbox",
        name="Xbox",
        appx_package_name="Microsoft.GamingApp",
        sub_packages=("Microsoft.XboxGamingOverlay",),
    )

    assert _engine(inventory).resolve_status([item]) == {"xbox": True}


def test_package_manager_ids_resolve_unmatched_items() -> None:
    inventory = _FakeInventory(appx_packages={"Other.Package"})
    winget = _FakeManager("winget", {"Spotify.Spotify", "9NKSQGP7F2NH"})
    choco = _FakeManager("chocolatey", {"vlc"})
    items = [
        ItemDefinition(id="spotify", name="Spotify", appx_package_name="SpotifyAB.SpotifyMusic", winget_package_id="spotify.spotify"),
        ItemDefinition(id="whatsapp", name="WhatsApp", ms_store_id="9NKSQGP7F2NH"),
        ItemDefinition(id="vlc", name="VLC", choco_package_id="VLC"),
    ]
    engine = _engine(inventory, winget, choco)

    status = engine.resolve_status(items)

    assert status == {"spotify": True, "whatsapp": True, "vlc": True}
    assert engine.last_sources["vlc"] is DetectionSource.CHOCOLATEY
    assert engine.last_sources["spotify"] is DetectionSource.WINGET


def test_external_items_fall_back_to_installed_programs() -> None:
    inventory = _FakeInventory(
        win32_programs=DetectionTierFailure("win32", "wmi broken"),
        registry_programs=[("Zoom Workplace", "Zoom Video Communications, Inc.")],
    )
    item = ItemDefinition(id="zoom", name="Zoom", winget_package_id=("Zoom.Zoom",))
    engine = _engine(inventory, _FakeManager("winget", set()))

    assert engine.resolve_status([item]) == {"zoom": True}
    assert engine.last_sources["zoom"] is DetectionSource.REGISTRY


def test_every_tier_failing_still_returns_full_map() -> None:
    """!
    @brief Detection never raises and reports every requested item.
    """

    failure = DetectionTierFailure("any", "broken")
    inventory = _FakeInventory(
        installed_capabilities=failure,
        enabled_features=failure,
        appx_packages=failure,
        store_programs=failure,
        script_packages=failure,
        win32_programs=failure,
        registry_programs=RuntimeError("registry exploded"),
    )

    class _Broken(_FakeManager):
        def installed_ids(self):
            raise OSError("winget missing")

    items = [
        ItemDefinition(id="cap", name="Cap", capability_name="Cap"),
        ItemDefinition(id="feat", name="Feat", optional_feature_name="Feat"),
        ItemDefinition(id="pkg", name="Pkg", appx_package_name="Pkg"),
        ItemDefinition(id="ext", name="Ext", winget_package_id="Vendor.Ext"),
    ]

    status = _engine(inventory, _Broken("winget", set())).resolve_status(items)

    assert status == {"cap": False, "feat": False, "pkg": False, "ext": False}


def test_package_manager_ids_are_cached_until_invalidated() -> None:
    inventory = _FakeInventory()
    winget = _FakeManager("winget", {"Spotify.Spotify"})
    item = ItemDefinition(id="spotify", name="Spotify", winget_package_id="Spotify.Spotify")
    engine = _engine(inventory, winget)

    engine.resolve_status([item])
    engine.resolve_status([item])
    assert winget.calls == 1

    engine.invalidate()
    winget.ids = set()
    assert engine.resolve_status([item]) == {"spotify": False}
    assert winget.calls == 2


def test_is_installed_uses_time_boxed_cache() -> None:
    now = [100.0]
    inventory = _FakeInventory(appx_packages={"Microsoft.BingNews"})
    item = ItemDefinition(id="news", name="News", appx_package_name="Microsoft.BingNews")
    engine = _engine(inventory, status_cache_seconds=60, clock=lambda: now[0])

    assert engine.is_installed(item) is True
    inventory.answers["appx_packages"] = {"Other"}
    now[0] = 130.0
    assert engine.is_installed(item) is True
    now[0] = 170.0
    assert engine.is_installed(item) is False


def test_annotate_returns_copies_with_provenance() -> None:
    inventory = _FakeInventory(appx_packages={"Microsoft.BingNews"})
    item = ItemDefinition(id="news", name="News", appx_package_name="Microsoft.BingNews")

    (annotated,) = _engine(inventory).annotate([item])

    assert annotated.is_installed is True
    assert annotated.detected_via is DetectionSource.APPX
    assert item.is_installed is False


def test_installed_ids_filters_true_entries() -> None:
    assert detect.installed_ids({"a": True, "b": False}) == {"a"}
