"""!
@brief Item catalog loading tests.
"""
from __future__ import annotations

import json
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from app_janitor import catalog, dedicated_scripts  # noqa: E402
from app_janitor.errors import CatalogError  # noqa: E402
from app_janitor.models import ItemKind  # noqa: E402


def _write(tmp_path: pathlib.Path, document: object) -> pathlib.Path:
    path = tmp_path / "items.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_load_items_accepts_object_with_items(tmp_path) -> None:
    path = _write(
        tmp_path,
        {
            "items": [
                {"id": "news", "name": "News", "appx_package_name": "Microsoft.BingNews"},
                {"id": "ie", "name": "Internet Explorer", "capability_name": "Browser.InternetExplorer"},
                {
                    "id": "zoom",
                    "name": "Zoom",
                    "winget_package_id": ["Zoom.Zoom"],
                    "registry_settings": [
                        {"hive": "HKCU", "path": "Software\\Zoom", "name": "Telemetry", "value": 0}
                    ],
                },
            ]
        },
    )

    items = catalog.load_items(path)

    assert [item.id for item in items] == ["news", "ie", "zoom"]
    assert items[1].kind is ItemKind.CAPABILITY
    assert items[2].is_external
    assert items[2].winget_package_id == ("Zoom.Zoom",)
    assert items[2].registry_settings[0].value_type == "REG_DWORD"


def test_load_items_accepts_bare_list_and_defaults_name(tmp_path) -> None:
    path = _write(tmp_path, [{"id": "recall", "optional_feature_name": "Recall"}])
    (item,) = catalog.load_items(path)
    assert item.name == "recall"
    assert item.kind is ItemKind.FEATURE


def test_dedicated_ids_get_removal_script(tmp_path) -> None:
    path = _write(
        tmp_path,
        [{"id": "windows-app-edge", "name": "Microsoft Edge", "appx_package_name": "Microsoft.MicrosoftEdge.Stable"}],
    )
    (edge,) = catalog.load_items(path)

    assert edge.has_dedicated_removal
    assert edge.removal_script is dedicated_scripts.render_edge_script


@pytest.mark.parametrize(
    "document",
    [
        [{"id": "a", "name": "A", "appx_package_name": "A", "colour": "red"}],
        [{"id": "a", "name": "A", "capability_name": "X", "optional_feature_name": "Y"}],
        [{"id": "a", "name": "A"}],
        [{"id": "a", "name": "A", "appx_package_name": "A"}, {"id": "a", "name": "B", "appx_package_name": "B"}],
        [{"id": "a", "name": "A", "appx_package_name": "A", "registry_settings": [{"hive": "HKXX", "path": "p"}]}],
        [{"id": "a", "name": "A", "appx_package_name": "A", "registry_settings": [{"path": "p"}]}],
        ["not an object"],
        {"items": "nope"},
    ],
)
def test_invalid_catalogs_raise(tmp_path, document) -> None:
    with pytest.raises(CatalogError):
        catalog.load_items(_write(tmp_path, document))


def test_unreadable_catalog_raises(tmp_path) -> None:
    with pytest.raises(CatalogError):
        catalog.load_items(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(CatalogError):
        catalog.load_items(broken)


def test_index_by_id(tmp_path) -> None:
    items = catalog.load_items(_write(tmp_path, [{"id": "news", "appx_package_name": "Microsoft.BingNews"}]))
    assert set(catalog.index_by_id(items)) == {"news"}
