"""!
@brief Item catalog loading.
@details Catalogs are JSON documents: either a list of item objects or an
object with an ``items`` list. Keys follow the :class:`ItemDefinition` field
names (``id``, ``name``, ``appx_package_name``, ``winget_package_id``...).
Items whose id has a dedicated handler get that handler's script renderer as
``removal_script``.
"""
from __future__ import annotations

import dataclasses
import json
import pathlib
from typing import Dict, List, Mapping

from . import dedicated_scripts
from .errors import CatalogError
from .models import ItemDefinition, RegistrySetting

_ITEM_FIELDS = {
    field.name
    for field in dataclasses.fields(ItemDefinition)
    if field.name not in {"removal_script", "detected_via", "is_installed", "registry_settings"}
}


def _registry_setting(entry: object, item_id: str) -> RegistrySetting:
    if not isinstance(entry, Mapping):
        raise CatalogError(f"{item_id}: registry settings must be objects")
    try:
        setting = RegistrySetting(
            hive=str(entry["hive"]),
            path=str(entry["path"]),
            name=str(entry.get("name", "")),
            value=entry.get("value"),
            value_type=str(entry.get("type", "REG_DWORD")),
        )
        _ = setting.root
    except KeyError as exc:
        raise CatalogError(f"{item_id}: registry setting is missing {exc}") from exc
    except ValueError as exc:
        raise CatalogError(f"{item_id}: {exc}") from exc
    return setting


def parse_item(entry: Mapping[str, object]) -> ItemDefinition:
    """!
    @brief Build one :class:`ItemDefinition` from a catalog object.
    @throws CatalogError when required fields are missing or inconsistent.
    """

    item_id = str(entry.get("id") or "")
    unknown = sorted(set(entry) - _ITEM_FIELDS - {"registry_settings"})
    if unknown:
        raise CatalogError(f"{item_id or '<unnamed>'}: unknown keys {', '.join(unknown)}")

    fields: Dict[str, object] = {key: value for key, value in entry.items() if key in _ITEM_FIELDS}
    fields.setdefault("name", item_id)
    settings = entry.get("registry_settings") or []
    if not isinstance(settings, list):
        raise CatalogError(f"{item_id}: registry_settings must be a list")
    fields["registry_settings"] = tuple(_registry_setting(setting, item_id) for setting in settings)

    if dedicated_scripts.has_handler(item_id):
        handler = dedicated_scripts.handler_for_item_id(item_id)
        fields["removal_script"] = dedicated_scripts.HANDLERS[handler].render

    try:
        return ItemDefinition(**fields)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise CatalogError(str(exc)) from exc


def load_items(path: str | pathlib.Path) -> List[ItemDefinition]:
    """!
    @brief Read every item definition from the JSON catalog at ``path``.
    @throws CatalogError on unreadable files, invalid JSON or invalid items.
    """

    catalog_path = pathlib.Path(path).expanduser()
    try:
        document = json.loads(catalog_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CatalogError(f"Cannot read item catalog {catalog_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"Invalid JSON in item catalog {catalog_path}: {exc}") from exc

    entries = document.get("items") if isinstance(document, dict) else document
    if not isinstance(entries, list):
        raise CatalogError(f"Item catalog {catalog_path} must contain a list of items")

    items: List[ItemDefinition] = []
    seen: set[str] = set()
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise CatalogError(f"Item catalog {catalog_path} contains a non-object entry")
        item = parse_item(entry)
        if item.id in seen:
            raise CatalogError(f"Duplicate item id {item.id} in {catalog_path}")
        seen.add(item.id)
        items.append(item)
    return items


def index_by_id(items: List[ItemDefinition]) -> Dict[str, ItemDefinition]:
    return {item.id: item for item in items}


__all__ = ["index_by_id", "load_items", "parse_item"]
