"""Legacy ``properties.schema`` to JSON-schema conversion.

Older plugins describe their content attributes in a ``properties.schema``
file using draft-04 conventions plus editor hints (``inputType``, boolean
``required``). The content store expects a draft 2020-12 schema with editor
hints under ``_backboneForms``. Converted schemas are written to
``<plugin>/schema/<name>.schema.json``; plugins that already ship one are
left alone.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog

from Adaptorium.metrics import inc_counter

log = structlog.get_logger()

JSON_SCHEMA_DIALECT = "https://json-schema.org/draft/2020-12/schema"
_PLUGIN_KEYS = ("component", "extension", "menu", "theme")
_PASSTHROUGH = ("type", "title", "default", "enum", "minimum", "maximum")


def _backbone_forms(input_type: Any) -> Any:
    if isinstance(input_type, str) and ":" in input_type:
        kind, media = input_type.split(":", 1)
        return {"type": kind, "media": media}
    return input_type


def convert_property(prop: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in _PASSTHROUGH:
        if key in prop:
            out[key] = prop[key]
    if "help" in prop:
        out["description"] = prop["help"]
    if prop.get("inputType"):
        out["_backboneForms"] = _backbone_forms(prop["inputType"])
    if isinstance(prop.get("properties"), dict):
        converted, required = convert_properties(prop["properties"])
        out["properties"] = converted
        if required:
            out["required"] = required
    items = prop.get("items")
    if isinstance(items, dict):
        out["items"] = convert_property(items)
    return out


def convert_properties(props: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    converted: dict[str, Any] = {}
    required: list[str] = []
    for name, prop in props.items():
        if not isinstance(prop, dict):
            continue
        converted[name] = convert_property(prop)
        if prop.get("required") is True:
            required.append(name)
    return converted, required


def convert_legacy_schema(legacy: dict[str, Any], anchor: str) -> dict[str, Any]:
    properties, required = convert_properties(legacy.get("properties") or {})
    schema: dict[str, Any] = {
        "$schema": JSON_SCHEMA_DIALECT,
        "$anchor": anchor,
        "type": "object",
        "properties": properties,
    }
    if required:
        schema["required"] = required
    if isinstance(legacy.get("globals"), dict):
        globals_props, _ = convert_properties(legacy["globals"])
        schema["properties"]["_globals"] = {"type": "object", "properties": globals_props}
    return schema


def _anchor_for(plugin_dir: Path) -> str:
    bower = plugin_dir / "bower.json"
    if bower.exists():
        try:
            with open(bower, encoding="utf-8") as f:
                meta = json.load(f)
        except (OSError, json.JSONDecodeError):
            meta = {}
        for key in _PLUGIN_KEYS:
            if isinstance(meta.get(key), str):
                return f"{meta[key]}-{key}"
        if isinstance(meta.get("name"), str):
            return meta["name"]
    return plugin_dir.name


def convert_tree(root: Path) -> int:
    """Convert every legacy schema below ``root``; returns how many were written."""
    count = 0
    for legacy_path in sorted(root.rglob("properties.schema")):
        plugin_dir = legacy_path.parent
        anchor = _anchor_for(plugin_dir)
        target = plugin_dir / "schema" / f"{anchor}.schema.json"
        if target.exists() or any((plugin_dir / "schema").glob("*.schema.json")):
            continue
        try:
            with open(legacy_path, encoding="utf-8") as f:
                legacy = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("schema_conversion.unreadable", path=str(legacy_path), error=str(exc))
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(convert_legacy_schema(legacy, anchor), f, indent=2)
        count += 1
        log.debug("schema_conversion.converted", source=str(legacy_path), target=str(target))
    inc_counter("importer.schemas.converted", count)
    return count


class LegacySchemaConverter:
    """Default ``SchemaConverter``: runs ``convert_tree`` off the event loop."""

    async def convert(self, root: Path) -> int:
        return await asyncio.to_thread(convert_tree, root)
