"""Built-in content migrations.

Each transform mutates one document in place and leaves documents it does not
recognise untouched, so running a transform twice changes nothing further.
"""

from __future__ import annotations

from typing import Any

import structlog

from Adaptorium.errors import InvalidContentError
from Adaptorium.migrations.registry import ContentMigration, MigrationContext

log = structlog.get_logger()

GRAPHIC_COMPONENTS = frozenset(
    {"graphic", "hotgraphic", "adapt-contrib-graphic", "adapt-contrib-hotgraphic"}
)


def _is_type(*types: str):
    return lambda data: data.get("_type") in types


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# --- config-aria-levels ---


def config_aria_levels(data: dict[str, Any], ctx: MigrationContext) -> None:
    levels = (data.get("_accessibility") or {}).get("_ariaLevels")
    if not isinstance(levels, dict):
        return
    for key, value in levels.items():
        if _is_number(value) and value:
            levels[key] = str(value)


# --- nav-order ---


def _to_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def nav_order(data: dict[str, Any], ctx: MigrationContext) -> None:
    extensions = (data.get("_globals") or {}).get("_extensions")
    if not isinstance(extensions, dict):
        return
    for ext in extensions.values():
        if isinstance(ext, dict) and ext.get("_navOrder") is not None:
            ext["_navOrder"] = _to_number(ext["_navOrder"])


# --- graphic-src ---


def _copy_src(graphic: Any) -> None:
    if not isinstance(graphic, dict) or not graphic.get("src"):
        return
    for size in ("large", "small"):
        if not graphic.get(size):
            graphic[size] = graphic["src"]


def graphic_src(data: dict[str, Any], ctx: MigrationContext) -> None:
    if data.get("_component") not in GRAPHIC_COMPONENTS:
        return
    _copy_src(data.get("_graphic"))
    for item in data.get("_items") or []:
        if isinstance(item, dict):
            _copy_src(item.get("_graphic"))


# --- parent-id ---


def parent_id(data: dict[str, Any], ctx: MigrationContext) -> None:
    # Unmapped parents become None; the hierarchy sort is the integrity gate
    data["_parentId"] = ctx.id_map.get(data["_parentId"])


# --- remove-undef ---


def strip_none(obj: dict[str, Any]) -> None:
    for key in [k for k, v in obj.items() if v is None]:
        del obj[key]
    for value in obj.values():
        if isinstance(value, dict):
            strip_none(value)


def remove_undef(data: dict[str, Any], ctx: MigrationContext) -> None:
    strip_none(data)


# --- component ---


def component(data: dict[str, Any], ctx: MigrationContext) -> None:
    key = data.get("_component")
    mapped = ctx.component_name_map.get(key) if key else None
    if mapped:
        data["_component"] = mapped
    elif key not in ctx.installed_plugin_names:
        raise InvalidContentError(
            f"No installed plugin provides component {key!r}", item=key, id=data.get("_id")
        )
    if data.get("_playerOptions") in ("", {}):
        del data["_playerOptions"]


# --- start-page ---


def start_page(data: dict[str, Any], ctx: MigrationContext) -> None:
    start = data.get("_start")
    if not isinstance(start, dict):
        return
    friendly_ids = {
        co.get("_friendlyId") for co in ctx.content_objects.values() if co.get("_friendlyId")
    }
    page_index = 1
    for entry in start.get("_startIds") or []:
        if not isinstance(entry, dict):
            continue
        target = entry.get("_id")
        co = ctx.content_objects.get(target)
        if co is None:
            if target not in friendly_ids:
                log.warning("importer.migration.start_page.missing", id=target)
            continue
        if not co.get("_friendlyId"):
            co["_friendlyId"] = f"start_page_{page_index}"
            page_index += 1
        entry["_id"] = co["_friendlyId"]


# --- theme-undef ---


def theme_undef(data: dict[str, Any], ctx: MigrationContext) -> None:
    if data.get("_theme") is not None:
        return
    theme = next((p for p in ctx.used_plugins.values() if p.type == "theme"), None)
    if theme is not None:
        data["_theme"] = theme.name


BUILTIN_MIGRATIONS: tuple[ContentMigration, ...] = (
    ContentMigration("config-aria-levels", _is_type("config"), config_aria_levels),
    ContentMigration("nav-order", _is_type("course"), nav_order),
    ContentMigration("graphic-src", _is_type("component"), graphic_src),
    ContentMigration("parent-id", lambda d: "_parentId" in d, parent_id),
    ContentMigration("remove-undef", lambda d: True, remove_undef),
    ContentMigration("component", _is_type("component"), component),
    ContentMigration("start-page", _is_type("course"), start_page),
    ContentMigration("theme-undef", _is_type("config"), theme_undef),
)
