"""Course asset discovery, persistence and reference rewriting."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Iterable

import structlog

from Adaptorium.interfaces import AssetStore
from Adaptorium.metrics import inc_counter
from Adaptorium.package import read_json
from Adaptorium.schemas import StatusReport

log = structlog.get_logger()


def asset_key(course_dir: Path, filepath: Path) -> str:
    """Normalised reference content uses for an asset, e.g. ``course/en/assets/a.png``."""
    return filepath.resolve().relative_to(course_dir.resolve().parent).as_posix()


def load_asset_data(
    course_dir: Path,
    language: str,
    asset_folders: Iterable[str] = ("assets",),
    global_tags: Iterable[str] = (),
) -> list[dict[str, Any]]:
    """Collect asset metadata for one language of a course.

    ``<course>/<lang>/assets.json`` wins when present; otherwise every file in
    the asset folders gets a minimal ``{title, filepath}`` entry.
    """
    lang_dir = course_dir / language
    meta_file = lang_dir / "assets.json"
    entries: list[dict[str, Any]] = []
    if meta_file.exists():
        meta = read_json(meta_file)
        for filename, metadata in (meta or {}).items():
            entries.append({"filename": filename, **(metadata or {})})
    else:
        for folder in asset_folders:
            for f in sorted((lang_dir / folder).glob("*")):
                if f.is_file():
                    entries.append({"title": f.name, "filepath": str(f)})

    tags = list(global_tags)
    for entry in entries:
        if not entry.get("description"):
            entry["description"] = entry.get("title")
        entry_tags = entry.get("tags") or []
        # Older exports stored tags as [{title: ...}]
        if entry_tags and isinstance(entry_tags[0], dict):
            entry_tags = [t.get("title") for t in entry_tags if t.get("title")]
        entry["tags"] = tags + entry_tags if tags else entry_tags
    return entries


def resolve_asset_path(
    course_dir: Path,
    language: str,
    entry: dict[str, Any],
    asset_folders: Iterable[str] = ("assets",),
) -> Path | None:
    if entry.get("filepath"):
        return Path(entry["filepath"])
    filename = entry.get("filename")
    if not filename:
        return None
    for folder in asset_folders:
        candidate = course_dir / language / folder / filename
        if candidate.is_file():
            return candidate
    # Fall back to any folder of the language directory
    matches = sorted((course_dir / language).glob(f"*/{filename}"))
    return matches[0] if matches else None


class AssetReconciler:
    """Persists package assets and records what it created."""

    def __init__(
        self,
        store: AssetStore,
        *,
        course_dir: Path,
        language: str,
        user_id: str,
        report: StatusReport,
        asset_folders: Iterable[str] = ("assets",),
        is_dry_run: bool = False,
        asset_map: dict[str, str] | None = None,
        new_asset_ids: list[str] | None = None,
    ):
        self.store = store
        self.course_dir = course_dir
        self.language = language
        self.user_id = user_id
        self.report = report
        self.asset_folders = list(asset_folders)
        self.is_dry_run = is_dry_run
        # Shared with the run context so rollback sees partial progress
        self.asset_map: dict[str, str] = asset_map if asset_map is not None else {}
        self.new_asset_ids: list[str] = new_asset_ids if new_asset_ids is not None else []

    async def _import_one(self, entry: dict[str, Any]) -> bool:
        filepath = resolve_asset_path(self.course_dir, self.language, entry, self.asset_folders)
        data = {k: v for k, v in entry.items() if k != "filepath"}
        shown = str(filepath) if filepath else str(entry.get("filename"))
        try:
            if filepath is None:
                raise FileNotFoundError(f"asset file {entry.get('filename')!r} not found")
            key = asset_key(self.course_dir, filepath)
            asset = await self.store.insert(
                {
                    **data,
                    "createdBy": self.user_id,
                    "file": {"filepath": str(filepath), "originalFilename": str(filepath)},
                    "tags": data.get("tags") or [],
                }
            )
        except Exception as exc:  # per-asset failures are reported, not fatal
            inc_counter("importer.assets.failed")
            log.warning("importer.asset.failed", filepath=shown, error=str(exc))
            self.report.add_warn("ASSET_IMPORT_FAILED", {"filepath": shown})
            return False
        asset_id = str(asset["_id"])
        self.new_asset_ids.append(asset_id)
        self.asset_map[key] = asset_id
        return True

    async def import_assets(self, asset_data: list[dict[str, Any]]) -> int:
        """Insert every asset concurrently; returns the number imported."""
        if self.is_dry_run:
            count = len(asset_data)
        else:
            results = await asyncio.gather(*(self._import_one(e) for e in asset_data))
            count = sum(1 for ok in results if ok)
        self.report.add_info("ASSETS_IMPORTED_SUCCESSFULLY", {"count": count})
        log.info("importer.assets.imported", count=count, dry_run=self.is_dry_run)
        return count


def _is_asset_field(definition: dict[str, Any]) -> bool:
    forms = definition.get("_backboneForms")
    if forms == "Asset":
        return True
    return isinstance(forms, dict) and forms.get("type") == "Asset"


def extract_assets(
    schema_properties: dict[str, Any] | None,
    data: dict[str, Any],
    asset_map: dict[str, str],
) -> None:
    """Rewrite asset paths in ``data`` to asset ids, guided by the schema.

    Unmapped paths are kept as-is; empty strings are removed.
    """
    if not schema_properties or not isinstance(data, dict):
        return
    for key, definition in schema_properties.items():
        if key not in data or not isinstance(definition, dict):
            continue
        value = data[key]
        if isinstance(definition.get("properties"), dict):
            extract_assets(definition["properties"], value, asset_map)
        elif isinstance((definition.get("items") or {}).get("properties"), dict):
            for item in value if isinstance(value, list) else []:
                extract_assets(definition["items"]["properties"], item, asset_map)
        elif _is_asset_field(definition):
            if value == "":
                del data[key]
            elif isinstance(value, str) and value in asset_map:
                data[key] = asset_map[value]
