"""Course builds: stored content back out to a framework course package.

``BuildOrchestrator.run`` loads one course from the content store, sorts it
into the per-type files a framework course expects, rewrites internal ids to
friendly ids and asset ids to relative paths, writes the files, optionally
zips them and records the build so it can be served until it expires.
"""

from __future__ import annotations

import asyncio
import copy
import re
import shutil
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

import orjson
import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from Adaptorium import repos
from Adaptorium.build_cache import BuildCache, SessionFactory
from Adaptorium.config import Settings, load_settings
from Adaptorium.content import content_kind
from Adaptorium.db import session_scope
from Adaptorium.errors import BuildError, ImporterError
from Adaptorium.hierarchy import flatten_hierarchy
from Adaptorium.hooks import Hook
from Adaptorium.interfaces import ImportCollaborators
from Adaptorium.metrics import inc_counter, observe_histogram
from Adaptorium.schemas import BuildAction, BuildRecordData
from Adaptorium.tools.ulid import generate_ulid

log = structlog.get_logger()

BUILD_ACTIONS: tuple[str, ...] = ("preview", "publish", "export")

# Output file per content category; config lives beside the language dirs
CONTENT_FILES: dict[str, str] = {
    "course": "course.json",
    "config": "config.json",
    "contentObject": "contentObjects.json",
    "article": "articles.json",
    "block": "blocks.json",
    "component": "components.json",
}


def infer_build_action(url: str) -> str:
    """First path segment of a request URL, e.g. ``/preview/abc`` -> ``preview``."""
    end = url.find("/", 1)
    return url[1:] if end == -1 else url[1:end]


def slugify_title(title: str, action: str) -> str:
    """Filename-safe version of a course title."""
    slug = title.lower().strip()
    slug = re.sub(r"[^a-z0-9 -]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return f"{slug}-export" if action == "export" else slug


def _merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value
    return target


def _replace_strings(value: Any, replace: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return replace(value)
    if isinstance(value, dict):
        return {k: _replace_strings(v, replace) for k, v in value.items()}
    if isinstance(value, list):
        return [_replace_strings(v, replace) for v in value]
    return value


def _string_values(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _string_values(v)
    elif isinstance(value, list):
        for v in value:
            yield from _string_values(v)


def _dump(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str))


def _zip_dir(src: Path, dest: Path, *, exclude: Path | None = None) -> None:
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for f in sorted(src.rglob("*")):
            if f.is_file() and f != exclude:
                zf.write(f, f.relative_to(src).as_posix())


class BuildOrchestrator:
    def __init__(
        self,
        action: BuildAction,
        course_id: str,
        user_id: str,
        collaborators: ImportCollaborators,
        *,
        settings: Settings | None = None,
        compress: bool | None = None,
        expires_at: datetime | None = None,
        cache: BuildCache | None = None,
        session_factory: SessionFactory = session_scope,
    ):
        if action not in BUILD_ACTIONS:
            raise BuildError(f"Unknown build action {action!r}", action=action)
        self.action = action
        self.course_id = course_id
        self.user_id = user_id
        self.collaborators = collaborators
        self.settings = settings or load_settings()
        self.compress = (action != "preview") if compress is None else compress
        self.expires_at = expires_at
        self.cache = cache if cache is not None else BuildCache(session_factory=session_factory)
        self._session_factory = session_factory

        self.build_id = generate_ulid()
        self.build_dir = Path(self.settings.build_dir) / self.build_id
        self.course_dir = self.build_dir / "course"
        self.language = "en"
        self.id_map: dict[str, str] = {}
        self.course_data: dict[str, Any] = {}
        self.enabled_plugins: list[dict[str, Any]] = []
        self.disabled_plugins: list[dict[str, Any]] = []
        self.asset_map: dict[str, str] = {}
        self.asset_records: list[dict[str, Any]] = []
        self.location: Path | None = None
        self.record: BuildRecordData | None = None
        self.pre_build_hook = Hook("pre_build")
        self.post_build_hook = Hook("post_build")

    @property
    def is_export(self) -> bool:
        return self.action == "export"

    async def run(self) -> BuildRecordData:
        started = asyncio.get_running_loop().time()
        bind_contextvars(build_id=self.build_id)
        log.info("build.start", action=self.action, course_id=self.course_id)
        try:
            items = await self.load_course_content()
            self.create_id_map(items)
            self.sort_content_items(items)
            await self.load_plugin_data()
            await self.load_asset_data()
            await self.transform_content_items()
            await self.pre_build_hook.invoke(self)
            await asyncio.to_thread(self.write_content_json)
            await self.copy_assets()
            if self.compress:
                self.location = self.build_dir / f"{self._slug()}.zip"
                await asyncio.to_thread(_zip_dir, self.build_dir, self.location, exclude=self.location)
            else:
                self.location = self.build_dir
            self.record = await self.record_build()
            await self.post_build_hook.invoke(self)
        except Exception as exc:
            log.error("build.failed", action=self.action, course_id=self.course_id, exc_info=True)
            await asyncio.to_thread(shutil.rmtree, self.build_dir, True)
            if self.record is not None and self.record.id:
                await self._forget_record(self.record.id)
            if isinstance(exc, ImporterError):
                raise
            raise BuildError(f"Build failed: {exc}", reason=type(exc).__name__) from exc
        finally:
            observe_histogram(
                "build.duration_ms", int((asyncio.get_running_loop().time() - started) * 1000)
            )
            unbind_contextvars("build_id")
        inc_counter(f"build.{self.action}")
        log.info("build.complete", location=str(self.location))
        return self.record

    async def load_course_content(self) -> list[dict[str, Any]]:
        content = self.collaborators.content
        items = list(await content.find({"_courseId": self.course_id}))
        if not any(i.get("_type") == "course" for i in items):
            items = list(await content.find({"_id": self.course_id})) + items
        if not any(i.get("_type") == "course" for i in items):
            raise BuildError("Course not found", courseId=self.course_id)
        return items

    async def load_plugin_data(self) -> None:
        enabled = set(self.course_data["config"].get("_enabledPlugins") or [])
        for plugin in await self.collaborators.plugins.find():
            (self.enabled_plugins if plugin.get("name") in enabled else self.disabled_plugins).append(plugin)

    def create_id_map(self, items: Iterable[dict[str, Any]]) -> None:
        self.id_map = {str(i["_id"]): i["_friendlyId"] for i in items if i.get("_friendlyId")}

    def sort_content_items(self, items: Iterable[dict[str, Any]]) -> None:
        items = list(items)
        course = next(i for i in items if i.get("_type") == "course")
        config = next((i for i in items if i.get("_type") == "config"), None)
        self.course_data = {
            "course": copy.deepcopy(course),
            "config": copy.deepcopy(config) if config else {"_id": "config", "_type": "config"},
            "contentObject": [],
            "article": [],
            "block": [],
            "component": [],
        }
        for item in flatten_hierarchy(str(course["_id"]), items):
            self.course_data[content_kind(dict(item)).build_category].append(copy.deepcopy(dict(item)))
        self.language = (
            self.course_data["config"].get("_defaultLanguage") or course.get("_lang") or "en"
        )

    def documents(self) -> list[dict[str, Any]]:
        docs = [self.course_data["course"], self.course_data["config"]]
        for kind in ("contentObject", "article", "block", "component"):
            docs.extend(self.course_data.get(kind, []))
        return docs

    async def load_asset_data(self) -> None:
        """Find the stored assets the course references and where they will live."""
        records = await self.collaborators.assets.find({})
        # Asset fields hold the bare asset id
        referenced = {s for doc in self.documents() for s in _string_values(doc)}
        used_names: set[str] = set()
        self.asset_records = []
        for record in records:
            asset_id = str(record["_id"])
            if asset_id not in referenced:
                continue
            name = Path(record.get("path") or asset_id).name
            if name in used_names:
                name = f"{asset_id}-{name}"
            used_names.add(name)
            self.asset_map[asset_id] = f"course/{self.language}/assets/{name}"
            self.asset_records.append(record)

    async def transform_content_items(self) -> None:
        targets = {
            p["name"]: p["targetAttribute"][1:]
            for p in self.enabled_plugins
            if p.get("targetAttribute")
        }
        asset_map = self.asset_map

        def _replace_asset(s: str) -> str:
            return asset_map.get(s, s)

        for doc in self.documents():
            for key in ("_courseId", "_parentId"):
                if doc.get(key) is not None:
                    doc[key] = self.id_map.get(str(doc[key]), doc[key])
            if doc.get("_friendlyId"):
                doc["_id"] = doc["_friendlyId"]
            if asset_map:
                doc.update(_replace_strings(doc, _replace_asset))
            if doc.get("_component"):
                doc["_component"] = targets.get(doc["_component"], doc["_component"])

        globals_ = self.course_data["course"].get("_globals")
        for plugin in self.enabled_plugins:
            target = plugin.get("targetAttribute")
            if not globals_ or not target or target not in globals_:
                continue
            key = f"_{plugin.get('type')}"
            if plugin.get("type") in ("component", "extension"):
                key += "s"
            _merge(globals_, {key: {target: globals_.pop(target)}})

    def write_content_json(self) -> None:
        lang_dir = self.course_dir / self.language
        for category, filename in CONTENT_FILES.items():
            if category not in self.course_data:
                continue
            dest = self.course_dir if category == "config" else lang_dir
            _dump(dest / filename, self.course_data[category])
        if self.is_export:
            _dump(
                self.build_dir / "package.json",
                {"name": "adapt_framework", "version": self.settings.framework_version},
            )

    async def copy_assets(self) -> None:
        if not self.asset_records:
            return
        titles = {str(t["_id"]): t["title"] for t in await self.collaborators.tags.find()}
        export_meta: dict[str, dict[str, Any]] = {}
        for record in self.asset_records:
            rel_path = self.asset_map[str(record["_id"])]
            dest = self.build_dir / rel_path
            src = Path(record.get("path") or "")
            if not src.is_file():
                log.warning("build.asset.missing", asset_id=str(record["_id"]), path=str(src))
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, src, dest)
            export_meta[dest.name] = {
                "title": record.get("title"),
                "description": record.get("description"),
                "tags": [titles.get(str(t), str(t)) for t in record.get("tags") or []],
            }
        if self.is_export and export_meta:
            await asyncio.to_thread(
                _dump, self.course_dir / self.language / "assets.json", export_meta
            )

    def _slug(self) -> str:
        course = self.course_data.get("course") or {}
        return slugify_title(str(course.get("title") or "course"), self.action) or self.build_id

    async def record_build(self) -> BuildRecordData:
        expires_at = self.expires_at or datetime.now(timezone.utc) + timedelta(
            seconds=self.settings.build_expiry_seconds
        )
        versions = {"adapt_framework": self.settings.framework_version}
        versions.update(
            {p["name"]: str(p["version"]) for p in self.enabled_plugins if p.get("version")}
        )
        record = BuildRecordData(
            id=self.build_id,
            action=self.action,
            course_id=self.course_id,
            location=str(self.location),
            expires_at=expires_at,
            created_by=self.user_id,
            versions=versions,
        )
        async with self._session_factory() as s:
            saved = await repos.save_build_record(s, record)
        self.cache.put(saved)
        return saved

    async def _forget_record(self, build_id: str) -> None:
        self.cache.evict(build_id)
        try:
            async with self._session_factory() as s:
                await repos.delete_build_record(s, build_id)
        except Exception:
            log.warning("build.record.cleanup_failed", build_id=build_id, exc_info=True)


__all__ = [
    "BUILD_ACTIONS",
    "BuildOrchestrator",
    "CONTENT_FILES",
    "infer_build_action",
    "slugify_title",
]
