"""Course package importer.

``ImportOrchestrator`` runs a fixed, ordered table of stages against one
unpacked Adapt framework package:

- prepare: unwrap, convert legacy schemas, locate the course, check versions
- asset, plugin and course-content loading
- tag, asset and plugin import (or dry-run reporting of what would happen)
- optional file-level migration of content authored for older frameworks
- level-by-level content insertion through the migration chain
- summary generation and the pre/post import hooks

Each stage has a predicate evaluated only when the stage is reached; a stage
whose predicate is false is skipped entirely and reports nothing. When any
stage raises, ``clean_up`` removes the working directory and compensates for
every side effect recorded in the run context; the caller always receives the
original error as an ``ImporterError``.
"""

from __future__ import annotations

import asyncio
import copy
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from Adaptorium import versioning
from Adaptorium.assets import AssetReconciler, extract_assets, load_asset_data
from Adaptorium.config import Settings, load_settings
from Adaptorium.content import type_to_schema
from Adaptorium.errors import (
    ConcurrentEditError,
    ContentImportError,
    ImporterError,
    IncompatibleFrameworkError,
    InvalidContentError,
    InvalidImportParamsError,
    MissingCoursePathError,
    wrap_error,
)
from Adaptorium.hierarchy import SortedHierarchy, sort_hierarchy
from Adaptorium.hooks import Hook
from Adaptorium.importer_context import ImporterRunContext
from Adaptorium.interfaces import ImportCollaborators
from Adaptorium.manifest_validation import compute_manifest_hash
from Adaptorium.metrics import inc_counter, observe_histogram, record_rollback
from Adaptorium.migration_tool import (
    SubprocessMigrationTool,
    migrate_course_data,
    needs_file_migration,
)
from Adaptorium.migrations import MigrationRegistry, default_registry
from Adaptorium.package import (
    find_course_dir,
    list_languages,
    load_config,
    load_course_data,
    load_package_manifest,
    read_json,
    resolve_language,
    unwrap_nested,
    unzip_package,
)
from Adaptorium.plugins import PluginReconciler, scan_used_plugins
from Adaptorium.schema_conversion import LegacySchemaConverter
from Adaptorium.schemas import ImportSettings, ImportSummary
from Adaptorium.summary import get_import_summary
from Adaptorium.tools.ulid import generate_ulid

log = structlog.get_logger()


@dataclass(frozen=True)
class Stage:
    name: str
    predicate: Callable[[], bool]
    handler: Callable[[], Awaitable[None]]


def _always() -> bool:
    return True


class ImportOrchestrator:
    """Imports one course package. Instances are single-use."""

    def __init__(
        self,
        import_path: str | Path | None,
        user_id: str | None,
        collaborators: ImportCollaborators,
        *,
        language: str | None = None,
        asset_folders: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
        is_dry_run: bool = False,
        import_content: bool = True,
        import_plugins: bool = True,
        migrate_content: bool = True,
        update_plugins: bool = False,
        remove_source: bool = True,
        settings: Settings | None = None,
        migrations: MigrationRegistry | None = None,
    ):
        if not import_path or not user_id:
            raise InvalidImportParamsError(
                "import_path and user_id are required",
                importPath=str(import_path) if import_path else None,
                userId=user_id,
            )
        self.collaborators = collaborators
        self.app_settings = settings or load_settings()
        self.settings = ImportSettings(
            is_dry_run=is_dry_run,
            import_content=import_content,
            import_plugins=import_plugins,
            migrate_content=migrate_content,
            update_plugins=update_plugins,
            remove_source=remove_source,
        )
        self.ctx = ImporterRunContext(
            import_path=Path(import_path),
            user_id=str(user_id),
            settings=self.settings,
            requested_language=language,
            asset_folders=list(asset_folders) if asset_folders else list(self.app_settings.asset_folders),
            tags=list(tags or []),
        )
        self.migrations = migrations or default_registry()
        self.pre_import_hook = Hook("pre_import")
        self.post_import_hook = Hook("post_import")
        self.import_id = generate_ulid()
        self.summary: ImportSummary | None = None
        self._started = False

    @property
    def framework_version(self) -> str:
        return self.app_settings.framework_version

    # ------------------------------------------------------------------
    # Stage table
    # ------------------------------------------------------------------

    def _will_migrate_files(self) -> bool:
        s = self.settings
        return (
            not s.is_dry_run
            and s.import_content
            and s.migrate_content
            and needs_file_migration(
                package_predates_framework=self.ctx.predates_framework,
                plugins_to_migrate=self.ctx.plugins_to_migrate,
            )
        )

    def stages(self) -> list[Stage]:
        s = self.settings
        return [
            Stage("prepare", _always, self.prepare),
            Stage("loadAssetData", _always, self.load_asset_data),
            Stage("loadPluginData", _always, self.load_plugin_data),
            Stage("preImportHook", _always, lambda: self.pre_import_hook.invoke(self)),
            Stage("importTags", lambda: s.import_content, self.import_tags),
            Stage("importCourseAssets", lambda: s.import_content, self.import_course_assets),
            # Dry run or plugin-only import
            Stage(
                "importCoursePlugins",
                lambda: s.is_dry_run or not s.import_content,
                self.import_course_plugins,
            ),
            Stage(
                "importCoursePlugins",
                lambda: not s.is_dry_run and s.import_content,
                self.import_course_plugins,
            ),
            Stage("loadCourseData", lambda: not self._will_migrate_files(), self.load_course_data),
            Stage("migrateCourseData", self._will_migrate_files, self.migrate_course_data),
            Stage("loadCourseData", self._will_migrate_files, self.load_course_data),
            Stage(
                "importCourseData",
                lambda: not s.is_dry_run and s.import_content,
                self.import_course_data,
            ),
            Stage("generateSummary", _always, self.generate_summary),
            Stage("postImportHook", _always, lambda: self.post_import_hook.invoke(self)),
        ]

    async def run(self) -> ImportSummary:
        if self._started:
            raise ImporterError("ImportOrchestrator instances are single-use")
        self._started = True
        started = time.monotonic()
        bind_contextvars(import_id=self.import_id)
        if self.settings.is_dry_run:
            inc_counter("importer.dry_run")
        log.info(
            "importer.start",
            path=str(self.ctx.import_path),
            user_id=self.ctx.user_id,
            settings=self.settings.model_dump(),
        )
        current = "init"
        try:
            for stage in self.stages():
                if not stage.predicate():
                    log.debug("importer.stage.skipped", stage=stage.name)
                    continue
                current = stage.name
                log.info("importer.stage.start", stage=stage.name)
                inc_counter(f"importer.stage.{stage.name}")
                await stage.handler()
                self.ctx.stages_run.append(stage.name)
        except Exception as exc:
            error = wrap_error(exc)
            record_rollback(current)
            log.error(
                "importer.failed",
                stage=current,
                code=error.code,
                data=error.data,
                ledger=self.ctx.ledger(),
                exc_info=True,
            )
            await self.clean_up(error)
            if error is exc:
                raise
            raise error from exc
        else:
            await self.clean_up()
            log.info("importer.complete", course_id=self.ctx.course_id, stages=self.ctx.stages_run)
        finally:
            observe_histogram("importer.duration_ms", int((time.monotonic() - started) * 1000))
            unbind_contextvars("import_id")
        return self.summary  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        ctx = self.ctx
        if not ctx.import_path.is_dir():
            raise MissingCoursePathError("Import path is not a directory", path=str(ctx.import_path))
        ctx.import_path = await asyncio.to_thread(unwrap_nested, ctx.import_path)

        converter = self.collaborators.schema_converter or LegacySchemaConverter()
        converted = await converter.convert(ctx.import_path)
        log.debug("importer.schemas.converted", count=converted)

        ctx.course_dir = find_course_dir(ctx.import_path)
        config = load_config(ctx.course_dir)
        ctx.languages = list_languages(ctx.course_dir)
        ctx.language = resolve_language(config, ctx.languages, ctx.requested_language)

        ctx.pkg = load_package_manifest(ctx.import_path)
        ctx.manifest_hash = compute_manifest_hash(ctx.pkg)
        pkg_version = ctx.pkg.get("version")
        if not versioning.is_framework_compatible(pkg_version, self.framework_version):
            predates = versioning.package_predates_framework(pkg_version, self.framework_version)
            if not (predates and self.settings.migrate_content):
                raise IncompatibleFrameworkError(
                    "Package was built for an incompatible framework version",
                    installed=self.framework_version,
                    **{"import": pkg_version},
                )
            ctx.predates_framework = True
        log.info(
            "importer.prepared",
            course_dir=str(ctx.course_dir),
            language=ctx.language,
            package=ctx.pkg.get("name"),
            version=pkg_version,
            manifest_hash=ctx.manifest_hash,
            predates_framework=ctx.predates_framework,
        )

    async def load_asset_data(self) -> None:
        ctx = self.ctx
        ctx.asset_data = await asyncio.to_thread(
            load_asset_data, ctx.course_dir, ctx.language, ctx.asset_folders, ctx.tags
        )
        log.debug("importer.assets.loaded", count=len(ctx.asset_data))

    async def load_plugin_data(self) -> None:
        self.ctx.used_plugins = await asyncio.to_thread(scan_used_plugins, self.ctx.import_path)

    def _course_tags(self) -> list[str]:
        course_path = self.ctx.course_dir / self.ctx.language / "course.json"  # type: ignore[operator]
        if not course_path.exists():
            return []
        course = read_json(course_path)
        return [t for t in (course.get("tags") or []) if isinstance(t, str)]

    async def import_tags(self) -> None:
        ctx = self.ctx
        store = self.collaborators.tags
        existing = {t["title"]: str(t["_id"]) for t in await store.find()}
        new_titles: list[str] = []

        def _want(title: str) -> None:
            if title not in existing and title not in new_titles:
                new_titles.append(title)

        for title in self._course_tags():
            _want(title)
            if title not in ctx.tags:
                ctx.tags.append(title)
        for title in ctx.tags:
            _want(title)
        for asset in ctx.asset_data:
            for title in asset.get("tags") or []:
                _want(title)

        if not self.settings.is_dry_run:

            async def _insert(title: str) -> None:
                doc = await store.insert({"title": title})
                tag_id = str(doc["_id"])
                ctx.new_tag_ids.append(tag_id)
                existing[title] = tag_id

            results = await asyncio.gather(*(_insert(t) for t in new_titles), return_exceptions=True)
            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                raise failures[0]
            ctx.tags = [existing[t] for t in ctx.tags]
            for asset in ctx.asset_data:
                asset["tags"] = [existing[t] for t in asset.get("tags") or []]

        ctx.status_report.add_info("TAGS_IMPORTED", {"count": len(new_titles)})
        log.info("importer.tags.imported", count=len(new_titles), dry_run=self.settings.is_dry_run)

    async def import_course_assets(self) -> None:
        ctx = self.ctx
        reconciler = AssetReconciler(
            self.collaborators.assets,
            course_dir=ctx.course_dir,  # type: ignore[arg-type]
            language=ctx.language,  # type: ignore[arg-type]
            user_id=ctx.user_id,
            report=ctx.status_report,
            asset_folders=ctx.asset_folders,
            is_dry_run=self.settings.is_dry_run,
            asset_map=ctx.asset_map,
            new_asset_ids=ctx.new_asset_ids,
        )
        await reconciler.import_assets(ctx.asset_data)

    async def import_course_plugins(self) -> None:
        ctx = self.ctx
        reconciler = PluginReconciler(
            self.collaborators.plugins,
            settings=self.settings,
            report=ctx.status_report,
            new_plugins=ctx.new_plugins,
            plugin_backups=ctx.plugin_backups,
        )
        installed = await reconciler.installed()
        if ctx.installed_plugins is None:
            ctx.installed_plugins = installed
        ctx.plugin_plan = reconciler.plan(ctx.used_plugins, installed)
        await reconciler.apply(ctx.plugin_plan, ctx.used_plugins, installed)
        ctx.component_name_map = reconciler.name_map(installed)

    async def load_course_data(self) -> None:
        ctx = self.ctx
        ctx.content_json = await asyncio.to_thread(
            load_course_data,
            ctx.course_dir,
            ctx.language,
            enabled_plugins=list(ctx.used_plugins),
            asset_folders=ctx.asset_folders,
        )

    async def migrate_course_data(self) -> None:
        ctx = self.ctx
        runner = self.collaborators.migration_tool or SubprocessMigrationTool(
            self.app_settings.migration_tool_command
        )
        await migrate_course_data(
            package_root=ctx.import_path,
            course_dir=ctx.course_dir,  # type: ignore[arg-type]
            language=ctx.language,  # type: ignore[arg-type]
            scratch_root=Path(self.app_settings.import_scratch_dir),
            runner=runner,
            used_plugins=ctx.used_plugins,
            user_id=ctx.user_id,
        )

    async def import_course_data(self) -> None:
        content = self.collaborators.content
        content_json = self.ctx.content_json
        course = content_json.course  # type: ignore[union-attr]
        # Broken trees are rejected before anything, including an existing course, is touched
        tree = sort_hierarchy(course["_id"], content_json.nodes())  # type: ignore[union-attr]
        for level in tree.sorted:
            for _id in level:
                type_to_schema(self.ctx.content_objects[_id])

        existing_id = course.get("_courseId")
        existing = await content.find({"_courseId": existing_id}) if existing_id else []
        if not existing:
            await self._import_new_course(tree)
            return

        lock = await content.get_lock(
            datetime.now(timezone.utc).isoformat(), self.ctx.user_id, existing_id
        )
        if not lock:
            raise ConcurrentEditError("Course is being edited by someone else", courseId=existing_id)
        try:
            existing_course = next((d for d in existing if d.get("_type") == "course"), None)
            if existing_course is not None:
                log.info("importer.course.replace", course_id=existing_id)
                await content.delete({"_id": existing_course["_id"]})
            await self._import_new_course(tree)
        finally:
            await content.release_lock(existing_id)

    async def _import_new_course(self, tree: SortedHierarchy) -> None:
        ctx = self.ctx
        content_json = ctx.content_json
        course = content_json.course  # type: ignore[union-attr]

        course_doc = await self._import_content_object({**course, "tags": list(ctx.tags)})
        config_doc = await self._import_content_object(content_json.config)  # type: ignore[union-attr, arg-type]
        # Second pass applies schema defaults contributed by extensions
        await self._update_content_object(course_doc)
        await self._update_content_object(config_doc)

        errors: list[dict[str, Any]] = []
        for level in tree.sorted:
            results = await asyncio.gather(
                *(self._import_tree_item(_id, tree) for _id in level), return_exceptions=True
            )
            for _id, result in zip(level, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    errors.append(self._describe_failure(_id, result))
        if errors:
            raise ContentImportError(
                f"{len(errors)} content item(s) failed to import", errors=errors
            )
        inc_counter("importer.content.imported", len(tree))
        ctx.status_report.add_info("CONTENT_IMPORTED", {"count": len(tree) + 2})
        log.info("importer.content.imported", course_id=ctx.course_id, count=len(tree))

    def _describe_failure(self, _id: str, exc: Exception) -> dict[str, Any]:
        item = self.ctx.content_objects.get(_id, {})
        try:
            schema_name = type_to_schema(item)
        except ImporterError:
            schema_name = item.get("_type")
        log.warning("importer.content.failed", id=_id, schema=schema_name, error=str(exc))
        return {"id": _id, "schemaName": schema_name, "error": str(exc)}

    async def _import_tree_item(self, _id: str, tree: SortedHierarchy) -> dict[str, Any]:
        item = self.ctx.content_objects[_id]
        parent_id = item.get("_parentId")
        if parent_id not in self.ctx.id_map:
            raise InvalidContentError(f"Parent {parent_id!r} was not imported", id=_id)
        # A _sortOrder in the package wins over the deduced one
        return await self._import_content_object(
            {"_sortOrder": tree.sort_order_of(_id, parent_id), **item}
        )

    async def _import_content_object(self, data: dict[str, Any]) -> dict[str, Any]:
        ctx = self.ctx
        content = self.collaborators.content
        schema_name = type_to_schema(data)
        insert_data = copy.deepcopy(data)
        insert_data.pop("_id", None)
        insert_data["_courseId"] = ctx.id_map.get("course")
        insert_data["createdBy"] = ctx.user_id
        await self.migrations.run(insert_data, ctx)

        schema = await content.get_schema(schema_name, insert_data)
        extract_assets(schema.properties, insert_data, ctx.asset_map)
        insert_data = await schema.sanitise(insert_data)
        doc = await content.insert(insert_data, schema_name=schema_name, validate=True, use_cache=False)
        new_id = str(doc["_id"])
        ctx.id_map[data["_id"]] = new_id
        if "course" not in ctx.id_map and doc.get("_type") == "course":
            ctx.id_map["course"] = new_id
        return doc

    async def _update_content_object(self, doc: dict[str, Any]) -> dict[str, Any]:
        content = self.collaborators.content
        schema_name = type_to_schema(doc)
        schema = await content.get_schema(schema_name, doc)
        data = await schema.sanitise({k: v for k, v in doc.items() if k != "_id"})
        return await content.update(
            {"_id": doc["_id"]}, data, schema_name=schema_name, validate=True, use_cache=False
        )

    async def generate_summary(self) -> None:
        self.summary = get_import_summary(self.ctx, self.framework_version)

    # ------------------------------------------------------------------
    # Clean-up and compensation
    # ------------------------------------------------------------------

    def _compensations(self) -> list[tuple[str, Awaitable[Any]]]:
        ctx = self.ctx
        c = self.collaborators
        tasks: list[tuple[str, Awaitable[Any]]] = []
        for name, record in ctx.new_plugins.items():
            if record.get("_id") is not None:
                tasks.append((f"uninstall_plugin:{name}", c.plugins.uninstall_plugin(str(record["_id"]))))
        for name in ctx.plugin_backups:
            tasks.append((f"restore_plugin:{name}", c.plugins.restore_plugin_from_backup(name)))
        for tag_id in ctx.new_tag_ids:
            tasks.append((f"delete_tag:{tag_id}", c.tags.delete({"_id": tag_id})))
        for asset_id in ctx.new_asset_ids:
            tasks.append((f"delete_asset:{asset_id}", c.assets.delete({"_id": asset_id})))
        course_id = ctx.course_id
        if course_id:
            tasks.append(("delete_course", c.content.delete({"_id": course_id})))
            tasks.append(("delete_content", c.content.delete_many({"_courseId": course_id})))
            tasks.append(
                ("delete_course_assets", c.course_assets.delete_many({"courseId": course_id}))
            )
        return tasks

    async def clean_up(self, error: ImporterError | None = None) -> None:
        """Remove the working directory; on failure also undo recorded side effects.

        Never raises: every step is attempted and failures are only logged.
        """
        tasks: list[tuple[str, Awaitable[Any]]] = []
        if self.settings.remove_source:
            tasks.append(
                ("remove_source", asyncio.to_thread(shutil.rmtree, self.ctx.import_path, True))
            )
        if error is not None:
            tasks.extend(self._compensations())
        if not tasks:
            return
        labels = [label for label, _ in tasks]
        results = await asyncio.gather(*(aw for _, aw in tasks), return_exceptions=True)
        failed = 0
        for label, result in zip(labels, results):
            if isinstance(result, BaseException):
                failed += 1
                log.warning("importer.cleanup.failed", step=label, error=repr(result))
        if error is not None:
            log.info("importer.rollback.done", steps=len(tasks), failed=failed)


async def import_course(
    import_path: str | Path,
    user_id: str,
    collaborators: ImportCollaborators,
    **options: Any,
) -> ImportOrchestrator:
    """Import a package directory or ``.zip``; returns the finished orchestrator."""
    settings = options.get("settings") or load_settings()
    options["settings"] = settings
    path = Path(import_path)
    if path.suffix.lower() == ".zip":
        path = await asyncio.to_thread(
            unzip_package, path, max_size=settings.import_max_file_size
        )
    importer = ImportOrchestrator(path, user_id, collaborators, **options)
    await importer.run()
    return importer


__all__ = ["ImportOrchestrator", "Stage", "import_course"]
