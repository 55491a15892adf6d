"""End-to-end tests for the course package importer."""

import shutil
import zipfile
from pathlib import Path

import pytest

from Adaptorium.errors import (
    ConcurrentEditError,
    HierarchyError,
    ImporterError,
    IncompatibleFrameworkError,
    InvalidImportParamsError,
    MigrationToolError,
    MissingCoursePathError,
    MissingPluginsError,
)
from Adaptorium.importer import ImportOrchestrator, import_course
from Adaptorium.metrics import get_counter

from fakes import (
    FakeContentStore,
    FakeMigrationTool,
    FakePluginRegistry,
    FakeTagStore,
    PackageBuilder,
    make_collaborators,
    total_writes,
)

GRAPHIC_SCHEMA = {
    "_graphic": {
        "type": "object",
        "properties": {
            "src": {"type": "string", "_backboneForms": {"type": "Asset", "media": "image"}},
            "large": {"type": "string", "_backboneForms": "Asset"},
        },
    }
}


def _importer(package, collaborators, settings, **kwargs):
    kwargs.setdefault("remove_source", False)
    return ImportOrchestrator(package.root, "user-1", collaborators, settings=settings, **kwargs)


class TestImportHappyPath:
    async def test_imports_course_content_and_dependencies(self, package, settings):
        """Test a full import writes course, config and the content tree."""
        content = FakeContentStore(schemas={"graphic-component": GRAPHIC_SCHEMA})
        collaborators = make_collaborators(content=content)

        summary = await _importer(package, collaborators, settings).run()

        assert summary.course_id == "doc1"
        assert summary.title == "Demo Course"
        assert summary.content == {
            "course": 1,
            "config": 1,
            "page": 1,
            "article": 1,
            "block": 1,
            "component": 2,
        }
        assert len(content.docs) == 7
        assert all(d["_courseId"] == "doc1" for d in content.docs.values())
        assert sorted(collaborators.plugins.installed) == [
            "adapt-contrib-graphic",
            "adapt-contrib-text",
            "adapt-contrib-vanilla",
        ]
        assert [t["title"] for t in collaborators.tags.tags.values()] == ["demo"]
        assert len(collaborators.assets.assets) == 1

    async def test_content_documents_are_migrated_before_insert(self, package, settings):
        """Test built-in migrations rewrite ids, components, config and assets."""
        content = FakeContentStore(schemas={"graphic-component": GRAPHIC_SCHEMA})
        collaborators = make_collaborators(content=content)
        importer = _importer(package, collaborators, settings)
        await importer.run()

        by_type = {}
        for schema_name, doc in content.inserted:
            by_type.setdefault(doc["_type"], []).append((schema_name, doc))

        course = by_type["course"][0][1]
        assert course["tags"] == ["tag1"]
        assert course["_globals"]["_extensions"]["_trickle"]["_navOrder"] == 2

        config = by_type["config"][0][1]
        assert config["_accessibility"]["_ariaLevels"] == {"_menu": "1", "_page": "2"}
        assert config["_theme"] == "adapt-contrib-vanilla"

        page = by_type["page"][0][1]
        assert page["_parentId"] == importer.ctx.id_map["course"]
        assert page["_sortOrder"] == 1

        components = {doc["_component"]: (schema, doc) for schema, doc in by_type["component"]}
        assert components["adapt-contrib-text"][0] == "text-component"
        schema_name, graphic = components["adapt-contrib-graphic"]
        assert schema_name == "graphic-component"
        asset_id = next(iter(collaborators.assets.assets))
        assert graphic["_graphic"]["src"] == asset_id
        assert graphic["_graphic"]["large"] == asset_id
        # Not declared as an asset field, so left as a path
        assert graphic["_graphic"]["small"] == "course/en/assets/logo.png"

    async def test_friendly_ids_are_stored(self, package, settings):
        """Test imported documents keep their package ids as friendly ids."""
        content = FakeContentStore()
        await _importer(package, make_collaborators(content=content), settings).run()

        friendly = sorted(
            d["_friendlyId"] for _, d in content.inserted if d["_type"] != "config"
        )
        assert friendly == ["a-05", "b-05", "c-05", "c-10", "co-05", "course"]

    async def test_sort_order_in_package_wins_over_deduced(self, settings, tmp_path):
        """Test an explicit _sortOrder in package content is preserved."""
        builder = PackageBuilder(tmp_path / "pkg")
        builder.content[3]["_sortOrder"] = 5
        builder.write()
        content = FakeContentStore()
        await _importer(builder, make_collaborators(content=content), settings).run()

        text = next(d for _, d in content.inserted if d.get("_component") == "adapt-contrib-text")
        graphic = next(d for _, d in content.inserted if d.get("_component") == "adapt-contrib-graphic")
        assert text["_sortOrder"] == 5
        assert graphic["_sortOrder"] == 2

    async def test_status_report_and_summary_versions(self, package, settings, collaborators):
        """Test info codes and the framework-first version rows."""
        importer = _importer(package, collaborators, settings)
        summary = await importer.run()

        assert sorted(summary.status_report.codes("info")) == sorted(
            [
                "TAGS_IMPORTED",
                "ASSETS_IMPORTED_SUCCESSFULLY",
                "INSTALL_PLUGIN",
                "INSTALL_PLUGIN",
                "INSTALL_PLUGIN",
                "CONTENT_IMPORTED",
            ]
        )
        assert summary.status_report.warn == []
        framework = summary.versions[0]
        assert framework.name == "adapt_framework"
        assert framework.versions == ["5.0.0", "5.1.0"]
        rows = {row.name: row for row in summary.versions[1:]}
        assert rows["adapt-contrib-text"].status == "INSTALLED"
        assert rows["adapt-contrib-text"].versions == [None, "5.0.0"]

    async def test_stage_metrics_and_removes_source(self, package, settings, collaborators):
        """Test stage counters are recorded and the working directory removed."""
        importer = ImportOrchestrator(package.root, "user-1", collaborators, settings=settings)
        await importer.run()

        assert not package.root.exists()
        assert get_counter("importer.stage.prepare") == 1
        assert get_counter("importer.stage.importCourseData") == 1
        assert get_counter("importer.rollback") == 0
        assert importer.ctx.stages_run == [
            "prepare",
            "loadAssetData",
            "loadPluginData",
            "preImportHook",
            "importTags",
            "importCourseAssets",
            "importCoursePlugins",
            "loadCourseData",
            "importCourseData",
            "generateSummary",
            "postImportHook",
        ]

    async def test_existing_tags_are_reused(self, package, settings):
        """Test a tag that already exists is not created again."""
        tags = FakeTagStore(titles=["demo"])
        collaborators = make_collaborators(tags=tags)
        summary = await _importer(package, collaborators, settings).run()

        assert tags.writes == 0
        assert summary.status_report.info[0].code == "TAGS_IMPORTED"
        assert summary.status_report.info[0].data == {"count": 0}

    async def test_import_course_unzips_archive(self, package, settings, collaborators, tmp_path):
        """Test the zip convenience entry point imports and removes the unpacked copy."""
        zip_path = tmp_path / "course.zip"
        with zipfile.ZipFile(zip_path, "w") as zf:
            for f in package.root.rglob("*"):
                if f.is_file():
                    zf.write(f, f.relative_to(package.root).as_posix())
        shutil.rmtree(package.root)

        importer = await import_course(zip_path, "user-1", collaborators, settings=settings)

        assert importer.summary.course_id == "doc1"
        assert not (tmp_path / "course_unzip").exists()


class TestImportModes:
    async def test_dry_run_writes_nothing(self, package, settings, collaborators):
        """Test a dry run touches no store and reports what would happen."""
        summary = await _importer(package, collaborators, settings, is_dry_run=True).run()

        assert total_writes(collaborators) == 0
        assert summary.course_id is None
        assert sorted(summary.status_report.codes("info")) == sorted(
            [
                "TAGS_IMPORTED",
                "ASSETS_IMPORTED_SUCCESSFULLY",
                "INSTALL_PLUGIN",
                "INSTALL_PLUGIN",
                "INSTALL_PLUGIN",
            ]
        )
        assert summary.content["component"] == 2
        assert get_counter("importer.dry_run") == 1

    async def test_dry_run_is_repeatable(self, package, settings, collaborators):
        """Test two dry runs of the same package give the same summary."""
        first = await _importer(package, collaborators, settings, is_dry_run=True).run()
        second = await _importer(package, collaborators, settings, is_dry_run=True).run()

        assert first.model_dump() == second.model_dump()

    async def test_dry_run_reports_same_codes_as_real_run(self, package, settings):
        """Test dry-run codes match the real run apart from content insertion."""
        dry = await _importer(package, make_collaborators(), settings, is_dry_run=True).run()
        real = await _importer(package, make_collaborators(), settings).run()

        real_codes = [c for c in real.status_report.codes("info") if c != "CONTENT_IMPORTED"]
        assert sorted(dry.status_report.codes("info")) == sorted(real_codes)

    async def test_plugin_only_import(self, package, settings, collaborators):
        """Test import_content=False installs plugins and skips content stages."""
        importer = _importer(package, collaborators, settings, import_content=False)
        summary = await importer.run()

        assert importer.ctx.stages_run == [
            "prepare",
            "loadAssetData",
            "loadPluginData",
            "preImportHook",
            "importCoursePlugins",
            "loadCourseData",
            "generateSummary",
            "postImportHook",
        ]
        assert len(collaborators.plugins.installed) == 3
        assert collaborators.content.writes == 0
        assert collaborators.tags.writes == 0
        assert collaborators.assets.writes == 0
        assert summary.status_report.codes("info").count("INSTALL_PLUGIN") == 3

    async def test_missing_plugins_fail_when_plugin_import_disabled(self, package, settings, collaborators):
        """Test a real run refuses to continue without the plugins it needs."""
        with pytest.raises(MissingPluginsError) as exc_info:
            await _importer(package, collaborators, settings, import_plugins=False).run()

        assert exc_info.value.code == "FW_IMPORT_MISSING_PLUGINS"
        assert len(exc_info.value.data["plugins"]) == 3
        # Tags and assets written before the failure are rolled back
        assert collaborators.tags.tags == {}
        assert collaborators.assets.assets == {}

    async def test_missing_plugins_only_warn_on_dry_run(self, package, settings, collaborators):
        """Test a dry run with plugin import disabled warns instead of failing."""
        summary = await _importer(
            package, collaborators, settings, import_plugins=False, is_dry_run=True
        ).run()

        assert summary.status_report.codes("warn") == ["MISSING_PLUGINS"]
        assert "INSTALL_PLUGIN" not in summary.status_report.codes("info")

    async def test_blocked_update_keeps_installed_plugin(self, package, settings):
        """Test a newer managed plugin is not updated unless updates are enabled."""
        registry = FakePluginRegistry(
            installed=[
                {
                    "_id": "p-text",
                    "name": "adapt-contrib-text",
                    "version": "4.0.0",
                    "targetAttribute": "_text",
                    "isLocalInstall": False,
                }
            ]
        )
        collaborators = make_collaborators(plugins=registry)
        summary = await _importer(package, collaborators, settings).run()

        assert "adapt-contrib-text" not in registry.installed
        assert registry.records["adapt-contrib-text"]["version"] == "4.0.0"
        assert summary.status_report.codes("warn") == ["MANAGED_PLUGIN_UPDATE_DISABLED"]
        row = next(r for r in summary.versions if r.name == "adapt-contrib-text")
        assert row.status == "UPDATE_BLOCKED"
        assert row.versions == ["4.0.0", "5.0.0"]

    async def test_older_plugin_triggers_file_migration(self, package, settings):
        """Test content authored for an older plugin runs the migration tool."""
        registry = FakePluginRegistry(
            installed=[
                {
                    "_id": "p-text",
                    "name": "adapt-contrib-text",
                    "version": "6.0.0",
                    "targetAttribute": "_text",
                    "isLocalInstall": False,
                }
            ]
        )
        tool = FakeMigrationTool()
        collaborators = make_collaborators(plugins=registry, migration_tool=tool)
        importer = _importer(package, collaborators, settings)
        summary = await importer.run()

        assert [c[0] for c in tool.calls] == ["capture", "migrate"]
        assert importer.ctx.stages_run.count("loadCourseData") == 1
        assert "migrateCourseData" in importer.ctx.stages_run
        assert "PLUGIN_INSTALL_MIGRATING" in summary.status_report.codes("info")


class TestImportValidation:
    def test_requires_path_and_user(self, collaborators, settings):
        """Test missing constructor inputs are rejected up front."""
        with pytest.raises(InvalidImportParamsError) as exc_info:
            ImportOrchestrator("", "user-1", collaborators, settings=settings)
        assert exc_info.value.code == "FW_IMPORT_INVALID_COURSE"
        with pytest.raises(InvalidImportParamsError):
            ImportOrchestrator("/tmp/pkg", None, collaborators, settings=settings)

    async def test_missing_directory(self, tmp_path, collaborators, settings):
        """Test a path that is not a directory fails in prepare."""
        importer = ImportOrchestrator(tmp_path / "nope", "user-1", collaborators, settings=settings)
        with pytest.raises(MissingCoursePathError):
            await importer.run()
        assert get_counter("importer.rollback.prepare") == 1

    async def test_incompatible_framework(self, tmp_path, collaborators, settings):
        """Test an older major version fails when migration is disabled."""
        builder = PackageBuilder(tmp_path / "pkg")
        builder.framework_version = "4.2.0"
        builder.write()
        with pytest.raises(IncompatibleFrameworkError) as exc_info:
            await _importer(builder, collaborators, settings, migrate_content=False).run()
        assert exc_info.value.code == "FW_IMPORT_INCOMPAT"
        assert exc_info.value.data == {"installed": "5.0.0", "import": "4.2.0"}

    async def test_older_framework_is_migrated(self, tmp_path, settings):
        """Test an older major version is accepted and migrated when allowed."""
        builder = PackageBuilder(tmp_path / "pkg")
        builder.framework_version = "4.2.0"
        builder.write()
        tool = FakeMigrationTool()
        importer = _importer(builder, make_collaborators(migration_tool=tool), settings)
        await importer.run()

        assert importer.ctx.predates_framework is True
        command, cwd, args = tool.calls[0]
        assert cwd == builder.root
        assert args[:2] == ["--outputdir", str(builder.course_dir)]

    async def test_migration_tool_failure(self, tmp_path, settings):
        """Test a failing migration step surfaces with its exit code."""
        builder = PackageBuilder(tmp_path / "pkg")
        builder.framework_version = "4.2.0"
        builder.write()
        collaborators = make_collaborators(migration_tool=FakeMigrationTool(exit_codes={"migrate": 2}))
        with pytest.raises(MigrationToolError) as exc_info:
            await _importer(builder, collaborators, settings).run()
        assert exc_info.value.code == "FW_IMPORT_MIGRATION_FAILED"
        assert exc_info.value.data["step"] == "migrate"
        assert exc_info.value.data["exitCode"] == 2
        assert collaborators.plugins.records == {}

    async def test_orchestrator_is_single_use(self, package, settings, collaborators):
        """Test a second run on the same orchestrator is refused."""
        importer = _importer(package, collaborators, settings)
        await importer.run()
        with pytest.raises(ImporterError):
            await importer.run()


class TestExistingCourse:
    def _builder(self, tmp_path: Path) -> PackageBuilder:
        builder = PackageBuilder(tmp_path / "pkg")
        builder.course["_courseId"] = "old-course"
        return builder.write()

    def _store(self, **kwargs) -> FakeContentStore:
        store = FakeContentStore(**kwargs)
        store.seed({"_id": "old-course", "_type": "course", "_courseId": "old-course"})
        store.seed({"_id": "old-page", "_type": "page", "_courseId": "old-course"})
        return store

    async def test_replaces_existing_course_under_lock(self, tmp_path, settings):
        """Test re-importing a known course replaces it and releases the lock."""
        store = self._store()
        builder = self._builder(tmp_path)
        await _importer(builder, make_collaborators(content=store), settings).run()

        assert store.locked == ["old-course"]
        assert store.released == ["old-course"]
        assert "old-course" not in store.docs
        assert "old-page" not in store.docs
        assert len(store.docs) == 7

    async def test_concurrent_edit_aborts(self, tmp_path, settings):
        """Test a refused lock aborts the import and leaves the old course."""
        store = self._store(lock_granted=False)
        builder = self._builder(tmp_path)
        collaborators = make_collaborators(content=store)
        with pytest.raises(ConcurrentEditError) as exc_info:
            await _importer(builder, collaborators, settings).run()

        assert exc_info.value.code == "FW_IMPORT_CONCURRENT_EDIT"
        assert store.released == []
        assert set(store.docs) == {"old-course", "old-page"}
        assert collaborators.plugins.records == {}

    async def test_broken_package_leaves_existing_course(self, tmp_path, settings):
        """Test a package with an orphaned subtree fails before the old course is replaced."""
        store = self._store()
        builder = PackageBuilder(tmp_path / "pkg")
        builder.course["_courseId"] = "old-course"
        builder.content.append({"_id": "x", "_type": "article", "_parentId": "ghost"})
        builder.write()
        collaborators = make_collaborators(content=store)

        with pytest.raises(HierarchyError) as exc_info:
            await _importer(builder, collaborators, settings).run()

        assert exc_info.value.code == "FW_IMPORT_UNEXPECTED_STRUCTURE"
        assert store.locked == []
        assert set(store.docs) == {"old-course", "old-page"}
        assert collaborators.plugins.records == {}


class TestImportHooks:
    async def test_hooks_receive_orchestrator(self, package, settings, collaborators):
        """Test pre/post hooks run in order with the orchestrator."""
        importer = _importer(package, collaborators, settings)
        seen = []
        importer.pre_import_hook.tap(lambda imp: seen.append(("pre", imp.summary)))

        async def post(imp):
            seen.append(("post", imp.summary.course_id))

        importer.post_import_hook.tap(post)
        await importer.run()

        assert seen == [("pre", None), ("post", "doc1")]

    async def test_failing_hook_is_wrapped(self, package, settings, collaborators):
        """Test a non-importer exception surfaces as ImporterError with its cause."""
        importer = _importer(package, collaborators, settings)

        def boom(_):
            raise RuntimeError("hook exploded")

        importer.pre_import_hook.tap(boom)
        with pytest.raises(ImporterError) as exc_info:
            await importer.run()

        assert exc_info.value.code == "FW_IMPORT_FAILED"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.data["reason"] == "RuntimeError"
