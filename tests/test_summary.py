"""Tests for import summary assembly."""

from pathlib import Path

from Adaptorium.importer_context import ImporterRunContext
from Adaptorium.package import ContentJson
from Adaptorium.schemas import ImportSettings, PluginDescriptor
from Adaptorium.summary import get_import_content_counts, get_import_summary


class TestImportContentCounts:
    def test_single_items(self):
        """Test single documents are counted by _type."""
        content = {"course": {"_type": "course"}, "config": {"_type": "config"}}
        assert get_import_content_counts(content) == {"course": 1, "config": 1}

    def test_collections(self):
        """Test keyed collections count each member."""
        content = {
            "course": {"_type": "course"},
            "contentObjects": {
                "co1": {"_type": "page"},
                "co2": {"_type": "page"},
                "co3": {"_type": "menu"},
            },
        }
        assert get_import_content_counts(content) == {"course": 1, "page": 2, "menu": 1}

    def test_lists_and_untyped_values(self):
        """Test list collections count and values without _type are skipped."""
        content = {
            "components": [{"_type": "component"}, {"_type": "component"}, {"title": "x"}],
            "meta": "ignored",
        }
        assert get_import_content_counts(content) == {"component": 2}

    def test_empty(self):
        """Test empty content counts to an empty mapping."""
        assert get_import_content_counts({}) == {}


def _ctx(update_plugins=False):
    ctx = ImporterRunContext(
        import_path=Path("/tmp/pkg"),
        user_id="user-1",
        settings=ImportSettings(update_plugins=update_plugins),
    )
    ctx.pkg = {"name": "adapt_framework", "version": "5.2.0"}
    ctx.content_json = ContentJson(
        course={"_id": "course", "_type": "course", "title": "T", "displayTitle": "Shown"},
        config={"_id": "config", "_type": "config"},
        content_objects={"p": {"_id": "p", "_type": "page"}},
    )
    ctx.used_plugins = {
        "adapt-contrib-text": PluginDescriptor(
            name="adapt-contrib-text", path="/x", version="5.0.0", type="component"
        ),
        "adapt-contrib-new": PluginDescriptor(
            name="adapt-contrib-new", path="/y", version="1.0.0", type="extension"
        ),
    }
    ctx.installed_plugins = {
        "adapt-contrib-text": {"name": "adapt-contrib-text", "version": "4.0.0"},
    }
    ctx.id_map["course"] = "c1"
    ctx.status_report.add_info("CONTENT_IMPORTED", {"count": 3})
    return ctx


class TestImportSummary:
    def test_summary_fields(self):
        """Test title, course id, counts and status report are carried over."""
        summary = get_import_summary(_ctx(), "5.0.0")
        assert summary.title == "Shown"
        assert summary.course_id == "c1"
        assert summary.content == {"course": 1, "config": 1, "page": 1}
        assert summary.status_report.codes() == ["CONTENT_IMPORTED"]

    def test_version_rows(self):
        """Test the framework row comes first, followed by one row per plugin."""
        summary = get_import_summary(_ctx(), "5.0.0")
        rows = [(r.name, r.status, r.versions) for r in summary.versions]
        assert rows == [
            ("adapt_framework", "UPDATE_BLOCKED", ["5.0.0", "5.2.0"]),
            ("adapt-contrib-text", "UPDATE_BLOCKED", ["4.0.0", "5.0.0"]),
            ("adapt-contrib-new", "INSTALLED", [None, "1.0.0"]),
        ]

    def test_update_flag_changes_statuses(self):
        """Test updatePlugins turns blocked rows into updates."""
        summary = get_import_summary(_ctx(update_plugins=True), "5.0.0")
        assert [r.status for r in summary.versions] == ["UPDATED", "UPDATED", "INSTALLED"]

    def test_serialises_with_aliases(self):
        """Test the summary dumps with the camelCase keys callers expect."""
        dumped = get_import_summary(_ctx(), "5.0.0").model_dump(by_alias=True)
        assert dumped["courseId"] == "c1"
        assert "statusReport" in dumped
