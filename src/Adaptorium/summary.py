"""Import summary returned to callers on success (including dry runs)."""

from __future__ import annotations

from typing import Any, Mapping

from Adaptorium.importer_context import ImporterRunContext
from Adaptorium.schemas import ImportSummary, VersionRow
from Adaptorium.versioning import get_plugin_update_status

FRAMEWORK_NAME = "adapt_framework"


def get_import_content_counts(content: Mapping[str, Any]) -> dict[str, int]:
    """Count documents per ``_type``.

    Each value of ``content`` is either a single document (has ``_type``) or a
    collection of documents (mapping or list).
    """
    counts: dict[str, int] = {}
    for value in content.values():
        if isinstance(value, Mapping):
            items = [value] if "_type" in value else list(value.values())
        elif isinstance(value, list):
            items = value
        else:
            continue
        for item in items:
            type_ = item.get("_type") if isinstance(item, Mapping) else None
            if type_ is None:
                continue
            counts[type_] = counts.get(type_, 0) + 1
    return counts


def get_import_summary(ctx: ImporterRunContext, framework_version: str) -> ImportSummary:
    update_plugins = ctx.settings.update_plugins
    pkg = ctx.pkg or {}
    pkg_version = pkg.get("version")
    rows = [
        VersionRow(
            name=pkg.get("name") or FRAMEWORK_NAME,
            status=get_plugin_update_status(framework_version, pkg_version, False, update_plugins),
            versions=[framework_version, pkg_version],
        )
    ]
    # Compare against what was installed before this import touched anything
    installed = ctx.installed_plugins or {}
    for name, plugin in ctx.used_plugins.items():
        record = installed.get(name) or {}
        installed_version = record.get("version")
        rows.append(
            VersionRow(
                name=name,
                status=get_plugin_update_status(
                    installed_version,
                    plugin.version,
                    bool(record.get("isLocalInstall")),
                    update_plugins,
                ),
                versions=[installed_version, plugin.version],
            )
        )

    course = ctx.content_json.course if ctx.content_json else None
    title = None
    if course:
        title = course.get("displayTitle") or course.get("title")
    counts = get_import_content_counts(ctx.content_json.as_counts_source()) if ctx.content_json else {}
    return ImportSummary(
        title=title,
        courseId=ctx.course_id,
        statusReport=ctx.status_report,
        content=counts,
        versions=rows,
    )
