"""Per-run state for a course import.

``ImporterRunContext`` owns everything one import builds up while it runs:
the loaded package, the id/asset/component lookup tables, the status report
and the ledger of side effects (new plugins, plugin backups, tags, assets,
the new course id) that ``ImportOrchestrator.clean_up`` compensates for when
a stage fails. It also satisfies ``MigrationContext`` so content migrations
can read the lookup tables without seeing the orchestrator.

A context is single-use and never shared between concurrent imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from Adaptorium.package import ContentJson
from Adaptorium.plugins import PluginPlan
from Adaptorium.schemas import ImportSettings, PluginDescriptor, StatusReport


@dataclass
class ImporterRunContext:
    """Mutable state of one import run."""

    import_path: Path
    user_id: str
    settings: ImportSettings
    requested_language: str | None = None
    asset_folders: list[str] = field(default_factory=lambda: ["assets"])
    tags: list[str] = field(default_factory=list)

    # Package
    course_dir: Path | None = None
    language: str | None = None
    languages: list[str] = field(default_factory=list)
    pkg: dict[str, Any] | None = None
    manifest_hash: str | None = None
    predates_framework: bool = False
    content_json: ContentJson | None = None
    asset_data: list[dict[str, Any]] = field(default_factory=list)

    # Plugins
    used_plugins: dict[str, PluginDescriptor] = field(default_factory=dict)
    installed_plugins: dict[str, dict[str, Any]] | None = None
    plugin_plan: PluginPlan | None = None
    component_name_map: dict[str, str] = field(default_factory=dict)

    # Lookup tables
    id_map: dict[str, str] = field(default_factory=dict)
    asset_map: dict[str, str] = field(default_factory=dict)

    # Side-effect ledger for rollback
    new_plugins: dict[str, dict[str, Any]] = field(default_factory=dict)
    plugin_backups: dict[str, dict[str, Any]] = field(default_factory=dict)
    new_tag_ids: list[str] = field(default_factory=list)
    new_asset_ids: list[str] = field(default_factory=list)

    status_report: StatusReport = field(default_factory=StatusReport)
    stages_run: list[str] = field(default_factory=list)

    # --- MigrationContext ---

    @property
    def content_objects(self) -> dict[str, dict[str, Any]]:
        return self.content_json.content_objects if self.content_json else {}

    @property
    def installed_plugin_names(self) -> set[str]:
        return set(self.installed_plugins or {}) | set(self.new_plugins)

    # --- helpers ---

    @property
    def course_id(self) -> str | None:
        return self.id_map.get("course")

    @property
    def plugins_to_migrate(self) -> list[str]:
        return list(self.plugin_plan.migrate) if self.plugin_plan else []

    def ledger(self) -> dict[str, Any]:
        """Summary of what rollback would undo, for logs."""
        return {
            "new_plugins": sorted(self.new_plugins),
            "updated_plugins": sorted(self.plugin_backups),
            "new_tags": len(self.new_tag_ids),
            "new_assets": len(self.new_asset_ids),
            "course_id": self.course_id,
        }


__all__ = ["ImporterRunContext"]
