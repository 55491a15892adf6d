"""Plugin reconciliation between a package and the installed registry.

For every plugin a package uses, ``PluginReconciler.plan`` decides whether it
must be installed, updated, left alone, or whether the package content needs
migrating because it was authored against an older plugin. ``apply`` then
carries the plan out (or only reports it on a dry run).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import structlog

from Adaptorium import versioning
from Adaptorium.errors import MissingPluginsError, PluginImportError
from Adaptorium.interfaces import PluginRegistry
from Adaptorium.manifest_validation import ManifestValidationError, validate_plugin_manifest
from Adaptorium.metrics import inc_counter
from Adaptorium.package import read_json, write_json
from Adaptorium.schemas import ImportSettings, PluginDescriptor, StatusReport

log = structlog.get_logger()

# Package source folder -> plugin type
PLUGIN_FOLDERS = {
    "components": "component",
    "extensions": "extension",
    "menu": "menu",
    "theme": "theme",
}


def scan_used_plugins(package_root: Path) -> dict[str, PluginDescriptor]:
    """Read every plugin manifest under ``<root>/src/<type folder>/*``."""
    used: dict[str, PluginDescriptor] = {}
    for folder, plugin_type in PLUGIN_FOLDERS.items():
        base = package_root / "src" / folder
        if not base.is_dir():
            continue
        for plugin_dir in sorted(p for p in base.iterdir() if p.is_dir()):
            bower = plugin_dir / "bower.json"
            if not bower.exists():
                continue
            try:
                meta = validate_plugin_manifest(bower)
            except ManifestValidationError as exc:
                raise PluginImportError(str(exc), path=exc.path) from exc
            name = meta.get("name") or plugin_dir.name
            used[name] = PluginDescriptor(
                name=name,
                path=str(plugin_dir),
                version=meta.get("version"),
                targetAttribute=meta.get("targetAttribute"),
                type=plugin_type,
            )
    log.debug("importer.plugins.scanned", count=len(used))
    return used


def infer_target_attribute(meta: Mapping[str, Any]) -> str | None:
    for key in ("component", "extension", "menu", "theme"):
        if isinstance(meta.get(key), str) and meta[key]:
            return f"_{meta[key]}"
    return None


def ensure_target_attribute(plugin_dir: Path) -> str | None:
    """Write an inferred ``targetAttribute`` back to the plugin's ``bower.json``."""
    bower = plugin_dir / "bower.json"
    meta = read_json(bower)
    if meta.get("targetAttribute"):
        return meta["targetAttribute"]
    inferred = infer_target_attribute(meta)
    if inferred is None:
        return None
    meta["targetAttribute"] = inferred
    write_json(bower, meta)
    log.debug("importer.plugin.target_attribute", path=str(plugin_dir), value=inferred)
    return inferred


def component_name_map(records: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """Map a plugin's content key (``targetAttribute`` without ``_``) to its name."""
    out: dict[str, str] = {}
    for r in records:
        ta = r.get("targetAttribute")
        if isinstance(ta, str) and ta:
            out[ta[1:]] = r["name"]
    return out


def _already_exists(exc: BaseException) -> bool:
    return isinstance(exc, FileExistsError) or getattr(exc, "code", None) == "EEXIST"


@dataclass
class PluginPlan:
    to_install: list[str] = field(default_factory=list)
    to_update: list[str] = field(default_factory=list)
    migrate: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)


class PluginReconciler:
    """Decides and performs plugin installs/updates for one import run.

    ``new_plugins`` (name -> installed record) and ``plugin_backups`` (name ->
    pre-update record) are shared with the run context for rollback.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        settings: ImportSettings,
        report: StatusReport,
        new_plugins: dict[str, dict[str, Any]] | None = None,
        plugin_backups: dict[str, dict[str, Any]] | None = None,
    ):
        self.registry = registry
        self.settings = settings
        self.report = report
        self.new_plugins = new_plugins if new_plugins is not None else {}
        self.plugin_backups = plugin_backups if plugin_backups is not None else {}
        self.updated_plugins: dict[str, dict[str, Any]] = {}

    async def installed(self) -> dict[str, dict[str, Any]]:
        return {p["name"]: p for p in await self.registry.find({})}

    def plan(
        self,
        used: Mapping[str, PluginDescriptor],
        installed: Mapping[str, Mapping[str, Any]],
    ) -> PluginPlan:
        plan = PluginPlan()
        for name, plugin in used.items():
            record = installed.get(name)
            if record is None:
                plan.to_install.append(name)
                continue
            installed_version = record.get("version")
            import_version = versioning.coerce_import_version(installed_version, plugin.version)
            if import_version == versioning.SENTINEL_VERSION:
                self.report.add_warn(
                    "INVALID_PLUGIN_VERSION",
                    {"name": name, "version": plugin.version, "installedVersion": installed_version},
                )
            data = {
                "name": name,
                "installedVersion": installed_version,
                "importVersion": plugin.version,
            }
            if versioning.is_valid(installed_version):
                cmp = versioning.compare(import_version, installed_version)  # type: ignore[arg-type]
            else:
                # An unparseable installed version is replaced like an older one
                cmp = 1
            if cmp < 0:
                plan.migrate.append(name)
                self.report.add_info("PLUGIN_INSTALL_MIGRATING", data)
                continue
            if cmp == 0:
                self.report.add_info("PLUGIN_INSTALL_NOT_NEWER", data)
                continue
            is_local = bool(record.get("isLocalInstall"))
            if not self.settings.update_plugins and not is_local:
                plan.blocked.append(name)
                continue
            plan.to_update.append(name)
            if not is_local:
                self.report.add_warn("MANAGED_PLUGIN_OVERWRITTEN", data)
        if plan.blocked:
            # Once per batch, not per plugin
            self.report.add_warn("MANAGED_PLUGIN_UPDATE_DISABLED", {"plugins": plan.blocked})
        if plan.to_install and not self.settings.import_plugins:
            if not self.settings.is_dry_run:
                raise MissingPluginsError(
                    "Package requires plugins that are not installed",
                    plugins=list(plan.to_install),
                )
            self.report.add_warn("MISSING_PLUGINS", {"plugins": list(plan.to_install)})
            plan.to_install = []
        log.info(
            "importer.plugins.planned",
            install=plan.to_install,
            update=plan.to_update,
            migrate=plan.migrate,
            blocked=plan.blocked,
        )
        return plan

    async def _install_one(
        self,
        plugin: PluginDescriptor,
        installed: Mapping[str, Mapping[str, Any]],
        is_update: bool,
        errors: list[dict[str, str]],
    ) -> None:
        name = plugin.name
        try:
            target = await asyncio.to_thread(ensure_target_attribute, Path(plugin.path))
            if target and not plugin.target_attribute:
                plugin.target_attribute = target
            if is_update:
                self.plugin_backups[name] = dict(installed[name])
            records = await self.registry.install_plugins([(name, plugin.path)], strict=True)
            record = records[0] if records else {"name": name, "targetAttribute": target}
            if is_update:
                self.updated_plugins[name] = record
            else:
                self.new_plugins[name] = record
        except Exception as exc:  # collected; the batch fails after all attempts
            if _already_exists(exc):
                log.info("importer.plugin.exists", name=name)
                return
            inc_counter("importer.plugins.failed")
            log.error("importer.plugin.failed", name=name, error=str(exc))
            errors.append({"plugin": name, "error": str(exc)})
            return
        self.report.add_info(
            "UPDATE_PLUGIN" if is_update else "INSTALL_PLUGIN",
            {"name": name, "version": plugin.version},
        )

    async def apply(
        self,
        plan: PluginPlan,
        used: Mapping[str, PluginDescriptor],
        installed: Mapping[str, Mapping[str, Any]],
    ) -> None:
        if self.settings.is_dry_run:
            for name in plan.to_install:
                self.report.add_info("INSTALL_PLUGIN", {"name": name, "version": used[name].version})
            for name in plan.to_update:
                self.report.add_info("UPDATE_PLUGIN", {"name": name, "version": used[name].version})
            return
        errors: list[dict[str, str]] = []
        await asyncio.gather(
            *(self._install_one(used[n], installed, False, errors) for n in plan.to_install),
            *(self._install_one(used[n], installed, True, errors) for n in plan.to_update),
        )
        if errors:
            raise PluginImportError(
                "One or more plugins failed to install",
                errors=sorted(errors, key=lambda e: e["plugin"]),
            )

    def name_map(self, installed: Mapping[str, Mapping[str, Any]]) -> dict[str, str]:
        merged = {**installed, **self.updated_plugins, **self.new_plugins}
        return component_name_map(merged.values())
