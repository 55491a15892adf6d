"""Collaborator interfaces consumed by the import and build orchestrators.

The orchestrators never reach for global singletons: every subsystem they
touch is handed to them through ``ImportCollaborators``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol


class ContentSchema(Protocol):
    """Built schema returned by ``ContentStore.get_schema``."""

    properties: dict[str, Any]

    async def sanitise(self, data: dict[str, Any]) -> dict[str, Any]:
        """Return ``data`` with defaults applied and unknown keys stripped."""


class ContentStore(Protocol):
    """Document store holding courses and their content objects."""

    async def find(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        """Return every document matching ``query``."""

    async def insert(
        self,
        data: dict[str, Any],
        *,
        schema_name: str,
        validate: bool = True,
        use_cache: bool = False,
    ) -> dict[str, Any]:
        """Insert a document and return it with its new ``_id``."""

    async def update(
        self,
        query: dict[str, Any],
        data: dict[str, Any],
        *,
        schema_name: str,
        validate: bool = True,
        use_cache: bool = False,
    ) -> dict[str, Any]:
        """Update the document matching ``query``."""

    async def delete(self, query: dict[str, Any]) -> None:
        """Delete a document (and its descendants) matching ``query``."""

    async def delete_many(self, query: dict[str, Any]) -> None:
        """Delete every document matching ``query``."""

    async def get_schema(self, schema_name: str, data: dict[str, Any]) -> ContentSchema:
        """Return the built schema for ``schema_name``."""

    async def get_lock(self, timestamp: str, user_id: str, course_id: str) -> Any | None:
        """Acquire the per-course edit lock; ``None`` when not granted."""

    async def release_lock(self, course_id: str) -> None:
        """Release the per-course edit lock."""


class PluginRegistry(Protocol):
    """Installed content plugin registry and installer."""

    async def find(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Return installed plugin records ``{_id, name, version, isLocalInstall, targetAttribute}``."""

    async def install_plugins(
        self, plugins: list[tuple[str, str]], *, strict: bool = True
    ) -> list[dict[str, Any]]:
        """Install ``(name, source path)`` pairs and return the new records."""

    async def uninstall_plugin(self, plugin_id: str) -> None:
        """Remove an installed plugin by id."""

    async def restore_plugin_from_backup(self, name: str) -> None:
        """Put back the files and record a plugin had before its last update."""


class TagStore(Protocol):
    async def find(self) -> list[dict[str, Any]]:
        """Return every tag ``{_id, title}``."""

    async def insert(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a tag from ``{title}``."""

    async def delete(self, query: dict[str, Any]) -> None:
        """Delete a tag by ``{_id}``."""


class AssetStore(Protocol):
    async def insert(self, data: dict[str, Any]) -> dict[str, Any]:
        """Persist an asset ``{...meta, file: {filepath, originalFilename}, tags}``."""

    async def delete(self, query: dict[str, Any]) -> None:
        """Delete an asset by ``{_id}``."""

    async def find(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        """Return asset records ``{_id, path}`` matching ``query``."""


class CourseAssetStore(Protocol):
    async def delete_many(self, query: dict[str, Any]) -> None:
        """Delete course/asset link records matching ``query``."""


class MigrationToolRunner(Protocol):
    """External content migration tool (capture, then migrate)."""

    async def run(self, command: str, *, cwd: Path, args: list[str]) -> tuple[int, str]:
        """Run ``command`` to completion, returning ``(exit code, combined output)``."""


class SchemaConverter(Protocol):
    """Converts legacy ``properties.schema`` files under a package root."""

    async def convert(self, root: Path) -> int:
        """Convert every legacy schema under ``root``; return the number converted."""


@dataclass
class ImportCollaborators:
    """Everything an import or build run talks to outside the process."""

    content: ContentStore
    plugins: PluginRegistry
    tags: TagStore
    assets: AssetStore
    course_assets: CourseAssetStore
    migration_tool: MigrationToolRunner | None = None
    schema_converter: SchemaConverter | None = None


__all__ = [
    "AssetStore",
    "ContentSchema",
    "ContentStore",
    "CourseAssetStore",
    "ImportCollaborators",
    "MigrationToolRunner",
    "PluginRegistry",
    "SchemaConverter",
    "TagStore",
]
