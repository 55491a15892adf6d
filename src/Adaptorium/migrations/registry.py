"""Ordered registry of per-document content migrations."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

import structlog

from Adaptorium.metrics import inc_counter
from Adaptorium.schemas import PluginDescriptor

log = structlog.get_logger()


class MigrationContext(Protocol):
    """Cross-reference tables a migration may consult."""

    id_map: dict[str, str]
    component_name_map: dict[str, str]
    installed_plugin_names: set[str]
    content_objects: dict[str, dict[str, Any]]
    used_plugins: Mapping[str, PluginDescriptor]


Predicate = Callable[[dict[str, Any]], bool]
Apply = Callable[[dict[str, Any], MigrationContext], "None | Awaitable[None]"]


@dataclass(frozen=True)
class ContentMigration:
    """A named transform applied in place to documents its predicate matches."""

    name: str
    predicate: Predicate
    apply: Apply


class MigrationRegistry:
    def __init__(self, migrations: list[ContentMigration] | None = None):
        self._migrations: list[ContentMigration] = []
        for m in migrations or []:
            self.register(m)

    def register(
        self,
        migration: ContentMigration,
        *,
        before: str | None = None,
        after: str | None = None,
    ) -> None:
        """Add ``migration``; by default it runs last.

        ``before``/``after`` position it relative to an already registered name.
        """
        if migration.name in self.names():
            raise ValueError(f"Migration {migration.name!r} is already registered")
        if before is not None and after is not None:
            raise ValueError("Pass at most one of before/after")
        anchor = before or after
        if anchor is None:
            self._migrations.append(migration)
            return
        names = self.names()
        if anchor not in names:
            raise KeyError(f"Unknown migration {anchor!r}")
        index = names.index(anchor) + (1 if after else 0)
        self._migrations.insert(index, migration)

    def unregister(self, name: str) -> None:
        self._migrations = [m for m in self._migrations if m.name != name]

    def names(self) -> list[str]:
        return [m.name for m in self._migrations]

    def __iter__(self):
        return iter(list(self._migrations))

    def __len__(self) -> int:
        return len(self._migrations)

    def copy(self) -> "MigrationRegistry":
        return MigrationRegistry(list(self._migrations))

    async def run(self, data: dict[str, Any], ctx: MigrationContext) -> dict[str, Any]:
        """Apply every matching migration to ``data`` in registration order."""
        for migration in self._migrations:
            if not migration.predicate(data):
                continue
            result = migration.apply(data, ctx)
            if inspect.isawaitable(result):
                await result
            inc_counter(f"importer.migration.{migration.name}")
            log.debug(
                "importer.migration.applied",
                migration=migration.name,
                type=data.get("_type"),
                id=data.get("_id"),
            )
        return data
