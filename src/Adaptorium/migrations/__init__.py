"""Content migrations applied to every document before it is persisted."""

from Adaptorium.migrations.registry import (
    ContentMigration,
    MigrationContext,
    MigrationRegistry,
)
from Adaptorium.migrations.transforms import BUILTIN_MIGRATIONS


def default_registry() -> MigrationRegistry:
    """A fresh registry holding the built-in chain in order."""
    return MigrationRegistry(list(BUILTIN_MIGRATIONS))


__all__ = [
    "BUILTIN_MIGRATIONS",
    "ContentMigration",
    "MigrationContext",
    "MigrationRegistry",
    "default_registry",
]
