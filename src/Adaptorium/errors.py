"""Import and build error taxonomy.

Every fatal failure surfaced to a caller is an ``ImporterError`` (or a
``BuildError``) carrying a stable ``code`` and a JSON-friendly ``data`` dict,
so callers never have to parse messages or stack traces.
"""

from __future__ import annotations

from typing import Any


class ImporterError(Exception):
    """Base class for importer errors."""

    code = "FW_IMPORT_FAILED"

    def __init__(self, message: str | None = None, *, code: str | None = None, **data: Any):
        if code is not None:
            self.code = code
        self.data: dict[str, Any] = data
        super().__init__(message or self.code)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self), "data": dict(self.data)}


# --- Structural / validation ---


class InvalidImportParamsError(ImporterError):
    code = "FW_IMPORT_INVALID_COURSE"


class MissingCoursePathError(ImporterError):
    code = "FW_IMPORT_MISSING_COURSE_PATH"


class MultipleCoursesError(ImporterError):
    code = "FW_IMPORT_MULTIPLE_COURSES"


class MissingConfigError(ImporterError):
    code = "FW_IMPORT_MISSING_CONFIG"


class MissingCourseError(ImporterError):
    code = "FW_IMPORT_MISSING_COURSE"


class InvalidLanguageError(ImporterError):
    code = "FW_IMPORT_INVALID_LANGUAGE"


class MissingPackageError(ImporterError):
    code = "FW_IMPORT_MISSING_PACKAGE"


class PackageTooLargeError(ImporterError):
    code = "FW_IMPORT_TOO_LARGE"


class IncompatibleFrameworkError(ImporterError):
    code = "FW_IMPORT_INCOMPAT"


class HierarchyError(ImporterError):
    """Content tree is not rooted at the course (orphans, duplicates)."""

    code = "FW_IMPORT_UNEXPECTED_STRUCTURE"


class InvalidContentError(ImporterError):
    """A single document could not be prepared for insertion."""

    code = "FW_IMPORT_INVALID_CONTENT"


# --- Plugins ---


class MissingPluginsError(ImporterError):
    code = "FW_IMPORT_MISSING_PLUGINS"


class PluginImportError(ImporterError):
    code = "FW_IMPORT_PLUGINS_FAILED"


class PluginVersionError(ImporterError):
    """Neither the package nor the registry carries a usable plugin version."""

    code = "FW_IMPORT_INVALID_PLUGIN_VERSION"


# --- Content ---


class ContentImportError(ImporterError):
    code = "FW_IMPORT_CONTENT_FAILED"


class ConcurrentEditError(ImporterError):
    code = "FW_IMPORT_CONCURRENT_EDIT"


# --- External tooling ---


class MigrationToolError(ImporterError):
    code = "FW_IMPORT_MIGRATION_FAILED"


# --- Build ---


class BuildError(ImporterError):
    code = "FW_BUILD_FAILED"


class BuildNotFoundError(BuildError):
    code = "FW_BUILD_NOT_FOUND"


class BuildRecordValidationError(BuildError):
    code = "FW_BUILD_INVALID_RECORD"


def wrap_error(exc: BaseException) -> ImporterError:
    """Return ``exc`` unchanged if already coded, else wrap it in ``ImporterError``.

    The caller is expected to ``raise wrapped from exc``.
    """
    if isinstance(exc, ImporterError):
        return exc
    return ImporterError(
        f"Import failed: {exc}",
        reason=type(exc).__name__,
        detail=str(exc),
    )


__all__ = [
    "BuildError",
    "BuildNotFoundError",
    "BuildRecordValidationError",
    "ConcurrentEditError",
    "ContentImportError",
    "HierarchyError",
    "ImporterError",
    "IncompatibleFrameworkError",
    "InvalidContentError",
    "InvalidImportParamsError",
    "InvalidLanguageError",
    "MigrationToolError",
    "MissingConfigError",
    "MissingCourseError",
    "MissingCoursePathError",
    "MissingPackageError",
    "MissingPluginsError",
    "MultipleCoursesError",
    "PackageTooLargeError",
    "PluginImportError",
    "PluginVersionError",
    "wrap_error",
]
