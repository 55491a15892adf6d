"""Package layout discovery and content file loading.

Functions here operate on paths/JSON only; they never talk to a store.
"""

from __future__ import annotations

import json
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import structlog

from Adaptorium.content import ContentKind, ContentNode, parse_content_node
from Adaptorium.errors import (
    HierarchyError,
    InvalidLanguageError,
    MissingConfigError,
    MissingCourseError,
    MissingCoursePathError,
    MissingPackageError,
    MultipleCoursesError,
    PackageTooLargeError,
)
from Adaptorium.manifest_validation import ManifestValidationError, validate_package_manifest

log = structlog.get_logger()

# Where a course directory may live inside a package, in lookup order
COURSE_DIR_CANDIDATES = ("src/course", "build/course", "course")


def read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")


def unzip_package(
    zip_path: Path, dest: Path | None = None, *, max_size: int | None = None
) -> Path:
    """Extract ``zip_path`` next to itself (``<name>_unzip``) and return the directory.

    ``max_size`` bounds both the archive and the total size of its contents.
    """
    if max_size is not None and zip_path.stat().st_size > max_size:
        raise PackageTooLargeError(
            "Package archive is too large", size=zip_path.stat().st_size, maxSize=max_size
        )
    dest = dest or zip_path.with_name(f"{zip_path.stem}_unzip")
    with zipfile.ZipFile(zip_path) as zf:
        extracted_size = sum(info.file_size for info in zf.infolist())
        if max_size is not None and extracted_size > max_size:
            raise PackageTooLargeError(
                "Package contents are too large", size=extracted_size, maxSize=max_size
            )
        dest.mkdir(parents=True, exist_ok=True)
        root = dest.resolve()
        for member in zf.namelist():
            target = (dest / member).resolve()
            if root not in target.parents and target != root:
                raise MissingCoursePathError(
                    "Package contains paths outside its root", member=member
                )
        zf.extractall(dest)
    return dest


def unwrap_nested(root: Path) -> Path:
    """Lift a package zipped inside a single top-level directory up one level.

    Returns the (possibly new) package root.
    """
    entries = [p for p in root.iterdir() if not p.name.startswith("__MACOSX")]
    if len(entries) != 1 or not entries[0].is_dir():
        return root
    nested = entries[0]
    looks_like_package = (nested / "package.json").exists() or any(
        (nested / c).is_dir() for c in COURSE_DIR_CANDIDATES
    )
    if not looks_like_package:
        return root
    new_root = root.with_name(f"{root.name}_2")
    shutil.move(str(nested), str(new_root))
    shutil.rmtree(root, ignore_errors=True)
    log.debug("importer.package.unwrapped", old=str(root), new=str(new_root))
    return new_root


def find_course_dir(root: Path) -> Path:
    found = [root / c for c in COURSE_DIR_CANDIDATES if (root / c).is_dir()]
    if not found:
        raise MissingCoursePathError("No course directory found in package", root=str(root))
    if len(found) > 1:
        raise MultipleCoursesError(
            "Package contains more than one course directory",
            paths=[p.relative_to(root).as_posix() for p in found],
        )
    return found[0]


def list_languages(course_dir: Path) -> list[str]:
    return sorted(p.name for p in course_dir.iterdir() if p.is_dir())


def load_config(course_dir: Path) -> dict[str, Any]:
    try:
        config = read_json(course_dir / "config.json")
    except (OSError, json.JSONDecodeError) as exc:
        raise MissingConfigError("Package has no readable config.json", reason=str(exc)) from exc
    if not isinstance(config, dict):
        raise MissingConfigError("config.json is not a JSON object")
    return config


def resolve_language(
    config: dict[str, Any], languages: list[str], requested: str | None = None
) -> str:
    lang = requested or config.get("_defaultLanguage")
    if not lang or lang not in languages:
        raise InvalidLanguageError(
            f"Language {lang!r} not present in package", language=lang, available=languages
        )
    return lang


def load_package_manifest(root: Path) -> dict[str, Any]:
    manifest_path = root / "package.json"
    if not manifest_path.exists():
        raise MissingPackageError("Package has no package.json", root=str(root))
    try:
        return validate_package_manifest(manifest_path)
    except ManifestValidationError as exc:
        raise MissingPackageError(str(exc), path=exc.path) from exc


@dataclass
class ContentJson:
    """In-memory copy of a package's content files (never persisted as-is)."""

    course: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    content_objects: dict[str, dict[str, Any]] = field(default_factory=dict)

    def nodes(self) -> list[ContentNode]:
        return [parse_content_node(c) for c in self.content_objects.values()]

    def as_counts_source(self) -> dict[str, Any]:
        return {
            "course": self.course or {},
            "config": self.config or {},
            "contentObjects": self.content_objects,
        }


def _reinstate_friendly_id(item: dict[str, Any]) -> None:
    # Exports write friendly ids as _id
    if not item.get("_friendlyId") and item.get("_id"):
        item["_friendlyId"] = item["_id"]


def _content_files(lang_dir: Path, skip_dirs: Iterable[str]) -> list[Path]:
    skip = set(skip_dirs)
    out = []
    for path in sorted(lang_dir.rglob("*.json")):
        rel = path.relative_to(lang_dir)
        if rel.parts[0] in skip or rel.as_posix() == "assets.json":
            continue
        out.append(path)
    return out


def load_course_data(
    course_dir: Path,
    language: str,
    *,
    enabled_plugins: Iterable[str] = (),
    asset_folders: Iterable[str] = ("assets",),
) -> ContentJson:
    """Parse config plus every content file of ``language``."""
    content = ContentJson()
    config = load_config(course_dir)
    content.config = {
        "_id": "config",
        "_type": "config",
        "_enabledPlugins": list(enabled_plugins),
        **config,
    }
    lang_dir = course_dir / language
    for path in _content_files(lang_dir, asset_folders):
        data = read_json(path)
        if isinstance(data, dict):
            if data.get("_type") != ContentKind.COURSE.value:
                continue
            if content.course is not None:
                raise MultipleCoursesError(
                    "Language contains more than one course document", language=language
                )
            data["_lang"] = language
            _reinstate_friendly_id(data)
            content.course = data
            continue
        if not isinstance(data, list):
            continue
        for item in data:
            node = parse_content_node(item)
            if not node.kind.is_content_object:
                raise HierarchyError(
                    f"Unexpected {node.kind.value} document in {path.name}", id=node.id
                )
            if node.id in content.content_objects:
                raise HierarchyError(f"Duplicate content id {node.id!r}", id=node.id)
            item["_lang"] = language
            _reinstate_friendly_id(item)
            content.content_objects[node.id] = item  # type: ignore[index]
    if content.course is None:
        raise MissingCourseError("Package has no course document", language=language)
    log.debug(
        "importer.content.loaded",
        language=language,
        content_objects=len(content.content_objects),
    )
    return content
