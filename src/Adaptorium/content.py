"""Tagged representation of course content documents.

Package JSON is loosely typed; it is classified into a ``ContentNode`` once,
where it is first parsed, so the rest of the pipeline dispatches on
``ContentKind`` rather than probing for keys.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from Adaptorium.errors import InvalidContentError


class ContentKind(str, enum.Enum):
    COURSE = "course"
    CONFIG = "config"
    MENU = "menu"
    PAGE = "page"
    ARTICLE = "article"
    BLOCK = "block"
    COMPONENT = "component"

    @property
    def is_content_object(self) -> bool:
        """Hierarchical node below the course."""
        return self not in (ContentKind.COURSE, ContentKind.CONFIG)

    @property
    def build_category(self) -> str:
        """Key of the per-type output file a built course groups this kind under."""
        if self in (ContentKind.MENU, ContentKind.PAGE):
            return "contentObject"
        return self.value


@dataclass(frozen=True)
class ContentNode:
    kind: ContentKind
    id: str | None
    parent_id: str | None
    data: dict[str, Any]


def content_kind(data: dict[str, Any]) -> ContentKind:
    type_ = data.get("_type")
    try:
        return ContentKind(type_)
    except ValueError as exc:
        raise InvalidContentError(
            f"Unknown content type {type_!r}", id=data.get("_id"), type=type_
        ) from exc


def parse_content_node(data: dict[str, Any]) -> ContentNode:
    """Classify a raw content document. The node shares ``data`` (no copy)."""
    if not isinstance(data, dict):
        raise InvalidContentError("Content item is not an object", item=repr(data)[:80])
    kind = content_kind(data)
    return ContentNode(
        kind=kind,
        id=data.get("_id"),
        parent_id=data.get("_parentId"),
        data=data,
    )


def type_to_schema(data: dict[str, Any]) -> str:
    """Name of the content-store schema a document validates against."""
    kind = content_kind(data)
    if kind in (ContentKind.MENU, ContentKind.PAGE):
        return "contentobject"
    if kind is ContentKind.COMPONENT:
        return f"{data.get('_component')}-component"
    return kind.value
