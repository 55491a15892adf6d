"""Content tree linearisation shared by import and build.

``sort_hierarchy`` groups content objects into breadth-first levels so that a
parent is always persisted before any of its children. ``flatten_hierarchy``
walks the same parent map depth-first in ``_sortOrder`` order, which is the
document order a built course expects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import structlog

from Adaptorium.content import ContentNode, parse_content_node
from Adaptorium.errors import HierarchyError

log = structlog.get_logger()


@dataclass
class SortedHierarchy:
    sorted: list[list[str]] = field(default_factory=list)
    hierarchy: dict[str | None, list[str]] = field(default_factory=dict)

    def sort_order_of(self, node_id: str, parent_id: str | None) -> int:
        """1-based position of ``node_id`` among its siblings (discovery order)."""
        return self.hierarchy.get(parent_id, []).index(node_id) + 1

    def __len__(self) -> int:
        return sum(len(level) for level in self.sorted)


def _as_node(item: ContentNode | Mapping[str, Any]) -> ContentNode:
    if isinstance(item, ContentNode):
        return item
    return parse_content_node(dict(item))


def build_parent_map(
    course_id: str, nodes: Iterable[ContentNode]
) -> dict[str | None, list[str]]:
    """Map parent id to child ids in discovery order, rejecting duplicate ids."""
    hierarchy: dict[str | None, list[str]] = {}
    seen: set[str] = set()
    for node in nodes:
        if node.id is None:
            raise HierarchyError("Content object without an _id", parentId=node.parent_id)
        if node.id in seen or node.id == course_id:
            raise HierarchyError(f"Duplicate content id {node.id!r}", id=node.id)
        seen.add(node.id)
        hierarchy.setdefault(node.parent_id, []).append(node.id)
    return hierarchy


def sort_hierarchy(
    course_id: str, nodes: Iterable[ContentNode | Mapping[str, Any]]
) -> SortedHierarchy:
    """Group content objects into levels below ``course_id``.

    Raises:
        HierarchyError: when a parent id is never reached from the course
            (orphaned subtree or cycle) or when ids are duplicated.
    """
    parsed = [_as_node(n) for n in nodes]
    hierarchy = build_parent_map(course_id, parsed)

    levels: list[list[str]] = [[course_id]]
    # Ordered worklist of parent ids still waiting to be expanded
    to_sort: dict[str | None, None] = dict.fromkeys(hierarchy)
    while to_sort:
        new_level: list[str] = []
        for parent_id in levels[-1]:
            new_level.extend(hierarchy.get(parent_id, []))
            to_sort.pop(parent_id, None)
        if not new_level:
            if not to_sort:
                break
            orphans = list(to_sort)
            log.warning("hierarchy.orphans", course_id=course_id, parents=orphans)
            raise HierarchyError(
                "Content hierarchy contains items not attached to the course",
                orphanedParents=orphans,
            )
        levels.append(new_level)

    result = SortedHierarchy(sorted=levels[1:], hierarchy=hierarchy)
    if len(result) != len(parsed):
        raise HierarchyError(
            "Content hierarchy lost items while sorting",
            expected=len(parsed),
            sorted=len(result),
        )
    return result


def _sort_key(item: Mapping[str, Any]) -> tuple[int, int]:
    order = item.get("_sortOrder")
    if isinstance(order, (int, float)) and not isinstance(order, bool):
        return (0, int(order))
    return (1, 0)


def flatten_hierarchy(
    course_id: str, items: Iterable[Mapping[str, Any]]
) -> list[Mapping[str, Any]]:
    """Return the items below ``course_id`` in depth-first, ``_sortOrder`` order.

    Siblings without a ``_sortOrder`` keep their relative order after the
    ordered ones.
    """
    children = [i for i in items if i.get("_type") not in ("course", "config")]
    # Same integrity gate as the import direction
    sort_hierarchy(course_id, children)

    by_parent: dict[str | None, list[Mapping[str, Any]]] = {}
    for item in children:
        by_parent.setdefault(item.get("_parentId"), []).append(item)
    for siblings in by_parent.values():
        siblings.sort(key=_sort_key)

    out: list[Mapping[str, Any]] = []
    stack = list(reversed(by_parent.get(course_id, [])))
    while stack:
        item = stack.pop()
        out.append(item)
        stack.extend(reversed(by_parent.get(item["_id"], [])))
    return out


__all__ = ["SortedHierarchy", "build_parent_map", "flatten_hierarchy", "sort_hierarchy"]
