# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Accessibility-tree snapshots with generation-scoped node addresses.

Each successful capture bumps the session's snapshot generation and
addresses every node as ``"{generation}_{ordinal}"`` (depth-first
pre-order). An address is only meaningful while its generation is the
current one; resolving an address from an older capture raises
:class:`StaleSnapshotError` instead of silently hitting a different node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from playwright.async_api import Page

from .errors import NoSnapshotError, StaleSnapshotError

logger = logging.getLogger(__name__)

# Containers the browser reports but that carry no semantics of their own.
_UNINTERESTING_ROLES = frozenset({"generic", "none", "presentation", "LineBreak", "Ignored"})
# Text fragments that duplicate their StaticText parent.
_DROPPED_ROLES = frozenset({"InlineTextBox"})


# ---------------------------------------------------------------------------
# CDP conversion
# ---------------------------------------------------------------------------


def _ax_value(obj: Any) -> Any:
    return obj.get("value", "") if isinstance(obj, dict) else obj


def cdp_ax_nodes_to_tree(nodes: list[dict]) -> dict | None:
    """Convert CDP ``Accessibility.getFullAXTree`` flat node list to a nested tree.

    Output node: ``{"role", "name", "value", "ignored", "properties",
    "backendDOMNodeId", "children"}``. The first node is the root.
    """
    if not nodes:
        return None

    node_map: dict[str, dict] = {}
    for n in nodes:
        props: dict[str, Any] = {}
        value = ""
        for prop in n.get("properties", []) or []:
            prop_name = prop.get("name", "")
            v = _ax_value(prop.get("value", {}))
            if prop_name == "value":
                value = str(v)
            elif prop_name:
                props[prop_name] = v
        if not value and isinstance(n.get("value"), dict):
            value = str(n["value"].get("value", ""))

        node_map[str(n.get("nodeId", ""))] = {
            "role": str(_ax_value(n.get("role", {})) or ""),
            "name": str(_ax_value(n.get("name", {})) or ""),
            "value": value,
            "ignored": bool(n.get("ignored", False)),
            "properties": props,
            "backendDOMNodeId": n.get("backendDOMNodeId"),
            "children": [],
        }

    for n in nodes:
        parent = node_map.get(str(n.get("nodeId", "")))
        if parent is None:
            continue
        for cid in n.get("childIds", []) or []:
            child = node_map.get(str(cid))
            if child is not None:
                parent["children"].append(child)

    return node_map.get(str(nodes[0].get("nodeId", "")))


def _is_uninteresting(node: dict) -> bool:
    if node.get("ignored"):
        return True
    return node.get("role") in _UNINTERESTING_ROLES and not node.get("name")


def prune_uninteresting(tree: dict | None) -> dict | None:
    """Trim non-semantic nodes, hoisting their children into the parent.

    The root is always kept. Input is not mutated.
    """
    if tree is None:
        return None

    def _kept_children(node: dict) -> list[dict]:
        out: list[dict] = []
        # explicit stack; pages nest deeper than the recursion limit
        stack = list(reversed(node.get("children", [])))
        while stack:
            child = stack.pop()
            if child.get("role") in _DROPPED_ROLES:
                continue
            if _is_uninteresting(child):
                stack.extend(reversed(child.get("children", [])))
                continue
            out.append(child)
        return out

    root = {**tree, "children": []}
    work = [(tree, root)]
    while work:
        src, dst = work.pop()
        for child in _kept_children(src):
            copy = {**child, "children": []}
            dst["children"].append(copy)
            work.append((child, copy))
    return root


# ---------------------------------------------------------------------------
# Snapshot model
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class SnapshotNode:
    """One addressed node of a captured accessibility tree."""

    address: str
    role: str
    name: str = ""
    value: str | None = None
    backend_node_id: int | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    children: list[SnapshotNode] = field(default_factory=list)


@dataclass(eq=False)
class Snapshot:
    generation: int
    root: SnapshotNode
    id_to_node: dict[str, SnapshotNode]
    verbose: bool = False
    selected_address: str | None = None
    has_selection: bool = False


def parse_address(address: str) -> tuple[int, int]:
    """Split ``"{generation}_{ordinal}"``. Raises ValueError when malformed."""
    generation, sep, ordinal = str(address).partition("_")
    if not sep:
        raise ValueError(f"Malformed node address: {address!r}")
    return int(generation), int(ordinal)


def build_snapshot(tree: dict, generation: int, *, verbose: bool = False) -> Snapshot:
    """Address *tree* (pre-order) under *generation*."""
    id_to_node: dict[str, SnapshotNode] = {}
    ordinal = 0
    holder: list[SnapshotNode] = []
    stack: list[tuple[dict, list[SnapshotNode]]] = [(tree, holder)]
    while stack:
        raw, siblings = stack.pop()
        role = raw.get("role", "")
        name = raw.get("name", "") or ""
        value = raw.get("value") or None
        # AX option nodes carry no value; their label is the value.
        if role == "option" and name and value is None:
            value = str(name)
        node = SnapshotNode(
            address=f"{generation}_{ordinal}",
            role=role,
            name=name,
            value=value,
            backend_node_id=raw.get("backendDOMNodeId"),
            properties=dict(raw.get("properties", {}) or {}),
        )
        ordinal += 1
        id_to_node[node.address] = node
        siblings.append(node)
        for child in reversed(raw.get("children", []) or []):
            stack.append((child, node.children))
    return Snapshot(generation=generation, root=holder[0], id_to_node=id_to_node, verbose=verbose)


def find_backend_node(root: SnapshotNode, backend_node_id: int) -> str | None:
    """Address of the first node (DFS) with *backend_node_id*."""
    stack = [root]
    while stack:
        current = stack.pop()
        if current.backend_node_id == backend_node_id:
            return current.address
        stack.extend(current.children)
    return None


# ---------------------------------------------------------------------------
# Snapshotter
# ---------------------------------------------------------------------------


class AXTreeSource(Protocol):
    async def capture_ax_tree(self, page: Page, *, include_iframes: bool, interesting_only: bool) -> dict | None: ...


class AccessibilitySnapshotter:
    """Owns the current snapshot and the generation counter."""

    def __init__(self, source: AXTreeSource) -> None:
        self._source = source
        self._next_generation = 1
        self._snapshot: Snapshot | None = None

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshot

    @property
    def generation(self) -> int | None:
        return self._snapshot.generation if self._snapshot is not None else None

    @property
    def has_selection(self) -> bool:
        return self._snapshot is not None and self._snapshot.has_selection

    async def capture(
        self,
        page: Page,
        verbose: bool = False,
        selected_backend_id: int | None = None,
    ) -> Snapshot | None:
        """Capture a new snapshot; ``None`` (and no change) if the driver has no tree."""
        tree = await self._source.capture_ax_tree(page, include_iframes=True, interesting_only=not verbose)
        if not tree:
            logger.debug("No accessibility tree returned; keeping snapshot generation %s", self.generation)
            return None

        generation = self._next_generation
        self._next_generation += 1
        snapshot = build_snapshot(tree, generation, verbose=verbose)
        if selected_backend_id:
            snapshot.has_selection = True
            snapshot.selected_address = find_backend_node(snapshot.root, selected_backend_id)
        self._snapshot = snapshot
        logger.debug("Captured snapshot generation %d (%d nodes)", generation, len(snapshot.id_to_node))
        return snapshot

    def _require_current(self, address: str) -> Snapshot:
        snapshot = self._snapshot
        if snapshot is None or not snapshot.id_to_node:
            raise NoSnapshotError("No snapshot found. Capture a snapshot first.")
        try:
            generation, _ = parse_address(address)
        except ValueError:
            raise StaleSnapshotError(
                f"Address {address!r} does not belong to the current snapshot.",
                address=str(address),
                current_generation=snapshot.generation,
            ) from None
        if generation != snapshot.generation:
            raise StaleSnapshotError(
                "This address is coming from a stale snapshot. Capture a fresh snapshot.",
                address=address,
                current_generation=snapshot.generation,
            )
        return snapshot

    def resolve_address(self, address: str) -> SnapshotNode | None:
        return self._require_current(address).id_to_node.get(address)

    def resolve_backend_id(self, backend_node_id: int) -> str | None:
        if not backend_node_id or self._snapshot is None:
            return None
        return find_backend_node(self._snapshot.root, backend_node_id)

    def preceding_matches(self, node: SnapshotNode) -> int:
        """How many nodes before *node* (pre-order) its role locator also matches.

        Named nodes are located by role and exact name, unnamed ones by role
        alone, so an unnamed node counts every earlier node of its role.
        """
        if self._snapshot is None:
            return 0
        count = 0
        for candidate in self._snapshot.id_to_node.values():
            if candidate is node:
                break
            if candidate.role == node.role and (not node.name or candidate.name == node.name):
                count += 1
        return count


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

_BOOL_ATTRS = ("focused", "disabled", "expanded", "checked", "selected", "required")


def _format_node(node: SnapshotNode, depth: int, selected: str | None) -> str:
    parts = [f"uid={node.address}", node.role or "unknown"]
    if node.name:
        parts.append(f'"{node.name}"')
    if node.value:
        parts.append(f'value="{node.value}"')
    for attr in _BOOL_ATTRS:
        v = node.properties.get(attr)
        if v is True or v == "true":
            parts.append(attr)
    line = "  " * depth + " ".join(parts)
    if selected is not None and node.address == selected:
        line += " [selected]"
    return line


def format_snapshot(snapshot: Snapshot) -> str:
    """Render one node per line, indented by depth."""
    lines: list[str] = []
    stack: list[tuple[SnapshotNode, int]] = [(snapshot.root, 0)]
    while stack:
        node, depth = stack.pop()
        lines.append(_format_node(node, depth, snapshot.selected_address))
        for child in reversed(node.children):
            stack.append((child, depth + 1))
    return "\n".join(lines)
