# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagewatch.snapshot: addressing, staleness, CDP conversion, rendering."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from pagewatch.errors import NoSnapshotError, StaleSnapshotError
from pagewatch.snapshot import (
    AccessibilitySnapshotter,
    build_snapshot,
    cdp_ax_nodes_to_tree,
    format_snapshot,
    parse_address,
    prune_uninteresting,
)
from tests._fakes import ax_node

# ── Helpers ──────────────────────────────────────────────────────────


def _form_tree() -> dict:
    return ax_node(
        "RootWebArea",
        "Shop",
        backend_id=1,
        children=[
            ax_node(
                "form",
                "Order",
                backend_id=2,
                children=[
                    ax_node("combobox", "Color", backend_id=3, children=[ax_node("option", "Red", backend_id=4)]),
                    ax_node("button", "Buy", backend_id=5),
                ],
            ),
            ax_node("link", "Help", backend_id=6),
        ],
    )


def _snapshotter(*trees) -> tuple[AccessibilitySnapshotter, AsyncMock]:
    source = AsyncMock()
    source.capture_ax_tree = AsyncMock(side_effect=list(trees))
    return AccessibilitySnapshotter(source), source


# ── Addressing ───────────────────────────────────────────────────────


class TestBuildSnapshot:
    def test_preorder_addresses(self):
        snap = build_snapshot(_form_tree(), 7)
        order = [(addr, node.name) for addr, node in snap.id_to_node.items()]
        assert order == [
            ("7_0", "Shop"),
            ("7_1", "Order"),
            ("7_2", "Color"),
            ("7_3", "Red"),
            ("7_4", "Buy"),
            ("7_5", "Help"),
        ]

    def test_tree_structure_kept(self):
        snap = build_snapshot(_form_tree(), 1)
        assert [c.name for c in snap.root.children] == ["Order", "Help"]
        assert [c.name for c in snap.root.children[0].children] == ["Color", "Buy"]

    def test_option_name_becomes_value(self):
        snap = build_snapshot(_form_tree(), 1)
        assert snap.id_to_node["1_3"].value == "Red"

    def test_option_explicit_value_kept(self):
        snap = build_snapshot(ax_node("option", "Red", value="r"), 1)
        assert snap.root.value == "r"

    def test_non_option_without_value(self):
        snap = build_snapshot(ax_node("button", "Buy"), 1)
        assert snap.root.value is None

    def test_deep_tree_no_recursion_error(self):
        tree = node = ax_node("generic", "0")
        for i in range(1, 5000):
            child = ax_node("generic", str(i))
            node["children"].append(child)
            node = child
        snap = build_snapshot(tree, 1)
        assert len(snap.id_to_node) == 5000

    @pytest.mark.parametrize(
        "address,expected",
        [("1_0", (1, 0)), ("12_345", (12, 345))],
    )
    def test_parse_address(self, address, expected):
        assert parse_address(address) == expected

    @pytest.mark.parametrize("address", ["", "10", "a_b", "1_x"])
    def test_parse_address_malformed(self, address):
        with pytest.raises(ValueError):
            parse_address(address)


# ── Snapshotter ──────────────────────────────────────────────────────


class TestSnapshotter:
    async def test_capture_increments_generation(self, page):
        snapshotter, _ = _snapshotter(_form_tree(), _form_tree())
        first = await snapshotter.capture(page)
        second = await snapshotter.capture(page)
        assert (first.generation, second.generation) == (1, 2)
        assert snapshotter.generation == 2

    async def test_capture_requests_pruned_tree_unless_verbose(self, page):
        snapshotter, source = _snapshotter(_form_tree(), _form_tree())
        await snapshotter.capture(page)
        await snapshotter.capture(page, verbose=True)
        calls = source.capture_ax_tree.await_args_list
        assert calls[0].kwargs == {"include_iframes": True, "interesting_only": True}
        assert calls[1].kwargs == {"include_iframes": True, "interesting_only": False}

    async def test_stale_address_rejected_even_if_ordinal_exists(self, page):
        snapshotter, _ = _snapshotter(_form_tree(), _form_tree())
        await snapshotter.capture(page)
        assert snapshotter.resolve_address("1_4").name == "Buy"

        await snapshotter.capture(page)
        with pytest.raises(StaleSnapshotError) as exc_info:
            snapshotter.resolve_address("1_4")
        assert exc_info.value.current_generation == 2
        assert snapshotter.resolve_address("2_4").name == "Buy"

    async def test_malformed_address_is_stale(self, page):
        snapshotter, _ = _snapshotter(_form_tree())
        await snapshotter.capture(page)
        with pytest.raises(StaleSnapshotError):
            snapshotter.resolve_address("button-3")

    async def test_unknown_ordinal_in_current_generation(self, page):
        snapshotter, _ = _snapshotter(_form_tree())
        await snapshotter.capture(page)
        assert snapshotter.resolve_address("1_99") is None

    def test_resolve_before_capture(self):
        snapshotter, _ = _snapshotter()
        with pytest.raises(NoSnapshotError):
            snapshotter.resolve_address("1_0")

    async def test_empty_capture_keeps_generation(self, page):
        snapshotter, _ = _snapshotter(_form_tree(), None)
        await snapshotter.capture(page)
        assert await snapshotter.capture(page) is None
        assert snapshotter.generation == 1
        assert snapshotter.resolve_address("1_0").role == "RootWebArea"

    async def test_resolve_backend_id(self, page):
        snapshotter, _ = _snapshotter(_form_tree())
        await snapshotter.capture(page)
        assert snapshotter.resolve_backend_id(5) == "1_4"
        assert snapshotter.resolve_backend_id(999) is None
        assert snapshotter.resolve_backend_id(0) is None

    def test_resolve_backend_id_without_snapshot(self):
        snapshotter, _ = _snapshotter()
        assert snapshotter.resolve_backend_id(5) is None

    async def test_selection_marks_address(self, page):
        snapshotter, _ = _snapshotter(_form_tree())
        snap = await snapshotter.capture(page, selected_backend_id=3)
        assert snapshotter.has_selection
        assert snap.selected_address == "1_2"

    async def test_preceding_matches(self, page):
        tree = ax_node(
            "RootWebArea",
            children=[ax_node("button", "Save"), ax_node("link", "Save"), ax_node("button", "Save")],
        )
        snapshotter, _ = _snapshotter(tree)
        snap = await snapshotter.capture(page)
        assert snapshotter.preceding_matches(snap.id_to_node["1_1"]) == 0
        assert snapshotter.preceding_matches(snap.id_to_node["1_3"]) == 1

    async def test_preceding_matches_unnamed_counts_all_of_role(self, page):
        tree = ax_node(
            "RootWebArea",
            children=[ax_node("button", "OK"), ax_node("button", ""), ax_node("button", "Cancel"), ax_node("button")],
        )
        snapshotter, _ = _snapshotter(tree)
        snap = await snapshotter.capture(page)
        assert snapshotter.preceding_matches(snap.id_to_node["1_2"]) == 1
        assert snapshotter.preceding_matches(snap.id_to_node["1_4"]) == 3
        assert snapshotter.preceding_matches(snap.id_to_node["1_3"]) == 0


# ── CDP conversion & pruning ─────────────────────────────────────────


class TestCdpConversion:
    def test_flat_nodes_to_tree(self):
        nodes = [
            {"nodeId": "1", "role": {"value": "RootWebArea"}, "name": {"value": "Page"}, "childIds": ["2", "3"]},
            {
                "nodeId": "2",
                "role": {"value": "textbox"},
                "name": {"value": "Email"},
                "backendDOMNodeId": 42,
                "properties": [
                    {"name": "focused", "value": {"type": "boolean", "value": True}},
                    {"name": "value", "value": {"type": "string", "value": "a@b.c"}},
                ],
            },
            {"nodeId": "3", "role": {"value": "button"}, "name": {"value": "Go"}},
        ]
        tree = cdp_ax_nodes_to_tree(nodes)
        assert tree["role"] == "RootWebArea"
        email = tree["children"][0]
        assert email["backendDOMNodeId"] == 42
        assert email["value"] == "a@b.c"
        assert email["properties"] == {"focused": True}
        assert tree["children"][1]["name"] == "Go"

    def test_empty_nodes(self):
        assert cdp_ax_nodes_to_tree([]) is None

    def test_unknown_child_ids_ignored(self):
        tree = cdp_ax_nodes_to_tree([{"nodeId": "1", "role": {"value": "RootWebArea"}, "childIds": ["9"]}])
        assert tree["children"] == []


class TestPrune:
    def test_hoists_children_of_unnamed_generic(self):
        tree = ax_node(
            "RootWebArea",
            children=[ax_node("generic", children=[ax_node("button", "A"), ax_node("generic", "Named")])],
        )
        pruned = prune_uninteresting(tree)
        assert [(c["role"], c["name"]) for c in pruned["children"]] == [("button", "A"), ("generic", "Named")]

    def test_drops_inline_text_boxes_and_ignored(self):
        ignored = ax_node("paragraph", children=[ax_node("link", "L")])
        ignored["ignored"] = True
        tree = ax_node(
            "RootWebArea",
            children=[ax_node("StaticText", "hi", children=[ax_node("InlineTextBox", "hi")]), ignored],
        )
        pruned = prune_uninteresting(tree)
        assert [c["role"] for c in pruned["children"]] == ["StaticText", "link"]
        assert pruned["children"][0]["children"] == []

    def test_input_not_mutated(self):
        tree = ax_node("RootWebArea", children=[ax_node("generic", children=[ax_node("button", "A")])])
        prune_uninteresting(tree)
        assert tree["children"][0]["role"] == "generic"

    def test_none(self):
        assert prune_uninteresting(None) is None


# ── Rendering ────────────────────────────────────────────────────────


class TestFormatSnapshot:
    def test_lines_and_indentation(self):
        snap = build_snapshot(_form_tree(), 3)
        lines = format_snapshot(snap).splitlines()
        assert lines[0] == 'uid=3_0 RootWebArea "Shop"'
        assert lines[1] == '  uid=3_1 form "Order"'
        assert lines[3] == '      uid=3_3 option "Red" value="Red"'
        assert lines[5] == '  uid=3_5 link "Help"'

    def test_flags_and_selection(self):
        node = ax_node("textbox", "Email")
        node["properties"] = {"focused": True, "disabled": False}
        snap = build_snapshot(node, 1)
        snap.selected_address = "1_0"
        assert format_snapshot(snap) == 'uid=1_0 textbox "Email" focused [selected]'
