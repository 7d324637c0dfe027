# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagewatch.devtools: DevTools window pairing and selection."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from pagewatch.devtools import (
    DevToolsData,
    extract_url_like_from_devtools_title,
    is_devtools_page,
    pair_devtools_windows,
    read_inspector_selection,
    urls_equal,
)


def _page(url: str, title: str = "") -> MagicMock:
    page = MagicMock()
    page.url = url
    page.title = AsyncMock(return_value=title)
    return page


class TestTitles:
    @pytest.mark.parametrize(
        "title,expected",
        [
            ("DevTools - example.com/path", "example.com/path"),
            ("DevTools - ", None),
            ("Example Domain", None),
            ("", None),
        ],
    )
    def test_extract(self, title, expected):
        assert extract_url_like_from_devtools_title(title) == expected

    @pytest.mark.parametrize(
        "a,b",
        [
            ("https://www.example.com/", "example.com"),
            ("http://example.com/a#top", "example.com/a"),
            ("https://example.com/a/", "https://example.com/a"),
        ],
    )
    def test_urls_equal(self, a, b):
        assert urls_equal(a, b)

    def test_urls_differ(self):
        assert not urls_equal("https://example.com/a", "https://example.com/b")


class TestPairing:
    async def test_pairs_by_title(self):
        inspected = _page("https://example.com/shop")
        other = _page("https://other.test/")
        devtools = _page("devtools://devtools/bundled/devtools_app.html", "DevTools - example.com/shop")

        pairs = await pair_devtools_windows([inspected, other], [inspected, other, devtools])

        assert pairs == {inspected: devtools}
        assert is_devtools_page(devtools)
        inspected.title.assert_not_awaited()

    async def test_title_failure_skipped(self):
        devtools = _page("devtools://devtools/x")
        devtools.title.side_effect = RuntimeError("Target closed")
        assert await pair_devtools_windows([_page("https://example.com/")], [devtools]) == {}


class TestInspectorSelection:
    async def test_reads_selection(self):
        devtools = _page("devtools://devtools/x")
        devtools.evaluate = AsyncMock(
            return_value={"cdpRequestId": "1000.5", "requestUrl": "https://example.com/api", "cdpBackendNodeId": 42}
        )
        data = await read_inspector_selection(devtools)
        assert data == DevToolsData(
            cdp_request_id="1000.5", request_url="https://example.com/api", cdp_backend_node_id=42
        )
        assert not data.empty

    async def test_failure_is_empty(self):
        devtools = _page("devtools://devtools/x")
        devtools.evaluate = AsyncMock(side_effect=RuntimeError("Execution context was destroyed"))
        assert (await read_inspector_selection(devtools)).empty

    async def test_non_dict_is_empty(self):
        devtools = _page("devtools://devtools/x")
        devtools.evaluate = AsyncMock(return_value=None)
        assert (await read_inspector_selection(devtools)) == DevToolsData()
