# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import pagewatch  # noqa: F401
except ImportError:
    raise ImportError("pagewatch is not installed. Run: pip install -e '.[dev]'") from None

import pytest

from tests._fakes import FakeDriver, FakePage


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real browser launches in unit tests.

    Tests that need a launcher should patch ``pagewatch.browser.async_playwright``
    explicitly. Opt out with ``@pytest.mark.allow_real_browser``.
    """
    if "allow_real_browser" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError("Test tried to start Playwright. Patch 'pagewatch.browser.async_playwright' in your test.")

    monkeypatch.setattr("pagewatch.browser.async_playwright", _no_real_playwright)


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def driver(page) -> FakeDriver:
    return FakeDriver([page])
