# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagewatch.wait_for: budgeted quiescence after an action."""

from __future__ import annotations

import asyncio
import time

import pytest

from pagewatch.config import WaitConfig
from pagewatch.errors import PageClosedError
from pagewatch.wait_for import ActionSynchronizer
from tests._fakes import FakeRequest

# ── Helpers ──────────────────────────────────────────────────────────

_FAST = WaitConfig(base_timeout_ms=2_000, expect_navigation_ms=5, stable_dom_quiet_ms=5)


async def _hang(*_args, **_kwargs):
    await asyncio.Event().wait()


async def _noop():
    return None


# ── Budget ───────────────────────────────────────────────────────────


class TestBudget:
    def test_budget_scales_with_multipliers(self, page):
        sync = ActionSynchronizer(page, cpu_multiplier=4, network_multiplier=10)
        assert sync.budget_ms == 3_000 * 10 * 4

    def test_cpu_scales_navigation_window_and_dom_quiet(self, page):
        sync = ActionSynchronizer(page, cpu_multiplier=4)
        assert sync.expect_navigation_ms == 400
        assert sync.stable_dom_quiet_ms == 400

    def test_unthrottled(self, page):
        assert ActionSynchronizer(page).budget_ms == 3_000


# ── Outcomes ─────────────────────────────────────────────────────────


class TestWaitForEventsAfterAction:
    async def test_quiet_page_returns_before_budget(self, page):
        sync = ActionSynchronizer(page, cpu_multiplier=4, network_multiplier=10)
        start = time.monotonic()
        outcome = await sync.wait_for_events_after_action(_noop)
        assert outcome.settled
        assert outcome.reason == "quiet"
        assert not outcome.navigated
        assert outcome.budget_ms == 120_000
        assert time.monotonic() - start < 5

    async def test_budget_exhausted_is_reported_not_raised(self, page):
        page.evaluate.side_effect = _hang
        config = WaitConfig(base_timeout_ms=1, expect_navigation_ms=1, stable_dom_quiet_ms=1)
        sync = ActionSynchronizer(page, cpu_multiplier=4, network_multiplier=10, config=config)

        outcome = await sync.wait_for_events_after_action(_noop)

        assert not outcome.settled
        assert outcome.reason == "timeout"
        assert outcome.budget_ms == 40

    async def test_dom_observer_timeout_is_not_settled(self, page):
        page.evaluate.return_value = {"reason": "timeout", "mutations": 120, "waited_ms": 2000}
        outcome = await ActionSynchronizer(page, config=_FAST).wait_for_events_after_action(_noop)
        assert outcome.reason == "timeout"
        assert not outcome.settled

    async def test_waits_for_navigation_load(self, page):
        loop = asyncio.get_running_loop()
        request = FakeRequest("https://example.com/next", frame=page.main_frame, navigation=True)

        async def click():
            page.emit("request", request)
            loop.call_later(0.02, page.emit, "framenavigated", page.main_frame)
            loop.call_later(0.03, page.emit, "requestfinished", request)
            loop.call_later(0.05, page.emit, "load", page)

        outcome = await ActionSynchronizer(page, config=_FAST).wait_for_events_after_action(click)

        assert outcome.settled
        assert outcome.navigated
        assert outcome.stages["navigation"] >= 40

    async def test_failed_navigation_does_not_wait_for_load(self, page):
        request = FakeRequest("https://example.com/404", frame=page.main_frame, navigation=True)

        async def click():
            page.emit("request", request)
            page.emit("requestfailed", request)

        outcome = await ActionSynchronizer(page, config=_FAST).wait_for_events_after_action(click)
        assert outcome.settled

    async def test_waits_for_in_flight_requests(self, page):
        loop = asyncio.get_running_loop()
        xhr = FakeRequest("https://example.com/api")

        async def click():
            page.emit("request", xhr)
            loop.call_later(0.05, page.emit, "requestfinished", xhr)

        outcome = await ActionSynchronizer(page, config=_FAST).wait_for_events_after_action(click)
        assert outcome.settled
        assert outcome.stages["network"] >= 40

    async def test_action_error_propagates_and_releases_listeners(self, page):
        sync = ActionSynchronizer(page, config=_FAST)

        async def broken():
            raise ValueError("click failed")

        with pytest.raises(ValueError, match="click failed"):
            await sync.wait_for_events_after_action(broken)
        assert sync.listener_count == 0
        assert page.listener_count() == 0

    async def test_page_closed_mid_wait(self, page):
        page.evaluate.side_effect = _hang
        sync = ActionSynchronizer(page, config=_FAST)
        asyncio.get_running_loop().call_later(0.02, page.emit, "close", page)

        with pytest.raises(PageClosedError):
            await sync.wait_for_events_after_action(_noop)
        assert page.listener_count() == 0

    async def test_abort_resolves_wait(self, page):
        page.evaluate.side_effect = _hang
        sync = ActionSynchronizer(page, config=_FAST)
        asyncio.get_running_loop().call_later(0.02, sync.abort)

        outcome = await sync.wait_for_events_after_action(_noop)
        assert outcome.reason == "aborted"
        assert not outcome.settled

    async def test_evaluate_failure_skips_dom_check(self, page):
        page.evaluate.side_effect = RuntimeError("Execution context was destroyed")
        outcome = await ActionSynchronizer(page, config=_FAST).wait_for_events_after_action(_noop)
        assert outcome.settled

    async def test_listeners_released_after_success(self, page):
        sync = ActionSynchronizer(page, config=_FAST)
        await sync.wait_for_events_after_action(_noop)
        assert sync.listener_count == 0
        assert page.listener_count() == 0
