# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Run an action, then wait (best effort) for the page to go quiet.

Quiescence means: a navigation started by the action has loaded, no
request is in flight, and the DOM saw no mutation for a short quiet
period. All of it must happen within one budget::

    budget = base_timeout × cpu_multiplier × network_multiplier

Running out of budget is reported in :class:`WaitOutcome`, never raised:
the action itself already completed. Only a failing action or the page
closing mid-wait raise.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import Frame, Page, Request

from .config import WaitConfig
from .errors import PageClosedError
from .events import PageEvent, SubscriptionSet, is_main_frame_navigation
from .wait_timer import WaitTimer

logger = logging.getLogger(__name__)

_DOM_SETTLE_JS = """([quietMs, maxMs]) => new Promise(resolve => {
  const target = document.body || document.documentElement;
  let mutations = 0;
  let quietTimer = null;
  let maxTimer = null;
  const start = performance.now();

  const finish = (reason) => {
    observer.disconnect();
    if (quietTimer) clearTimeout(quietTimer);
    if (maxTimer) clearTimeout(maxTimer);
    resolve({
      waited_ms: Math.round(performance.now() - start),
      mutations: mutations,
      reason: reason
    });
  };

  const resetQuiet = () => {
    if (quietTimer) clearTimeout(quietTimer);
    quietTimer = setTimeout(() => finish('quiet'), quietMs);
  };

  const observer = new MutationObserver((records) => {
    mutations += records.length;
    resetQuiet();
  });

  observer.observe(target, {
    childList: true,
    subtree: true,
    attributes: true,
    characterData: true
  });

  resetQuiet();
  maxTimer = setTimeout(() => finish('timeout'), maxMs);
})"""


@dataclass(frozen=True, slots=True)
class WaitOutcome:
    """Result of waiting for quiescence after an action."""

    settled: bool
    reason: str  # "quiet" | "timeout" | "aborted"
    navigated: bool
    budget_ms: float
    waited_ms: float
    stages: dict[str, float] = field(default_factory=dict)


class _Aborted(Exception):
    pass


class ActionSynchronizer:
    """One-shot synchronizer bound to a page and its throttling multipliers."""

    def __init__(
        self,
        page: Page,
        cpu_multiplier: float = 1.0,
        network_multiplier: float = 1.0,
        config: WaitConfig | None = None,
    ) -> None:
        cfg = config or WaitConfig()
        self._page = page
        self.budget_ms = cfg.base_timeout_ms * cpu_multiplier * network_multiplier
        self.expect_navigation_ms = cfg.expect_navigation_ms * cpu_multiplier
        self.stable_dom_quiet_ms = cfg.stable_dom_quiet_ms * cpu_multiplier

        self._subs = SubscriptionSet()
        self._in_flight: set[Request] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._navigation_started = asyncio.Event()
        self._loaded = asyncio.Event()
        self._closed = asyncio.Event()
        self._aborted = asyncio.Event()
        self._navigated = False
        self._deadline = 0.0

    # ── Page signals ─────────────────────────────────────────────

    def _on_request(self, request: Request) -> None:
        self._in_flight.add(request)
        self._idle.clear()
        if is_main_frame_navigation(self._page, request):
            self._navigation_started.set()
            self._loaded.clear()

    def _on_request_done(self, request: Request) -> None:
        self._in_flight.discard(request)
        if not self._in_flight:
            self._idle.set()

    def _on_request_failed(self, request: Request) -> None:
        self._on_request_done(request)
        if is_main_frame_navigation(self._page, request):
            # failed navigations never fire "load"
            self._loaded.set()

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame.parent_frame is None:
            self._navigated = True

    def _attach(self) -> None:
        page = self._page
        self._subs.on(page, PageEvent.REQUEST, self._on_request)
        self._subs.on(page, PageEvent.REQUEST_FINISHED, self._on_request_done)
        self._subs.on(page, PageEvent.REQUEST_FAILED, self._on_request_failed)
        self._subs.on(page, PageEvent.FRAME_NAVIGATED, self._on_frame_navigated)
        self._subs.on(page, PageEvent.LOAD, lambda *_: self._loaded.set())
        self._subs.on(page, PageEvent.CLOSE, lambda *_: self._closed.set())

    @property
    def listener_count(self) -> int:
        return len(self._subs)

    def abort(self) -> None:
        """Resolve a running wait immediately (session teardown)."""
        self._aborted.set()

    # ── Waiting ──────────────────────────────────────────────────

    async def _race(self, aw: Awaitable[Any], timeout: float | None = None) -> Any:
        """Await *aw* unless the page closes, the wait is aborted or *timeout* (s) passes."""
        task = asyncio.ensure_future(aw)
        closed = asyncio.ensure_future(self._closed.wait())
        aborted = asyncio.ensure_future(self._aborted.wait())
        try:
            done, _pending = await asyncio.wait(
                {task, closed, aborted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            leftovers = [t for t in (task, closed, aborted) if not t.done()]
            for t in leftovers:
                t.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)
        if self._closed.is_set():
            raise PageClosedError("The page was closed while waiting for it to settle.")
        if self._aborted.is_set():
            raise _Aborted
        if task in done:
            return task.result()
        return None

    def _remaining_ms(self) -> float:
        return max(0.0, (self._deadline - asyncio.get_running_loop().time()) * 1000)

    async def _wait_for_stable_dom(self) -> dict | None:
        max_ms = max(self.stable_dom_quiet_ms, self._remaining_ms())
        try:
            return await self._page.evaluate(_DOM_SETTLE_JS, [self.stable_dom_quiet_ms, max_ms])
        except Exception:
            if self._page.is_closed():
                self._closed.set()
            logger.debug("DOM settle evaluation failed, skipping DOM check", exc_info=True)
            return None

    async def _wait_for_quiescence(self, timer: WaitTimer) -> str:
        timer.stage("navigation")
        if not self._navigation_started.is_set():
            await self._race(self._navigation_started.wait(), timeout=self.expect_navigation_ms / 1000)
        if self._navigation_started.is_set():
            await self._race(self._loaded.wait())

        timer.stage("network")
        await self._race(self._idle.wait())

        timer.stage("dom")
        dom = await self._race(self._wait_for_stable_dom())
        if dom is not None and dom.get("reason") == "timeout":
            return "timeout"
        return "quiet"

    async def wait_for_events_after_action(self, action: Callable[[], Awaitable[Any]]) -> WaitOutcome:
        """Run *action* and wait for quiescence within the budget."""
        timer = WaitTimer()
        self._attach()
        try:
            timer.stage("action")
            await action()

            self._deadline = asyncio.get_running_loop().time() + self.budget_ms / 1000
            try:
                async with asyncio.timeout(self.budget_ms / 1000):
                    reason = await self._wait_for_quiescence(timer)
            except TimeoutError:
                reason = "timeout"
            except _Aborted:
                reason = "aborted"
        finally:
            timer.finalize()
            self._subs.cancel_all()

        if reason != "quiet":
            logger.info(
                "Page not quiescent after action (reason=%s, budget=%.0fms, in_flight=%d)",
                reason,
                self.budget_ms,
                len(self._in_flight),
            )
        return WaitOutcome(
            settled=reason == "quiet",
            reason=reason,
            navigated=self._navigated or self._navigation_started.is_set(),
            budget_ms=self.budget_ms,
            waited_ms=timer.total_ms,
            stages=timer.elapsed_per_stage(),
        )
