# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Playwright-backed browser driver.

The only place that talks CDP. Everything the session core asks of the
browser (page enumeration, accessibility trees, emulation, closing pages,
the optional vendor diagnostic channel) goes through :class:`PlaywrightDriver`
so the core can be exercised against a fake in tests.

CDP sessions are cached per page and dropped via :meth:`release_page`
when the page closes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from enum import StrEnum
from typing import Any

from playwright.async_api import BrowserContext, CDPSession, Page

from .emulation import GeolocationOptions, NetworkConditions
from .events import Subscription, subscribe
from .snapshot import cdp_ax_nodes_to_tree, prune_uninteresting

logger = logging.getLogger(__name__)

_CDP_AX_TREE_TIMEOUT = 10.0  # seconds

# Internal browser pages that are never exposed as session pages.
_IGNORED_PREFIXES = ("chrome://", "chrome-extension://", "chrome-untrusted://")
_ALLOWED_INTERNAL = ("chrome://newtab/", "chrome://inspect")

# Vendor diagnostic channel (managed remote browsers patched against CDP leak detection).
DIAGNOSTIC_WARNING_EVENT = "Rebrowser.warning"
DIAGNOSTIC_LEAK_EVENT = "Runtime.consoleAPICalled"
DIAGNOSTIC_ISSUE_EVENT = "Audits.issueAdded"


class DiagnosticsStatus(StrEnum):
    """Outcome of probing an optional diagnostic capability."""

    ENABLED = "enabled"
    UNSUPPORTED = "unsupported"
    DISABLED = "disabled"


def _is_exposed(page: Page) -> bool:
    url = page.url
    if url.startswith(_ALLOWED_INTERNAL):
        return True
    return not url.startswith(_IGNORED_PREFIXES)


def _browser_name(context: BrowserContext) -> str:
    browser = context.browser
    if browser is None:
        # persistent contexts have no Browser object; only Chromium is launched that way here
        return "chromium"
    return browser.browser_type.name


class PlaywrightDriver:
    """Driver boundary over one Playwright ``BrowserContext``."""

    def __init__(self, context: BrowserContext, *, browser_name: str | None = None) -> None:
        self._context = context
        self._browser_name = browser_name or _browser_name(context)
        self._cdp_sessions: dict[Page, CDPSession] = {}
        self._cdp_pending: dict[Page, asyncio.Task[CDPSession]] = {}

    @property
    def context(self) -> BrowserContext:
        return self._context

    # ── Pages ────────────────────────────────────────────────────

    def pages(self, include_all: bool = False) -> list[Page]:
        pages = list(self._context.pages)
        if include_all:
            return pages
        return [p for p in pages if _is_exposed(p)]

    async def new_page(self) -> Page:
        return await self._context.new_page()

    def on_page_created(self, handler: Callable[[Page], Any]) -> Subscription:
        return subscribe(self._context, "page", handler)

    async def close_page(self, page: Page) -> None:
        await page.close(run_before_unload=False)

    async def release_page(self, page: Page) -> None:
        """Forget the page's CDP session (call on page close)."""
        cdp = self._cdp_sessions.pop(page, None)
        if cdp is not None:
            with suppress(Exception):
                await cdp.detach()

    async def close(self) -> None:
        for page in list(self._cdp_sessions):
            await self.release_page(page)

    # ── CDP ──────────────────────────────────────────────────────

    @property
    def supports_cdp(self) -> bool:
        return self._browser_name == "chromium"

    async def cdp_session(self, page: Page) -> CDPSession:
        cdp = self._cdp_sessions.get(page)
        if cdp is not None:
            return cdp
        # concurrent callers share one new_cdp_session for the page
        pending = self._cdp_pending.get(page)
        if pending is None:
            pending = asyncio.ensure_future(self._open_cdp_session(page))
            self._cdp_pending[page] = pending
            pending.add_done_callback(lambda _: self._cdp_pending.pop(page, None))
        return await asyncio.shield(pending)

    async def _open_cdp_session(self, page: Page) -> CDPSession:
        cdp = await self._context.new_cdp_session(page)
        self._cdp_sessions[page] = cdp
        return cdp

    async def send(self, page: Page, method: str, params: dict | None = None) -> dict:
        cdp = await self.cdp_session(page)
        return await cdp.send(method, params or {})

    async def subscribe_cdp(self, page: Page, event: str, handler: Callable[[dict], Any]) -> Subscription:
        cdp = await self.cdp_session(page)
        return subscribe(cdp, event, handler)

    # ── Accessibility ────────────────────────────────────────────

    async def _fetch_ax_tree(self, page: Page, params: dict | None = None) -> dict | None:
        """``Accessibility.getFullAXTree`` with one reconnect on a stale session."""
        for attempt in range(2):
            cdp = await self.cdp_session(page)
            try:
                async with asyncio.timeout(_CDP_AX_TREE_TIMEOUT):
                    result = await cdp.send("Accessibility.getFullAXTree", params or {})
                return cdp_ax_nodes_to_tree(result.get("nodes", []))
            except Exception:
                if attempt == 0:
                    logger.warning("CDP session stale in capture_ax_tree, reconnecting")
                    with suppress(Exception, asyncio.CancelledError):
                        await asyncio.shield(cdp.detach())
                    self._cdp_sessions.pop(page, None)
                    continue
                raise
        return None  # unreachable; satisfies type checker

    async def _child_frame_ids(self, page: Page) -> list[str]:
        result = await self.send(page, "Page.getFrameTree")
        ids: list[str] = []
        stack = list(result.get("frameTree", {}).get("childFrames", []) or [])
        while stack:
            entry = stack.pop()
            frame_id = entry.get("frame", {}).get("id")
            if frame_id:
                ids.append(frame_id)
            stack.extend(entry.get("childFrames", []) or [])
        return ids

    async def _graft_iframes(self, page: Page, tree: dict) -> None:
        hosts: dict[int, dict] = {}
        stack = [tree]
        while stack:
            node = stack.pop()
            if node.get("backendDOMNodeId") is not None:
                hosts[node["backendDOMNodeId"]] = node
            stack.extend(node.get("children", []))

        for frame_id in await self._child_frame_ids(page):
            try:
                owner = await self.send(page, "DOM.getFrameOwner", {"frameId": frame_id})
                subtree = await self._fetch_ax_tree(page, {"frameId": frame_id})
            except Exception:
                # out-of-process iframes live in another CDP target
                logger.debug("Skipping iframe %s in accessibility capture", frame_id, exc_info=True)
                continue
            host = hosts.get(owner.get("backendNodeId"))
            if host is not None and subtree is not None:
                host["children"].append(subtree)

    async def capture_ax_tree(self, page: Page, *, include_iframes: bool, interesting_only: bool) -> dict | None:
        tree = await self._fetch_ax_tree(page)
        if tree is None:
            return None
        if include_iframes:
            await self._graft_iframes(page, tree)
        if interesting_only:
            tree = prune_uninteresting(tree)
        return tree

    # ── Emulation ────────────────────────────────────────────────

    async def set_network_conditions(self, page: Page, conditions: NetworkConditions | None) -> None:
        await self.send(page, "Network.enable")
        if conditions is None:
            params = {"offline": False, "latency": 0, "downloadThroughput": -1, "uploadThroughput": -1}
        else:
            params = conditions.to_cdp()
        await self.send(page, "Network.emulateNetworkConditions", params)

    async def set_cpu_throttling_rate(self, page: Page, rate: float) -> None:
        await self.send(page, "Emulation.setCPUThrottlingRate", {"rate": rate})

    async def set_geolocation(self, page: Page, geolocation: GeolocationOptions | None) -> None:
        if geolocation is None:
            await self.send(page, "Emulation.clearGeolocationOverride")
            return
        await self.send(
            page,
            "Emulation.setGeolocationOverride",
            {"latitude": geolocation.latitude, "longitude": geolocation.longitude, "accuracy": 100},
        )

    # ── Optional diagnostics ─────────────────────────────────────

    def supports_diagnostics(self, page: Page) -> bool:
        """Whether the vendor diagnostic channel can be attached to *page*."""
        return self.supports_cdp and not page.is_closed()

    async def finish_diagnostics_run(self, page: Page) -> DiagnosticsStatus:
        """Tell a managed remote browser the run is over. Never raises."""
        if not self.supports_diagnostics(page):
            return DiagnosticsStatus.UNSUPPORTED
        try:
            await self.send(page, "Rebrowser.finishRun")
        except Exception as exc:
            logger.info("Rebrowser.finishRun not available: %s", exc)
            return DiagnosticsStatus.UNSUPPORTED
        logger.info("Rebrowser.finishRun acknowledged")
        return DiagnosticsStatus.ENABLED
