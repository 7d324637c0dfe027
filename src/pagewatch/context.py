# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SessionContext: one browser session as seen by a controller.

Binds together the page list and selection, the network/console
collectors, the accessibility snapshotter, action synchronization and
per-page emulation overrides. Per-page state lives in explicit dicts
keyed by page and is dropped from the page's ``close`` hook, so callers
never clean up after closed pages.

Timeouts are never set directly: the selected page's default and
navigation timeouts are always derived from its CPU/network overrides
and recomputed whenever either changes or the selection moves.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from playwright.async_api import ConsoleMessage, Dialog, Locator, Page, Request

from . import artifacts
from .collectors import (
    ConsoleCollector,
    ConsolePayload,
    EventFilter,
    NetworkCollector,
    ResourceRecord,
    new_id_generator,
)
from .config import SessionConfig
from .devtools import DevToolsData, is_devtools_page, pair_devtools_windows, read_inspector_selection
from .driver import (
    DIAGNOSTIC_ISSUE_EVENT,
    DIAGNOSTIC_LEAK_EVENT,
    DIAGNOSTIC_WARNING_EVENT,
    DiagnosticsStatus,
    PlaywrightDriver,
)
from .emulation import EmulationRequest, GeolocationOptions, conditions_for_label, network_multiplier
from .errors import (
    ElementNotFoundError,
    LastPageError,
    NoDialogError,
    NoPageSelectedError,
    PageClosedError,
    UnknownPageError,
)
from .events import PageEvent, Subscription, SubscriptionSet, subscribe
from .snapshot import AccessibilitySnapshotter, Snapshot, SnapshotNode
from .wait_for import ActionSynchronizer, WaitOutcome

logger = logging.getLogger(__name__)

_BLANK_URLS = ("about:blank", "chrome://newtab/")

# ARIA roles Playwright's role selector understands.
_LOCATOR_ROLES = frozenset(
    """alert alertdialog application article banner blockquote button caption cell checkbox code
    columnheader combobox complementary contentinfo definition deletion dialog directory document
    emphasis feed figure form generic grid gridcell group heading img insertion link list listbox
    listitem log main marquee math menu menubar menuitem menuitemcheckbox menuitemradio meter
    navigation none note option paragraph presentation progressbar radio radiogroup region row
    rowgroup rowheader scrollbar search searchbox separator slider spinbutton status strong
    subscript superscript switch tab table tablist tabpanel term textbox time timer toolbar
    tooltip tree treegrid treeitem""".split()
)
_CDP_ROLE_ALIASES = {"image": "img"}


@dataclass
class PageOverrides:
    """Emulation state and pending dialog of one page."""

    network_conditions: str | None = None
    cpu_throttling_rate: float = 1.0
    geolocation: GeolocationOptions | None = None
    dialog: Dialog | None = None


class SessionContext:
    """Unified session API over a :class:`PlaywrightDriver`."""

    def __init__(
        self,
        driver: PlaywrightDriver,
        config: SessionConfig | None = None,
        *,
        network_filter: EventFilter | None = None,
        console_filter: EventFilter | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or SessionConfig()

        ids = new_id_generator()
        self._network = NetworkCollector(
            event_filter=network_filter, id_generator=ids, max_navigations=self._config.max_navigations
        )
        self._console = ConsoleCollector(
            event_filter=console_filter, id_generator=ids, max_navigations=self._config.max_navigations
        )
        self._snapshotter = AccessibilitySnapshotter(driver)

        self._pages: list[Page] = []
        self._selected: Page | None = None
        self._devtools_pages: dict[Page, Page] = {}
        self._overrides: dict[Page, PageOverrides] = {}
        self._page_subs: dict[Page, SubscriptionSet] = {}
        self._diagnostics: dict[Page, DiagnosticsStatus] = {}
        self._diagnostics_pending: dict[Page, asyncio.Task[DiagnosticsStatus]] = {}
        self._dialog_sub: Subscription | None = None
        self._dialog_page: Page | None = None
        self._page_created_sub: Subscription | None = None
        self._active_syncs: set[ActionSynchronizer] = set()
        self._background: set[asyncio.Task] = set()

        self._trace_results: list[Any] = []
        self._running_trace = False

    @classmethod
    async def create(
        cls,
        driver: PlaywrightDriver,
        config: SessionConfig | None = None,
        *,
        network_filter: EventFilter | None = None,
        console_filter: EventFilter | None = None,
    ) -> SessionContext:
        ctx = cls(driver, config, network_filter=network_filter, console_filter=console_filter)
        await ctx._init()
        return ctx

    async def _init(self) -> None:
        pages = await self.refresh_pages()
        self._page_created_sub = self._driver.on_page_created(self._on_page_created)
        for page in pages:
            await self.attach_diagnostics(page)
        logger.info("Session ready with %d page(s)", len(pages))

    def dispose(self) -> None:
        """Abort running waits and detach every listener."""
        for sync in list(self._active_syncs):
            sync.abort()
        self._network.dispose()
        self._console.dispose()
        for task in list(self._diagnostics_pending.values()):
            task.cancel()
        for subs in self._page_subs.values():
            subs.cancel_all()
        self._page_subs.clear()
        if self._dialog_sub is not None:
            self._dialog_sub.cancel()
            self._dialog_sub = None
        if self._page_created_sub is not None:
            self._page_created_sub.cancel()
            self._page_created_sub = None

    # ── Page lifecycle ───────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _track_page(self, page: Page) -> None:
        if page in self._page_subs:
            return
        subs = SubscriptionSet()
        subs.on(page, PageEvent.CLOSE, lambda *_: self._on_page_closed(page))
        self._page_subs[page] = subs
        self._network.add_page(page)
        self._console.add_page(page)

    async def _on_page_created(self, page: Page) -> None:
        if page.is_closed():
            return
        self._track_page(page)
        if self._config.devtools_debugging or not is_devtools_page(page):
            if page not in self._pages:
                self._pages.append(page)
        await self.attach_diagnostics(page)

    def _on_page_closed(self, page: Page) -> None:
        subs = self._page_subs.pop(page, None)
        if subs is None:
            return
        subs.cancel_all()
        self._network.remove_page(page)
        self._console.remove_page(page)
        self._overrides.pop(page, None)
        self._diagnostics.pop(page, None)
        self._devtools_pages.pop(page, None)
        if page in self._pages:
            self._pages.remove(page)
        if self._dialog_page is page:
            self._dialog_page = None
        if self._selected is page and self._dialog_sub is not None:
            self._dialog_sub.cancel()
            self._dialog_sub = None
        self._spawn(self._driver.release_page(page))
        logger.debug("Dropped state for closed page")

    async def refresh_pages(self) -> list[Page]:
        """Re-enumerate pages from the driver and repair the selection."""
        all_pages = self._driver.pages(self._config.include_all_pages)
        self._pages = [
            p for p in all_pages if not p.is_closed() and (self._config.devtools_debugging or not is_devtools_page(p))
        ]
        for page in self._pages:
            self._track_page(page)
        if (self._selected is None or self._selected not in self._pages) and self._pages:
            self.select_page(self._pages[0])
        self._devtools_pages = await pair_devtools_windows(self._pages, all_pages)
        return self._pages

    @property
    def pages(self) -> list[Page]:
        return list(self._pages)

    def get_page_by_index(self, idx: int) -> Page:
        if idx < 0 or idx >= len(self._pages):
            raise UnknownPageError(f"No page found at index {idx}")
        return self._pages[idx]

    def devtools_page_for(self, page: Page) -> Page | None:
        return self._devtools_pages.get(page)

    async def new_page(self) -> Page:
        """Select a blank page, reusing an existing one when possible."""
        existing = self._driver.pages(self._config.include_all_pages)
        page = next((p for p in existing if p.url in _BLANK_URLS and not p.is_closed()), None)
        if page is not None:
            logger.debug("Reusing existing blank page")
        else:
            page = await self._driver.new_page()
        self._track_page(page)
        await self.attach_diagnostics(page)
        await self.refresh_pages()
        self.select_page(page)
        return page

    async def close_page(self, idx: int) -> None:
        if len(self._pages) == 1:
            raise LastPageError("The last open page cannot be closed. A session keeps at least one page.")
        page = self.get_page_by_index(idx)
        await self._driver.close_page(page)
        self._on_page_closed(page)

    # ── Selection ────────────────────────────────────────────────

    @property
    def selected_page(self) -> Page:
        page = self._selected
        if page is None:
            raise NoPageSelectedError("No page selected")
        if page.is_closed():
            raise PageClosedError("The selected page has been closed. Refresh the page list to see open pages.")
        return page

    def is_page_selected(self, page: Page) -> bool:
        return self._selected is page

    def select_page(self, page: Page) -> None:
        if self._dialog_sub is not None:
            self._dialog_sub.cancel()
        self._selected = page
        self._dialog_sub = subscribe(page, PageEvent.DIALOG, lambda dialog: self._on_dialog(page, dialog))
        self._update_selected_page_timeouts()

    # ── Timeouts (derived) ───────────────────────────────────────

    @property
    def default_timeout_ms(self) -> float:
        return self._config.default_timeout_ms * self.cpu_throttling_rate

    @property
    def navigation_timeout_ms(self) -> float:
        return self._config.navigation_timeout_ms * network_multiplier(self.network_conditions)

    def _update_selected_page_timeouts(self) -> None:
        page = self.selected_page
        page.set_default_timeout(self.default_timeout_ms)
        page.set_default_navigation_timeout(self.navigation_timeout_ms)

    # ── Overrides ────────────────────────────────────────────────

    def _overrides_for(self, page: Page) -> PageOverrides:
        overrides = self._overrides.get(page)
        if overrides is None:
            overrides = self._overrides[page] = PageOverrides()
        return overrides

    def overrides_for(self, page: Page) -> PageOverrides | None:
        return self._overrides.get(page)

    @property
    def network_conditions(self) -> str | None:
        overrides = self._overrides.get(self.selected_page)
        return overrides.network_conditions if overrides else None

    def set_network_conditions(self, conditions: str | None) -> None:
        page = self.selected_page
        if conditions is None:
            if page in self._overrides:
                self._overrides[page].network_conditions = None
        else:
            self._overrides_for(page).network_conditions = conditions
        self._update_selected_page_timeouts()

    @property
    def cpu_throttling_rate(self) -> float:
        overrides = self._overrides.get(self.selected_page)
        return overrides.cpu_throttling_rate if overrides else 1.0

    def set_cpu_throttling_rate(self, rate: float) -> None:
        self._overrides_for(self.selected_page).cpu_throttling_rate = rate
        self._update_selected_page_timeouts()

    @property
    def geolocation(self) -> GeolocationOptions | None:
        overrides = self._overrides.get(self.selected_page)
        return overrides.geolocation if overrides else None

    def set_geolocation(self, geolocation: GeolocationOptions | None) -> None:
        page = self.selected_page
        if geolocation is None:
            if page in self._overrides:
                self._overrides[page].geolocation = None
        else:
            self._overrides_for(page).geolocation = geolocation

    async def emulate(self, request: EmulationRequest | dict) -> None:
        """Apply emulation to the selected page through the driver, then record it."""
        if not isinstance(request, EmulationRequest):
            request = EmulationRequest.model_validate(request)
        page = self.selected_page

        if request.network_conditions is not None:
            conditions = conditions_for_label(request.network_conditions)
            await self._driver.set_network_conditions(page, conditions)
            self.set_network_conditions(None if conditions is None else request.network_conditions)

        if request.cpu_throttling_rate is not None:
            await self._driver.set_cpu_throttling_rate(page, request.cpu_throttling_rate)
            self.set_cpu_throttling_rate(request.cpu_throttling_rate)

        if request.geolocation is not None or request.clears_geolocation:
            logger.warning("Geolocation emulation uses Emulation CDP commands that anti-bot systems may detect")
            await self._driver.set_geolocation(page, request.geolocation)
            self.set_geolocation(request.geolocation)

    # ── Dialogs ──────────────────────────────────────────────────

    def _on_dialog(self, page: Page, dialog: Dialog) -> None:
        if self._dialog_page is not None and self._dialog_page in self._overrides:
            self._overrides[self._dialog_page].dialog = None
        self._overrides_for(page).dialog = dialog
        self._dialog_page = page
        logger.info("Dialog opened: type=%s message=%.100s", dialog.type, dialog.message)

    @property
    def dialog(self) -> Dialog | None:
        if self._dialog_page is None:
            return None
        overrides = self._overrides.get(self._dialog_page)
        return overrides.dialog if overrides else None

    def clear_dialog(self) -> None:
        if self._dialog_page is not None and self._dialog_page in self._overrides:
            self._overrides[self._dialog_page].dialog = None
        self._dialog_page = None

    async def handle_dialog(self, accept: bool, prompt_text: str | None = None) -> Dialog:
        dialog = self.dialog
        if dialog is None:
            raise NoDialogError("No open dialog found")
        try:
            if accept and prompt_text is not None:
                await dialog.accept(prompt_text)
            elif accept:
                await dialog.accept()
            else:
                await dialog.dismiss()
        finally:
            self.clear_dialog()
        return dialog

    # ── Diagnostics (optional capability) ────────────────────────

    def _on_diagnostic_warning(self, params: dict) -> None:
        logger.warning("Rebrowser warning: this CDP command may increase detection risk: %s", params)

    def _on_diagnostic_leak(self, _params: dict) -> None:
        logger.warning("CDP leak detected: Runtime.consoleAPICalled received without Runtime usage")

    async def attach_diagnostics(self, page: Page) -> DiagnosticsStatus:
        """Attach vendor diagnostic listeners to *page*. Never raises.

        Concurrent callers for the same page share one attach, so the
        listeners are registered once per page.
        """
        if page in self._diagnostics:
            return self._diagnostics[page]
        pending = self._diagnostics_pending.get(page)
        if pending is None:
            pending = asyncio.ensure_future(self._attach_diagnostics(page))
            self._diagnostics_pending[page] = pending
            pending.add_done_callback(lambda _: self._diagnostics_pending.pop(page, None))
        return await asyncio.shield(pending)

    async def _attach_diagnostics(self, page: Page) -> DiagnosticsStatus:
        if not self._config.diagnostics:
            status = DiagnosticsStatus.DISABLED
        elif not self._driver.supports_diagnostics(page):
            logger.info("Diagnostics not available for this driver backend")
            status = DiagnosticsStatus.UNSUPPORTED
        else:
            status = await self._subscribe_diagnostics(page)
        if page in self._page_subs:
            self._diagnostics[page] = status
        return status

    async def _subscribe_diagnostics(self, page: Page) -> DiagnosticsStatus:
        subs = self._page_subs.get(page)
        if subs is None:
            return DiagnosticsStatus.UNSUPPORTED
        try:
            subs.add(await self._driver.subscribe_cdp(page, DIAGNOSTIC_WARNING_EVENT, self._on_diagnostic_warning))
            subs.add(await self._driver.subscribe_cdp(page, DIAGNOSTIC_LEAK_EVENT, self._on_diagnostic_leak))
            subs.add(
                await self._driver.subscribe_cdp(
                    page, DIAGNOSTIC_ISSUE_EVENT, lambda params: self._console.collect_issue(page, params)
                )
            )
            await self._driver.send(page, "Audits.enable")
        except Exception as exc:
            logger.info("Diagnostics monitoring not available: %s", exc)
            return DiagnosticsStatus.UNSUPPORTED
        if self._page_subs.get(page) is not subs:
            # page closed while subscribing
            subs.cancel_all()
            return DiagnosticsStatus.UNSUPPORTED
        logger.info("Diagnostics monitoring enabled for %s", page.url)
        return DiagnosticsStatus.ENABLED

    def diagnostics_status(self, page: Page) -> DiagnosticsStatus | None:
        return self._diagnostics.get(page)

    async def finish_diagnostics_run(self) -> DiagnosticsStatus:
        pages = self._driver.pages(self._config.include_all_pages)
        if not pages:
            return DiagnosticsStatus.UNSUPPORTED
        return await self._driver.finish_diagnostics_run(pages[0])

    # ── Resources ────────────────────────────────────────────────

    def get_network_requests(self, include_preserved: bool = False) -> list[ResourceRecord[Request]]:
        return self._network.get_data(self.selected_page, include_preserved)

    def get_network_request_by_id(self, request_id: int) -> ResourceRecord[Request]:
        return self._network.get_by_id(self.selected_page, request_id)

    def get_network_request_stable_id(self, request: ResourceRecord[Request] | Request) -> int:
        return self._network.get_id_for_resource(request)

    def get_console_data(self, include_preserved: bool = False) -> list[ResourceRecord[ConsolePayload]]:
        return self._console.get_data(self.selected_page, include_preserved)

    def get_console_message_by_id(self, message_id: int) -> ResourceRecord[ConsolePayload]:
        return self._console.get_by_id(self.selected_page, message_id)

    def get_console_message_stable_id(self, message: ResourceRecord[ConsolePayload] | ConsoleMessage) -> int:
        return self._console.get_id_for_resource(message)

    def resolve_inspector_request(self, data: DevToolsData) -> int | None:
        """Stable ID of the request selected in a paired DevTools window."""
        if not data.request_url:
            logger.debug("No network request selected in DevTools")
            return None
        record = self._network.find_by_url(self.selected_page, data.request_url)
        if record is None:
            logger.debug("No network request for %s", data.request_url)
            return None
        return self._network.get_id_for_resource(record)

    # ── Snapshots ────────────────────────────────────────────────

    async def get_devtools_data(self) -> DevToolsData:
        devtools_page = self._devtools_pages.get(self.selected_page)
        if devtools_page is None or devtools_page.is_closed():
            return DevToolsData()
        return await read_inspector_selection(devtools_page)

    async def capture_snapshot(self, verbose: bool = False, devtools_data: DevToolsData | None = None) -> Snapshot | None:
        page = self.selected_page
        data = devtools_data if devtools_data is not None else await self.get_devtools_data()
        return await self._snapshotter.capture(page, verbose, selected_backend_id=data.cdp_backend_node_id)

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshotter.snapshot

    def get_node_by_address(self, address: str) -> SnapshotNode | None:
        return self._snapshotter.resolve_address(address)

    def resolve_backend_node_id(self, backend_node_id: int) -> str | None:
        return self._snapshotter.resolve_backend_id(backend_node_id)

    async def get_locator_by_address(self, address: str) -> Locator:
        """Live locator for a snapshot node of the selected page."""
        node = self._snapshotter.resolve_address(address)
        if node is None:
            raise ElementNotFoundError("No such element found in the snapshot")
        role = _CDP_ROLE_ALIASES.get(node.role, node.role)
        if role not in _LOCATOR_ROLES:
            raise ElementNotFoundError(f"Element with role {node.role!r} cannot be located on the page")
        page = self.selected_page
        locator = page.get_by_role(role, name=node.name, exact=True) if node.name else page.get_by_role(role)
        locator = locator.nth(self._snapshotter.preceding_matches(node))
        if await locator.count() == 0:
            raise ElementNotFoundError("No such element found on the page")
        return locator

    # ── Synchronization ──────────────────────────────────────────

    def get_synchronizer(self, page: Page, cpu_multiplier: float, network_multiplier_: float) -> ActionSynchronizer:
        return ActionSynchronizer(page, cpu_multiplier, network_multiplier_, self._config.wait)

    async def wait_for_events_after_action(self, action: Callable[[], Awaitable[Any]]) -> WaitOutcome:
        page = self.selected_page
        sync = self.get_synchronizer(page, self.cpu_throttling_rate, network_multiplier(self.network_conditions))
        self._active_syncs.add(sync)
        try:
            with structlog.contextvars.bound_contextvars(page_url=page.url):
                return await sync.wait_for_events_after_action(action)
        finally:
            self._active_syncs.discard(sync)

    async def wait_for_text(self, text: str, timeout_ms: float | None = None) -> Locator:
        """First element (any frame) whose text or label matches *text*."""
        page = self.selected_page
        timeout = timeout_ms if timeout_ms is not None else self.default_timeout_ms
        candidates: list[Locator] = []
        for frame in page.frames:
            candidates.append(frame.get_by_text(text).first)
            candidates.append(frame.get_by_label(text).first)

        tasks = {asyncio.ensure_future(loc.wait_for(timeout=timeout)): loc for loc in candidates}
        pending = set(tasks)
        last_exc: BaseException | None = None
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if exc is None:
                        return tasks[task]
                    last_exc = exc
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if last_exc is None:
            raise ElementNotFoundError(f"No frame to search for text {text!r}")
        raise last_exc

    # ── Traces ───────────────────────────────────────────────────

    def set_is_running_performance_trace(self, running: bool) -> None:
        self._running_trace = running

    def is_running_performance_trace(self) -> bool:
        return self._running_trace

    def store_trace_recording(self, result: Any) -> None:
        self._trace_results.append(result)

    def recorded_traces(self) -> list[Any]:
        return list(self._trace_results)

    # ── Artifacts ────────────────────────────────────────────────

    async def save_temporary_file(self, data: bytes, mime_type: str) -> Path:
        return await artifacts.save_temporary_file(data, mime_type, prefix=self._config.artifact_prefix)

    async def save_file(self, data: bytes, filename: str | Path) -> Path:
        return await artifacts.save_file(data, filename)
