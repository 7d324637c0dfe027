# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Stable-ID registries over per-page event streams.

A collector subscribes to a page's events and turns every observed
payload (request, console message, page error, diagnostic issue) into a
:class:`ResourceRecord` carrying a session-wide, monotonically increasing
stable ID. Callers keep the integer and resolve it later, long after the
driver has forgotten the underlying event.

History is bucketed per main-frame navigation: the newest bucket is the
current page load, older buckets are "preserved" and only returned on
request. At most ``max_navigations`` buckets are kept per page.

Not thread-safe; all mutation happens on the event loop thread.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from playwright.async_api import ConsoleMessage, Frame, Page, Request

from .config import DEFAULT_MAX_NAVIGATIONS
from .errors import UnknownPageError, UnknownResourceError
from .events import PageEvent, SubscriptionSet, is_main_frame_navigation

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventFilter = Callable[[PageEvent, Any], bool]  # False → event dropped before ID assignment
IdGenerator = Callable[[], int]


def new_id_generator() -> IdGenerator:
    """Fresh monotonic ID source starting at 1."""
    return itertools.count(1).__next__


@dataclass(eq=False, slots=True)
class ResourceRecord(Generic[T]):
    """An observed payload, its owning page and its stable ID."""

    payload: T
    page: Page
    stable_id: int | None = None


@dataclass(eq=False, slots=True)
class PageErrorRecord:
    """Uncaught page error that did not arrive as an exception object."""

    message: str


@dataclass(eq=False, slots=True)
class DiagnosticIssue:
    """DevTools issue (CDP ``Audits.issueAdded``)."""

    code: str
    details: dict = field(default_factory=dict)

    @classmethod
    def from_cdp(cls, params: dict) -> DiagnosticIssue:
        issue = params.get("issue", {}) if isinstance(params, dict) else {}
        return cls(code=str(issue.get("code", "")), details=dict(issue.get("details", {}) or {}))


ConsolePayload = ConsoleMessage | BaseException | PageErrorRecord | DiagnosticIssue


class PageCollector(Generic[T]):
    """Generic stable-ID registry; subclasses choose which events to collect."""

    def __init__(
        self,
        *,
        event_filter: EventFilter | None = None,
        id_generator: IdGenerator | None = None,
        max_navigations: int = DEFAULT_MAX_NAVIGATIONS,
    ) -> None:
        self._filter = event_filter
        self._next_id = id_generator or new_id_generator()
        self._max_navigations = max(1, max_navigations)
        # newest navigation first
        self._storage: dict[Page, list[list[ResourceRecord[T]]]] = {}
        self._subs: dict[Page, SubscriptionSet] = {}
        self._by_id: dict[int, ResourceRecord[T]] = {}
        self._by_payload: dict[Any, ResourceRecord[T]] = {}

    # ── Page registration ────────────────────────────────────────

    def init(self, pages: list[Page]) -> None:
        for page in pages:
            self.add_page(page)

    def add_page(self, page: Page) -> None:
        """Start collecting for *page*. No-op if already tracked."""
        if page in self._storage:
            return
        self._storage[page] = [[]]
        subs = SubscriptionSet()
        subs.on(page, PageEvent.CLOSE, lambda *_: self.remove_page(page))
        subs.on(page, PageEvent.FRAME_NAVIGATED, lambda frame: self._on_frame_navigated(page, frame))
        self._subscribe(page, subs)
        self._subs[page] = subs

    def remove_page(self, page: Page) -> None:
        """Detach listeners and forget every record of *page*."""
        subs = self._subs.pop(page, None)
        if subs is not None:
            subs.cancel_all()
        navigations = self._storage.pop(page, None)
        if navigations is None:
            return
        for bucket in navigations:
            self._unindex(bucket)
        logger.debug("%s dropped page state (%d navigations)", type(self).__name__, len(navigations))

    def has_page(self, page: Page) -> bool:
        return page in self._storage

    def dispose(self) -> None:
        for page in list(self._storage):
            self.remove_page(page)

    def _subscribe(self, page: Page, subs: SubscriptionSet) -> None:
        raise NotImplementedError

    # ── Collection ───────────────────────────────────────────────

    def collect(self, page: Page, payload: T, event: PageEvent | None = None) -> ResourceRecord[T] | None:
        """Register *payload* for *page*. Returns None if the filter dropped it."""
        navigations = self._navigations(page)
        if self._filter is not None and event is not None and not self._filter(event, payload):
            return None
        record: ResourceRecord[T] = ResourceRecord(payload=payload, page=page)
        self._assign_id(record)
        navigations[0].append(record)
        return record

    def _assign_id(self, record: ResourceRecord[T]) -> int:
        if record.stable_id is None:
            record.stable_id = self._next_id()
        self._by_id[record.stable_id] = record
        with suppress(TypeError):
            self._by_payload[record.payload] = record
        return record.stable_id

    def _unindex(self, bucket: list[ResourceRecord[T]]) -> None:
        for record in bucket:
            if record.stable_id is not None:
                self._by_id.pop(record.stable_id, None)
            with suppress(TypeError):
                if self._by_payload.get(record.payload) is record:
                    del self._by_payload[record.payload]

    def _on_frame_navigated(self, page: Page, frame: Frame) -> None:
        if frame.parent_frame is not None or page not in self._storage:
            return
        self._split_after_navigation(page)

    def _split_after_navigation(self, page: Page) -> None:
        self._push_navigation(page, [])

    def _push_navigation(self, page: Page, bucket: list[ResourceRecord[T]]) -> None:
        navigations = self._storage[page]
        navigations.insert(0, bucket)
        for dropped in navigations[self._max_navigations :]:
            self._unindex(dropped)
        del navigations[self._max_navigations :]

    # ── Queries ──────────────────────────────────────────────────

    def _navigations(self, page: Page) -> list[list[ResourceRecord[T]]]:
        navigations = self._storage.get(page)
        if navigations is None:
            raise UnknownPageError("Page is not tracked by this collector (closed or never added)")
        return navigations

    def _iter_records(self, page: Page) -> Iterator[ResourceRecord[T]]:
        for bucket in reversed(self._navigations(page)):
            yield from bucket

    def get_data(self, page: Page, include_preserved: bool = False) -> list[ResourceRecord[T]]:
        """Records of *page* in observation order.

        Without ``include_preserved`` only the current navigation is returned.
        """
        navigations = self._navigations(page)
        if not include_preserved:
            return list(navigations[0])
        return list(self._iter_records(page))

    def get_by_id(self, page: Page, stable_id: int) -> ResourceRecord[T]:
        record = self._by_id.get(stable_id)
        if record is None or record.page is not page or page not in self._storage:
            raise UnknownResourceError(f"No resource found with ID {stable_id}", resource_id=stable_id)
        return record

    def get_id_for_resource(self, resource: ResourceRecord[T] | T) -> int:
        """Stable ID of a record or an observed payload; idempotent."""
        if isinstance(resource, ResourceRecord):
            if resource.stable_id is not None:
                return resource.stable_id
            return self._assign_id(resource)
        try:
            record = self._by_payload.get(resource)
        except TypeError:
            record = None
        if record is None:
            raise UnknownResourceError("Resource was never observed by this collector")
        return self._assign_id(record)

    def find(self, page: Page, predicate: Callable[[T], bool]) -> ResourceRecord[T] | None:
        for record in self._iter_records(page):
            if predicate(record.payload):
                return record
        return None


# ---------------------------------------------------------------------------
# Network requests
# ---------------------------------------------------------------------------


class NetworkCollector(PageCollector[Request]):
    """Collects ``request`` events."""

    def _subscribe(self, page: Page, subs: SubscriptionSet) -> None:
        subs.on(page, PageEvent.REQUEST, lambda request: self.collect(page, request, PageEvent.REQUEST))

    def _split_after_navigation(self, page: Page) -> None:
        # The navigation request (and anything after it) belongs to the new page load.
        current = self._storage[page][0]
        split_at = None
        for idx in range(len(current) - 1, -1, -1):
            if is_main_frame_navigation(page, current[idx].payload):
                split_at = idx
                break
        if split_at is None:
            self._push_navigation(page, [])
            return
        moved = current[split_at:]
        del current[split_at:]
        self._push_navigation(page, moved)

    def find_by_url(self, page: Page, url: str) -> ResourceRecord[Request] | None:
        """Most recent request of *page* for *url*."""
        match = None
        for record in self._iter_records(page):
            if record.payload.url == url:
                match = record
        return match


def skip_favicon_requests(event: PageEvent, payload: Any) -> bool:
    """Event filter dropping favicon fetches (noisy, browser-initiated)."""
    if event is PageEvent.REQUEST:
        return "favicon.ico" not in getattr(payload, "url", "")
    return True


# ---------------------------------------------------------------------------
# Console messages, page errors, diagnostic issues
# ---------------------------------------------------------------------------


class ConsoleCollector(PageCollector[ConsolePayload]):
    """Collects ``console`` and ``pageerror`` events.

    Diagnostic issues have no page event; the session forwards them with
    :meth:`collect_issue` when the driver supports the diagnostic channel.
    """

    def _subscribe(self, page: Page, subs: SubscriptionSet) -> None:
        subs.on(page, PageEvent.CONSOLE, lambda message: self.collect(page, message, PageEvent.CONSOLE))
        subs.on(page, PageEvent.PAGE_ERROR, lambda error: self._on_page_error(page, error))

    def _on_page_error(self, page: Page, error: Any) -> None:
        payload = error if isinstance(error, BaseException) else PageErrorRecord(message=str(error))
        self.collect(page, payload, PageEvent.PAGE_ERROR)

    def collect_issue(self, page: Page, params: dict) -> ResourceRecord[ConsolePayload] | None:
        if page not in self._storage:
            logger.debug("Diagnostic issue for untracked page ignored")
            return None
        return self.collect(page, DiagnosticIssue.from_cdp(params), PageEvent.ISSUE)
