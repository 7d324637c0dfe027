# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Typed page event kinds and explicit listener subscriptions.

Leaf module. Components never register ad-hoc handler maps on a page;
they call :func:`subscribe` with a :class:`PageEvent` and keep the returned
:class:`Subscription` so the listener can be detached deterministically.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from playwright.async_api import Page, Request


class PageEvent(StrEnum):
    """Closed set of page events the core consumes (Playwright event names)."""

    REQUEST = "request"
    REQUEST_FINISHED = "requestfinished"
    REQUEST_FAILED = "requestfailed"
    CONSOLE = "console"
    PAGE_ERROR = "pageerror"
    DIALOG = "dialog"
    FRAME_NAVIGATED = "framenavigated"
    LOAD = "load"
    CLOSE = "close"
    # forwarded from the CDP Audits.issueAdded channel, never subscribed on a page
    ISSUE = "issue"


class EventSource(Protocol):
    """Anything with pyee-style ``on`` / ``remove_listener`` (Page, CDPSession, BrowserContext)."""

    def on(self, event: str, f: Callable[..., Any]) -> None: ...

    def remove_listener(self, event: str, f: Callable[..., Any]) -> None: ...


@dataclass(eq=False)
class Subscription:
    """A single attached listener. ``cancel()`` is idempotent."""

    source: EventSource
    event: str
    handler: Callable[..., Any]
    active: bool = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.source.remove_listener(self.event, self.handler)


def subscribe(source: EventSource, event: str, handler: Callable[..., Any]) -> Subscription:
    """Attach *handler* to *event* on *source* and return its subscription."""
    source.on(str(event), handler)
    return Subscription(source=source, event=str(event), handler=handler)


@dataclass(eq=False)
class SubscriptionSet:
    """Owns a group of subscriptions released together."""

    _subs: list[Subscription] = field(default_factory=list)

    def add(self, sub: Subscription) -> Subscription:
        self._subs.append(sub)
        return sub

    def on(self, source: EventSource, event: str, handler: Callable[..., Any]) -> Subscription:
        return self.add(subscribe(source, event, handler))

    def cancel_all(self) -> None:
        subs, self._subs = self._subs, []
        for sub in subs:
            sub.cancel()

    def __len__(self) -> int:
        return sum(1 for s in self._subs if s.active)


def is_main_frame_navigation(page: Page, request: Request) -> bool:
    """True when *request* is a document navigation of *page*'s main frame."""
    try:
        return bool(request.is_navigation_request()) and request.frame == page.main_frame
    except Exception:
        # service-worker requests have no frame
        return False
