# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PageWatch exception hierarchy.

All PageWatch-specific errors inherit from PageWatchError, allowing callers
to catch the base class for any session failure or specific subclasses
for targeted handling.
"""

from __future__ import annotations


class PageWatchError(Exception):
    """Base exception for all PageWatch errors."""


class BrowserError(PageWatchError):
    """Browser launch or connection failure."""


class NoPageSelectedError(PageWatchError):
    """No page has been selected in the session yet."""


class PageClosedError(PageWatchError):
    """The selected (or awaited) page has been closed."""


class LastPageError(PageWatchError):
    """Attempt to close the only remaining page of a session."""


class UnknownPageError(PageWatchError):
    """Page index out of range, or page not tracked by a collector."""


class UnknownResourceError(PageWatchError):
    """No record with the given stable ID belongs to the page."""

    def __init__(self, message: str, *, resource_id: int | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class NoSnapshotError(PageWatchError):
    """A snapshot query was made before any snapshot was captured."""


class StaleSnapshotError(PageWatchError):
    """Node address belongs to a superseded snapshot generation."""

    def __init__(self, message: str, *, address: str = "", current_generation: int | None = None) -> None:
        super().__init__(message)
        self.address = address
        self.current_generation = current_generation


class ElementNotFoundError(PageWatchError):
    """Node address resolves to no live element on the page."""


class UnsupportedMimeTypeError(PageWatchError):
    """Artifact MIME type has no file extension mapping."""


class ArtifactWriteError(PageWatchError):
    """Writing an artifact to disk failed (cause attached)."""


class NoDialogError(PageWatchError):
    """No dialog is pending on the session."""
