# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PageWatch: resource tracking and action synchronization for browser sessions.

Usage::

    from pagewatch import BrowserConfig, SessionContext, configure_logging, open_driver

    configure_logging(level="DEBUG")
    async with open_driver(BrowserConfig()) as driver:
        session = await SessionContext.create(driver)
        outcome = await session.wait_for_events_after_action(lambda: session.selected_page.goto(url))
        snapshot = await session.capture_snapshot()
"""

from .browser import BrowserConfig, BrowserLauncher, open_driver
from .collectors import ConsoleCollector, NetworkCollector, ResourceRecord, skip_favicon_requests
from .config import SessionConfig, WaitConfig
from .context import SessionContext
from .driver import DiagnosticsStatus, PlaywrightDriver
from .emulation import EmulationRequest, GeolocationOptions
from .errors import (
    ArtifactWriteError,
    BrowserError,
    ElementNotFoundError,
    LastPageError,
    NoDialogError,
    NoPageSelectedError,
    NoSnapshotError,
    PageClosedError,
    PageWatchError,
    StaleSnapshotError,
    UnknownPageError,
    UnknownResourceError,
    UnsupportedMimeTypeError,
)
from .logging_config import configure as configure_logging
from .logging_config import configure_from_env as configure_logging_from_env
from .snapshot import AccessibilitySnapshotter, Snapshot, SnapshotNode, format_snapshot
from .wait_for import ActionSynchronizer, WaitOutcome

__version__ = "0.1.0"

__all__ = [
    "AccessibilitySnapshotter",
    "ActionSynchronizer",
    "ArtifactWriteError",
    "BrowserConfig",
    "BrowserError",
    "BrowserLauncher",
    "ConsoleCollector",
    "DiagnosticsStatus",
    "ElementNotFoundError",
    "EmulationRequest",
    "GeolocationOptions",
    "LastPageError",
    "NetworkCollector",
    "NoDialogError",
    "NoPageSelectedError",
    "NoSnapshotError",
    "PageClosedError",
    "PageWatchError",
    "PlaywrightDriver",
    "ResourceRecord",
    "SessionConfig",
    "SessionContext",
    "Snapshot",
    "SnapshotNode",
    "StaleSnapshotError",
    "UnknownPageError",
    "UnknownResourceError",
    "UnsupportedMimeTypeError",
    "WaitConfig",
    "WaitOutcome",
    "configure_logging",
    "configure_logging_from_env",
    "format_snapshot",
    "open_driver",
    "skip_favicon_requests",
]
