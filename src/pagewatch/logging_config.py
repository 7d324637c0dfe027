# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. Interactive: ConsoleRenderer, log shipping: JSONRenderer.

Leaf module, no pagewatch imports. Every pagewatch module logs through
``logging.getLogger(__name__)``; calling :func:`configure` once routes those
records through the structlog processor chain, including values bound with
``structlog.contextvars`` (e.g. the page URL during action synchronization).

*level* applies to the ``pagewatch`` logger tree only. Other libraries in the
process (asyncio, websockets, the embedding application) stay at WARNING.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

import structlog

PACKAGE_LOGGER = "pagewatch"
THIRD_PARTY_LEVEL = logging.WARNING


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure(*, json_output: bool = False, level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route pagewatch logs through structlog.

    Args:
        json_output: True for JSON lines, False for human-readable console output.
        level: Level of the ``pagewatch`` logger. Unknown names fall back to INFO.
        stream: Destination, stderr when omitted.
    """
    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(THIRD_PARTY_LEVEL)
    logging.getLogger(PACKAGE_LOGGER).setLevel(getattr(logging, level.upper(), logging.INFO))


def configure_from_env() -> None:
    """Configure from ``PAGEWATCH_LOG_LEVEL`` / ``PAGEWATCH_LOG_JSON``."""
    level = os.environ.get("PAGEWATCH_LOG_LEVEL", "INFO").strip() or "INFO"
    json_output = os.environ.get("PAGEWATCH_LOG_JSON", "").strip().lower() in ("1", "true", "yes")
    configure(json_output=json_output, level=level)
