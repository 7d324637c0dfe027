# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Session configuration.

Leaf module, no pagewatch imports. Values are plain frozen dataclasses;
``SessionConfig.from_env()`` layers ``PAGEWATCH_*`` environment variables on
top of the defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Base timeouts before throttling multipliers are applied.
DEFAULT_TIMEOUT_MS = 5_000
NAVIGATION_TIMEOUT_MS = 10_000

# Current navigation + two preserved ones.
DEFAULT_MAX_NAVIGATIONS = 3


@dataclass(frozen=True)
class WaitConfig:
    """Base durations for ActionSynchronizer (ms, before multipliers)."""

    base_timeout_ms: float = 3_000  # overall quiescence budget, x cpu x network
    expect_navigation_ms: float = 100  # window for an action to start navigating, x cpu
    stable_dom_quiet_ms: float = 100  # DOM mutation quiet period, x cpu


@dataclass(frozen=True)
class SessionConfig:
    """Per-session behaviour switches."""

    include_all_pages: bool = False  # expose every page-like target, not only tabs
    devtools_debugging: bool = False  # list devtools:// windows as regular pages
    diagnostics: bool = True  # attach vendor diagnostic listeners when supported
    default_timeout_ms: float = DEFAULT_TIMEOUT_MS
    navigation_timeout_ms: float = NAVIGATION_TIMEOUT_MS
    max_navigations: int = DEFAULT_MAX_NAVIGATIONS
    artifact_prefix: str = "pagewatch-"
    wait: WaitConfig = field(default_factory=WaitConfig)

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Build a config from ``PAGEWATCH_*`` variables; unset keys keep defaults."""
        defaults = cls()
        wait = WaitConfig(
            base_timeout_ms=_env_float("PAGEWATCH_WAIT_BASE_TIMEOUT_MS", defaults.wait.base_timeout_ms),
            expect_navigation_ms=defaults.wait.expect_navigation_ms,
            stable_dom_quiet_ms=defaults.wait.stable_dom_quiet_ms,
        )
        return cls(
            include_all_pages=_env_bool("PAGEWATCH_INCLUDE_ALL_PAGES", defaults.include_all_pages),
            devtools_debugging=_env_bool("PAGEWATCH_DEVTOOLS_DEBUGGING", defaults.devtools_debugging),
            diagnostics=_env_bool("PAGEWATCH_DIAGNOSTICS", defaults.diagnostics),
            default_timeout_ms=_env_float("PAGEWATCH_DEFAULT_TIMEOUT_MS", defaults.default_timeout_ms),
            navigation_timeout_ms=_env_float("PAGEWATCH_NAVIGATION_TIMEOUT_MS", defaults.navigation_timeout_ms),
            max_navigations=max(1, int(_env_float("PAGEWATCH_MAX_NAVIGATIONS", defaults.max_navigations))),
            wait=wait,
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    logger.warning("Ignoring %s=%r (expected a boolean)", name, raw)
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (expected a number)", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r (must be positive)", name, raw)
        return default
    return value
