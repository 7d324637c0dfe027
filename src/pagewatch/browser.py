# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Chromium launch/connect for PageWatch.

Starts (or attaches to) a Chromium instance via Playwright and exposes
it as a :class:`~pagewatch.driver.PlaywrightDriver`. Holds no session
state; everything stateful lives in :mod:`pagewatch.context`.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from .driver import PlaywrightDriver
from .errors import BrowserError

logger = logging.getLogger(__name__)


@dataclass
class BrowserConfig:
    """Browser launch configuration."""

    headless: bool = True
    channel: str | None = None  # "chrome", "chrome-beta", ... None → bundled Chromium
    executable_path: str | None = None
    user_data_dir: str | None = None  # persistent profile; None → isolated context
    viewport_width: int | None = None  # None → window size decides
    viewport_height: int | None = None
    accept_insecure_certs: bool = False
    devtools: bool = False  # auto-open DevTools for every tab
    extra_args: list[str] = field(default_factory=list)
    cdp_url: str | None = None  # connect to a running browser instead of launching
    cdp_headers: dict[str, str] | None = None

    @property
    def viewport(self) -> dict | None:
        if self.viewport_width and self.viewport_height:
            return {"width": self.viewport_width, "height": self.viewport_height}
        return None


# ── Chromium auto-install ─────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds, Chromium ~140MB download


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found, running 'playwright install chromium' …")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    """Chromium arguments shared by isolated and persistent launches."""
    args = [
        *config.extra_args,
        "--hide-crash-restore-bubble",
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--no-first-run",
    ]
    if config.headless:
        args.append("--screen-info={3840x2160}")
    if config.devtools:
        args.append("--auto-open-devtools-for-tabs")
    return args


def _is_missing_executable(exc: Exception) -> bool:
    return "executable doesn't exist" in str(exc).lower()


class BrowserLauncher:
    """Owns the Playwright instance and the browser/context it produced."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._driver: PlaywrightDriver | None = None
        self._owns_browser = True  # False when attached over CDP

    @property
    def driver(self) -> PlaywrightDriver:
        if self._driver is None:
            raise RuntimeError("Browser not started. Use async with or call start().")
        return self._driver

    async def _launch_isolated(self) -> BrowserContext:
        cfg = self.config
        self._browser = await self._playwright.chromium.launch(
            headless=cfg.headless,
            channel=cfg.channel,
            executable_path=cfg.executable_path,
            args=chromium_launch_args(cfg),
            ignore_default_args=["--enable-automation"],
        )
        context = await self._browser.new_context(
            viewport=cfg.viewport,
            no_viewport=cfg.viewport is None,
            ignore_https_errors=cfg.accept_insecure_certs,
        )
        await context.new_page()
        return context

    async def _launch_persistent(self) -> BrowserContext:
        cfg = self.config
        Path(cfg.user_data_dir).mkdir(parents=True, exist_ok=True)
        try:
            return await self._playwright.chromium.launch_persistent_context(
                cfg.user_data_dir,
                headless=cfg.headless,
                channel=cfg.channel,
                executable_path=cfg.executable_path,
                args=chromium_launch_args(cfg),
                ignore_default_args=["--enable-automation"],
                viewport=cfg.viewport,
                no_viewport=cfg.viewport is None,
                ignore_https_errors=cfg.accept_insecure_certs,
            )
        except Exception as exc:
            if "already running" in str(exc).lower() or "processsingleton" in str(exc).lower():
                raise BrowserError(
                    f"The browser is already running for {cfg.user_data_dir}. "
                    "Use an isolated profile to run multiple browser instances."
                ) from exc
            raise

    async def _launch(self) -> BrowserContext:
        """Launch Chromium, auto-installing on first 'executable not found' error."""
        launch = self._launch_persistent if self.config.user_data_dir else self._launch_isolated
        try:
            return await launch()
        except BrowserError:
            raise
        except Exception as exc:
            if not _is_missing_executable(exc):
                raise
            if await _auto_install_chromium():
                return await launch()
            raise BrowserError(
                "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
            ) from exc

    async def _connect(self) -> BrowserContext:
        cfg = self.config
        try:
            self._browser = await self._playwright.chromium.connect_over_cdp(cfg.cdp_url, headers=cfg.cdp_headers)
        except Exception as exc:
            raise BrowserError(f"Could not connect to browser at {cfg.cdp_url}: {exc}") from exc
        self._owns_browser = False
        if self._browser.contexts:
            return self._browser.contexts[0]
        return await self._browser.new_context()

    async def start(self) -> PlaywrightDriver:
        self._playwright = await async_playwright().start()
        try:
            self._context = await (self._connect() if self.config.cdp_url else self._launch())
        except BaseException:
            await self.stop()
            raise
        self._driver = PlaywrightDriver(self._context, browser_name="chromium")
        logger.info(
            "Browser ready (mode=%s, headless=%s)",
            "connect" if self.config.cdp_url else "launch",
            self.config.headless,
        )
        return self._driver

    async def stop(self) -> None:
        """Release the browser. Safe to call on a crashed or half-started browser."""
        if self._driver is not None:
            with suppress(Exception):
                await self._driver.close()
            self._driver = None

        if self._owns_browser:
            if self._context is not None:
                with suppress(Exception):
                    await self._context.close()
            if self._browser is not None:
                with suppress(Exception):
                    await self._browser.close()
        self._context = None
        self._browser = None

        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        logger.info("Browser released (owned=%s)", self._owns_browser)

    async def __aenter__(self) -> BrowserLauncher:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()


@asynccontextmanager
async def open_driver(config: BrowserConfig | None = None) -> AsyncGenerator[PlaywrightDriver, None]:
    """Context manager yielding a driver over a launched or attached browser."""
    launcher = BrowserLauncher(config)
    driver = await launcher.start()
    try:
        yield driver
    finally:
        await launcher.stop()
