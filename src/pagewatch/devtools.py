# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pairing of open DevTools windows with the pages they inspect.

When a DevTools window is attached to a tab, whatever the user selected in
it (a DOM node in Elements, a request in Network) can be projected onto the
session: the node onto the current snapshot, the request onto a stable ID.
Everything here is best effort; failures are logged and yield no data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from playwright.async_api import Page

logger = logging.getLogger(__name__)

DEVTOOLS_SCHEME = "devtools://"

_TITLE_RE = re.compile(r"DevTools - (.*)")

_INSPECTOR_SELECTION_JS = """async () => {
  const UI = await import('/bundled/ui/legacy/legacy.js');
  const SDK = await import('/bundled/core/sdk/sdk.js');
  const ctx = UI.Context.Context.instance();
  const request = ctx.flavor(SDK.NetworkRequest.NetworkRequest);
  const node = ctx.flavor(SDK.DOMModel.DOMNode);
  return {
    cdpRequestId: request ? request.requestId() : null,
    requestUrl: request ? request.url() : null,
    cdpBackendNodeId: node ? node.backendNodeId() : null,
  };
}"""


@dataclass(frozen=True, slots=True)
class DevToolsData:
    """Current selection of a paired DevTools window."""

    cdp_request_id: str | None = None
    request_url: str | None = None
    cdp_backend_node_id: int | None = None

    @property
    def empty(self) -> bool:
        return not (self.cdp_request_id or self.request_url or self.cdp_backend_node_id)


def is_devtools_page(page: Page) -> bool:
    return page.url.startswith(DEVTOOLS_SCHEME)


def extract_url_like_from_devtools_title(title: str) -> str | None:
    """``"DevTools - example.com/path"`` → ``"example.com/path"``."""
    match = _TITLE_RE.search(title or "")
    if match is None:
        return None
    return match.group(1) or None


def _normalize_url(url: str) -> str:
    result = url.strip()
    for scheme in ("https://", "http://"):
        if result.startswith(scheme):
            result = result[len(scheme) :]
            break
    if result.startswith("www."):
        result = result[4:]
    hash_idx = result.find("#")
    if hash_idx != -1:
        result = result[:hash_idx]
    return result.rstrip("/")


def urls_equal(a: str, b: str) -> bool:
    """Loose URL comparison matching how DevTools titles abbreviate URLs."""
    return _normalize_url(a) == _normalize_url(b)


async def pair_devtools_windows(pages: list[Page], candidates: list[Page]) -> dict[Page, Page]:
    """Map each inspected page in *pages* to its DevTools window among *candidates*."""
    pairs: dict[Page, Page] = {}
    for devtools_page in candidates:
        if not is_devtools_page(devtools_page):
            continue
        try:
            title = await devtools_page.title()
        except Exception:
            logger.debug("Could not read DevTools window title for %s", devtools_page.url, exc_info=True)
            continue
        url_like = extract_url_like_from_devtools_title(title)
        if not url_like:
            continue
        for page in pages:
            if urls_equal(page.url, url_like):
                pairs[page] = devtools_page
    if pairs:
        logger.debug("Paired %d DevTools window(s)", len(pairs))
    return pairs


async def read_inspector_selection(devtools_page: Page) -> DevToolsData:
    """Read the selected node/request from a DevTools window; empty on failure."""
    try:
        raw = await devtools_page.evaluate(_INSPECTOR_SELECTION_JS)
    except Exception:
        logger.debug("Reading DevTools selection failed", exc_info=True)
        return DevToolsData()
    if not isinstance(raw, dict):
        return DevToolsData()
    backend_id = raw.get("cdpBackendNodeId")
    return DevToolsData(
        cdp_request_id=raw.get("cdpRequestId") or None,
        request_url=raw.get("requestUrl") or None,
        cdp_backend_node_id=int(backend_id) if backend_id else None,
    )
