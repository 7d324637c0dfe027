# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Binary artifact persistence (screenshots and other captured bytes)."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path

from .errors import ArtifactWriteError, UnsupportedMimeTypeError

logger = logging.getLogger(__name__)

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/webp": "webp",
}


def extension_for_mime_type(mime_type: str) -> str:
    try:
        return _MIME_EXTENSIONS[mime_type]
    except KeyError:
        raise UnsupportedMimeTypeError(f"No mapping for MIME type {mime_type}.") from None


def _write_temporary(data: bytes, extension: str, prefix: str) -> Path:
    directory = Path(tempfile.mkdtemp(prefix=prefix))
    path = directory / f"screenshot.{extension}"
    path.write_bytes(data)
    return path


def _write(data: bytes, path: Path) -> Path:
    path.write_bytes(data)
    return path


async def save_temporary_file(data: bytes, mime_type: str, *, prefix: str = "pagewatch-") -> Path:
    """Write *data* into a fresh temp directory as ``screenshot.<ext>``."""
    extension = extension_for_mime_type(mime_type)
    try:
        path = await asyncio.to_thread(_write_temporary, data, extension, prefix)
    except OSError as exc:
        logger.warning("Could not save temporary artifact: %s", exc)
        raise ArtifactWriteError("Could not save a screenshot to a file") from exc
    logger.debug("Saved %d bytes to %s", len(data), path)
    return path


async def save_file(data: bytes, filename: str | Path) -> Path:
    """Write *data* to *filename* (resolved against the working directory)."""
    path = Path(filename).resolve()
    try:
        await asyncio.to_thread(_write, data, path)
    except OSError as exc:
        logger.warning("Could not save artifact to %s: %s", path, exc)
        raise ArtifactWriteError(f"Could not save a file to {path}") from exc
    return path
