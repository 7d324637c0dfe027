# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagewatch.artifacts."""

from __future__ import annotations

import pytest

from pagewatch.artifacts import extension_for_mime_type, save_file, save_temporary_file
from pagewatch.errors import ArtifactWriteError, UnsupportedMimeTypeError


class TestExtensions:
    @pytest.mark.parametrize(
        "mime,ext",
        [("image/png", "png"), ("image/jpeg", "jpeg"), ("image/webp", "webp")],
    )
    def test_known(self, mime, ext):
        assert extension_for_mime_type(mime) == ext

    def test_unknown(self):
        with pytest.raises(UnsupportedMimeTypeError, match="image/gif"):
            extension_for_mime_type("image/gif")


class TestSaveTemporaryFile:
    async def test_writes_into_fresh_directory(self):
        first = await save_temporary_file(b"a", "image/webp")
        second = await save_temporary_file(b"b", "image/webp")
        assert first.name == second.name == "screenshot.webp"
        assert first.parent != second.parent
        assert first.parent.name.startswith("pagewatch-")

    async def test_unsupported_mime_writes_nothing(self, monkeypatch):
        def _fail(*_args):
            raise AssertionError("should not write")

        monkeypatch.setattr("pagewatch.artifacts._write_temporary", _fail)
        with pytest.raises(UnsupportedMimeTypeError):
            await save_temporary_file(b"x", "text/plain")

    async def test_os_error_wrapped(self, monkeypatch):
        def _fail(*_args):
            raise PermissionError("read-only")

        monkeypatch.setattr("pagewatch.artifacts._write_temporary", _fail)
        with pytest.raises(ArtifactWriteError) as exc_info:
            await save_temporary_file(b"x", "image/png")
        assert isinstance(exc_info.value.__cause__, PermissionError)


class TestSaveFile:
    async def test_relative_path_resolved(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = await save_file(b"data", "out/../shot.png")
        assert path == tmp_path.resolve() / "shot.png"
        assert path.read_bytes() == b"data"

    async def test_missing_directory(self, tmp_path):
        with pytest.raises(ArtifactWriteError):
            await save_file(b"data", tmp_path / "missing" / "shot.png")
