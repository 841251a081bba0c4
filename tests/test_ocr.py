"""
Tests for the tesseract subprocess wrapper and per-request scratch files.
"""

import os
import stat
import sys

import pytest

from src.core.exceptions import ErrorKind, ExtractionError
from src.services.ocr import ocr_workspace, run_tesseract

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script as OCR binary")


def write_fake_tesseract(path, body: str):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def test_workspace_removes_files_on_success(tmp_path):
    with ocr_workspace(tmp_path, ".png") as ws:
        ws.upload_path.write_bytes(b"image")
        ws.text_path.write_text("Total: 1.00")
        assert ws.upload_path.name.endswith(".png")

    assert list(tmp_path.iterdir()) == []


def test_workspace_removes_files_on_error(tmp_path):
    with pytest.raises(RuntimeError):
        with ocr_workspace(tmp_path) as ws:
            ws.upload_path.write_bytes(b"image")
            ws.text_path.write_text("partial")
            raise RuntimeError("extraction blew up")

    assert list(tmp_path.iterdir()) == []


def test_workspace_tolerates_missing_files(tmp_path):
    with ocr_workspace(tmp_path) as ws:
        pass  # nothing written

    assert not ws.upload_path.exists()


def test_workspace_paths_are_unique(tmp_path):
    with ocr_workspace(tmp_path) as first, ocr_workspace(tmp_path) as second:
        assert first.upload_path != second.upload_path
        assert first.out_base != second.out_base


@posix_only
@pytest.mark.asyncio
async def test_run_tesseract_returns_text_file(tmp_path):
    # tesseract <image> <out_base> ... writes <out_base>.txt
    cmd = write_fake_tesseract(tmp_path / "fake-tesseract", 'echo "Total: 250.00" > "$2.txt"\necho "$@" > "$2.args"\n')
    image = tmp_path / "invoice.png"
    image.write_bytes(b"image")
    out_base = tmp_path / "ocr_out"

    text_path = await run_tesseract(image, out_base, cmd=cmd)

    assert text_path == tmp_path / "ocr_out.txt"
    assert text_path.read_text().strip() == "Total: 250.00"
    args = (tmp_path / "ocr_out.args").read_text().split()
    assert args[2:] == ["--oem", "1", "--psm", "4", "-l", "eng", "txt"]


@posix_only
@pytest.mark.asyncio
async def test_run_tesseract_non_zero_exit(tmp_path):
    cmd = write_fake_tesseract(tmp_path / "failing-tesseract", 'echo "Error in pixReadStream" >&2\nexit 1\n')

    with pytest.raises(ExtractionError) as exc_info:
        await run_tesseract(tmp_path / "broken.png", tmp_path / "out", cmd=cmd)

    assert exc_info.value.kind is ErrorKind.UPSTREAM_UNAVAILABLE
    assert "pixReadStream" in exc_info.value.body


@pytest.mark.asyncio
async def test_run_tesseract_missing_binary(tmp_path):
    missing = os.path.join(str(tmp_path), "no-such-tesseract")

    with pytest.raises(ExtractionError) as exc_info:
        await run_tesseract(tmp_path / "invoice.png", tmp_path / "out", cmd=missing)

    assert exc_info.value.kind is ErrorKind.UPSTREAM_UNAVAILABLE
