"""
Tesseract OCR wrapper.

The tesseract binary runs as a subprocess and writes `<out_base>.txt`.
Each request gets its own scratch files via ocr_workspace(), which removes
them on every exit path.
"""

import asyncio
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from loguru import logger

from ..core.exceptions import ErrorKind, ExtractionError


@dataclass
class OcrWorkspace:
    upload_path: Path
    out_base: Path

    @property
    def text_path(self) -> Path:
        return Path(f"{self.out_base}.txt")


@contextmanager
def ocr_workspace(tmp_dir: str | Path, suffix: str = "") -> Iterator[OcrWorkspace]:
    """Allocate per-request scratch paths and delete them afterwards (best effort)."""
    root = Path(tmp_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex
    workspace = OcrWorkspace(
        upload_path=root / f"upload_{token}{suffix}",
        out_base=root / f"ocr_{token}",
    )
    try:
        yield workspace
    finally:
        for path in (workspace.upload_path, workspace.text_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove temporary file {path}: {e}")


async def run_tesseract(
    image_path: Path,
    out_base: Path,
    cmd: str = "tesseract",
    lang: str = "eng",
    oem: int = 1,
    psm: int = 4,
) -> Path:
    """
    Run tesseract on an image and return the path of the produced text file.

    Raises:
        ExtractionError(UPSTREAM_UNAVAILABLE): binary missing or non-zero exit
    """
    args = [str(image_path), str(out_base), "--oem", str(oem), "--psm", str(psm), "-l", lang, "txt"]
    logger.debug("Running OCR", cmd=cmd, image=str(image_path), lang=lang, psm=psm)

    try:
        proc = await asyncio.create_subprocess_exec(
            cmd,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ExtractionError(
            ErrorKind.UPSTREAM_UNAVAILABLE, f"OCR binary '{cmd}' could not be started: {e}"
        ) from e

    try:
        _, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        logger.error("OCR failed", returncode=proc.returncode, stderr=message)
        raise ExtractionError(
            ErrorKind.UPSTREAM_UNAVAILABLE,
            f"OCR exited with status {proc.returncode}",
            body=message,
        )

    text_path = Path(f"{out_base}.txt")
    if not text_path.exists():
        raise ExtractionError(ErrorKind.UPSTREAM_UNAVAILABLE, "OCR produced no output file")
    return text_path
