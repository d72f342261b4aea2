"""
Adapters around the external command-line tools the gateway shells out to.

Every adapter has the same shape: ``run(input_path, output_path, **params)``
reads ``input_path`` without modifying it, produces one artifact at
``output_path`` and returns that path, or raises ``ToolFailed``. Handlers
only ever see paths and errors, never command lines.
"""

import logging
import shutil
import subprocess
import tempfile
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Sequence

import pdf2image
import pytesseract
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from PyPDF2 import PdfReader, PdfWriter

from docshift import config
from docshift.errors import ToolFailed

logger = logging.getLogger(__name__)

POPPLER_ERRORS = (PDFInfoNotInstalledError, PDFPageCountError, PDFPopplerTimeoutError, PDFSyntaxError)


def run_tool(name: str, command: List[str], timeout: int, redact: Sequence[str] = ()) -> subprocess.CompletedProcess:
    """Run ``command`` to completion, raising ToolFailed on anything but a clean exit."""
    shown = " ".join("***" if part in redact else part for part in command)
    logger.info(f"Running {name}: {shown}")

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        logger.error(f"{name} timed out after {timeout}s")
        raise ToolFailed(f"{name} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        logger.error(f"{name} binary not found: {command[0]}")
        raise ToolFailed(f"{name} is not installed ({command[0]})") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        logger.error(f"{name} exited with {result.returncode}: {stderr}")
        raise ToolFailed(f"{name} failed: {stderr or f'exit code {result.returncode}'}")
    return result


def _expect_output(name: str, output_path: Path) -> Path:
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ToolFailed(f"{name} completed but produced no output")
    return output_path


class Rasterizer:
    """Renders every PDF page to a JPEG in ``output_path`` (a directory)."""

    name = "pdftoppm"

    def __init__(self, timeout: int = config.RASTER_TIMEOUT):
        self.timeout = timeout

    def run(self, input_path: Path, output_path: Path, dpi: int = 150, quality: Optional[int] = None) -> Path:
        output_path.mkdir(parents=True, exist_ok=True)
        jpegopt = {"quality": quality, "optimize": True} if quality else None
        logger.info(f"Rasterizing {input_path.name} @ {dpi} DPI into {output_path}")

        try:
            paths = pdf2image.convert_from_path(
                str(input_path),
                dpi=dpi,
                output_folder=str(output_path),
                output_file="page",
                fmt="jpeg",
                jpegopt=jpegopt,
                paths_only=True,
                timeout=self.timeout,
            )
        except POPPLER_ERRORS as e:
            logger.error(f"Rasterization failed for {input_path.name}: {e}")
            raise ToolFailed(f"{self.name} failed: {e}") from e

        if not paths:
            raise ToolFailed(f"{self.name} produced no page images")
        return output_path


class PdfCompressor:
    name = "ghostscript"

    def __init__(self, binary: str = config.GS_BINARY, timeout: int = config.GS_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    @staticmethod
    def preset_for(compression: int) -> str:
        if compression >= 80:
            return "/screen"
        if compression >= 60:
            return "/ebook"
        if compression >= 40:
            return "/printer"
        return "/prepress"

    def run(self, input_path: Path, output_path: Path, compression: int = 60) -> Path:
        setting = self.preset_for(compression)
        run_tool(self.name, [
            self.binary, "-sDEVICE=pdfwrite", "-dCompatibilityLevel=1.4",
            "-dDownsampleColorImages=true", "-dColorImageResolution=72",
            "-dDownsampleGrayImages=true", "-dGrayImageResolution=72",
            "-dDownsampleMonoImages=true", "-dMonoImageResolution=72",
            "-dCompressFonts=true", "-dEmbedAllFonts=true", "-dSubsetFonts=true",
            "-dAutoRotatePages=/None", f"-dPDFSETTINGS={setting}",
            "-dNOPAUSE", "-dQUIET", "-dBATCH",
            f"-sOutputFile={output_path}", str(input_path),
        ], self.timeout)
        return _expect_output(self.name, output_path)


class OfficeConverter:
    """LibreOffice headless conversion: office formats to PDF, PDF to DOCX."""

    name = "libreoffice"

    FILTERS = {
        "pdf": ("pdf", None),
        "docx": ("docx:MS Word 2007 XML", "writer_pdf_import"),
    }

    def __init__(self, binary: str = config.LIBREOFFICE_BINARY, timeout: int = config.LIBREOFFICE_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def run(self, input_path: Path, output_path: Path, target: str = "pdf") -> Path:
        convert_to, infilter = self.FILTERS[target]

        # Separate profile and outdir per call so parallel conversions never collide
        with tempfile.TemporaryDirectory(prefix="lo_") as work_dir:
            work = Path(work_dir)
            command = [self.binary, f"-env:UserInstallation={(work / 'profile').as_uri()}", "--headless"]
            if infilter:
                command.append(f"--infilter={infilter}")
            command += ["--convert-to", convert_to, "--outdir", str(work / "out"), str(input_path)]
            run_tool(self.name, command, self.timeout)

            converted = work / "out" / f"{input_path.stem}.{target}"
            if not converted.exists():
                raise ToolFailed("Conversion completed but output file missing")
            shutil.move(str(converted), str(output_path))

        return _expect_output(self.name, output_path)


class OcrEngine:
    """Adds a text layer by OCRing each rendered page with Tesseract."""

    name = "tesseract"

    def __init__(self, timeout: int = config.OCR_TIMEOUT):
        self.timeout = timeout

    def run(self, input_path: Path, output_path: Path, language: str = "eng", dpi: int = 300) -> Path:
        try:
            page_count = len(PdfReader(str(input_path)).pages)
        except Exception as e:
            raise ToolFailed(f"Cannot read PDF for OCR: {e}") from e

        writer = PdfWriter()
        for page_num in range(1, page_count + 1):
            try:
                images = pdf2image.convert_from_path(
                    str(input_path),
                    first_page=page_num,
                    last_page=page_num,
                    dpi=dpi,
                    timeout=self.timeout,
                )
                page_pdf = pytesseract.image_to_pdf_or_hocr(
                    images[0],
                    lang=language,
                    extension="pdf",
                    config=f"--dpi {dpi}",
                    timeout=self.timeout,
                )
            except POPPLER_ERRORS as e:
                raise ToolFailed(f"Rendering page {page_num} for OCR failed: {e}") from e
            except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
                # pytesseract signals its own timeout as RuntimeError
                logger.error(f"OCR failed for page {page_num}: {e}")
                raise ToolFailed(f"{self.name} failed on page {page_num}: {e}") from e

            for page in PdfReader(BytesIO(page_pdf)).pages:
                writer.add_page(page)

        with open(output_path, "wb") as f:
            writer.write(f)
        return _expect_output(self.name, output_path)


class Encryptor:
    name = "qpdf"

    def __init__(self, binary: str = config.QPDF_BINARY, timeout: int = config.QPDF_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def run(self, input_path: Path, output_path: Path, password: str = "") -> Path:
        if not password:
            raise ValueError("password must not be empty")
        run_tool(
            self.name,
            [self.binary, "--encrypt", password, password, "256", "--", str(input_path), str(output_path)],
            self.timeout,
            redact=[password],
        )
        return _expect_output(self.name, output_path)


class VideoTranscoder:
    name = "ffmpeg"

    def __init__(self, binary: str = config.FFMPEG_BINARY, timeout: int = config.FFMPEG_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def run(self, input_path: Path, output_path: Path, crf: int = 28, preset: str = "medium") -> Path:
        run_tool(self.name, [
            self.binary, "-y", "-i", str(input_path),
            "-vcodec", "libx264", "-preset", preset, "-crf", str(crf),
            "-acodec", "copy", str(output_path),
        ], self.timeout)
        return _expect_output(self.name, output_path)
