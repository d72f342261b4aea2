"""
Page assembly engine.

Builds new PDF documents in memory from a loaded source document and an
ordered list of page operations (copy, blank, rotate). Also hosts the other
whole-document rebuilds the gateway needs: merging several documents and
assembling a document from page images.

Nothing in here touches the filesystem for output; callers persist the
returned bytes.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Iterable, Sequence, Tuple, Union

from PIL import Image
from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.generic import NameObject, NumberObject
from reportlab import rl_config
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from docshift.errors import AssemblyFailed, DocumentLoadError, InvalidPageReference

logger = logging.getLogger(__name__)

BLANK_PAGE_SIZE = A4

# Embed JPEG pages as raw DCT streams instead of ASCII85 text
rl_config.useA85 = 0


def normalize_rotation(angle: int) -> int:
    return ((angle % 360) + 360) % 360


@dataclass(frozen=True)
class CopyPage:
    index: int


@dataclass(frozen=True)
class BlankPage:
    pass


@dataclass(frozen=True)
class RotatePage:
    index: int
    angle: int = 0

    def __post_init__(self):
        if self.angle % 90:
            raise ValueError(f"Rotation must be a multiple of 90 degrees, got {self.angle}")


Operation = Union[CopyPage, BlankPage, RotatePage]


@dataclass(frozen=True)
class AssemblyResult:
    data: bytes
    page_count: int
    skipped: Tuple[int, ...] = ()

    @property
    def size(self) -> int:
        return len(self.data)


class Document:
    """Read-only view over a parsed PDF."""

    __slots__ = ("_pages",)

    def __init__(self, reader: PdfReader):
        self._pages = tuple(reader.pages)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Document":
        if not data:
            raise DocumentLoadError("Uploaded PDF is empty")
        try:
            reader = PdfReader(BytesIO(data))
            if reader.is_encrypted:
                raise DocumentLoadError("Encrypted PDFs are not supported")
            return cls(reader)
        except DocumentLoadError:
            raise
        except Exception as e:
            raise DocumentLoadError(f"Could not read PDF: {e}") from e

    @property
    def page_count(self) -> int:
        return len(self._pages)

    @property
    def pages(self):
        return self._pages

    def page(self, index: int):
        # Negative indices are out of range, never counted from the end
        if not 0 <= index < len(self._pages):
            raise InvalidPageReference(index, len(self._pages))
        return self._pages[index]


def _serialize(writer: PdfWriter) -> bytes:
    buffer = BytesIO()
    try:
        writer.write(buffer)
    except Exception as e:
        raise AssemblyFailed(f"PDF save failed: {e}") from e

    data = buffer.getvalue()
    if not data:
        raise AssemblyFailed("PDF save failed, empty buffer")
    return data


def assemble(source: Document, operations: Sequence[Operation]) -> AssemblyResult:
    """
    Apply ``operations`` to ``source`` in order and serialize the result.

    Out-of-range page references are skipped: the offending operation adds
    nothing to the output, is logged, and its index is reported in
    ``AssemblyResult.skipped``. Every other operation still applies.

    Raises:
        AssemblyFailed: if the output cannot be serialized.
    """
    writer = PdfWriter()
    skipped = []

    for operation in operations:
        if isinstance(operation, BlankPage):
            writer.add_blank_page(width=BLANK_PAGE_SIZE[0], height=BLANK_PAGE_SIZE[1])
            continue

        try:
            source_page = source.page(operation.index)
        except InvalidPageReference as e:
            logger.warning(f"Skipping page operation: {e}")
            skipped.append(e.index)
            continue

        page = writer.add_page(source_page)
        if isinstance(operation, RotatePage):
            page[NameObject("/Rotate")] = NumberObject(normalize_rotation(operation.angle))

    data = _serialize(writer)
    return AssemblyResult(data=data, page_count=len(writer.pages), skipped=tuple(skipped))


def merge(sources: Sequence[Document]) -> AssemblyResult:
    writer = PdfWriter()
    for document in sources:
        for page in document.pages:
            writer.add_page(page)
    return AssemblyResult(data=_serialize(writer), page_count=len(writer.pages))


def images_to_pdf(image_paths: Iterable) -> AssemblyResult:
    """
    One page per image, each page exactly the pixel size of its image.

    JPEGs are embedded as-is; PNG alpha is kept as a soft mask.
    """
    buffer = BytesIO()
    c = canvas.Canvas(buffer, invariant=1)
    page_count = 0

    try:
        for image_path in image_paths:
            with Image.open(image_path) as img:
                width, height = img.size
            c.setPageSize((width, height))
            c.drawImage(ImageReader(str(image_path)), 0, 0, width=width, height=height, mask="auto")
            c.showPage()
            page_count += 1

        if page_count == 0:
            raise AssemblyFailed("No page images to assemble")
        c.save()
    except AssemblyFailed:
        raise
    except Exception as e:
        raise AssemblyFailed(f"Could not assemble PDF from images: {e}") from e

    data = buffer.getvalue()
    if not data:
        raise AssemblyFailed("PDF save failed, empty buffer")
    return AssemblyResult(data=data, page_count=page_count)
