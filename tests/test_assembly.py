"""
Tests for the page assembly engine.

Fixture PDFs give every page a distinct width (see conftest.page_width), so
page order in an output document is read back from the mediaboxes.
"""

from io import BytesIO

import pytest
from PIL import Image
from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.generic import NameObject, NumberObject

from conftest import build_image, page_width
from docshift.assembly import (
    BLANK_PAGE_SIZE,
    BlankPage,
    CopyPage,
    Document,
    RotatePage,
    assemble,
    images_to_pdf,
    merge,
    normalize_rotation,
)
from docshift.errors import AssemblyFailed, DocumentLoadError, InvalidPageReference


def read_pages(data):
    return PdfReader(BytesIO(data)).pages


def widths(data):
    return [round(float(page.mediabox.width), 2) for page in read_pages(data)]


def rotation(page):
    return int(page.get("/Rotate", 0))


def page_images(data):
    """Image XObjects drawn on each page, resolved."""
    images = []
    for page in read_pages(data):
        xobjects = page["/Resources"]["/XObject"]
        images.extend(xobjects[name].get_object() for name in xobjects)
    return images


def filters(image):
    value = image.get("/Filter")
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


@pytest.fixture
def source(sample_pdf):
    return Document.from_bytes(sample_pdf)


class TestDocument:
    def test_page_count(self, source):
        assert source.page_count == 5
        assert len(source.pages) == 5

    def test_pages_are_immutable_sequence(self, source):
        assert isinstance(source.pages, tuple)

    def test_rejects_garbage(self):
        with pytest.raises(DocumentLoadError):
            Document.from_bytes(b"this is not a pdf")

    def test_rejects_empty_bytes(self):
        with pytest.raises(DocumentLoadError):
            Document.from_bytes(b"")

    @pytest.mark.parametrize("index", [5, 42, -1])
    def test_out_of_range_page(self, source, index):
        with pytest.raises(InvalidPageReference) as excinfo:
            source.page(index)
        assert excinfo.value.index == index
        assert excinfo.value.page_count == 5


class TestNormalizeRotation:
    @pytest.mark.parametrize("angle, expected", [
        (0, 0),
        (90, 90),
        (-90, 270),
        (450, 90),
        (360, 0),
        (-360, 0),
        (-630, 90),
        (1080, 0),
    ])
    def test_normalizes_into_0_360(self, angle, expected):
        assert normalize_rotation(angle) == expected

    def test_rotate_page_requires_right_angles(self):
        with pytest.raises(ValueError):
            RotatePage(0, 45)


class TestAssemble:
    def test_copy_and_blank_preserve_list_order(self, source):
        result = assemble(source, [CopyPage(2), BlankPage(), CopyPage(0)])

        assert result.page_count == 3
        assert result.skipped == ()
        assert widths(result.data) == [page_width(2), round(BLANK_PAGE_SIZE[0], 2), page_width(0)]

    def test_page_count_matches_operations(self, source):
        operations = [CopyPage(4), CopyPage(4), BlankPage(), CopyPage(1), BlankPage(), CopyPage(3)]
        result = assemble(source, operations)

        assert result.page_count == len(operations)
        assert len(read_pages(result.data)) == len(operations)
        assert widths(result.data)[:2] == [page_width(4), page_width(4)]

    def test_blank_page_has_default_size(self, source):
        page = read_pages(assemble(source, [BlankPage()]).data)[0]

        assert float(page.mediabox.width) == pytest.approx(BLANK_PAGE_SIZE[0])
        assert float(page.mediabox.height) == pytest.approx(BLANK_PAGE_SIZE[1])

    def test_rotate_sets_normalized_angle(self, source):
        result = assemble(source, [RotatePage(0, 450)])
        pages = read_pages(result.data)

        assert len(pages) == 1
        assert rotation(pages[0]) == 90

    @pytest.mark.parametrize("angle, expected", [(-90, 270), (360, 0), (180, 180), (-270, 90)])
    def test_rotate_angles(self, source, angle, expected):
        page = read_pages(assemble(source, [RotatePage(1, angle)]).data)[0]
        assert rotation(page) == expected

    def test_rotation_replaces_existing_rotation(self, make_pdf):
        reader = PdfReader(BytesIO(make_pdf(2)))
        writer = PdfWriter()
        for page in reader.pages:
            added = writer.add_page(page)
            added[NameObject("/Rotate")] = NumberObject(90)
        buffer = BytesIO()
        writer.write(buffer)
        source = Document.from_bytes(buffer.getvalue())

        pages = read_pages(assemble(source, [RotatePage(0, 180), RotatePage(1, 0)]).data)

        assert rotation(pages[0]) == 180
        assert rotation(pages[1]) == 0

    def test_rotating_one_copy_leaves_other_copies_alone(self, source):
        pages = read_pages(assemble(source, [RotatePage(0, 90), CopyPage(0)]).data)

        assert rotation(pages[0]) == 90
        assert rotation(pages[1]) == 0

    def test_source_is_not_mutated(self, source):
        assemble(source, [RotatePage(0, 270)])
        assert rotation(source.pages[0]) == 0

    def test_out_of_range_indices_are_skipped(self, source):
        result = assemble(source, [CopyPage(0), CopyPage(9), BlankPage(), RotatePage(-1, 90), RotatePage(3, 90)])

        assert result.skipped == (9, -1)
        assert result.page_count == 3
        assert widths(result.data) == [page_width(0), round(BLANK_PAGE_SIZE[0], 2), page_width(3)]

    def test_all_operations_skipped_still_serializes(self, source):
        result = assemble(source, [CopyPage(10), RotatePage(11, 90)])

        assert result.skipped == (10, 11)
        assert result.page_count == 0
        assert len(read_pages(result.data)) == 0

    def test_empty_operation_list(self, source):
        result = assemble(source, [])

        assert result.data
        assert result.page_count == 0
        assert len(read_pages(result.data)) == 0

    def test_deterministic_output(self, source):
        operations = [CopyPage(3), BlankPage(), RotatePage(1, -90), CopyPage(3)]
        assert assemble(source, operations).data == assemble(source, operations).data

    def test_serialization_failure(self, source, monkeypatch):
        def explode(self, stream):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(PdfWriter, "write", explode)
        with pytest.raises(AssemblyFailed):
            assemble(source, [CopyPage(0)])

    def test_empty_serialization_is_a_failure(self, source, monkeypatch):
        monkeypatch.setattr(PdfWriter, "write", lambda self, stream: None)
        with pytest.raises(AssemblyFailed):
            assemble(source, [CopyPage(0)])


class TestMerge:
    def test_concatenates_in_order(self, make_pdf):
        first = Document.from_bytes(make_pdf(2))
        second = Document.from_bytes(make_pdf(3))

        result = merge([first, second])

        assert result.page_count == 5
        assert widths(result.data) == [page_width(0), page_width(1), page_width(0), page_width(1), page_width(2)]


class TestImagesToPdf:
    def test_one_page_per_image_sized_to_image(self, tmp_path):
        paths = []
        for index, size in enumerate([(120, 80), (60, 90)]):
            path = tmp_path / f"page-{index}.jpg"
            path.write_bytes(build_image(size))
            paths.append(path)

        result = images_to_pdf(paths)
        pages = read_pages(result.data)

        assert result.page_count == 2
        assert [(float(p.mediabox.width), float(p.mediabox.height)) for p in pages] == [(120, 80), (60, 90)]

    def test_png_input(self, tmp_path):
        path = tmp_path / "scan.png"
        path.write_bytes(build_image((30, 30), fmt="PNG"))

        assert images_to_pdf([path]).page_count == 1

    def test_no_images(self):
        with pytest.raises(AssemblyFailed):
            images_to_pdf([])

    def test_unreadable_image(self, tmp_path):
        path = tmp_path / "broken.jpg"
        path.write_bytes(b"nope")
        with pytest.raises(AssemblyFailed):
            images_to_pdf([path])

    def test_jpeg_pages_are_embedded_without_reencoding(self, tmp_path):
        paths = []
        for index in range(2):
            path = tmp_path / f"page-{index}.jpg"
            Image.effect_noise((400, 550), 80).convert("RGB").save(path, "JPEG", quality=30)
            paths.append(path)
        jpeg_bytes = sum(path.stat().st_size for path in paths)

        result = images_to_pdf(paths)

        assert result.size < jpeg_bytes * 1.05 + 4096
        for image in page_images(result.data):
            assert filters(image) == ["/DCTDecode"]

    def test_png_transparency_is_kept(self, tmp_path):
        path = tmp_path / "overlay.png"
        Image.new("RGBA", (20, 20), (255, 0, 0, 0)).save(path, "PNG")

        result = images_to_pdf([path])

        (image,) = page_images(result.data)
        assert "/SMask" in image
