"""
Pytest configuration and fixtures for docshift tests.
"""

import os
import shutil
import tempfile
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.pdfgen import canvas

# Point scratch and results at temp dirs before importing the app
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="docshift_test_uploads_")
os.environ["RESULTS_DIR"] = tempfile.mkdtemp(prefix="docshift_test_results_")
os.environ["BASE_URL"] = "http://testserver"
os.environ["CLEANUP_MODE"] = "lazy"

from docshift.errors import ToolFailed  # noqa: E402
from docshift.main import app  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Remove the scratch and results directories after the session."""
    yield {"upload": Path(os.environ["UPLOAD_DIR"]), "results": Path(os.environ["RESULTS_DIR"])}
    shutil.rmtree(os.environ["UPLOAD_DIR"], ignore_errors=True)
    shutil.rmtree(os.environ["RESULTS_DIR"], ignore_errors=True)


@pytest.fixture
def upload_dir(test_dirs):
    return test_dirs["upload"]


@pytest.fixture
def results_dir(test_dirs):
    return test_dirs["results"]


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def page_width(index):
    """Fixture PDFs give page ``index`` a distinct width so order is checkable."""
    return 300 + 10 * index


def build_pdf(page_count):
    buffer = BytesIO()
    c = canvas.Canvas(buffer, invariant=1)
    for index in range(page_count):
        c.setPageSize((page_width(index), 400))
        c.drawString(20, 200, f"Page {index + 1}")
        c.showPage()
    c.save()
    return buffer.getvalue()


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def sample_pdf():
    """Five pages, widths 300, 310, 320, 330, 340."""
    return build_pdf(5)


def build_image(size=(40, 60), fmt="JPEG", color="white"):
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    return build_image


class FakeTool:
    """Stands in for an external tool adapter: records calls, writes a canned output."""

    def __init__(self, payload=b"%PDF-1.4 fake output", error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def run(self, input_path, output_path, **params):
        assert input_path.exists()
        self.calls.append({"input": input_path, "output": output_path, **params})
        if self.error:
            raise ToolFailed(self.error)
        output_path.write_bytes(self.payload)
        return output_path


class FakeRasterizer(FakeTool):
    def __init__(self, pages=3, error=None):
        super().__init__(error=error)
        self.pages = pages

    def run(self, input_path, output_path, **params):
        assert input_path.exists()
        self.calls.append({"input": input_path, "output": output_path, **params})
        output_path.mkdir(parents=True, exist_ok=True)
        # Leave a partial page behind before failing, like a crashed pdftoppm would
        Image.new("RGB", (40, 60), "white").save(output_path / "page-01.jpg")
        if self.error:
            raise ToolFailed(self.error)
        for index in range(2, self.pages + 1):
            Image.new("RGB", (40 + index, 60), "white").save(output_path / f"page-{index:02d}.jpg")
        return output_path


@pytest.fixture
def override():
    """Swap an adapter dependency for a fake for the duration of a test."""

    def _override(dependency, fake):
        app.dependency_overrides[dependency] = lambda: fake
        return fake

    yield _override
    app.dependency_overrides.clear()
