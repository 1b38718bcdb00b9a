"""
Pytest configuration and fixtures for PDF Press Backend tests.
"""

import asyncio
import io
import os
import shutil
import tempfile
from pathlib import Path

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from starlette.datastructures import UploadFile

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="pdfpress_test_")
os.environ["UPLOAD_DIR"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["OUTPUT_DIR"] = os.path.join(_TEST_ROOT, "output")
os.environ["SCRATCH_DIR"] = os.path.join(_TEST_ROOT, "scratch")
# Optional tools are made unavailable so results do not depend on the host
os.environ["GHOSTSCRIPT_BINARY"] = "pdfpress-test-missing-gs"
os.environ["LIBREOFFICE_BINARY"] = "pdfpress-test-missing-libreoffice"
os.environ["MAX_UPLOAD_MB"] = "1"
os.environ["MAX_REQUEST_MB"] = "4"
os.environ["MEMORY_CHECK_INTERVAL"] = "0"

from pdfpress_backend.configuration import load_settings
from pdfpress_backend.main import app, job_manager
from pdfpress_backend.tool_probe import ExternalToolProbe


def build_pdf(page_count: int, label: str = "Page") -> bytes:
    """Create a PDF whose pages read '<label> 1', '<label> 2', ..."""
    doc = fitz.open()
    for number in range(1, page_count + 1):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), f"{label} {number}", fontsize=24)
    data = doc.tobytes()
    doc.close()
    return data


def build_png(width: int, height: int, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def page_texts(pdf_bytes: bytes) -> list:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [page.get_text().strip() for page in doc]


def make_upload(data: bytes, filename: str) -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename)


def directory_entries(path: Path) -> list:
    return sorted(p.name for p in path.iterdir()) if path.exists() else []


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


class StaticProbe(ExternalToolProbe):
    """Tool probe with fixed answers instead of spawning binaries."""

    def __init__(self, settings, available=None):
        super().__init__(settings)
        self.available = dict(available or {})
        self.calls = []

    async def is_available(self, tool: str) -> bool:
        self.calls.append(tool)
        return self.available.get(tool, False)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Create and cleanup test directories."""
    yield Path(_TEST_ROOT)
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def manager():
    """The application's job manager."""
    return job_manager


@pytest.fixture
def make_settings(tmp_path):
    """Factory for isolated settings rooted in tmp_path; keyword args are config sections."""

    def factory(**sections):
        overrides = {
            "storage": {
                "upload_dir": str(tmp_path / "uploads"),
                "output_dir": str(tmp_path / "output"),
                "scratch_dir": str(tmp_path / "scratch"),
            },
            "memory": {"check_interval": 0},
        }
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        return load_settings(overrides=overrides, environ={})

    return factory


@pytest.fixture
def sample_pdf():
    """A three-page PDF."""
    return build_pdf(3)
