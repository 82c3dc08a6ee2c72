from io import BytesIO
from pathlib import Path
import shutil
import os
import tempfile
import uuid

import pytest
from pypdf import PdfReader
from reportlab.pdfgen import canvas


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "assembler_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def build_pdf_bytes(label: str = "source", pages: int = 1, width: float = 612, height: float = 792) -> bytes:
    """PDF whose page N carries the text '<label> page N'."""
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height))
    for number in range(1, pages + 1):
        pdf.setFont("Helvetica", 12)
        pdf.drawString(100, height / 2, f"{label} page {number}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture
def make_pdf_bytes():
    return build_pdf_bytes


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1, label: str = "") -> Path:
        path = tmp_path / filename
        path.write_bytes(build_pdf_bytes(label or Path(filename).stem, pages))
        return path

    return _make


@pytest.fixture
def read_pdf():
    def _read(pdf_bytes: bytes) -> PdfReader:
        return PdfReader(BytesIO(pdf_bytes))

    return _read


@pytest.fixture
def page_texts(read_pdf):
    def _texts(pdf_bytes: bytes):
        return [page.extract_text() or "" for page in read_pdf(pdf_bytes).pages]

    return _texts

