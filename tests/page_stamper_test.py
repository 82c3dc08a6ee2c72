import io

import pytest
from pypdf import PdfReader, PdfWriter

from assembly_engine import (
    AssemblyConfig,
    ConfigurationError,
    PageStamper,
    Row,
    compute_metadata_position,
    compute_stamp_position,
    format_identifier,
    metadata_text,
)


def test_identifier_is_zero_padded_and_never_truncated():
    assert format_identifier("DOC-", 1, 6) == "DOC-000001"
    assert format_identifier("", 42, 3) == "042"
    assert format_identifier("X", 12345, 3) == "X12345"


@pytest.mark.parametrize(
    "position, expected",
    [
        ("bottom-right", (532, 20)),
        ("bottom-left", (20, 20)),
        ("bottom-center", (276, 20)),
        ("top-right", (532, 762)),
        ("top-left", (20, 762)),
        ("top-center", (276, 762)),
    ],
)
def test_stamp_anchor_positions(position, expected):
    assert compute_stamp_position(position, 612, 792, len("DOC-000001")) == expected


def test_unknown_position_is_rejected():
    with pytest.raises(ConfigurationError):
        compute_stamp_position("middle", 612, 792, 10)


def test_metadata_sits_opposite_the_identifier():
    assert compute_metadata_position("bottom-right", 612, 792, 16) == (20, 762)
    assert compute_metadata_position("top-left", 612, 792, 16) == (496, 20)
    assert compute_metadata_position("bottom-center", 612, 792, 16) == (496, 762)


def test_long_metadata_stays_inside_the_right_margin():
    text_length = 80
    x, y = compute_metadata_position("top-left", 612, 792, text_length, margin_x=30, margin_y=25, character_width=4.2)

    assert x + text_length * 4.2 == pytest.approx(612 - 30)
    assert y == 25


def test_metadata_text_uses_placeholder_for_missing_id():
    assert metadata_text(Row(source_id="a", page_number=1, id="T-1", primary_date="2024-01-01")) == "T-1 | 2024-01-01"
    assert metadata_text(Row(source_id="a", page_number=1, primary_date="2024-01-01")) == "N/A | 2024-01-01"
    assert metadata_text(Row(source_id="a", page_number=1, primary_date="")) is None


def _stamp_first_page(pdf_bytes, config, sequence_number, row=None):
    writer = PdfWriter()
    page = writer.add_page(PdfReader(io.BytesIO(pdf_bytes)).pages[0])
    identifier = PageStamper(config).stamp(page, sequence_number, row)
    buffer = io.BytesIO()
    writer.write(buffer)
    return identifier, PdfReader(io.BytesIO(buffer.getvalue())).pages[0]


def test_stamp_draws_identifier_and_metadata_without_changing_page_box(make_pdf_bytes):
    row = Row(source_id="a.pdf", page_number=1, id="T-1", primary_date="2024-01-01")

    identifier, page = _stamp_first_page(make_pdf_bytes("src"), AssemblyConfig(), 1, row)

    text = page.extract_text()
    assert identifier == "DOC-000001"
    assert "DOC-000001" in text
    assert "T-1 | 2024-01-01" in text
    assert "src page 1" in text
    assert float(page.mediabox.width) == 612
    assert float(page.mediabox.height) == 792


def test_stamp_respects_disabled_metadata_and_custom_prefix(make_pdf_bytes):
    config = AssemblyConfig(prefix="ABC", digits=4, metadata_enabled=False)
    row = Row(source_id="a.pdf", page_number=1, id="T-1", primary_date="2024-01-01")

    identifier, page = _stamp_first_page(make_pdf_bytes("src"), config, 17, row)

    text = page.extract_text()
    assert identifier == "ABC0017"
    assert "ABC0017" in text
    assert "T-1" not in text


def test_long_metadata_is_drawn_within_the_page(make_pdf_bytes):
    long_id = "TRADE-" + "7" * 60
    row = Row(source_id="a.pdf", page_number=1, id=long_id, primary_date="2024-01-01")

    _, page = _stamp_first_page(make_pdf_bytes("src"), AssemblyConfig(position="top-left"), 1, row)

    assert f"{long_id} | 2024-01-01" in page.extract_text()
