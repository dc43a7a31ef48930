"""Text extraction from uploads."""

import io

import pytest
from pypdf import PdfWriter

from docembed.errors import PermanentContentError
from docembed.extract import extract_pdf_pages, extract_text, file_type_for


def _blank_pdf(pages=2) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


@pytest.mark.parametrize(
    "filename, expected",
    [("report.PDF", "pdf"), ("notes.md", "md"), ("README", "txt"), ("", "txt")],
)
def test_file_type_for(filename, expected) -> None:
    assert file_type_for(filename) == expected


def test_text_file_strips_bom() -> None:
    assert extract_text("notes.txt", "\ufeffhello".encode("utf-8")) == "hello"


def test_invalid_utf8_is_replaced() -> None:
    assert extract_text("notes.txt", b"caf\xe9") == "caf\ufffd"


def test_pdf_pages_are_counted_even_when_empty() -> None:
    assert extract_pdf_pages(_blank_pdf(3)) == ["", "", ""]
    assert extract_text("scan.pdf", _blank_pdf()) == ""


def test_corrupt_pdf_is_permanent() -> None:
    with pytest.raises(PermanentContentError):
        extract_text("broken.pdf", b"definitely not a pdf")


def test_unsupported_extension() -> None:
    with pytest.raises(PermanentContentError):
        extract_text("photo.png", b"\x89PNG")
