# docembed/extract.py
"""Plain text out of uploaded files: PDFs page by page via pypdf, text files as UTF-8."""
import io
import logging
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from docembed.errors import PermanentContentError

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".csv", ".json", ".html", ".htm"}


def file_type_for(filename: str) -> str:
    ext = Path(filename or "").suffix.lower().lstrip(".")
    return ext or "txt"


def extract_pdf_pages(data: bytes, name: str = "upload.pdf"):
    """
    Returns a list of page texts. A page whose extraction fails is kept as an
    empty string so the page count stays meaningful.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError) as e:
        raise PermanentContentError(f"could not parse PDF {name}: {e}") from e
    pages = []
    for i, page in enumerate(reader.pages):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            logger.warning("Failed to extract text from page %s of %s: %s", i + 1, name, e)
            text = ""
        pages.append(text)
    return pages


def extract_text(filename: str, data: bytes) -> str:
    ext = Path(filename or "").suffix.lower()
    if ext == ".pdf":
        pages = extract_pdf_pages(data, filename)
        return "\n\n".join(p.strip() for p in pages if p and p.strip())
    if ext in TEXT_EXTENSIONS or not ext:
        # strip a UTF-8 BOM if present
        return data.decode("utf-8-sig", errors="replace")
    raise PermanentContentError(f"unsupported file type: {ext}")
