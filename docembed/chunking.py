# docembed/chunking.py
"""
Character-window chunking with overlap.

A window of ``chunk_size`` characters slides over the text, stepping back
``overlap`` characters each time so context is not severed at a window edge.
Each window is cut at the last paragraph break, sentence end or space in its
second half, so words are not split and windows stay close to full.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from docembed.config import settings
from docembed.models import DocumentCategory

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4  # rough approximation used for token estimates

# (chunk_size, overlap) in characters, per document category
CATEGORY_CHUNKING: Dict[DocumentCategory, Tuple[int, int]] = {
    DocumentCategory.PRODUCTS: (3200, 400),      # product sheets need precise retrieval
    DocumentCategory.BRAND: (5200, 800),         # guidelines need context
    DocumentCategory.AUDIENCE: (4000, 600),
    DocumentCategory.CONTENT: (4800, 600),
    DocumentCategory.COMPETITORS: (4000, 600),
}

_BOUNDARIES = ("\n\n", ". ", "! ", "? ", "\n", " ")


@dataclass
class Chunk:
    index: int
    text: str
    start: int
    end: int

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)


def estimate_tokens(text: str) -> int:
    return (len(text or "") + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def chunking_options_for(category) -> Tuple[int, int]:
    try:
        category = DocumentCategory(category)
    except ValueError:
        category = DocumentCategory.GENERAL
    return CATEGORY_CHUNKING.get(category, (settings.chunk_size, settings.chunk_overlap))


def _window_end(text: str, start: int, limit: int) -> int:
    """Boundary closest to ``limit`` in the back half of the window, else ``limit``."""
    floor = start + (limit - start) // 2
    best = -1
    for sep in _BOUNDARIES:
        idx = text.rfind(sep, floor, limit)
        if idx != -1:
            best = max(best, idx + len(sep))
    return best if best != -1 else limit


def chunk_text(text: str, chunk_size: int = None, overlap: int = None) -> List[Chunk]:
    """
    Split ``text`` into overlapping chunks. Empty or whitespace-only text yields [].
    ``start``/``end`` are offsets into the original text; chunk text is stripped.
    """
    chunk_size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if overlap is None else overlap
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    if not text or not text.strip():
        return []

    n = len(text)
    chunks: List[Chunk] = []
    start = 0
    while start < n:
        limit = min(start + chunk_size, n)
        end = limit if limit == n else _window_end(text, start, limit)
        piece = text[start:end].strip()
        if piece:
            chunks.append(Chunk(index=len(chunks), text=piece, start=start, end=end))
        if end >= n:
            break
        # always move forward, even when the boundary sits inside the overlap
        start = max(end - overlap, start + 1)
    return chunks


def chunk_document(content: str, category=DocumentCategory.GENERAL) -> List[Chunk]:
    size, overlap = chunking_options_for(category)
    chunks = chunk_text(content, size, overlap)
    logger.debug("Chunked %d chars into %d chunks (size=%d overlap=%d)", len(content or ""), len(chunks), size, overlap)
    return chunks


def batch_iterable(items, batch_size: int):
    """
    Yield lists of items of size up to batch_size from iterable.
    """
    batch = []
    for item in items:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch
