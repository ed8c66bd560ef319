import io
import re
import math
import hashlib
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import docx  # python-docx
from pypdf import PdfReader

logger = logging.getLogger("rag_app.chunking")

PAGE_MARKER = re.compile(r"\[Seite (\d+)\]")
CHARS_PER_PAGE = 3000

ALLOWED_EXTS = {".txt", ".md", ".markdown", ".pdf", ".docx", ".html", ".htm"}


@dataclass
class TextChunk:
    text: str
    page: int
    start: int = 0


@dataclass
class DocumentChunk:
    id: str
    text: str
    source_document_name: str
    page_number: int
    sequence_index: int

    def to_record(self, document_url: str = "") -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.text,
            "document_name": self.source_document_name,
            "document_url": document_url or "",
            "page_number": self.page_number,
            "paragraph_number": self.sequence_index + 1,
            "chunk_number": self.sequence_index,
        }


@dataclass
class ExtractedDocument:
    name: str
    text: str
    page_count: int = 1
    pages: List[Tuple[int, str]] = field(default_factory=list)


def clean_text(s: str) -> str:
    s = s.replace("\x00", " ")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def _check_window(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0:
        raise ValueError("overlap must not be negative")
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")


def sliding_windows(length: int, chunk_size: int, overlap: int) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) offsets of overlapping windows over ``length`` characters."""
    _check_window(chunk_size, overlap)
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        yield start, end
        if end >= length:
            break
        # end - overlap > start because overlap < chunk_size
        start = end - overlap


def _split_pages(text: str, start_page: int) -> List[Tuple[int, str]]:
    markers = list(PAGE_MARKER.finditer(text))
    pages: List[Tuple[int, str]] = []
    preamble = text[: markers[0].start()].strip() if markers else ""
    if preamble:
        pages.append((start_page, preamble))
    for i, match in enumerate(markers):
        end = markers[i + 1].start() if i + 1 < len(markers) else len(text)
        pages.append((int(match.group(1)), text[match.end() : end].strip()))
    return pages


def chunk_text(
    text: str,
    start_page: int = 1,
    total_pages: int = 1,
    chunk_size: int = 1000,
    overlap: int = 200,
) -> List[TextChunk]:
    """
    Split extracted text into overlapping fixed-size chunks.

    Text carrying ``[Seite N]`` markers is split per page first; pages longer
    than ``chunk_size`` are windowed. Without markers the window runs over the
    whole text and each chunk's page is interpolated between ``start_page`` and
    ``total_pages`` from its character offset.
    """
    _check_window(chunk_size, overlap)
    if not text:
        return []

    chunks: List[TextChunk] = []

    if PAGE_MARKER.search(text):
        for page_number, page_text in _split_pages(text, start_page):
            if not page_text:
                continue
            if len(page_text) <= chunk_size:
                chunks.append(TextChunk(text=page_text, page=page_number))
                continue
            for start, end in sliding_windows(len(page_text), chunk_size, overlap):
                chunks.append(TextChunk(text=page_text[start:end], page=page_number, start=start))
        return chunks

    length = len(text)
    for start, end in sliding_windows(length, chunk_size, overlap):
        progress = start / length
        page = start_page + math.floor(progress * (total_pages - start_page))
        chunks.append(TextChunk(text=text[start:end], page=page, start=start))
    return chunks


def chunk_id(document_name: str, index: int) -> str:
    name = pathlib.Path(document_name).name
    # search keys allow letters, digits, underscore, dash and equal sign only
    safe = re.sub(r"\s+", "_", name)
    safe = re.sub(r"[^A-Za-z0-9_\-=]", "_", safe)
    # digest of the full name keeps ids unique after sanitizing
    digest = hashlib.sha1(document_name.encode("utf-8")).hexdigest()[:8]
    return f"{safe}_{digest}_chunk_{index}"


def build_document_chunks(document_name: str, chunks: List[TextChunk]) -> List[DocumentChunk]:
    return [
        DocumentChunk(
            id=chunk_id(document_name, i),
            text=c.text,
            source_document_name=document_name,
            page_number=c.page,
            sequence_index=i,
        )
        for i, c in enumerate(chunks)
    ]


def _estimate_page_count(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_PAGE))


def _html_to_text(html: str) -> str:
    html = re.sub(r"(?is)<(script|style).*?>.*?</\1>", " ", html)
    html = re.sub(r"(?is)<br\s*/?>", "\n", html)
    html = re.sub(r"(?is)</p\s*>", "\n\n", html)
    html = re.sub(r"(?is)<.*?>", " ", html)
    return clean_text(html)


def extract_document(name: str, data: bytes) -> ExtractedDocument:
    ext = pathlib.Path(name).suffix.lower()

    if ext == ".pdf":
        reader = PdfReader(io.BytesIO(data))
        pages: List[Tuple[int, str]] = []
        for i, page in enumerate(reader.pages, start=1):
            try:
                page_text = page.extract_text() or ""
            except Exception as exc:
                logger.warning("Could not extract page %d of %s: %s", i, name, exc)
                page_text = ""
            pages.append((i, clean_text(page_text)))
        text = "\n\n".join(f"[Seite {n}]\n{t}" for n, t in pages)
        return ExtractedDocument(name=name, text=text, page_count=len(pages), pages=pages)

    if ext == ".docx":
        d = docx.Document(io.BytesIO(data))
        parts = [p.text for p in d.paragraphs if p.text and p.text.strip()]
        text = clean_text("\n".join(parts))
        return ExtractedDocument(name=name, text=text, page_count=_estimate_page_count(text))

    if ext in {".html", ".htm"}:
        text = _html_to_text(data.decode("utf-8", errors="ignore"))
        return ExtractedDocument(name=name, text=text, page_count=_estimate_page_count(text))

    if ext in {".txt", ".md", ".markdown"}:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("utf-8", errors="ignore")
        text = clean_text(text)
        return ExtractedDocument(name=name, text=text, page_count=_estimate_page_count(text))

    raise ValueError(f"Unsupported file type: {ext or name}")


def chunk_document(
    document: ExtractedDocument,
    chunk_size: int = 1000,
    overlap: int = 200,
    start_page: Optional[int] = None,
) -> List[DocumentChunk]:
    pieces = chunk_text(
        document.text,
        start_page=start_page or 1,
        total_pages=document.page_count,
        chunk_size=chunk_size,
        overlap=overlap,
    )
    return build_document_chunks(document.name, pieces)
