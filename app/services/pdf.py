import hashlib
from dataclasses import dataclass

import fitz  # PyMuPDF


class PdfReadError(ValueError):
    """Bytes are not a readable PDF."""


@dataclass
class PdfMetadata:
    page_count: int
    sha256: str


def count_pages(pdf_bytes: bytes) -> int:
    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return len(doc)
    except Exception as e:
        raise PdfReadError(f"Unable to read PDF: {e}") from e


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_pdf_metadata(pdf_bytes: bytes) -> PdfMetadata:
    """Page count and SHA-256 of a PDF."""
    return PdfMetadata(page_count=count_pages(pdf_bytes), sha256=content_hash(pdf_bytes))
