"""Document text extraction helpers.

Pure infra, no domain imports.
"""

from __future__ import annotations

_PDF_FILETYPE = "pdf"

# pymupdf opens these formats directly.
PYMUPDF_EXTENSIONS = frozenset({".pdf", ".epub", ".xps", ".fb2", ".mobi"})


def extract_text_from_pdf(data: bytes, filetype: str = _PDF_FILETYPE) -> str:
    """Extract readable text from raw document bytes using pymupdf."""
    import pymupdf  # lazy, only needed for binary documents

    parts: list[str] = []
    with pymupdf.open(stream=data, filetype=filetype) as doc:
        for page in doc:
            parts.append(page.get_text())
    return "\n".join(parts)


def decode_text(data: bytes) -> str:
    """Decode plain-text bytes, tolerating a BOM and stray bytes."""
    return data.decode("utf-8-sig", errors="replace")
