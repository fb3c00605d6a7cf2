"""PDF text extraction via pypdf."""

from __future__ import annotations

import io

import pypdf

from cvsift.errors import ExtractionFailed


def extract(data: bytes) -> str:
    """Extract all page text from the PDF in *data*.

    Pages that yield no text (scanned images, etc.) are silently skipped.
    Page texts are joined with a blank line so the chunker sees a break.

    Raises:
        ExtractionFailed: If pypdf fails on the bytes, whatever it raises.
    """
    try:
        reader = pypdf.PdfReader(io.BytesIO(data))
        parts: list[str] = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            stripped = page_text.strip()
            if stripped:
                parts.append(stripped)
    except Exception as exc:
        raise ExtractionFailed(f"Could not read PDF: {exc}") from exc
    return "\n\n".join(parts)
