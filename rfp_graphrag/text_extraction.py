from __future__ import annotations

import io
import itertools
import logging
import mimetypes
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pdfplumber

from .exceptions import ExtractionError, UnsupportedFormatError
from .models import validate_workflow_id


logger = logging.getLogger(__name__)

PDF_TYPES = {"application/pdf"}
TEXT_TYPES = {
    "text/plain",
    "text/markdown",
    "text/csv",
    "application/json",
}
_SUFFIX_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
}
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class ExtractedText:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _is_extractable(mime: str) -> bool:
    return mime in PDF_TYPES or mime in TEXT_TYPES or mime.startswith("text/")


def save_uploaded_file(
    raw_bytes: bytes,
    original_name: str,
    upload_root: Path,
    workflow_id: Optional[str] = None,
) -> Path:
    """
    Store an upload for ingestion and return the stored path.

    Files land in ``upload_root/<workflow_id>/`` when a workflow id is given,
    otherwise directly in ``upload_root``. The stored name keeps the original
    stem reduced to path-safe characters plus the lower-cased suffix; a taken
    name gets the next free ``_<n>`` suffix. Existing files are never
    overwritten, even by concurrent uploads of the same name.

    Raises
    ------
    UnsupportedFormatError
        If the suffix has no text extractor.
    """
    target_dir = Path(upload_root)
    if workflow_id is not None:
        target_dir = target_dir / validate_workflow_id(workflow_id)

    name = Path(original_name.replace("\\", "/")).name
    stem, suffix = os.path.splitext(name)
    suffix = suffix.lower()
    if not _is_extractable(guess_mime_type(Path(f"upload{suffix}")) or ""):
        raise UnsupportedFormatError(f"Unsupported upload type: {original_name!r}")
    stem = _UNSAFE_NAME_CHARS.sub("_", stem).strip("._") or "document"

    target_dir.mkdir(parents=True, exist_ok=True)
    for counter in itertools.count():
        candidate = target_dir / (f"{stem}{suffix}" if counter == 0 else f"{stem}_{counter}{suffix}")
        try:
            with open(candidate, "xb") as f:
                f.write(raw_bytes)
        except FileExistsError:
            continue
        logger.info("Stored upload %s as %s (%d bytes)", original_name, candidate, len(raw_bytes))
        return candidate


def guess_mime_type(path: Path) -> Optional[str]:
    suffix_type = _SUFFIX_TYPES.get(path.suffix.lower())
    if suffix_type:
        return suffix_type
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed


def _extract_text_from_pdf_bytes(raw_bytes: bytes) -> Tuple[str, int]:
    text_chunks: List[str] = []
    logger.info("Opening PDF with pdfplumber to extract text...")
    with pdfplumber.open(io.BytesIO(raw_bytes)) as pdf:
        page_count = len(pdf.pages)
        for i, page in enumerate(pdf.pages, start=1):
            page_text = page.extract_text() or ""
            if page_text.strip():
                text_chunks.append(page_text)
            else:
                logger.debug("Page %d has no extractable text.", i)

    logger.info(
        "Finished extracting text from PDF (pages=%d, non-empty pages=%d)",
        page_count,
        len(text_chunks),
    )
    return "\n\n".join(text_chunks), page_count


class TextExtractor:
    """Turns an uploaded file into plain text plus basic file metadata."""

    def extract(self, path: Path | str, mime_type: Optional[str] = None) -> ExtractedText:
        path = Path(path)
        mime = (mime_type or guess_mime_type(path) or "").split(";")[0].strip().lower()

        if not _is_extractable(mime):
            raise UnsupportedFormatError(f"Unsupported file type '{mime or path.suffix}' for {path.name}")

        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ExtractionError(f"Cannot read {path}: {e}") from e

        pages = 1
        if mime in PDF_TYPES:
            try:
                text, pages = _extract_text_from_pdf_bytes(raw)
            except Exception as e:
                logger.exception("Error while extracting text from PDF %s", path.name)
                raise ExtractionError(f"Failed to extract text from {path.name}: {e}") from e
        else:
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ExtractionError(f"{path.name} is not valid UTF-8 text") from e

        logger.info("Extracted %d characters from %s (%s)", len(text), path.name, mime)
        return ExtractedText(
            text=text,
            metadata={"size": len(raw), "type": mime, "pages": pages},
        )


__all__ = ["ExtractedText", "TextExtractor", "save_uploaded_file", "guess_mime_type"]
