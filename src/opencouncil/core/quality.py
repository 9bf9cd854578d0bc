"""Quality analyzer: native text extraction and the OCR gate."""

import logging
import mimetypes
import re
import zipfile
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

from .models import QualityAnalysis

logger = logging.getLogger(__name__)

DEFAULT_OCR_MIN_CHAR_THRESHOLD = 1200
PREVIEW_PAGE_LIMIT = 5
PREVIEW_CHAR_LIMIT = 15000

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}

_XML_TAG = re.compile(r"<[^>]+>")
_PARAGRAPH_END = re.compile(r"</w:p>")


def mime_type_for(filename: str) -> str:
    """MIME type derived from the file extension."""
    ext = Path(filename).suffix.lower()
    if ext in MIME_TYPES:
        return MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def is_ocr_eligible(mime_type: str) -> bool:
    return mime_type == "application/pdf" or mime_type.startswith("image/")


def decide_needs_ocr(char_count: int, mime_type: str, threshold: int = DEFAULT_OCR_MIN_CHAR_THRESHOLD) -> bool:
    """True when a rasterizable file yielded fewer characters than the threshold."""
    return is_ocr_eligible(mime_type) and char_count < threshold


def extract_pdf_text(file_path: Path, max_pages: int = PREVIEW_PAGE_LIMIT) -> str:
    """Extract text from the first pages of a PDF."""
    doc = fitz.open(file_path)
    try:
        parts = []
        for page_num in range(min(doc.page_count, max_pages)):
            parts.append(doc[page_num].get_text())
        return "\n".join(parts)
    finally:
        doc.close()


def extract_docx_text(file_path: Path) -> str:
    with zipfile.ZipFile(file_path) as archive:
        xml = archive.read("word/document.xml").decode("utf-8", errors="ignore")
    xml = _PARAGRAPH_END.sub("\n", xml)
    return _XML_TAG.sub("", xml)


def extract_text(file_path: Path, mime_type: Optional[str] = None) -> str:
    """Extract preview text with the file's native reader, capped for storage."""
    file_path = Path(file_path)
    mime_type = mime_type or mime_type_for(file_path.name)

    if mime_type == "application/pdf":
        text = extract_pdf_text(file_path)
    elif mime_type == "text/plain":
        text = file_path.read_text(encoding="utf-8", errors="ignore")
    elif mime_type == MIME_TYPES[".docx"]:
        text = extract_docx_text(file_path)
    else:
        text = ""

    return text[:PREVIEW_CHAR_LIMIT]


def analyze(
    file_path: Path,
    display_filename: str,
    threshold: Optional[int] = None
) -> QualityAnalysis:
    """Classify a downloaded file as usable text or needing OCR.

    Args:
        file_path: Local path of the downloaded file
        display_filename: Original filename, used for MIME detection
        threshold: Minimum character count for the text path

    Returns:
        QualityAnalysis with the OCR decision and extracted preview
    """
    if threshold is None:
        threshold = DEFAULT_OCR_MIN_CHAR_THRESHOLD

    mime_type = mime_type_for(display_filename)
    text = extract_text(file_path, mime_type)
    char_count = len(text.strip())
    needs_ocr = decide_needs_ocr(char_count, mime_type, threshold)

    logger.info(
        f"Analyzed {display_filename}: {char_count} chars, needs_ocr={needs_ocr}"
    )
    return QualityAnalysis(
        needs_ocr=needs_ocr,
        extracted_char_count=char_count,
        mime_type=mime_type,
        preview_text=text,
    )
