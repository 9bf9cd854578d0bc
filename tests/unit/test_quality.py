"""Unit tests for the quality analyzer and its OCR gate."""

import zipfile
from unittest.mock import patch

import pytest

from opencouncil.core.quality import (
    DEFAULT_OCR_MIN_CHAR_THRESHOLD,
    PREVIEW_CHAR_LIMIT,
    analyze,
    decide_needs_ocr,
    extract_text,
    is_ocr_eligible,
    mime_type_for,
)


class TestOcrGate:
    def test_threshold_boundary(self):
        threshold = DEFAULT_OCR_MIN_CHAR_THRESHOLD
        assert decide_needs_ocr(threshold - 1, "application/pdf") is True
        assert decide_needs_ocr(threshold, "application/pdf") is False

    def test_images_are_eligible(self):
        assert decide_needs_ocr(0, "image/png") is True

    def test_text_formats_never_need_ocr(self):
        assert decide_needs_ocr(0, "text/plain") is False
        assert is_ocr_eligible("application/msword") is False

    def test_custom_threshold(self):
        assert decide_needs_ocr(50, "application/pdf", threshold=40) is False


class TestMimeTypes:
    @pytest.mark.parametrize("filename, expected", [
        ("minutes.PDF", "application/pdf"),
        ("scan.tiff", "image/tiff"),
        ("notes.txt", "text/plain"),
        ("mystery.zzz", "application/octet-stream"),
    ])
    def test_mime_type_for(self, filename, expected):
        assert mime_type_for(filename) == expected


class TestAnalyze:
    def test_scanned_pdf_needs_ocr(self, tmp_path):
        with patch("opencouncil.core.quality.extract_text", return_value="  " + "x" * 1199 + "\n"):
            analysis = analyze(tmp_path / "download.bin", "scan.pdf")
        assert analysis.needs_ocr is True
        assert analysis.extracted_char_count == 1199
        assert analysis.mime_type == "application/pdf"

    def test_text_rich_pdf_does_not(self, tmp_path):
        with patch("opencouncil.core.quality.extract_text", return_value="x" * 1200):
            analysis = analyze(tmp_path / "download.bin", "minutes.pdf")
        assert analysis.needs_ocr is False
        assert analysis.extracted_char_count == 1200

    def test_display_filename_drives_mime_type(self, tmp_path):
        path = tmp_path / "tmp-download"
        path.write_text("short note")
        analysis = analyze(path, "note.txt")
        assert analysis.mime_type == "text/plain"
        assert analysis.extracted_char_count == len("short note")
        assert analysis.needs_ocr is False

    def test_preview_is_capped(self, tmp_path):
        path = tmp_path / "long.txt"
        path.write_text("y" * (PREVIEW_CHAR_LIMIT + 500))
        assert len(extract_text(path)) == PREVIEW_CHAR_LIMIT

    def test_docx_text(self, tmp_path):
        path = tmp_path / "memo.docx"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(
                "word/document.xml",
                "<w:document><w:body><w:p><w:r><w:t>Hello</w:t></w:r></w:p>"
                "<w:p><w:r><w:t>Town</w:t></w:r></w:p></w:body></w:document>",
            )
        assert extract_text(path).split() == ["Hello", "Town"]
