"""OCR escalation: rasterize pages with pdftoppm, recognize them with tesseract."""

import re
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional

import pytesseract
from PIL import Image

from .blob_store import BlobStore
from .errors import BlobStorageError, OcrError, truncate_error
from .logging_config import get_audit_logger
from .quality import is_ocr_eligible

logger = get_audit_logger("ocr")

PAGE_BREAK = "\n\n--- Page Break ---\n\n"

_PAGE_NUMBER = re.compile(r"(\d+)$")


def _page_number(image_path: Path) -> int:
    match = _PAGE_NUMBER.search(image_path.stem)
    return int(match.group(1)) if match else 0


class OcrEngine:
    """Page-by-page OCR inside a disposable working directory."""

    def __init__(self, dpi: int = 200, language: str = "eng", work_root: Optional[Path] = None):
        self.dpi = dpi
        self.language = language
        self.work_root = work_root

    def rasterize_pdf(self, pdf_path: Path, output_dir: Path) -> List[Path]:
        """Render each PDF page to a PNG and return them in page order."""
        prefix = output_dir / "page"
        try:
            subprocess.run(
                ["pdftoppm", "-png", "-r", str(self.dpi), str(pdf_path), str(prefix)],
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise OcrError("pdftoppm is not installed") from e
        except subprocess.CalledProcessError as e:
            raise OcrError(f"pdftoppm failed: {(e.stderr or '').strip() or e}") from e

        pages = sorted(output_dir.glob("page*.png"), key=_page_number)
        if not pages:
            raise OcrError(f"pdftoppm produced no pages for {pdf_path.name}")
        return pages

    def recognize_image(self, image_path: Path) -> str:
        try:
            with Image.open(image_path) as image:
                return pytesseract.image_to_string(image, lang=self.language, config="--psm 3")
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            raise OcrError(f"tesseract failed on {image_path.name}: {e}") from e

    def ocr_file(self, file_path: Path) -> str:
        """OCR a PDF or image file and return the concatenated page text.

        Pages are processed sequentially to keep memory bounded. The working
        directory is removed whether recognition succeeds or fails.
        """
        file_path = Path(file_path)
        with tempfile.TemporaryDirectory(prefix="ocr-", dir=self.work_root) as work_dir:
            if file_path.suffix.lower() == ".pdf":
                pages = self.rasterize_pdf(file_path, Path(work_dir))
            else:
                pages = [file_path]

            texts = []
            for page in pages:
                texts.append(self.recognize_image(page).strip())

        text = PAGE_BREAK.join(texts)
        logger.info("ocr_completed", file=file_path.name, pages=len(pages), chars=len(text))
        return text


def ocr_surrogate(text: str, source_key: str, town: str, board: Optional[str], category: Optional[str]) -> str:
    """Text surrogate uploaded in place of a scanned original."""
    source = " ".join(part for part in (town, board or "", category or "") if part)
    return f"DOCUMENT: {source_key}\nSOURCE: {source}\n\n{text}"


class OcrQueueWorker:
    """Consumer of queued OCR blobs; safe to run several side by side."""

    def __init__(self, blob_store: BlobStore, engine: OcrEngine, stale_minutes: int = 30):
        self.blob_store = blob_store
        self.engine = engine
        self.stale_minutes = stale_minutes

    def run_once(self) -> bool:
        """Claim and process one queued blob. Returns False when the queue is empty."""
        blob = self.blob_store.claim_next_ocr_job()
        if blob is None:
            return False

        logger.info("ocr_job_claimed", blob_id=blob.id, filename=blob.original_filename)
        if not is_ocr_eligible(blob.mime_type):
            self.blob_store.record_ocr_failure(blob.id, f"Unsupported MIME type for OCR: {blob.mime_type}")
            return True

        try:
            data = self.blob_store.read_blob(blob)
            with tempfile.TemporaryDirectory(prefix="ocr-src-", dir=self.engine.work_root) as tmp:
                local_path = Path(tmp) / Path(blob.original_filename).name
                local_path.write_bytes(data)
                text = self.engine.ocr_file(local_path)
        except (OcrError, BlobStorageError) as e:
            logger.warning("ocr_job_failed", blob_id=blob.id, error=str(e))
            self.blob_store.record_ocr_failure(blob.id, truncate_error(e))
            return True

        self.blob_store.record_ocr_result(blob.id, text)
        return True

    def run(self, poll_interval: float = 5.0, max_jobs: Optional[int] = None, sleep=time.sleep) -> int:
        """Drain the queue, then poll. Stops after `max_jobs` when given."""
        self.blob_store.recover_stale_ocr_jobs(self.stale_minutes)
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if self.run_once():
                processed += 1
                continue
            if max_jobs is not None:
                break
            sleep(poll_interval)
        return processed
