import io
import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional

import fitz  # PyMuPDF
import PyPDF2

from atspect.core.config import settings
from atspect.core.exceptions import ExtractionError, PreviewError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
PNG_CONTENT_TYPE = "image/png"


@dataclass
class UploadedDocument:
    """A file held in memory between the request and the storage upload."""
    filename: str
    content: bytes
    content_type: str = PDF_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class DocumentValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    size: int = 0
    content_type: Optional[str] = None


def _is_pdf(document: UploadedDocument) -> bool:
    if document.content_type == PDF_CONTENT_TYPE:
        return True
    return document.filename.lower().endswith(".pdf")


def validate_document(document: Optional[UploadedDocument]) -> DocumentValidation:
    """Check type, size and emptiness. Never raises."""
    if document is None:
        return DocumentValidation(is_valid=False, errors=["No file provided"])

    errors: List[str] = []
    max_mb = settings.upload.document_max_size_mb
    if not _is_pdf(document):
        errors.append("File must be a PDF")
    if document.size > max_mb * 1024 * 1024:
        errors.append(f"File size must be less than {max_mb}MB")
    if document.size == 0:
        errors.append("File cannot be empty")

    return DocumentValidation(
        is_valid=not errors,
        errors=errors,
        size=document.size,
        content_type=document.content_type,
    )


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def extract_text(document: UploadedDocument, min_length: Optional[int] = None) -> str:
    """
    Extract text from every page, in page order.

    Raises ExtractionError when the file cannot be parsed or yields less text
    than a real text layer would (scanned images, empty templates).
    """
    min_length = settings.upload.min_text_length if min_length is None else min_length
    logger.info(f"Extracting text from {document.filename} ({document.size} bytes)")

    try:
        reader = PyPDF2.PdfReader(io.BytesIO(document.content))
        pages = []
        for page_number, page in enumerate(reader.pages, start=1):
            page_text = _normalize_whitespace(page.extract_text() or "")
            logger.debug(f"Page {page_number}: {len(page_text)} chars")
            pages.append(page_text)
    except Exception as e:
        logger.error(f"PDF parsing failed for {document.filename}: {e}")
        raise ExtractionError(
            "Could not extract text from PDF. Please ensure it's not a scanned image or password-protected."
        ) from e

    text = "\n".join(pages).strip()
    if len(text) < min_length:
        logger.warning(f"Extracted text too short ({len(text)} chars) for {document.filename}")
        raise ExtractionError(
            "Could not extract readable text from PDF. Please ensure it's not a scanned image or password-protected."
        )

    logger.info(f"Extracted {len(text)} characters from {len(pages)} page(s)")
    return text


def render_first_page_preview(document: UploadedDocument, scale: Optional[float] = None) -> UploadedDocument:
    """Rasterize page 1 to PNG. Callers treat failure as non-critical."""
    scale = settings.upload.preview_scale if scale is None else scale
    try:
        with fitz.open(stream=document.content, filetype="pdf") as pdf:
            if pdf.page_count == 0:
                raise PreviewError("PDF has no pages")
            pix = pdf[0].get_pixmap(matrix=fitz.Matrix(scale, scale))
            png_bytes = pix.tobytes("png")
    except PreviewError:
        raise
    except Exception as e:
        logger.warning(f"Preview rendering failed for {document.filename}: {e}")
        raise PreviewError(f"Failed to convert PDF to image: {e}") from e

    if not png_bytes:
        raise PreviewError("Failed to create image blob")

    return UploadedDocument(
        filename=f"resume-preview-{int(time.time() * 1000)}.png",
        content=png_bytes,
        content_type=PNG_CONTENT_TYPE,
    )
