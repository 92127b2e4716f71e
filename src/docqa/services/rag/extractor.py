from __future__ import annotations

from io import BytesIO
from typing import Protocol

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from docqa.errors import ProcessingError, ValidationError
from docqa.services.rag.types import PageText

PDF_CONTENT_TYPE = "application/pdf"
TEXT_CONTENT_TYPE = "text/plain"
SUPPORTED_CONTENT_TYPES = {PDF_CONTENT_TYPE, TEXT_CONTENT_TYPE}


class TextExtractor(Protocol):
    def extract_pages(self, raw_bytes: bytes) -> list[PageText]: ...


def _normalize_page_text(text: str) -> str:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    return "\n".join(lines).strip()


def sniff_content_type(raw_bytes: bytes, declared: str | None) -> str:
    """Resolve the effective content type of an upload.

    A declared type wins when it is specific; ``application/octet-stream`` or a
    missing header falls back to looking at the payload itself.
    """
    normalized = (declared or "").split(";", 1)[0].strip().lower()
    if normalized and normalized != "application/octet-stream":
        return normalized

    if raw_bytes.startswith(b"%PDF-"):
        return PDF_CONTENT_TYPE
    try:
        raw_bytes.decode("utf-8")
    except UnicodeDecodeError:
        return "application/octet-stream"
    return TEXT_CONTENT_TYPE


class PdfTextExtractor:
    def extract_pages(self, raw_bytes: bytes) -> list[PageText]:
        try:
            reader = PdfReader(BytesIO(raw_bytes))
            pages = list(reader.pages)
        except PdfReadError as exc:
            raise ValidationError(f"Unreadable PDF: {exc}") from exc

        extracted: list[PageText] = []
        for page_number, page in enumerate(pages, start=1):
            try:
                text = page.extract_text() or ""
            except (PdfReadError, KeyError, ValueError) as exc:
                raise ProcessingError(f"Failed to extract text from page {page_number}: {exc}") from exc
            extracted.append(PageText(page=page_number, text=_normalize_page_text(text)))
        return extracted


class PlainTextExtractor:
    """Treats form feeds as page breaks."""

    def extract_pages(self, raw_bytes: bytes) -> list[PageText]:
        try:
            decoded = raw_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("text/plain upload must be UTF-8 encoded") from exc

        return [
            PageText(page=page_number, text=_normalize_page_text(page_text))
            for page_number, page_text in enumerate(decoded.split("\f"), start=1)
        ]


class ContentTypeExtractor:
    def __init__(self, extractors: dict[str, TextExtractor] | None = None) -> None:
        self._extractors = extractors or {
            PDF_CONTENT_TYPE: PdfTextExtractor(),
            TEXT_CONTENT_TYPE: PlainTextExtractor(),
        }

    def for_content_type(self, content_type: str) -> TextExtractor:
        extractor = self._extractors.get(content_type)
        if extractor is None:
            raise ValidationError(
                f"Unsupported content type: {content_type} "
                f"(supported: {sorted(self._extractors)})"
            )
        return extractor
