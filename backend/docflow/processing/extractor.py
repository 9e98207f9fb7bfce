"""
Text Extraction
═══════════════

Turns raw upload bytes into plain text for the chunker.

  pdf              → pypdf, pages joined with a blank line
  docx             → python-docx, one line per non-empty paragraph
  txt / md / csv   → strict UTF-8 (a leading BOM is tolerated)
  html             → strict UTF-8, markup kept as-is
  json             → parsed and re-serialised with indent=2

Anything that cannot be decoded or parsed raises PermanentProcessingError:
retrying a corrupt file cannot succeed, so the job queue fails the job on
the first attempt.

The parsers are synchronous; the worker calls `extract_async()`, which runs
them on a thread so the event loop keeps serving other jobs and streams.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import zipfile

from docflow.core.errors import PermanentProcessingError
from docflow.schemas.documents import ContentKind

logger = logging.getLogger(__name__)

_TEXT_KINDS = frozenset({ContentKind.TXT, ContentKind.MD, ContentKind.CSV, ContentKind.HTML})


class TextExtractor:
    """
    Stateless extractor.

    Usage:
        extractor = TextExtractor()
        text = await extractor.extract_async(data, ContentKind.PDF)
    """

    async def extract_async(self, data: bytes, kind: ContentKind | str) -> str:
        return await asyncio.to_thread(self.extract, data, kind)

    def extract(self, data: bytes, kind: ContentKind | str) -> str:
        kind = ContentKind(kind)

        if kind in _TEXT_KINDS:
            return _decode_utf8(data)
        if kind is ContentKind.JSON:
            return _extract_json(data)
        if kind is ContentKind.PDF:
            return _extract_pdf(data)
        if kind is ContentKind.DOCX:
            return _extract_docx(data)

        raise PermanentProcessingError(f"No extractor for content kind '{kind.value}'")


# ---------------------------------------------------------------------------
# Per-kind parsers
# ---------------------------------------------------------------------------

def _decode_utf8(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise PermanentProcessingError(
            f"unsupported encoding: content is not valid UTF-8 (byte {exc.start})"
        ) from exc


def _extract_json(data: bytes) -> str:
    raw = _decode_utf8(data)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PermanentProcessingError(f"invalid JSON: {exc.msg} at line {exc.lineno}") from exc
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def _extract_pdf(data: bytes) -> str:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, KeyError) as exc:
        logger.warning("PDF parse failed | error=%s", exc)
        raise PermanentProcessingError(f"corrupt PDF: {exc}") from exc

    return "\n\n".join(p for p in pages if p.strip())


def _extract_docx(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx."""
    import docx
    from docx.opc.exceptions import PackageNotFoundError

    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError) as exc:
        logger.warning("DOCX parse failed | error=%s", exc)
        raise PermanentProcessingError(f"corrupt DOCX: {exc}") from exc

    return "\n".join(para.text for para in document.paragraphs if para.text.strip())
