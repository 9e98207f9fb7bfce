"""
Unit Tests — TextExtractor
══════════════════════════

Coverage targets:
  ✅ UTF-8 text kinds decoded as-is (BOM dropped)
  ✅ Invalid UTF-8 → PermanentProcessingError
  ✅ JSON re-serialised; invalid JSON → PermanentProcessingError
  ✅ DOCX paragraphs joined, empty ones skipped
  ✅ Corrupt DOCX → PermanentProcessingError
  ✅ extract_async matches extract
"""

from __future__ import annotations

import pytest

from docflow.core.errors import PermanentProcessingError
from docflow.processing.extractor import TextExtractor
from docflow.schemas.documents import ContentKind


@pytest.fixture
def extractor() -> TextExtractor:
    return TextExtractor()


@pytest.mark.unit
class TestTextKinds:

    @pytest.mark.parametrize("kind", ["txt", "md", "csv", "html"])
    def test_utf8_decoded(self, extractor, kind):
        assert extractor.extract("naïve café\nline two".encode(), kind) == "naïve café\nline two"

    def test_bom_is_dropped(self, extractor):
        assert extractor.extract(b"\xef\xbb\xbfhello", ContentKind.TXT) == "hello"

    def test_invalid_utf8_is_permanent(self, extractor):
        with pytest.raises(PermanentProcessingError, match="unsupported encoding"):
            extractor.extract(b"\xff\xfe\xfa", ContentKind.TXT)

    def test_json_pretty_printed(self, extractor):
        assert extractor.extract(b'[1,{"a":"b"}]', "json") == '[\n  1,\n  {\n    "a": "b"\n  }\n]'

    def test_invalid_json_is_permanent(self, extractor):
        with pytest.raises(PermanentProcessingError, match="invalid JSON"):
            extractor.extract(b"{not json", ContentKind.JSON)

    def test_unknown_kind_rejected(self, extractor):
        with pytest.raises(ValueError):
            extractor.extract(b"data", "xlsx")

    async def test_async_matches_sync(self, extractor):
        data = "async text".encode()
        assert await extractor.extract_async(data, "txt") == extractor.extract(data, "txt")


@pytest.mark.unit
class TestBinaryKinds:

    def test_docx_paragraphs(self, extractor, sample_docx_bytes):
        assert extractor.extract(sample_docx_bytes, ContentKind.DOCX) == (
            "Ingestion pipelines turn uploads into searchable text.\n"
            "Each paragraph becomes part of the extracted content."
        )

    def test_corrupt_docx_is_permanent(self, extractor):
        with pytest.raises(PermanentProcessingError, match="corrupt DOCX"):
            extractor.extract(b"PK\x03\x04 truncated", ContentKind.DOCX)

