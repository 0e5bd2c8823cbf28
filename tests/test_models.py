"""Tests for document and chunk models."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from errors import ValidationError
from models.chunk import Chunk
from models.document import DocumentRecord, RawDocument


def test_raw_document_requires_id():
    with pytest.raises(ValidationError):
        RawDocument(external_id="  ", title="Untitled")


def test_raw_document_defaults():
    document = RawDocument(external_id="GL-1", title="", raw_text=None)

    assert document.title == "Document GL-1"
    assert document.raw_text == ""
    assert document.has_content is False


def test_chunk_embedding_lifecycle():
    chunk = Chunk(chunk_id="GL-1_page_1", doc_id="GL-1", ordinal=1, content="text")

    chunk.mark_embedding_failed()
    assert chunk.embedding is None
    assert chunk.embedding_failed is True

    chunk.attach_embedding([0.1, 0.2])
    assert chunk.embedding == [0.1, 0.2]
    assert chunk.embedding_failed is False


def test_chunk_row_mapping():
    chunk = Chunk(
        chunk_id="GL-1_page_2", doc_id="GL-1", ordinal=2, content="text",
        token_estimate=1, keywords=["capital"], start_index=10, end_index=20
    )

    row = chunk.to_row("99")

    assert row["chunk_id"] == 2
    assert row["document_id"] == "99"
    assert row["keywords"] == ["capital"]
    assert row["metadata"] == {"chunkId": "GL-1_page_2", "tokens": 1, "startIndex": 10, "endIndex": 20}


def test_document_row_mapping():
    record = DocumentRecord(doc_id="GL-1", title="Capital", content="text", source="BRDRAPI", chunk_count=2)

    row = record.to_row()

    assert row["doc_id"] == "GL-1"
    assert row["chunk_count"] == 2
    assert row["embedding"] is None
