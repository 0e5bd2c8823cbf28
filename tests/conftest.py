"""Shared fakes for the service tests."""
import math
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from typing import Any, Dict, List, Optional

from errors import ProviderError
from models.chunk import Chunk
from models.document import DocumentRecord, RawDocument
from services.document_source import DocumentSource
from services.document_store import DocumentStore
from services.embedding_model import EmbeddingOutcome


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeDocumentStore(DocumentStore):
    """In-memory DocumentStore with integer row ids.

    ``similarities`` maps a chunk row id to a fixed similarity, overriding
    the cosine computed from stored embeddings.
    """

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.chunks: List[Dict[str, Any]] = []
        self.similarities: Dict[int, float] = {}
        self.fail_upsert_for = set()
        self.fail_chunks_for = set()
        self.upsert_calls = 0
        self.on_upsert = None
        self._next_id = 1

    def _new_id(self) -> int:
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def upsert_document(self, record: DocumentRecord) -> str:
        self.upsert_calls += 1
        if self.on_upsert is not None:
            self.on_upsert(record)
        if record.doc_id in self.fail_upsert_for:
            raise ProviderError(f"upsert rejected for {record.doc_id}")
        row = record.to_row()
        existing = self.documents.get(record.doc_id)
        row["id"] = existing["id"] if existing else self._new_id()
        self.documents[record.doc_id] = row
        return str(row["id"])

    def insert_chunks(self, chunks: List[Chunk], document_id: str) -> int:
        if chunks and chunks[0].doc_id in self.fail_chunks_for:
            raise ProviderError(f"chunk insert rejected for {chunks[0].doc_id}")
        for chunk in chunks:
            row = chunk.to_row(document_id)
            row["id"] = self._new_id()
            self.chunks.append(row)
        return len(chunks)

    def add_chunk(self, doc_id: str, ordinal: int, content: str = "", keywords=None, embedding=None) -> int:
        """Insert a chunk row directly, bypassing ingestion."""
        row_id = self._new_id()
        self.chunks.append({
            "id": row_id,
            "doc_id": doc_id,
            "chunk_id": ordinal,
            "content": content or f"{doc_id} page {ordinal}",
            "keywords": list(keywords or []),
            "embedding": embedding,
            "metadata": {},
        })
        return row_id

    def get_document_by_external_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.documents.get(doc_id)

    def vector_search(self, query_vector, threshold, limit):
        scored = []
        for row in self.chunks:
            if row["id"] in self.similarities:
                similarity = self.similarities[row["id"]]
            elif row.get("embedding"):
                similarity = _cosine(query_vector, row["embedding"])
            else:
                continue
            if similarity > threshold:
                scored.append(dict(row, similarity=similarity))
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:limit]

    def keyword_search(self, terms, limit):
        matches = []
        for row in self.chunks:
            keywords = [k.lower() for k in row.get("keywords") or []]
            if any(term in k or k in term for term in terms for k in keywords):
                matches.append(dict(row))
        return matches[:limit]

    def get_chunks_in_range(self, doc_id, lo, hi):
        rows = [dict(r) for r in self.chunks if r["doc_id"] == doc_id and lo <= r["chunk_id"] <= hi]
        return sorted(rows, key=lambda r: r["chunk_id"])

    def delete_document(self, doc_id: str) -> bool:
        return self.documents.pop(doc_id, None) is not None

    def delete_chunks(self, doc_id: str) -> int:
        before = len(self.chunks)
        self.chunks = [r for r in self.chunks if r["doc_id"] != doc_id]
        return before - len(self.chunks)

    def count_documents(self) -> int:
        return len(self.documents)

    def count_chunks(self) -> int:
        return len(self.chunks)

    def test_connection(self) -> bool:
        return True


class FakeEmbeddingModel:
    """Deterministic embedder; texts containing ``fail_marker`` fail."""

    model_name = "fake-embedder"

    def __init__(self, native_dim: int = 8, fail_marker: str = "UNEMBEDDABLE"):
        self.native_dim = native_dim
        self.fail_marker = fail_marker
        self.calls = 0

    def _vector(self, text: str) -> List[float]:
        return [float((len(text) + i) % 7 + 1) for i in range(self.native_dim)]

    def embed_text(self, text: str) -> List[float]:
        self.calls += 1
        return self._vector(text)

    def embed_batch_with_status(self, texts: List[str]) -> List[EmbeddingOutcome]:
        self.calls += 1
        outcomes = []
        for text in texts:
            if self.fail_marker in text.upper():
                outcomes.append(EmbeddingOutcome(vector=[0.0] * self.native_dim, failed=True, error="rejected"))
            else:
                outcomes.append(EmbeddingOutcome(vector=self._vector(text)))
        return outcomes


class FakeDocumentSource(DocumentSource):
    """Serves a fixed list of documents in pages; can fail on a given page."""

    name = "fake"

    def __init__(self, documents: List[RawDocument], page_size: int = 2, fail_on_page: Optional[int] = None):
        self.documents = documents
        self.page_size = page_size
        self.fail_on_page = fail_on_page
        self.pages_served = 0

    def list_documents(self, page_token=None):
        offset = int(page_token) if page_token else 0
        page = offset // self.page_size
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise ProviderError("source unavailable", transient=True)
        self.pages_served += 1
        batch = self.documents[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return batch, (str(next_offset) if next_offset < len(self.documents) else None)

    def get_document_by_id(self, doc_id):
        return next((d for d in self.documents if d.external_id == doc_id), None)


def make_document(doc_id: str, pages: int = 2, raw_text: Optional[str] = None, **kwargs) -> RawDocument:
    if raw_text is None:
        raw_text = "\n".join(
            f"## Page {n}\nCapital adequacy requirements for licensed banks, part {n}."
            for n in range(1, pages + 1)
        )
    return RawDocument(external_id=doc_id, title=kwargs.pop("title", f"Title {doc_id}"), raw_text=raw_text, **kwargs)


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def embedding_model():
    return FakeEmbeddingModel()
