"""Chunk data models."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Chunk:
    """A cleaned page of a document, the unit of retrieval."""
    chunk_id: str  # Format: "{doc_id}_page_{ordinal}"
    doc_id: str
    ordinal: int  # 1-based, contiguous over surviving pages
    content: str
    token_estimate: int = 0
    keywords: List[str] = field(default_factory=list)
    start_index: int = 0
    end_index: int = 0
    chunk_type: str = "page"
    embedding: Optional[List[float]] = None
    embedding_failed: bool = False

    def attach_embedding(self, embedding: List[float]) -> None:
        self.embedding = embedding
        self.embedding_failed = False

    def mark_embedding_failed(self) -> None:
        self.embedding = None
        self.embedding_failed = True

    def to_row(self, document_id: str) -> Dict[str, Any]:
        """Column mapping for the chunks table."""
        return {
            "doc_id": self.doc_id,
            "document_id": document_id,
            "chunk_id": self.ordinal,
            "content": self.content,
            "embedding": self.embedding,
            "embedding_failed": self.embedding_failed,
            "chunk_type": self.chunk_type,
            "keywords": self.keywords,
            "metadata": {
                "chunkId": self.chunk_id,
                "tokens": self.token_estimate,
                "startIndex": self.start_index,
                "endIndex": self.end_index,
            },
        }


@dataclass
class SearchResult:
    """Chunk with relevance scores from retrieval."""
    id: str
    doc_id: str
    ordinal: int
    content: str
    score: float  # ranking score for the strategy that produced this result
    similarity: float = 0.0  # 0.0 to 1.0
    keyword_score: float = 0.0
    combined_score: float = 0.0
    keywords: List[str] = field(default_factory=list)
    matched_keywords: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExpandedMatch:
    """A chunk returned by context expansion, positioned relative to its seed."""
    result: SearchResult
    is_original_match: bool
    original_chunk_id: int  # seed ordinal
    position_offset: int
    seed_rank: int = 0

    @property
    def doc_id(self) -> str:
        return self.result.doc_id

    @property
    def ordinal(self) -> int:
        return self.result.ordinal
