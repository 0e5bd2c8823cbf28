"""Document data models."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ValidationError


@dataclass(frozen=True)
class RawDocument:
    """A document as handed over by a DocumentSource.

    ``raw_text`` may be empty when the source only knows the metadata; such a
    document is stored as a metadata-only record.
    """
    external_id: str
    title: str
    raw_text: str = ""
    source: str = "unknown"
    doc_type: Optional[str] = None
    issue_date: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.external_id or not str(self.external_id).strip():
            raise ValidationError("RawDocument requires a non-empty external_id")
        if self.raw_text is None:
            object.__setattr__(self, "raw_text", "")
        if not self.title:
            object.__setattr__(self, "title", f"Document {self.external_id}")

    @property
    def has_content(self) -> bool:
        return bool(self.raw_text and self.raw_text.strip())


@dataclass
class DocumentRecord:
    """Aggregate row persisted once per crawled document."""
    doc_id: str
    title: str
    content: str
    source: str
    embedding: Optional[List[float]] = None  # first chunk's embedding
    doc_type: Optional[str] = None
    issue_date: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    chunk_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        """Column mapping for the documents table."""
        return {
            "doc_id": self.doc_id,
            "title": self.title,
            "content": self.content,
            "source": self.source,
            "embedding": self.embedding,
            "doc_type": self.doc_type,
            "issue_date": self.issue_date,
            "topics": self.topics,
            "chunk_count": self.chunk_count,
            "metadata": self.metadata,
        }
