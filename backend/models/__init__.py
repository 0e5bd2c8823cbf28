"""Data models for the regulatory document retrieval service."""
from .document import RawDocument, DocumentRecord
from .chunk import Chunk, SearchResult, ExpandedMatch

__all__ = [
    "RawDocument",
    "DocumentRecord",
    "Chunk",
    "SearchResult",
    "ExpandedMatch",
]
