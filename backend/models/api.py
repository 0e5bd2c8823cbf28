"""Request and response schemas for the HTTP API."""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    query: str = Field(..., description="Free-text search query")
    strategy: Optional[str] = Field(None, description="vector, keyword, hybrid or context_expanded")
    limit: int = Field(10, ge=1, le=100)
    use_cache: bool = True
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    context_window: Optional[int] = Field(None, ge=0, le=10)


class SearchHit(BaseModel):
    id: str
    doc_id: str
    chunk_id: int
    content: str
    score: float
    similarity: float = 0.0
    keyword_score: float = 0.0
    combined_score: float = 0.0
    keywords: List[str] = []
    matched_keywords: List[str] = []


class ExpandedHit(BaseModel):
    hit: SearchHit
    is_original_match: bool
    original_chunk_id: int
    position_offset: int
    seed_rank: int


class QueryAnalysisModel(BaseModel):
    intent: str
    entities: List[str]
    keywords: List[str]
    complexity: str
    expanded_queries: List[str]


class QueryMetricsModel(BaseModel):
    total_documents: int
    average_similarity: float
    search_strategy: str
    analysis_ms: float
    embedding_ms: float
    retrieval_ms: float
    formatting_ms: float
    total_ms: float


class DocumentLinkModel(BaseModel):
    doc_id: str
    title: str
    url: str
    similarity: float


class SearchResponse(BaseModel):
    query: str
    results: List[SearchHit]
    expanded_results: List[ExpandedHit] = []
    formatted_context: str
    analysis: QueryAnalysisModel
    metrics: QueryMetricsModel
    strategy_used: str
    cache_hit: bool = False
    document_links: List[DocumentLinkModel] = []


class IngestRequest(BaseModel):
    source: str = Field("markdown", description="markdown or register_api")
    max_documents: Optional[int] = Field(None, ge=0)
    processing_batch_size: Optional[int] = Field(None, ge=1)
    storage_batch_size: Optional[int] = Field(None, ge=1)
    skip_existing: bool = True
    embeddings_enabled: bool = True


class IngestResponse(BaseModel):
    job_id: str
    status: str = "queued"


class JobStatusResponse(BaseModel):
    job_id: str
    source: str
    status: str
    created_at: str
    finished_at: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
