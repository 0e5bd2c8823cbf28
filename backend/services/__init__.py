"""Services for the regulatory document retrieval service."""
from .chunking_engine import PageChunker
from .embedding_model import EmbeddingModel, EmbeddingOutcome
from .dimension_adapter import DimensionAdapter, reduce_dimension
from .document_source import DocumentSource, MarkdownDocumentSource, RegisterApiDocumentSource
from .document_store import DocumentStore, SupabaseDocumentStore
from .ingestion_pipeline import IngestionPipeline, IngestionOptions, IngestionResult, PipelinePhase
from .ingestion_jobs import IngestionJobManager
from .retrieval_engine import RetrievalEngine, SearchStrategy
from .query_orchestrator import QueryOrchestrator, QueryResponse

__all__ = [
    'PageChunker', 'EmbeddingModel', 'EmbeddingOutcome', 'DimensionAdapter', 'reduce_dimension',
    'DocumentSource', 'MarkdownDocumentSource', 'RegisterApiDocumentSource',
    'DocumentStore', 'SupabaseDocumentStore',
    'IngestionPipeline', 'IngestionOptions', 'IngestionResult', 'PipelinePhase',
    'IngestionJobManager', 'RetrievalEngine', 'SearchStrategy', 'QueryOrchestrator', 'QueryResponse',
]
