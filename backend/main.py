"""Main entry point for the regulatory document retrieval API."""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from config import PORT, LOG_LEVEL, LOG_FORMAT, MARKDOWN_DIRECTORY
from errors import ConfigurationError, ProviderError, ValidationError
from logger import setup_logging
from models.api import (
    SearchRequest,
    SearchResponse,
    SearchHit,
    ExpandedHit,
    QueryAnalysisModel,
    QueryMetricsModel,
    DocumentLinkModel,
    IngestRequest,
    IngestResponse,
    JobStatusResponse,
)
from models.chunk import SearchResult
from services.dimension_adapter import DimensionAdapter
from services.document_source import MarkdownDocumentSource, RegisterApiDocumentSource
from services.document_store import SupabaseDocumentStore
from services.embedding_model import EmbeddingModel
from services.ingestion_jobs import IngestionJobManager
from services.ingestion_pipeline import IngestionOptions, IngestionPipeline
from services.query_orchestrator import QueryOrchestrator, QueryResponse
from services.retrieval_engine import RetrievalEngine

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Regulatory Document Retrieval",
    description="Hybrid keyword and vector search over regulatory documents",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialized on startup
document_store: SupabaseDocumentStore = None
orchestrator: QueryOrchestrator = None
job_manager: IngestionJobManager = None

SOURCES = ("markdown", "register_api")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400 rather than 422."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global document_store, orchestrator, job_manager

    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("Initializing retrieval services...")

    try:
        embedding_model = EmbeddingModel()
        dimension_adapter = DimensionAdapter()
        document_store = SupabaseDocumentStore()

        engine = RetrievalEngine(document_store)
        orchestrator = QueryOrchestrator(engine, embedding_model, dimension_adapter)

        def build_pipeline(source: str) -> IngestionPipeline:
            if source == "register_api":
                document_source = RegisterApiDocumentSource()
            else:
                document_source = MarkdownDocumentSource(MARKDOWN_DIRECTORY)
            return IngestionPipeline(document_source, document_store, embedding_model, dimension_adapter)

        job_manager = IngestionJobManager(build_pipeline)

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    if job_manager is not None:
        job_manager.shutdown(wait=False)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Regulatory Document Retrieval API"}


@app.get("/health")
async def health():
    """Detailed health check including store connectivity."""
    store_ok = document_store.test_connection() if document_store is not None else False
    return {
        "status": "healthy" if store_ok else "degraded",
        "service": "regulatory-document-retrieval",
        "version": "1.0.0",
        "store_connected": store_ok
    }


def _to_hit(result: SearchResult) -> SearchHit:
    return SearchHit(
        id=result.id,
        doc_id=result.doc_id,
        chunk_id=result.ordinal,
        content=result.content,
        score=result.score,
        similarity=result.similarity,
        keyword_score=result.keyword_score,
        combined_score=result.combined_score,
        keywords=result.keywords,
        matched_keywords=result.matched_keywords,
    )


def _to_search_response(response: QueryResponse) -> SearchResponse:
    return SearchResponse(
        query=response.query,
        results=[_to_hit(r) for r in response.results],
        expanded_results=[
            ExpandedHit(
                hit=_to_hit(m.result),
                is_original_match=m.is_original_match,
                original_chunk_id=m.original_chunk_id,
                position_offset=m.position_offset,
                seed_rank=m.seed_rank,
            )
            for m in response.expanded_results
        ],
        formatted_context=response.formatted_context,
        analysis=QueryAnalysisModel(**vars(response.analysis)),
        metrics=QueryMetricsModel(**vars(response.metrics)),
        strategy_used=response.strategy_used,
        cache_hit=response.cache_hit,
        document_links=[DocumentLinkModel(**vars(link)) for link in response.document_links],
    )


@app.post("/search", response_model=SearchResponse)
def search_endpoint(request: SearchRequest) -> SearchResponse:
    """
    Search the document index.

    Args:
        request: SearchRequest with query and optional strategy overrides

    Returns:
        SearchResponse with results, formatted context and metrics

    Raises:
        HTTPException: 400 for invalid input, 503 if the store or embedding provider fails
    """
    if not request.query or not request.query.strip():
        raise HTTPException(status_code=400, detail="Query field is required and cannot be empty")

    logger.info(f"Processing search: {request.query[:100]}")

    try:
        response = orchestrator.process_query(
            request.query,
            strategy=request.strategy,
            limit=request.limit,
            use_cache=request.use_cache,
            threshold=request.threshold,
            context_window=request.context_window,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ProviderError, ConfigurationError) as e:
        logger.error(f"Search failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return _to_search_response(response)


@app.post("/ingest", response_model=IngestResponse, status_code=202)
def ingest_endpoint(request: IngestRequest) -> IngestResponse:
    """Start a background ingestion job."""
    if request.source not in SOURCES:
        raise HTTPException(status_code=400, detail=f"Unknown source '{request.source}'. Expected one of: {', '.join(SOURCES)}")

    options = IngestionOptions(
        max_documents=request.max_documents,
        skip_existing=request.skip_existing,
        embeddings_enabled=request.embeddings_enabled,
    )
    if request.processing_batch_size:
        options.processing_batch_size = request.processing_batch_size
    if request.storage_batch_size:
        options.storage_batch_size = request.storage_batch_size

    try:
        job_id = job_manager.submit(request.source, options)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return IngestResponse(job_id=job_id)


@app.get("/ingest/{job_id}", response_model=JobStatusResponse)
def ingest_status_endpoint(job_id: str) -> JobStatusResponse:
    """Poll an ingestion job."""
    job = job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return JobStatusResponse(**job)


@app.post("/ingest/{job_id}/stop")
def ingest_stop_endpoint(job_id: str):
    """Ask a running job to stop at the next storage batch boundary."""
    if not job_manager.stop_job(job_id):
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return {"job_id": job_id, "stop_requested": True}


@app.get("/metrics")
def metrics_endpoint():
    """Rolling query latency summary and cache statistics."""
    return {
        "performance": orchestrator.performance_summary(),
        "cache": orchestrator.cache_stats()
    }


@app.delete("/cache")
def clear_cache_endpoint():
    removed = orchestrator.clear_cache()
    return {"cleared": removed}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Regulatory Document Retrieval API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
