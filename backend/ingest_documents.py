"""
Document Ingestion Script for the regulatory document retrieval service.

This script:
1. Connects to Supabase and the embedding API
2. Reads documents from the markdown directory or the register API
3. Chunks each document by page and extracts keywords
4. Generates embeddings and reduces them to the store dimension
5. Stores documents and chunks in Supabase pgvector

Usage:
    python ingest_documents.py --source markdown --max-documents 50
    python ingest_documents.py --delete 20240115-1-EN
"""
import argparse
import sys
import logging
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from config import (
    LOG_LEVEL,
    LOG_FORMAT,
    MARKDOWN_DIRECTORY,
    REGISTER_API_URL,
    PROCESSING_BATCH_SIZE,
    STORAGE_BATCH_SIZE,
    INGESTION_MAX_WORKERS,
)
from errors import RetrievalServiceError
from logger import setup_logging
from services.dimension_adapter import DimensionAdapter
from services.document_source import MarkdownDocumentSource, RegisterApiDocumentSource
from services.document_store import SupabaseDocumentStore
from services.embedding_model import EmbeddingModel
from services.ingestion_pipeline import IngestionOptions, IngestionPipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest regulatory documents into the search index")
    parser.add_argument("--source", choices=["markdown", "register_api"], default="markdown",
                        help="Where to read documents from")
    parser.add_argument("--markdown-dir", default=MARKDOWN_DIRECTORY,
                        help="Directory of <doc_id>.md files")
    parser.add_argument("--api-url", default=REGISTER_API_URL, help="Register search API endpoint")
    parser.add_argument("--max-documents", type=int, default=None, help="Stop after this many documents")
    parser.add_argument("--processing-batch-size", type=int, default=PROCESSING_BATCH_SIZE)
    parser.add_argument("--storage-batch-size", type=int, default=STORAGE_BATCH_SIZE)
    parser.add_argument("--workers", type=int, default=INGESTION_MAX_WORKERS,
                        help="Parallel chunk+embed workers per batch")
    parser.add_argument("--no-skip-existing", action="store_true",
                        help="Re-process documents that are already stored")
    parser.add_argument("--no-embeddings", action="store_true",
                        help="Store chunks without embeddings (keyword search only)")
    parser.add_argument("--delete", metavar="DOC_ID", help="Delete one document and its chunks, then exit")
    parser.add_argument("--stats", action="store_true", help="Print store statistics and exit")
    return parser


def main(argv=None) -> int:
    """Main ingestion process."""
    args = build_parser().parse_args(argv)

    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    try:
        logger.info("=" * 60)
        logger.info("Starting Document Ingestion")
        logger.info("=" * 60)

        store = SupabaseDocumentStore()
        logger.info("✓ Document store initialized")

        embedding_model = None
        if not args.no_embeddings and not args.delete and not args.stats:
            embedding_model = EmbeddingModel()
            logger.info("Warming up embedding model (may take 15-20 seconds on first run)...")
            embedding_model.warmup()
            logger.info("✓ Embedding model ready")

        if args.source == "register_api":
            source = RegisterApiDocumentSource(api_url=args.api_url, markdown_directory=args.markdown_dir)
        else:
            source = MarkdownDocumentSource(directory=args.markdown_dir)
        logger.info(f"✓ Source: {source.name}")

        pipeline = IngestionPipeline(
            source,
            store,
            embedding_model=embedding_model,
            dimension_adapter=DimensionAdapter(),
            max_workers=args.workers,
        )

        if args.delete:
            deleted = pipeline.delete_document(args.delete)
            logger.info(f"Document {args.delete} {'deleted' if deleted else 'not found'}")
            return 0 if deleted else 1

        if args.stats:
            for key, value in pipeline.get_stats().items():
                logger.info(f"{key}: {value}")
            return 0

        options = IngestionOptions(
            max_documents=args.max_documents,
            processing_batch_size=args.processing_batch_size,
            storage_batch_size=args.storage_batch_size,
            skip_existing=not args.no_skip_existing,
            embeddings_enabled=embedding_model is not None,
        )
        result = pipeline.run(options)

        logger.info("\n" + "=" * 60)
        logger.info("INGESTION COMPLETE" if result.success else f"INGESTION FINISHED ({result.phase.value})")
        logger.info("=" * 60)
        logger.info(f"Documents processed: {result.processed}")
        logger.info(f"Documents skipped: {result.skipped}")
        logger.info(f"Chunks created: {result.chunks_created}")
        logger.info(f"Embeddings generated: {result.embeddings_generated}")
        logger.info(f"Embedding failures: {result.embedding_failures}")
        logger.info(f"Time: {result.processing_time_ms / 1000:.1f}s")
        for error in result.errors:
            logger.warning(f"  - {error}")
        logger.info("=" * 60)

        return 0 if result.success else 1

    except KeyboardInterrupt:
        logger.warning("\nIngestion interrupted by user")
        return 1
    except RetrievalServiceError as e:
        logger.error(f"\nIngestion failed: {str(e)}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
