"""Batched ingestion: crawl, chunk, embed and store documents."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from config import INGESTION_MAX_WORKERS, PROCESSING_BATCH_SIZE, STORAGE_BATCH_SIZE
from errors import ProviderError, ValidationError
from models.chunk import Chunk
from models.document import DocumentRecord, RawDocument
from services.chunking_engine import PageChunker
from services.dimension_adapter import DimensionAdapter
from services.document_source import DocumentSource
from services.document_store import DocumentStore
from services.embedding_model import EmbeddingModel

logger = logging.getLogger(__name__)


class PipelinePhase(str, Enum):
    CRAWL_METADATA = "crawl_metadata"
    CHUNK = "chunk"
    EMBED = "embed"
    STORE = "store"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class IngestionOptions:
    """Per-run ingestion settings."""
    max_documents: Optional[int] = None  # None = everything the source has
    processing_batch_size: int = PROCESSING_BATCH_SIZE
    storage_batch_size: int = STORAGE_BATCH_SIZE
    skip_existing: bool = True
    embeddings_enabled: bool = True

    def __post_init__(self):
        if self.max_documents is not None and self.max_documents < 0:
            raise ValidationError("max_documents cannot be negative")
        if self.processing_batch_size <= 0 or self.storage_batch_size <= 0:
            raise ValidationError("Batch sizes must be positive")


@dataclass
class IngestionResult:
    """Outcome of one pipeline run."""
    processed: int = 0
    skipped: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    embedding_failures: int = 0
    errors: List[str] = field(default_factory=list)
    phase: PipelinePhase = PipelinePhase.CRAWL_METADATA
    success: bool = False
    stopped: bool = False
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass
class IngestionProgress:
    """Snapshot of a running pipeline."""
    phase: PipelinePhase = PipelinePhase.CRAWL_METADATA
    documents_crawled: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class PreparedDocument:
    """A chunked and embedded document waiting in the storage buffer."""
    record: DocumentRecord
    chunks: List[Chunk]
    embeddings_generated: int = 0
    embedding_failures: int = 0
    replaces_existing: bool = False  # stored chunks are cleared before insert


def format_metadata_content(document: RawDocument) -> str:
    """Searchable text for a document whose full text is unavailable."""
    return "\n".join([
        document.title,
        f"Type: {document.doc_type or 'N/A'}",
        f"Issue Date: {document.issue_date or 'N/A'}",
        f"Topics: {'; '.join(document.topics) if document.topics else 'N/A'}",
    ])


class IngestionPipeline:
    """Moves documents from a DocumentSource into a DocumentStore.

    Documents are pulled page by page, chunked and embedded in parallel
    within a processing batch, and written sequentially once the buffer
    reaches the storage batch size. Only one storage batch is held in
    memory at a time.
    """

    def __init__(
        self,
        source: DocumentSource,
        store: DocumentStore,
        embedding_model: Optional[EmbeddingModel] = None,
        dimension_adapter: Optional[DimensionAdapter] = None,
        chunker: Optional[PageChunker] = None,
        max_workers: int = INGESTION_MAX_WORKERS
    ):
        """
        Initialize IngestionPipeline.

        Args:
            source: Where raw documents come from
            store: Where documents and chunks are written
            embedding_model: Embedding provider; None disables embeddings
            dimension_adapter: Reduces native embeddings to the store width
            chunker: Page chunker (default settings if omitted)
            max_workers: Thread fan-out for chunk+embed within a batch
        """
        self.source = source
        self.store = store
        self.embedding_model = embedding_model
        self.dimension_adapter = dimension_adapter
        if embedding_model is not None and dimension_adapter is None:
            self.dimension_adapter = DimensionAdapter()
        self.chunker = chunker or PageChunker()
        self.max_workers = max(1, max_workers)

        self._stop_event = threading.Event()
        self._progress_lock = threading.Lock()
        self._progress = IngestionProgress()
        self._crawl_failed = False

    @property
    def progress(self) -> IngestionProgress:
        with self._progress_lock:
            return replace(self._progress)

    def _update_progress(self, **changes) -> None:
        with self._progress_lock:
            for name, value in changes.items():
                setattr(self._progress, name, value)

    def _set_phase(self, phase: PipelinePhase) -> None:
        with self._progress_lock:
            if self._progress.phase != phase:
                logger.debug(f"Pipeline phase: {self._progress.phase.value} -> {phase.value}")
            self._progress.phase = phase

    def request_stop(self) -> None:
        """Ask the running pipeline to stop after the current storage batch."""
        logger.info("Stop requested; pipeline will halt after the current storage batch")
        self._stop_event.set()

    def run(self, options: Optional[IngestionOptions] = None) -> IngestionResult:
        """
        Run the full ingestion.

        Args:
            options: Run settings (defaults from config if omitted)

        Returns:
            IngestionResult with counters and per-document errors
        """
        options = options or IngestionOptions()
        result = IngestionResult()
        start_time = time.time()

        self._crawl_failed = False
        with self._progress_lock:
            self._progress = IngestionProgress()

        logger.info(
            f"Starting ingestion from {self.source.name}: max_documents={options.max_documents}, "
            f"skip_existing={options.skip_existing}, embeddings={options.embeddings_enabled and self.embedding_model is not None}"
        )

        buffer: List[PreparedDocument] = []
        batch: List[RawDocument] = []

        for document in self._crawl(options, result):
            batch.append(document)
            if len(batch) < options.processing_batch_size:
                continue

            buffer.extend(self._process_batch(batch, options, result))
            batch = []

            if len(buffer) >= options.storage_batch_size:
                self._flush(buffer, result)
                buffer = []
                if self._stop_event.is_set():
                    result.stopped = True
                    logger.info("Ingestion stopped on request")
                    break

        if not result.stopped:
            if batch:
                buffer.extend(self._process_batch(batch, options, result))
            if buffer:
                self._flush(buffer, result)

        result.phase = PipelinePhase.ERROR if self._crawl_failed else PipelinePhase.COMPLETE
        result.success = result.phase == PipelinePhase.COMPLETE and not result.errors
        result.processing_time_ms = (time.time() - start_time) * 1000
        self._stop_event.clear()
        self._set_phase(result.phase)

        logger.info(
            f"Ingestion finished ({result.phase.value}): processed={result.processed}, "
            f"skipped={result.skipped}, chunks={result.chunks_created}, "
            f"embeddings={result.embeddings_generated}, errors={len(result.errors)} "
            f"in {result.processing_time_ms:.0f}ms"
        )
        return result

    def _crawl(self, options: IngestionOptions, result: IngestionResult) -> Iterator[RawDocument]:
        """Yield documents page by page until the source or max_documents is exhausted."""
        page_token = None
        yielded = 0

        while options.max_documents is None or yielded < options.max_documents:
            self._set_phase(PipelinePhase.CRAWL_METADATA)
            try:
                documents, page_token = self.source.list_documents(page_token)
            except ProviderError as e:
                error_msg = f"Crawl failed: {str(e)}"
                logger.error(error_msg)
                result.errors.append(error_msg)
                self._crawl_failed = True
                return

            for document in documents:
                if options.max_documents is not None and yielded >= options.max_documents:
                    return
                yielded += 1
                self._update_progress(documents_crawled=yielded)
                yield document

            if page_token is None:
                return

    def _process_batch(
        self,
        batch: List[RawDocument],
        options: IngestionOptions,
        result: IngestionResult
    ) -> List[PreparedDocument]:
        """Chunk and embed a batch of documents concurrently."""
        self._set_phase(PipelinePhase.CHUNK)
        prepared: List[Optional[PreparedDocument]] = [None] * len(batch)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batch))) as executor:
            futures = {
                executor.submit(self._prepare_document, document, options): position
                for position, document in enumerate(batch)
            }
            for future in as_completed(futures):
                position = futures[future]
                document = batch[position]
                try:
                    outcome = future.result()
                except Exception as e:
                    # One bad document must not take down the batch
                    error_msg = f"Failed to process {document.external_id}: {str(e)}"
                    logger.error(error_msg, exc_info=True)
                    result.errors.append(error_msg)
                    continue

                if outcome is None:
                    result.skipped += 1
                else:
                    prepared[position] = outcome

        self._update_progress(skipped=result.skipped, errors=len(result.errors))
        return [p for p in prepared if p is not None]

    def _prepare_document(self, document: RawDocument, options: IngestionOptions) -> Optional[PreparedDocument]:
        """Chunk and embed one document. Returns None if it is stored and skip_existing is set."""
        existing = self.store.get_document_by_external_id(document.external_id)
        if existing and options.skip_existing:
            logger.info(f"Skipping existing document {document.external_id}")
            return None

        chunks: List[Chunk] = []
        if document.has_content:
            chunks = self.chunker.chunk_document(document.raw_text, document.external_id)
        if not chunks:
            logger.info(f"No content for {document.external_id}; storing metadata only")

        embedded, failed = 0, 0
        if chunks and options.embeddings_enabled and self.embedding_model is not None:
            self._set_phase(PipelinePhase.EMBED)
            embedded, failed = self._embed_chunks(chunks)

        first_embedding = chunks[0].embedding if chunks else None
        record = DocumentRecord(
            doc_id=document.external_id,
            title=document.title,
            content=document.raw_text if document.has_content else format_metadata_content(document),
            source=document.source,
            embedding=first_embedding,
            doc_type=document.doc_type,
            issue_date=document.issue_date,
            topics=list(document.topics),
            chunk_count=len(chunks),
            metadata=dict(document.metadata),
        )
        return PreparedDocument(
            record=record,
            chunks=chunks,
            embeddings_generated=embedded,
            embedding_failures=failed,
            replaces_existing=bool(existing),
        )

    def _embed_chunks(self, chunks: List[Chunk]) -> Tuple[int, int]:
        """Attach store-width embeddings to chunks. Returns (embedded, failed)."""
        outcomes = self.embedding_model.embed_batch_with_status([chunk.content for chunk in chunks])
        embedded, failed = 0, 0

        for chunk, outcome in zip(chunks, outcomes):
            if outcome.failed:
                logger.warning(f"Embedding failed for {chunk.chunk_id}: {outcome.error}")
                chunk.mark_embedding_failed()
                failed += 1
                continue
            try:
                chunk.attach_embedding(self.dimension_adapter.adapt(outcome.vector))
                embedded += 1
            except ValidationError as e:
                logger.warning(f"Rejected embedding for {chunk.chunk_id}: {str(e)}")
                chunk.mark_embedding_failed()
                failed += 1

        return embedded, failed

    def _flush(self, buffer: List[PreparedDocument], result: IngestionResult) -> None:
        """Write buffered documents one at a time."""
        self._set_phase(PipelinePhase.STORE)
        logger.info(f"Flushing {len(buffer)} documents to store", extra={"documents": len(buffer)})

        for prepared in buffer:
            self._store_document(prepared, result)

        self._update_progress(processed=result.processed, errors=len(result.errors))

    def _store_document(self, prepared: PreparedDocument, result: IngestionResult) -> None:
        doc_id = prepared.record.doc_id
        try:
            document_id = self.store.upsert_document(prepared.record)
        except ProviderError as e:
            error_msg = f"Failed to store document {doc_id}: {str(e)}"
            logger.error(error_msg)
            result.errors.append(error_msg)
            return

        try:
            if prepared.replaces_existing:
                self.store.delete_chunks(doc_id)
            if prepared.chunks:
                self.store.insert_chunks(prepared.chunks, document_id)
        except ProviderError as e:
            error_msg = f"Failed to store chunks for {doc_id}: {str(e)}"
            logger.error(error_msg)
            result.errors.append(error_msg)
            # Remove the partial write so a skip_existing re-run retries this document
            self._remove_partial(doc_id)
            return

        result.processed += 1
        result.chunks_created += len(prepared.chunks)
        result.embeddings_generated += prepared.embeddings_generated
        result.embedding_failures += prepared.embedding_failures
        logger.debug(f"Stored {doc_id} with {len(prepared.chunks)} chunks")

    def _remove_partial(self, doc_id: str) -> None:
        try:
            self.delete_document(doc_id)
        except ProviderError as e:
            logger.error(f"Could not remove partial document {doc_id}: {str(e)}")

    def delete_document(self, external_id: str) -> bool:
        """
        Delete a document and its chunks.

        Returns:
            True if the document row existed
        """
        removed_chunks = self.store.delete_chunks(external_id)
        deleted = self.store.delete_document(external_id)
        logger.info(f"Deleted document {external_id} ({removed_chunks} chunks)")
        return deleted

    def get_stats(self) -> Dict[str, Any]:
        """Store counts and embedding configuration."""
        return {
            "total_documents": self.store.count_documents(),
            "total_chunks": self.store.count_chunks(),
            "embedding_model": getattr(self.embedding_model, "model_name", None),
            "native_dimension": self.dimension_adapter.native_dim if self.dimension_adapter else None,
            "target_dimension": self.dimension_adapter.target_dim if self.dimension_adapter else None,
            "max_workers": self.max_workers,
        }
