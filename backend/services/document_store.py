"""Document and chunk persistence backed by Supabase pgvector."""
import time
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
import httpx
from supabase import create_client, Client
from models.chunk import Chunk
from models.document import DocumentRecord
from config import (
    SUPABASE_URL,
    SUPABASE_KEY,
    DOCUMENTS_TABLE,
    CHUNKS_TABLE,
    CHUNK_INSERT_BATCH_SIZE,
)
from errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

CHUNK_COLUMNS = "id, doc_id, chunk_id, content, keywords, chunk_type, metadata"


class DocumentStore(ABC):
    """Persistence and query primitives used by ingestion and retrieval.

    Chunk rows are plain dicts with at least ``id``, ``doc_id``, ``chunk_id``
    (the ordinal), ``content``, ``keywords`` and ``metadata``. Rows returned by
    ``vector_search`` additionally carry ``similarity``.
    """

    @abstractmethod
    def upsert_document(self, record: DocumentRecord) -> str:
        """Insert or update a document row keyed by external id. Returns the row id."""

    @abstractmethod
    def insert_chunks(self, chunks: List[Chunk], document_id: str) -> int:
        """Append chunk rows for a stored document. Returns the number inserted."""

    @abstractmethod
    def get_document_by_external_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document row, or None if it is not stored."""

    @abstractmethod
    def vector_search(self, query_vector: List[float], threshold: float, limit: int) -> List[Dict[str, Any]]:
        """Nearest chunks by cosine similarity, best first."""

    @abstractmethod
    def keyword_search(self, terms: List[str], limit: int) -> List[Dict[str, Any]]:
        """Candidate chunks whose keywords overlap the given terms."""

    @abstractmethod
    def get_chunks_in_range(self, doc_id: str, lo: int, hi: int) -> List[Dict[str, Any]]:
        """Chunks of one document with ordinal in [lo, hi], ordered by ordinal."""

    @abstractmethod
    def delete_document(self, doc_id: str) -> bool:
        """Delete the document row. Returns False if nothing was deleted."""

    @abstractmethod
    def delete_chunks(self, doc_id: str) -> int:
        """Delete all chunks of a document. Returns the number deleted."""

    @abstractmethod
    def count_documents(self) -> int:
        """Number of stored documents."""

    @abstractmethod
    def count_chunks(self) -> int:
        """Number of stored chunks."""

    @abstractmethod
    def test_connection(self) -> bool:
        """True if the store is reachable."""


class SupabaseDocumentStore(DocumentStore):
    """DocumentStore over Supabase tables and pgvector RPC functions."""

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        documents_table: str = DOCUMENTS_TABLE,
        chunks_table: str = CHUNKS_TABLE,
        insert_batch_size: int = CHUNK_INSERT_BATCH_SIZE,
        max_retries: int = 3,
        initial_delay: float = 1.0
    ):
        """
        Initialize the store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            documents_table: Name of the documents table
            chunks_table: Name of the chunks table
            insert_batch_size: Rows per chunk insert request
            max_retries: Attempts for timeouts and network errors
            initial_delay: Initial delay in seconds for exponential backoff

        Raises:
            ConfigurationError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.documents_table = documents_table
        self.chunks_table = chunks_table
        self.insert_batch_size = insert_batch_size
        self.max_retries = max_retries
        self.initial_delay = initial_delay

        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info(f"Initialized SupabaseDocumentStore with tables: {documents_table}, {chunks_table}")

    def _execute(self, operation: str, call: Callable[[], Any]) -> Any:
        """
        Run a Supabase request, retrying timeouts and network errors.

        Raises:
            ProviderError: If the request fails, or keeps failing transiently
        """
        delay = self.initial_delay
        last_error = None

        for attempt in range(self.max_retries):
            try:
                return call()
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_error = str(e)
                logger.warning(f"{operation} failed on attempt {attempt + 1}/{self.max_retries}: {last_error}")
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                    delay = min(delay * 2, 30.0)
            except Exception as e:
                error_msg = f"{operation} failed: {str(e)}"
                logger.error(error_msg)
                raise ProviderError(error_msg) from e

        error_msg = f"{operation} failed after {self.max_retries} attempts. Last error: {last_error}"
        logger.error(error_msg)
        raise ProviderError(error_msg, transient=True)

    def upsert_document(self, record: DocumentRecord) -> str:
        response = self._execute(
            f"Upsert document {record.doc_id}",
            lambda: self.client.table(self.documents_table)
            .upsert(record.to_row(), on_conflict="doc_id")
            .execute()
        )
        if not response.data:
            raise ProviderError(f"Upsert of document {record.doc_id} returned no row")
        return str(response.data[0]["id"])

    def insert_chunks(self, chunks: List[Chunk], document_id: str) -> int:
        """
        Insert chunk rows in batches.

        Args:
            chunks: Chunks of a single document, in ordinal order
            document_id: Row id returned by upsert_document

        Returns:
            Number of rows inserted
        """
        inserted = 0
        for start in range(0, len(chunks), self.insert_batch_size):
            batch = chunks[start:start + self.insert_batch_size]
            rows = [chunk.to_row(document_id) for chunk in batch]
            self._execute(
                f"Insert chunks {start + 1}-{start + len(batch)} of {batch[0].doc_id}",
                lambda rows=rows: self.client.table(self.chunks_table).insert(rows).execute()
            )
            inserted += len(batch)
            logger.debug(f"Inserted {inserted}/{len(chunks)} chunks for {batch[0].doc_id}")

        return inserted

    def get_document_by_external_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        response = self._execute(
            f"Lookup document {doc_id}",
            lambda: self.client.table(self.documents_table)
            .select("id, doc_id, title, chunk_count")
            .eq("doc_id", doc_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def vector_search(self, query_vector: List[float], threshold: float, limit: int) -> List[Dict[str, Any]]:
        # See database/schema.sql for the vector_search function
        response = self._execute(
            "Vector search",
            lambda: self.client.rpc(
                "vector_search",
                {
                    "query_embedding": query_vector,
                    "match_threshold": threshold,
                    "match_count": limit
                }
            ).execute()
        )
        return response.data or []

    def keyword_search(self, terms: List[str], limit: int) -> List[Dict[str, Any]]:
        if not terms:
            return []
        response = self._execute(
            "Keyword search",
            lambda: self.client.rpc(
                "keyword_search",
                {
                    "search_terms": terms,
                    "match_count": limit
                }
            ).execute()
        )
        return response.data or []

    def get_chunks_in_range(self, doc_id: str, lo: int, hi: int) -> List[Dict[str, Any]]:
        response = self._execute(
            f"Fetch chunks {lo}-{hi} of {doc_id}",
            lambda: self.client.table(self.chunks_table)
            .select(CHUNK_COLUMNS)
            .eq("doc_id", doc_id)
            .gte("chunk_id", lo)
            .lte("chunk_id", hi)
            .order("chunk_id")
            .execute()
        )
        return response.data or []

    def delete_document(self, doc_id: str) -> bool:
        response = self._execute(
            f"Delete document {doc_id}",
            lambda: self.client.table(self.documents_table).delete().eq("doc_id", doc_id).execute()
        )
        deleted = bool(response.data)
        if deleted:
            logger.info(f"Deleted document {doc_id}")
        return deleted

    def delete_chunks(self, doc_id: str) -> int:
        response = self._execute(
            f"Delete chunks of {doc_id}",
            lambda: self.client.table(self.chunks_table).delete().eq("doc_id", doc_id).execute()
        )
        return len(response.data or [])

    def count_documents(self) -> int:
        response = self._execute(
            "Count documents",
            lambda: self.client.table(self.documents_table).select("id", count="exact").limit(1).execute()
        )
        return response.count if response.count is not None else 0

    def count_chunks(self) -> int:
        response = self._execute(
            "Count chunks",
            lambda: self.client.table(self.chunks_table).select("id", count="exact").limit(1).execute()
        )
        return response.count if response.count is not None else 0

    def test_connection(self) -> bool:
        try:
            self._execute(
                "Connection test",
                lambda: self.client.table(self.documents_table).select("id").limit(1).execute()
            )
            return True
        except ProviderError:
            return False
