"""Unit tests for SupabaseDocumentStore class."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock, patch, MagicMock
import httpx
from errors import ConfigurationError, ProviderError
from models.chunk import Chunk
from models.document import DocumentRecord
from services.document_store import SupabaseDocumentStore


@pytest.fixture
def mock_client():
    with patch('services.document_store.create_client') as mock_create_client:
        client = MagicMock()
        mock_create_client.return_value = client
        yield client


@pytest.fixture
def store(mock_client):
    return SupabaseDocumentStore(
        supabase_url="https://test.supabase.co",
        supabase_key="test_key",
        insert_batch_size=2,
        initial_delay=0.01
    )


def _chunks(doc_id, count):
    return [
        Chunk(chunk_id=f"{doc_id}_page_{n}", doc_id=doc_id, ordinal=n, content=f"page {n}", keywords=["capital"])
        for n in range(1, count + 1)
    ]


class TestSupabaseDocumentStore:
    """Test suite for SupabaseDocumentStore."""

    @patch('services.document_store.create_client')
    def test_initialization_success(self, mock_create_client):
        """Test successful initialization with credentials."""
        mock_create_client.return_value = MagicMock()

        store = SupabaseDocumentStore(supabase_url="https://test.supabase.co", supabase_key="test_key")

        assert store.documents_table == "documents"
        assert store.chunks_table == "document_chunks"
        mock_create_client.assert_called_once_with("https://test.supabase.co", "test_key")

    def test_initialization_without_credentials(self):
        """Test initialization fails without Supabase credentials."""
        with pytest.raises(ConfigurationError, match="SUPABASE_URL and SUPABASE_KEY"):
            SupabaseDocumentStore(supabase_url=None, supabase_key="test_key")

        with pytest.raises(ConfigurationError, match="SUPABASE_URL and SUPABASE_KEY"):
            SupabaseDocumentStore(supabase_url="https://test.supabase.co", supabase_key=None)

    def test_upsert_document(self, store, mock_client):
        table = mock_client.table.return_value
        table.upsert.return_value.execute.return_value = Mock(data=[{"id": 42}])
        record = DocumentRecord(doc_id="20240115-1-EN", title="Guideline", content="text", source="BRDRAPI")

        document_id = store.upsert_document(record)

        assert document_id == "42"
        mock_client.table.assert_called_with("documents")
        row = table.upsert.call_args.args[0]
        assert row["doc_id"] == "20240115-1-EN"
        assert table.upsert.call_args.kwargs["on_conflict"] == "doc_id"

    def test_upsert_without_returned_row_raises(self, store, mock_client):
        mock_client.table.return_value.upsert.return_value.execute.return_value = Mock(data=[])
        record = DocumentRecord(doc_id="doc", title="t", content="c", source="s")

        with pytest.raises(ProviderError):
            store.upsert_document(record)

    def test_insert_chunks_in_batches(self, store, mock_client):
        table = mock_client.table.return_value
        table.insert.return_value.execute.return_value = Mock(data=[])

        inserted = store.insert_chunks(_chunks("doc", 5), document_id="42")

        assert inserted == 5
        assert table.insert.call_count == 3
        first_batch = table.insert.call_args_list[0].args[0]
        assert [row["chunk_id"] for row in first_batch] == [1, 2]
        assert first_batch[0]["document_id"] == "42"
        assert first_batch[0]["metadata"]["chunkId"] == "doc_page_1"

    def test_get_document_by_external_id(self, store, mock_client):
        query = mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.return_value = Mock(data=[{"id": 1, "doc_id": "doc"}])

        assert store.get_document_by_external_id("doc") == {"id": 1, "doc_id": "doc"}

        query.execute.return_value = Mock(data=[])
        assert store.get_document_by_external_id("missing") is None

    def test_vector_search_calls_rpc(self, store, mock_client):
        mock_client.rpc.return_value.execute.return_value = Mock(data=[{"id": 1, "similarity": 0.9}])

        rows = store.vector_search([0.1, 0.2], threshold=0.3, limit=5)

        assert rows == [{"id": 1, "similarity": 0.9}]
        mock_client.rpc.assert_called_once_with(
            "vector_search",
            {"query_embedding": [0.1, 0.2], "match_threshold": 0.3, "match_count": 5}
        )

    def test_keyword_search_calls_rpc(self, store, mock_client):
        mock_client.rpc.return_value.execute.return_value = Mock(data=None)

        assert store.keyword_search(["capital"], limit=30) == []
        mock_client.rpc.assert_called_once_with(
            "keyword_search", {"search_terms": ["capital"], "match_count": 30}
        )

    def test_keyword_search_without_terms_skips_store(self, store, mock_client):
        assert store.keyword_search([], limit=10) == []
        mock_client.rpc.assert_not_called()

    def test_get_chunks_in_range(self, store, mock_client):
        query = mock_client.table.return_value.select.return_value.eq.return_value
        ordered = query.gte.return_value.lte.return_value.order.return_value
        ordered.execute.return_value = Mock(data=[{"chunk_id": 2}, {"chunk_id": 3}])

        rows = store.get_chunks_in_range("doc", 2, 3)

        assert rows == [{"chunk_id": 2}, {"chunk_id": 3}]
        query.gte.assert_called_once_with("chunk_id", 2)
        query.gte.return_value.lte.assert_called_once_with("chunk_id", 3)

    def test_delete_document(self, store, mock_client):
        delete = mock_client.table.return_value.delete.return_value.eq.return_value
        delete.execute.return_value = Mock(data=[{"id": 1}])
        assert store.delete_document("doc") is True

        delete.execute.return_value = Mock(data=[])
        assert store.delete_document("doc") is False

    def test_delete_chunks_counts_rows(self, store, mock_client):
        delete = mock_client.table.return_value.delete.return_value.eq.return_value
        delete.execute.return_value = Mock(data=[{"id": 1}, {"id": 2}])

        assert store.delete_chunks("doc") == 2

    def test_counts(self, store, mock_client):
        query = mock_client.table.return_value.select.return_value.limit.return_value
        query.execute.return_value = Mock(count=12)
        assert store.count_documents() == 12

        query.execute.return_value = Mock(count=None)
        assert store.count_chunks() == 0

    def test_unexpected_error_is_wrapped(self, store, mock_client):
        mock_client.rpc.return_value.execute.side_effect = Exception("relation does not exist")

        with pytest.raises(ProviderError, match="relation does not exist") as exc_info:
            store.vector_search([0.1], threshold=0.3, limit=5)

        assert exc_info.value.transient is False

    @patch('time.sleep')
    def test_network_errors_are_retried(self, mock_sleep, store, mock_client):
        mock_client.rpc.return_value.execute.side_effect = [
            httpx.ConnectError("connection reset"),
            Mock(data=[{"id": 1}]),
        ]

        assert store.keyword_search(["capital"], limit=5) == [{"id": 1}]
        assert mock_sleep.call_count == 1

    @patch('time.sleep')
    def test_retries_exhausted_raise_transient_error(self, mock_sleep, store, mock_client):
        mock_client.rpc.return_value.execute.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(ProviderError) as exc_info:
            store.keyword_search(["capital"], limit=5)

        assert exc_info.value.transient is True
        assert mock_client.rpc.return_value.execute.call_count == 3

    def test_connection_check(self, store, mock_client):
        query = mock_client.table.return_value.select.return_value.limit.return_value
        query.execute.return_value = Mock(data=[])
        assert store.test_connection() is True

        query.execute.side_effect = Exception("unreachable")
        assert store.test_connection() is False
