"""Unit tests for IngestionPipeline."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock, patch
from conftest import FakeDocumentSource, FakeEmbeddingModel, make_document
from errors import ValidationError
from services.chunking_engine import PageChunker
from services.dimension_adapter import DimensionAdapter
from services.document_source import RegisterApiDocumentSource
from services.ingestion_pipeline import IngestionOptions, IngestionPipeline, PipelinePhase


def _pipeline(store, documents, embedding_model=None, **source_kwargs):
    source = FakeDocumentSource(documents, **source_kwargs)
    return IngestionPipeline(
        source,
        store,
        embedding_model=embedding_model or FakeEmbeddingModel(native_dim=8),
        dimension_adapter=DimensionAdapter(native_dim=8, target_dim=4),
        max_workers=2
    )


def _chunk_rows(store, doc_id):
    return sorted((r for r in store.chunks if r["doc_id"] == doc_id), key=lambda r: r["chunk_id"])


class TestIngestionRun:
    """Tests for a full pipeline run."""

    def test_ingests_every_document(self, store):
        pipeline = _pipeline(store, [make_document(f"d{n}") for n in range(1, 4)])

        result = pipeline.run(IngestionOptions(processing_batch_size=2, storage_batch_size=2))

        assert result.processed == 3
        assert result.skipped == 0
        assert result.chunks_created == 6
        assert result.embeddings_generated == 6
        assert result.embedding_failures == 0
        assert result.errors == []
        assert result.phase == PipelinePhase.COMPLETE
        assert result.success is True
        assert list(store.documents) == ["d1", "d2", "d3"]
        assert store.count_chunks() == 6

    def test_chunks_carry_store_width_embeddings(self, store):
        pipeline = _pipeline(store, [make_document("d1", pages=3)])

        pipeline.run()

        rows = _chunk_rows(store, "d1")
        assert [r["chunk_id"] for r in rows] == [1, 2, 3]
        assert all(len(r["embedding"]) == 4 for r in rows)
        assert all(r["embedding_failed"] is False for r in rows)
        assert store.documents["d1"]["chunk_count"] == 3

    def test_document_embedding_is_first_chunk_embedding(self, store):
        pipeline = _pipeline(store, [make_document("d1")])

        pipeline.run()

        first = _chunk_rows(store, "d1")[0]
        assert store.documents["d1"]["embedding"] == first["embedding"]

    def test_second_run_skips_existing_documents(self, store):
        documents = [make_document(f"d{n}") for n in range(1, 4)]
        _pipeline(store, documents).run()
        upserts_after_first_run = store.upsert_calls

        result = _pipeline(store, documents).run()

        assert result.processed == 0
        assert result.skipped == 3
        assert result.success is True
        assert store.count_chunks() == 6
        assert store.upsert_calls == upserts_after_first_run

    def test_rerun_without_skip_replaces_chunks(self, store):
        documents = [make_document("d1"), make_document("d2")]
        _pipeline(store, documents).run()

        result = _pipeline(store, documents).run(IngestionOptions(skip_existing=False))

        assert result.processed == 2
        assert result.skipped == 0
        assert store.count_chunks() == 4
        assert [r["chunk_id"] for r in _chunk_rows(store, "d1")] == [1, 2]

    def test_document_without_text_is_stored_as_metadata(self, store):
        document = make_document(
            "20240115-1-EN",
            raw_text="",
            doc_type="Circular",
            issue_date="2024-01-15",
            topics=["Capital: Basel III"],
        )
        embedding_model = FakeEmbeddingModel(native_dim=8)
        pipeline = _pipeline(store, [document], embedding_model=embedding_model)

        result = pipeline.run()

        assert result.processed == 1
        assert result.chunks_created == 0
        row = store.documents["20240115-1-EN"]
        assert row["chunk_count"] == 0
        assert row["embedding"] is None
        assert "Type: Circular" in row["content"]
        assert "Issue Date: 2024-01-15" in row["content"]
        assert "Topics: Capital: Basel III" in row["content"]
        assert embedding_model.calls == 0

    def test_embedding_failure_keeps_chunk(self, store):
        document = make_document("d1", raw_text="## Page 1\nGood capital text\n## Page 2\nUNEMBEDDABLE text")
        pipeline = _pipeline(store, [document])

        result = pipeline.run()

        assert result.processed == 1
        assert result.chunks_created == 2
        assert result.embeddings_generated == 1
        assert result.embedding_failures == 1
        assert result.success is True
        good, bad = _chunk_rows(store, "d1")
        assert len(good["embedding"]) == 4
        assert bad["embedding"] is None
        assert bad["embedding_failed"] is True

    def test_embeddings_disabled(self, store):
        embedding_model = FakeEmbeddingModel(native_dim=8)
        pipeline = _pipeline(store, [make_document("d1")], embedding_model=embedding_model)

        result = pipeline.run(IngestionOptions(embeddings_enabled=False))

        assert result.chunks_created == 2
        assert result.embeddings_generated == 0
        assert embedding_model.calls == 0
        assert all(r["embedding"] is None for r in _chunk_rows(store, "d1"))

    def test_max_documents_limits_crawl(self, store):
        documents = [make_document(f"d{n}") for n in range(1, 6)]
        pipeline = _pipeline(store, documents, page_size=2)

        result = pipeline.run(IngestionOptions(max_documents=3))

        assert result.processed == 3
        assert list(store.documents) == ["d1", "d2", "d3"]
        assert pipeline.source.pages_served == 2

    def test_max_documents_zero(self, store):
        result = _pipeline(store, [make_document("d1")]).run(IngestionOptions(max_documents=0))

        assert result.processed == 0
        assert result.success is True
        assert store.count_documents() == 0

    def test_progress_after_run(self, store):
        pipeline = _pipeline(store, [make_document("d1"), make_document("d2")])

        pipeline.run()

        progress = pipeline.progress
        assert progress.phase == PipelinePhase.COMPLETE
        assert progress.documents_crawled == 2
        assert progress.processed == 2


class TestFailureIsolation:
    """A failing document must not abort the run."""

    def test_chunk_storage_failure_removes_partial_document(self, store):
        store.fail_chunks_for = {"d2"}
        documents = [make_document(f"d{n}") for n in range(1, 4)]

        result = _pipeline(store, documents).run()

        assert result.processed == 2
        assert result.success is False
        assert result.phase == PipelinePhase.COMPLETE
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to store chunks for d2")
        assert "d2" not in store.documents
        assert _chunk_rows(store, "d2") == []

    def test_failed_document_is_retried_on_next_run(self, store):
        store.fail_chunks_for = {"d2"}
        documents = [make_document(f"d{n}") for n in range(1, 4)]
        _pipeline(store, documents).run()

        store.fail_chunks_for = set()
        result = _pipeline(store, documents).run()

        assert result.processed == 1
        assert result.skipped == 2
        assert "d2" in store.documents

    def test_document_upsert_failure(self, store):
        store.fail_upsert_for = {"d1"}

        result = _pipeline(store, [make_document("d1"), make_document("d2")]).run()

        assert result.processed == 1
        assert result.errors == ["Failed to store document d1: upsert rejected for d1"]
        assert list(store.documents) == ["d2"]

    def test_processing_failure_is_recorded(self, store):
        class ExplodingChunker(PageChunker):
            def chunk_document(self, raw_text, doc_id):
                if doc_id == "boom":
                    raise RuntimeError("malformed document")
                return super().chunk_document(raw_text, doc_id)

        pipeline = _pipeline(store, [make_document("boom"), make_document("fine")])
        pipeline.chunker = ExplodingChunker()

        result = pipeline.run()

        assert result.processed == 1
        assert result.errors == ["Failed to process boom: malformed document"]
        assert list(store.documents) == ["fine"]

    def test_crawl_failure_ends_in_error_phase(self, store):
        documents = [make_document(f"d{n}") for n in range(1, 5)]
        pipeline = _pipeline(store, documents, page_size=2, fail_on_page=1)

        result = pipeline.run()

        assert result.processed == 2
        assert result.phase == PipelinePhase.ERROR
        assert result.success is False
        assert result.errors[0].startswith("Crawl failed")

    @patch('httpx.Client')
    def test_undecodable_register_text_does_not_abort_run(self, mock_client_class, store, tmp_path):
        (tmp_path / "DOC1.md").write_bytes(b"\xff\xfe")
        (tmp_path / "DOC2.md").write_text("## Page 1\nCapital adequacy for banks.", encoding="utf-8")
        response = Mock()
        response.status_code = 200
        response.json.return_value = {
            "resultList": [
                {"docId": "DOC1", "docLongTitle": "Capital Rules"},
                {"docId": "DOC2", "docLongTitle": "Liquidity Rules"},
            ],
            "totalRecordNumber": 2,
        }
        mock_client_class.return_value.__enter__.return_value.post.return_value = response
        pipeline = _pipeline(store, [])
        pipeline.source = RegisterApiDocumentSource(markdown_directory=str(tmp_path))

        result = pipeline.run()

        assert result.processed == 2
        assert result.errors == []
        assert store.documents["DOC1"]["chunk_count"] == 0
        assert store.documents["DOC2"]["chunk_count"] == 1

    @patch('httpx.Client')
    def test_malformed_register_response_ends_in_error_phase(self, mock_client_class, store):
        response = Mock()
        response.status_code = 200
        response.json.side_effect = ValueError("Expecting value")
        mock_client_class.return_value.__enter__.return_value.post.return_value = response
        pipeline = _pipeline(store, [])
        pipeline.source = RegisterApiDocumentSource(markdown_directory=None)

        result = pipeline.run()

        assert result.phase == PipelinePhase.ERROR
        assert result.success is False
        assert "malformed JSON" in result.errors[0]


class TestStop:
    """Stop requests are honoured at storage batch boundaries."""

    def test_stop_during_run(self, store):
        documents = [make_document(f"d{n}") for n in range(1, 5)]
        pipeline = _pipeline(store, documents)
        store.on_upsert = lambda record: pipeline.request_stop()

        result = pipeline.run(IngestionOptions(processing_batch_size=1, storage_batch_size=1))

        assert result.stopped is True
        assert result.processed == 1
        assert list(store.documents) == ["d1"]

    def test_stop_requested_before_run(self, store):
        documents = [make_document(f"d{n}") for n in range(1, 5)]
        pipeline = _pipeline(store, documents)
        pipeline.request_stop()

        result = pipeline.run(IngestionOptions(processing_batch_size=2, storage_batch_size=2))

        assert result.stopped is True
        assert result.processed == 2

        # The stop applies to one run only
        result = pipeline.run(IngestionOptions(processing_batch_size=2, storage_batch_size=2))
        assert result.stopped is False
        assert result.processed == 2
        assert result.skipped == 2


class TestMaintenance:

    def test_delete_document(self, store):
        pipeline = _pipeline(store, [make_document("d1"), make_document("d2")])
        pipeline.run()

        assert pipeline.delete_document("d1") is True
        assert "d1" not in store.documents
        assert _chunk_rows(store, "d1") == []
        assert pipeline.delete_document("d1") is False

    def test_get_stats(self, store):
        pipeline = _pipeline(store, [make_document("d1")])
        pipeline.run()

        stats = pipeline.get_stats()

        assert stats["total_documents"] == 1
        assert stats["total_chunks"] == 2
        assert stats["embedding_model"] == "fake-embedder"
        assert stats["native_dimension"] == 8
        assert stats["target_dimension"] == 4

    def test_invalid_options(self):
        with pytest.raises(ValidationError):
            IngestionOptions(max_documents=-1)
        with pytest.raises(ValidationError):
            IngestionOptions(processing_batch_size=0)
        with pytest.raises(ValidationError):
            IngestionOptions(storage_batch_size=0)
