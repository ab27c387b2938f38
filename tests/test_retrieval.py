"""Unit tests for the retrieval assembler."""
import math
from datetime import datetime, timedelta, timezone

import pytest

from gradewise.core.errors import ConfigurationError, TransientIntegrationError
from gradewise.domain.documents import DocumentType, SemanticDocument
from gradewise.services.retrieval import NO_DATA_CONTEXT, NO_RELEVANT_CONTEXT, RetrievalAssembler

from conftest import FakeEmbeddingService

pytestmark = pytest.mark.asyncio

BASE_TIME = datetime(2025, 3, 1, tzinfo=timezone.utc)


def vector_with_score(score):
    """2-d unit vector whose cosine with (1, 0) equals ``score``."""
    return [score, math.sqrt(1 - score ** 2)]


async def add_doc(store, content, embedding, tenant_id="teacher_42", doc_type=DocumentType.STUDENT, **metadata):
    doc = SemanticDocument(
        type=doc_type,
        tenant_id=tenant_id,
        class_id="c1",
        content=content,
        metadata=metadata,
        embedding=embedding,
        created_at=BASE_TIME + timedelta(seconds=len(await store.query_documents_by_tenant(tenant_id))),
    )
    await store.put_semantic_document(doc)
    return doc


@pytest.fixture
def query_embeddings():
    return FakeEmbeddingService(default=(1.0, 0.0))


@pytest.fixture
def assembler(document_store, query_embeddings):
    return RetrievalAssembler(document_store, query_embeddings, top_k=10, threshold=0.3)


class TestRetrieve:
    """Test retrieval and context rendering."""

    async def test_empty_collection_uses_no_data_fallback(self, assembler):
        """Test a tenant with no documents."""
        result = await assembler.retrieve("how is the class doing?", "teacher_42")

        assert result.context_text == NO_DATA_CONTEXT
        assert result.ranked_documents == []

    async def test_threshold_filters_context(self, assembler, document_store):
        """Test scores [0.9, 0.5, 0.25, 0.1] keep only the first two."""
        for score in (0.1, 0.9, 0.25, 0.5):
            await add_doc(document_store, f"doc {score}", vector_with_score(score))

        result = await assembler.retrieve("fractions", "teacher_42")

        assert [round(d.score, 2) for d in result.ranked_documents] == [0.9, 0.5, 0.25, 0.1]
        assert result.context_text.startswith("[1] (student) doc 0.9")
        assert "[2] (student) doc 0.5" in result.context_text
        assert "doc 0.25" not in result.context_text
        assert "doc 0.1" not in result.context_text

    async def test_nothing_relevant_uses_distinct_fallback(self, assembler, document_store):
        """Test documents that all score below the threshold."""
        await add_doc(document_store, "unrelated", vector_with_score(0.2))

        result = await assembler.retrieve("fractions", "teacher_42")

        assert result.context_text == NO_RELEVANT_CONTEXT
        assert NO_RELEVANT_CONTEXT != NO_DATA_CONTEXT
        assert len(result.ranked_documents) == 1

    async def test_class_name_rendered(self, assembler, document_store):
        """Test the (type) (class name) content line format."""
        await add_doc(
            document_store, 'Class "Algebra I" has an average grade of 81.0%.',
            [1.0, 0.0], doc_type=DocumentType.CLASS, class_name="Algebra I",
        )

        result = await assembler.retrieve("algebra", "teacher_42")

        assert result.context_text == '[1] (class) (Algebra I) Class "Algebra I" has an average grade of 81.0%.'

    async def test_top_k_limits_results(self, document_store, query_embeddings):
        """Test only the best K documents are kept."""
        for i in range(15):
            await add_doc(document_store, f"doc {i}", vector_with_score(0.99 - i * 0.01))

        result = await RetrievalAssembler(document_store, query_embeddings, top_k=10).retrieve("q", "teacher_42")

        assert len(result.ranked_documents) == 10
        assert result.ranked_documents[0].document.content == "doc 0"

    async def test_ranking_is_deterministic(self, assembler, document_store):
        """Test repeated retrieval over a fixed set ranks identically, ties included."""
        for i in range(5):
            await add_doc(document_store, f"tie {i}", [1.0, 0.0])
        await add_doc(document_store, "lower", vector_with_score(0.6))

        first = await assembler.retrieve("q", "teacher_42")
        second = await assembler.retrieve("q", "teacher_42")

        assert [d.document.id for d in first.ranked_documents] == [d.document.id for d in second.ranked_documents]
        assert [d.document.content for d in first.ranked_documents[:5]] == [f"tie {i}" for i in range(5)]

    async def test_tenant_isolation(self, assembler, document_store):
        """Test other tenants' documents are never returned."""
        await add_doc(document_store, "someone else's class", [1.0, 0.0], tenant_id="teacher_7")

        result = await assembler.retrieve("class", "teacher_42")

        assert result.context_text == NO_DATA_CONTEXT

    async def test_mismatched_dimension_skipped(self, assembler, document_store):
        """Test documents from another embedding model are skipped, not fatal."""
        await add_doc(document_store, "old model", [1.0, 0.0, 0.0])
        await add_doc(document_store, "current", [1.0, 0.0])

        result = await assembler.retrieve("q", "teacher_42")

        assert [d.document.content for d in result.ranked_documents] == ["current"]

    async def test_missing_tenant(self, assembler):
        """Test missing tenant id fails fast."""
        with pytest.raises(ConfigurationError):
            await assembler.retrieve("q", "")

    async def test_embedding_errors_propagate(self, document_store):
        """Test embedding failures reach the caller."""
        failing = FakeEmbeddingService(error=TransientIntegrationError("embedding", "timeout"))

        with pytest.raises(TransientIntegrationError):
            await RetrievalAssembler(document_store, failing).retrieve("q", "teacher_42")
