"""Retrieval of a teacher's most relevant semantic documents for a query."""
from dataclasses import dataclass, field
from typing import List, Optional

from gradewise.core.config import settings
from gradewise.core.errors import ConfigurationError
from gradewise.core.logging import get_logger, LogTimer
from gradewise.domain.documents import ScoredDocument, SemanticDocument
from gradewise.infrastructure.base import DocumentStore, EmbeddingService
from gradewise.utils.vectors import rank_by_similarity

logger = get_logger(__name__)

NO_DATA_CONTEXT = "No student data available yet. Answer based on general teaching knowledge."
NO_RELEVANT_CONTEXT = (
    "No highly relevant student data found for this query. Answer based on general teaching knowledge."
)


@dataclass
class RetrievalResult:
    """Rendered context for the prompt plus the ranked top-K documents."""
    context_text: str
    ranked_documents: List[ScoredDocument] = field(default_factory=list)


def render_context(documents: List[ScoredDocument]) -> str:
    """Numbered list: ``[n] (type) (class name) content``, blank line between entries."""
    lines = []
    for idx, scored in enumerate(documents, start=1):
        doc = scored.document
        line = f"[{idx}] ({doc.type.value})"
        class_name = doc.metadata.get("class_name")
        if class_name:
            line += f" ({class_name})"
        lines.append(f"{line} {doc.content}")
    return "\n\n".join(lines)


class RetrievalAssembler:
    """Embeds a query and ranks the tenant's documents by cosine similarity."""

    def __init__(
        self,
        store: DocumentStore,
        embeddings: EmbeddingService,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.top_k = top_k if top_k is not None else settings.retrieval_top_k
        self.threshold = threshold if threshold is not None else settings.relevance_threshold

    async def retrieve(self, query: str, tenant_id: str) -> RetrievalResult:
        """Build the prompt context for ``query``.

        Embedding and store errors propagate; the orchestrator decides how to
        degrade.

        Raises:
            ConfigurationError: If tenant_id is missing
        """
        if not tenant_id:
            raise ConfigurationError("tenant_id is required for retrieval")

        with LogTimer(logger, "retrieval", tenant_id=tenant_id):
            query_embedding = await self.embeddings.embed(query)
            documents = await self.store.query_documents_by_tenant(tenant_id)

            if not documents:
                return RetrievalResult(context_text=NO_DATA_CONTEXT)

            candidates = self._comparable(documents, len(query_embedding), tenant_id)
            ranked = [
                ScoredDocument(document=doc, score=score)
                for doc, score in rank_by_similarity(
                    query_embedding, candidates, lambda d: d.embedding, top_k=self.top_k
                )
            ]

        relevant = [d for d in ranked if d.score > self.threshold]
        logger.debug(
            f"Retrieved {len(ranked)} documents, {len(relevant)} above threshold {self.threshold}",
            extra={"tenant_id": tenant_id}
        )
        if not relevant:
            return RetrievalResult(context_text=NO_RELEVANT_CONTEXT, ranked_documents=ranked)
        return RetrievalResult(context_text=render_context(relevant), ranked_documents=ranked)

    @staticmethod
    def _comparable(documents: List[SemanticDocument], dimension: int, tenant_id: str) -> List[SemanticDocument]:
        usable = []
        for doc in documents:
            if not doc.embedding:
                logger.warning(f"Document {doc.id} has no embedding, skipping", extra={"tenant_id": tenant_id})
            elif len(doc.embedding) != dimension:
                logger.warning(
                    f"Document {doc.id} has {len(doc.embedding)}-dim embedding, query has {dimension}; skipping",
                    extra={"tenant_id": tenant_id, "error_type": "data_inconsistency"}
                )
            else:
                usable.append(doc)
        return usable
