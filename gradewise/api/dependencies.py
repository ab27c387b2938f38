"""Service wiring for the HTTP API.

One ``ServiceContainer`` per process; tests replace it through
``app.dependency_overrides[get_services]``.
"""
from functools import lru_cache

from gradewise.core.config import settings
from gradewise.core.logging import get_logger
from gradewise.infrastructure.base import (
    ConversationStore,
    DocumentStore,
    EmbeddingService,
    GenerationService,
)
from gradewise.services.analytics import AnalyticsAggregator
from gradewise.services.assistant import ConversationOrchestrator
from gradewise.services.conversations import ConversationService
from gradewise.services.grading import GradeService
from gradewise.services.indexer import SemanticIndexer
from gradewise.services.lesson_plans import LessonPlanService
from gradewise.services.retrieval import RetrievalAssembler

logger = get_logger(__name__)


class ServiceContainer:
    """Builds every service from the four external collaborators."""

    def __init__(
        self,
        store: DocumentStore,
        conversation_store: ConversationStore,
        embeddings: EmbeddingService,
        generation: GenerationService,
    ):
        self.store = store
        self.aggregator = AnalyticsAggregator(store)
        self.indexer = SemanticIndexer(store, embeddings)
        self.retrieval = RetrievalAssembler(store, embeddings)
        self.grades = GradeService(store, self.aggregator, self.indexer)
        self.lesson_plans = LessonPlanService(store, generation, self.aggregator, self.indexer)
        self.conversations = ConversationService(conversation_store, generation)
        self.orchestrator = ConversationOrchestrator(
            self.retrieval,
            generation,
            lesson_plan_handler=self.lesson_plans.handle_tool_call,
        )


@lru_cache(maxsize=1)
def get_services() -> ServiceContainer:
    """Process-wide container chosen by ``STORE_BACKEND``."""
    from gradewise.infrastructure.vertex import VertexEmbeddingService, VertexGenerationService

    if settings.store_backend == "memory":
        from gradewise.infrastructure.memory import InMemoryConversationStore, InMemoryDocumentStore
        logger.warning("Using in-memory stores; data is lost on restart")
        store, conversation_store = InMemoryDocumentStore(settings.aggregate_max_retries), InMemoryConversationStore()
    else:
        from gradewise.infrastructure.redis import RedisConversationStore, RedisDocumentStore
        store, conversation_store = RedisDocumentStore(), RedisConversationStore()

    return ServiceContainer(store, conversation_store, VertexEmbeddingService(), VertexGenerationService())
