"""Process-local store backends for development and tests.

Aggregates carry a version number; ``transact_aggregate`` computes the update
outside the lock and commits only if the version is unchanged, mirroring the
Redis WATCH/MULTI behaviour.
"""
import asyncio
import copy
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from gradewise.core.errors import TransactionConflictError
from gradewise.core.logging import get_logger
from gradewise.domain.conversation import Conversation
from gradewise.domain.documents import LessonPlan, SemanticDocument
from gradewise.domain.grades import GradeRecord
from gradewise.infrastructure.base import (
    AggregateDoc,
    AggregateUpdate,
    ConversationStore,
    DocumentStore,
    apply_update,
)

logger = get_logger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed DocumentStore with optimistic aggregate transactions."""

    def __init__(self, max_retries: int = 10):
        self.max_retries = max_retries
        self._aggregates: Dict[str, Tuple[AggregateDoc, int]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._documents: Dict[str, Dict[str, SemanticDocument]] = defaultdict(dict)
        self._grades: Dict[str, GradeRecord] = {}
        self._lesson_plans: Dict[str, LessonPlan] = {}

    async def get_aggregate(self, key: str) -> Optional[AggregateDoc]:
        entry = self._aggregates.get(key)
        return copy.deepcopy(entry[0]) if entry else None

    async def transact_aggregate(self, key: str, fn: AggregateUpdate) -> AggregateDoc:
        for attempt in range(1, self.max_retries + 1):
            current, version = self._aggregates.get(key, (None, 0))
            updated = await apply_update(fn, copy.deepcopy(current))

            async with self._locks[key]:
                _, latest_version = self._aggregates.get(key, (None, 0))
                if latest_version == version:
                    self._aggregates[key] = (copy.deepcopy(updated), version + 1)
                    return updated

            logger.debug(f"Aggregate {key} changed during transaction, retrying (attempt {attempt})")

        raise TransactionConflictError(key, self.max_retries)

    async def put_semantic_document(self, doc: SemanticDocument) -> None:
        self._documents[doc.tenant_id][doc.id] = doc.model_copy(deep=True)

    async def query_documents_by_tenant(self, tenant_id: str) -> List[SemanticDocument]:
        return [doc.model_copy(deep=True) for doc in self._documents.get(tenant_id, {}).values()]

    async def put_grade(self, grade: GradeRecord) -> None:
        self._grades[grade.id] = grade.model_copy(deep=True)

    async def get_grade(self, grade_id: str) -> Optional[GradeRecord]:
        grade = self._grades.get(grade_id)
        return grade.model_copy(deep=True) if grade else None

    async def list_grades(
        self,
        class_id: str,
        student_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[GradeRecord]:
        grades = [
            g.model_copy(deep=True) for g in self._grades.values()
            if g.class_id == class_id
            and (student_id is None or g.student_id == student_id)
            and (include_deleted or not g.deleted)
        ]
        return sorted(grades, key=lambda g: g.graded_at)

    async def put_lesson_plan(self, plan: LessonPlan) -> None:
        self._lesson_plans[plan.id] = plan.model_copy(deep=True)

    async def get_lesson_plan(self, tenant_id: str, plan_id: str) -> Optional[LessonPlan]:
        plan = self._lesson_plans.get(plan_id)
        if plan is None or plan.tenant_id != tenant_id:
            return None
        return plan.model_copy(deep=True)


class InMemoryConversationStore(ConversationStore):
    """Dict-backed ConversationStore."""

    def __init__(self):
        self._conversations: Dict[str, Dict[str, Conversation]] = defaultdict(dict)

    async def get(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(tenant_id, {}).get(conversation_id)
        if conversation is None or conversation.deleted:
            return None
        return conversation.model_copy(deep=True)

    async def list_for_tenant(self, tenant_id: str) -> List[Conversation]:
        active = [c for c in self._conversations.get(tenant_id, {}).values() if not c.deleted]
        return [c.model_copy(deep=True) for c in sorted(active, key=lambda c: c.updated_at, reverse=True)]

    async def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.tenant_id][conversation.id] = conversation.model_copy(deep=True)
