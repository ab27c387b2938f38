"""Semantic indexing of grades, class aggregates and lesson plans.

Each event is rendered as a short natural-language summary, embedded and
stored as a SemanticDocument scoped to the teacher (tenant). Indexing runs
after the triggering save has committed and never fails it.
"""
import asyncio
import hashlib
from typing import Awaitable, Optional, Set

from gradewise.core.config import settings
from gradewise.core.logging import get_logger
from gradewise.domain.documents import DocumentType, LessonPlan, SemanticDocument
from gradewise.domain.grades import ClassAnalytics, GradeRecord
from gradewise.infrastructure.base import DocumentStore, EmbeddingService

logger = get_logger(__name__)

MAX_MISSED_QUESTIONS = 3
MAX_LISTED_TOPICS = 5
MAX_SUPPORT_STUDENTS = 5


def _fmt_number(value: float) -> str:
    """8.0 -> '8', 7.5 -> '7.5'."""
    return f"{value:g}"


def class_document_id(tenant_id: str, class_id: str) -> str:
    """Stable id so the class summary is replaced rather than duplicated."""
    digest = hashlib.sha1(f"{tenant_id}:{class_id}".encode("utf-8")).hexdigest()
    return f"class-{digest[:24]}"


def student_summary(grade: GradeRecord) -> str:
    """Summary of one graded assignment for one student."""
    if grade.total_points > 0:
        percentage = f"{grade.overall_score / grade.total_points * 100:.1f}"
    else:
        percentage = "0.0"
    assignment = grade.assignment_name or grade.assignment_id or "Untitled assignment"

    summary = (
        f'Student {grade.student_name} in assignment "{assignment}" scored '
        f"{_fmt_number(grade.overall_score)}/{_fmt_number(grade.total_points)} ({percentage}%)."
    )
    if grade.strong_topics:
        summary += f" Strong topics: {', '.join(grade.strong_topics)}."
    if grade.struggling_topics:
        summary += f" Struggling topics: {', '.join(grade.struggling_topics)}."

    missed = [q for q in grade.questions if q.points_awarded < q.points_possible]
    if missed:
        parts = [
            f"{q.topic or 'general'} ({_fmt_number(q.points_awarded)}/{_fmt_number(q.points_possible)})"
            for q in missed[:MAX_MISSED_QUESTIONS]
        ]
        summary += f" Questions missed: {'; '.join(parts)}."
    return summary


def class_summary(analytics: ClassAnalytics, class_name: str, support_threshold: Optional[float] = None) -> str:
    """Summary of a class aggregate: average, common struggles, students needing support."""
    threshold = support_threshold if support_threshold is not None else settings.support_threshold

    summary = (
        f'Class "{class_name}" has an average grade of {analytics.average_grade:.1f}% '
        f"across {analytics.total_assignments} graded assignments."
    )

    if analytics.common_struggling_topics:
        top = sorted(analytics.common_struggling_topics.items(), key=lambda kv: kv[1], reverse=True)
        listed = [f"{topic} ({count} occurrences)" for topic, count in top[:MAX_LISTED_TOPICS]]
        summary += f" Common struggling topics: {', '.join(listed)}."

    needs_support = [p for p in analytics.student_performances.values() if p.average_score < threshold]
    if needs_support:
        names = [f"{p.name} ({p.average_score:.1f}%)" for p in needs_support[:MAX_SUPPORT_STUDENTS]]
        summary += f" Students needing support: {', '.join(names)}."
    return summary


def lesson_plan_summary(plan: LessonPlan) -> str:
    summary = f'Lesson plan "{plan.title}" for class "{plan.class_name}".'
    if plan.duration:
        summary += f" Duration: {plan.duration}."
    if plan.overview:
        summary += f" Overview: {plan.overview}"
    if plan.objectives:
        summary += f" Learning objectives: {'; '.join(plan.objectives)}."
    if plan.activities:
        summary += f" Activities include: {', '.join(a.name for a in plan.activities)}."
    if plan.differentiation:
        if plan.differentiation.struggling:
            summary += f" For struggling students: {plan.differentiation.struggling}"
        if plan.differentiation.advanced:
            summary += f" For advanced students: {plan.differentiation.advanced}"
    if plan.assessment:
        summary += f" Assessment: {plan.assessment}"
    return summary


class SemanticIndexer:
    """Turns domain events into embedded, retrievable documents."""

    def __init__(self, store: DocumentStore, embeddings: EmbeddingService):
        self.store = store
        self.embeddings = embeddings
        self._pending: Set[asyncio.Task] = set()

    async def _index(self, doc: SemanticDocument) -> Optional[SemanticDocument]:
        log_extra = {"tenant_id": doc.tenant_id, "class_id": doc.class_id, "operation": f"index_{doc.type.value}"}
        try:
            doc.embedding = await self.embeddings.embed(doc.content)
            await self.store.put_semantic_document(doc)
        except Exception as e:
            # The triggering save already committed; a missing summary only weakens retrieval
            logger.warning(f"Indexing {doc.type.value} document failed: {e}", extra=log_extra)
            return None

        logger.info(f"Indexed {doc.type.value} document {doc.id}", extra=log_extra)
        return doc

    async def index_grade(self, grade: GradeRecord) -> Optional[SemanticDocument]:
        """Append a student summary document for a newly saved grade."""
        return await self._index(SemanticDocument(
            type=DocumentType.STUDENT,
            tenant_id=grade.tenant_id,
            class_id=grade.class_id,
            student_id=grade.student_id,
            content=student_summary(grade),
            metadata={
                "class_name": grade.class_name,
                "student_name": grade.student_name,
                "assignment_id": grade.assignment_id,
                "assignment_name": grade.assignment_name,
                "grade_id": grade.id,
            },
        ))

    async def index_class(
        self, tenant_id: str, analytics: ClassAnalytics, class_name: Optional[str] = None
    ) -> Optional[SemanticDocument]:
        """Upsert the single class summary document for (tenant, class)."""
        class_name = class_name or analytics.class_id
        return await self._index(SemanticDocument(
            id=class_document_id(tenant_id, analytics.class_id),
            type=DocumentType.CLASS,
            tenant_id=tenant_id,
            class_id=analytics.class_id,
            content=class_summary(analytics, class_name),
            metadata={
                "class_name": class_name,
                "average_grade": analytics.average_grade,
                "total_assignments": analytics.total_assignments,
            },
        ))

    async def index_lesson_plan(self, plan: LessonPlan) -> Optional[SemanticDocument]:
        """Append a lesson plan summary document."""
        return await self._index(SemanticDocument(
            type=DocumentType.LESSON_PLAN,
            tenant_id=plan.tenant_id,
            class_id=plan.class_id,
            lesson_plan_id=plan.id,
            content=lesson_plan_summary(plan),
            metadata={"class_name": plan.class_name, "title": plan.title},
        ))

    def schedule(self, coro: Awaitable) -> asyncio.Task:
        """Run an indexing coroutine in the background.

        A reference is held until the task finishes; failures are logged from
        the done-callback.
        """
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.debug("Background indexing task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background indexing task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for all scheduled indexing to finish (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
