"""Saving and deleting grades, keeping aggregates and the index in step."""
from typing import Optional, Tuple

from gradewise.core.errors import AccessDeniedError, ConfigurationError, NotFoundError
from gradewise.core.logging import get_logger
from gradewise.domain.grades import ClassAnalytics, GradeRecord, StudentAnalytics
from gradewise.infrastructure.base import DocumentStore
from gradewise.services.analytics import AnalyticsAggregator
from gradewise.services.indexer import SemanticIndexer

logger = get_logger(__name__)


async def ensure_class_access(store: DocumentStore, class_id: str, tenant_id: str) -> None:
    """A class belongs to the tenants that have graded in it; a class with no grades is open.

    Raises:
        AccessDeniedError: If the class has grades and none belong to ``tenant_id``
    """
    grades = await store.list_grades(class_id, include_deleted=True)
    if grades and not any(g.tenant_id == tenant_id for g in grades):
        logger.warning(f"Tenant denied access to class {class_id}", extra={"tenant_id": tenant_id})
        raise AccessDeniedError(f"Access denied to class '{class_id}'")


class GradeService:
    """Entry point for the grading workflow.

    The grade record is the source of truth and is written first; aggregate
    updates follow, and indexing is scheduled in the background once the
    aggregates are committed. If the aggregate update fails after the record
    is written, ``AnalyticsAggregator.recalculate`` rebuilds both aggregates
    from the records and brings them back in step.
    """

    def __init__(self, store: DocumentStore, aggregator: AnalyticsAggregator, indexer: SemanticIndexer):
        self.store = store
        self.aggregator = aggregator
        self.indexer = indexer

    async def save_grade(self, grade: GradeRecord) -> Tuple[ClassAnalytics, StudentAnalytics]:
        """Record a grade and fold it into the class and student aggregates.

        Raises:
            ConfigurationError: If tenant, class or student id is missing
            AccessDeniedError: If the class belongs to another tenant
        """
        if not grade.tenant_id or not grade.class_id or not grade.student_id:
            raise ConfigurationError("tenant_id, class_id and student_id are required to save a grade")
        await ensure_class_access(self.store, grade.class_id, grade.tenant_id)

        await self.store.put_grade(grade)
        try:
            class_analytics, student_analytics = await self.aggregator.insert_grade(
                class_id=grade.class_id,
                student_id=grade.student_id,
                student_name=grade.student_name,
                score=grade.overall_score,
                total_points=grade.total_points,
                struggling_topics=grade.struggling_topics,
                assignment_id=grade.assignment_id,
                graded_at=grade.graded_at,
            )
        except Exception:
            logger.error(
                f"Grade {grade.id} stored but aggregates not updated; recalculate class {grade.class_id} to repair",
                extra={"tenant_id": grade.tenant_id, "class_id": grade.class_id, "student_id": grade.student_id},
                exc_info=True,
            )
            raise
        logger.info(
            f"Saved grade {grade.id}",
            extra={"tenant_id": grade.tenant_id, "class_id": grade.class_id, "student_id": grade.student_id}
        )

        self.indexer.schedule(self.indexer.index_grade(grade))
        self.indexer.schedule(self.indexer.index_class(grade.tenant_id, class_analytics, grade.class_name))
        return class_analytics, student_analytics

    async def delete_grade(
        self, grade_id: str, tenant_id: Optional[str] = None
    ) -> Tuple[GradeRecord, ClassAnalytics, StudentAnalytics]:
        """Soft-delete a grade, rebuild its aggregates and refresh the class summary.

        When ``tenant_id`` is given, grades of other tenants are reported as missing.

        Raises:
            NotFoundError: If the grade does not exist
        """
        if tenant_id is not None:
            existing = await self.store.get_grade(grade_id)
            if existing is None or existing.tenant_id != tenant_id:
                raise NotFoundError(f"Grade '{grade_id}' not found")

        grade, class_analytics, student_analytics = await self.aggregator.delete_grade(grade_id)
        self.indexer.schedule(self.indexer.index_class(grade.tenant_id, class_analytics, grade.class_name))
        return grade, class_analytics, student_analytics
