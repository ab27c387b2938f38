"""Unit tests for semantic indexing."""
import asyncio

import pytest

from gradewise.core.errors import TransientIntegrationError
from gradewise.domain.documents import Activity, Differentiation, DocumentType, LessonPlan
from gradewise.domain.grades import ClassAnalytics, StudentPerformance
from gradewise.services.indexer import (
    SemanticIndexer,
    class_document_id,
    class_summary,
    lesson_plan_summary,
    student_summary,
)

from conftest import FakeEmbeddingService


@pytest.fixture
def class_analytics():
    return ClassAnalytics(
        class_id="c1",
        average_grade=74.25,
        total_assignments=12,
        common_struggling_topics={"fractions": 5, "decimals": 2, "ratios": 7, "area": 1, "volume": 3, "angles": 4},
        student_performances={
            "s1": StudentPerformance(name="Aisha", average_score=91.0, total_assignments=4),
            "s2": StudentPerformance(name="Ben", average_score=62.5, total_assignments=4),
            "s3": StudentPerformance(name="Chen", average_score=69.9, total_assignments=4),
        },
    )


@pytest.fixture
def lesson_plan():
    return LessonPlan(
        tenant_id="teacher_42",
        class_id="c1",
        class_name="Algebra I",
        title="Fraction Foundations",
        duration="45 minutes",
        overview="Rebuild intuition for fractions.",
        objectives=["Compare fractions", "Add unlike fractions"],
        activities=[Activity(name="Fraction strips"), Activity(name="Exit ticket")],
        differentiation=Differentiation(struggling="Use visual models.", advanced="Introduce mixed numbers."),
        assessment="Five-question quiz.",
    )


class TestSummaries:
    """Test summary text."""

    def test_student_summary(self, sample_grade):
        """Test score, topics and missed questions are described."""
        summary = student_summary(sample_grade)

        assert summary.startswith('Student Aisha in assignment "Worksheet 1" scored 8/10 (80.0%).')
        assert "Strong topics: Equations." in summary
        assert "Struggling topics: Fractions, Decimals." in summary
        assert "Questions missed: Fractions (1/3); general (0/1)." in summary

    def test_student_summary_caps_missed_questions(self, make_grade):
        """Test at most three missed questions are listed."""
        from gradewise.domain.grades import GradedQuestion
        grade = make_grade(0, 5, questions=[
            GradedQuestion(topic=f"t{i}", points_awarded=0, points_possible=1) for i in range(5)
        ])

        summary = student_summary(grade)

        assert "t2 (0/1)" in summary
        assert "t3" not in summary

    def test_student_summary_zero_total(self, make_grade):
        """Test zero total points does not divide by zero."""
        assert "(0.0%)" in student_summary(make_grade(3, 0))

    def test_class_summary(self, class_analytics):
        """Test average, top five topics and students needing support."""
        summary = class_summary(class_analytics, "Algebra I", support_threshold=70)

        assert summary.startswith('Class "Algebra I" has an average grade of 74.2% across 12 graded assignments.')
        assert (
            "Common struggling topics: ratios (7 occurrences), fractions (5 occurrences), angles (4 occurrences), "
            "volume (3 occurrences), decimals (2 occurrences)."
        ) in summary
        assert "area" not in summary
        assert "Students needing support: Ben (62.5%), Chen (69.9%)." in summary
        assert "Aisha" not in summary

    def test_class_summary_caps_support_list(self):
        """Test at most five students are named."""
        analytics = ClassAnalytics(
            class_id="c1",
            student_performances={
                f"s{i}": StudentPerformance(name=f"Student{i}", average_score=50) for i in range(8)
            },
        )

        summary = class_summary(analytics, "Algebra I", support_threshold=70)

        assert "Student4" in summary
        assert "Student5" not in summary

    def test_lesson_plan_summary(self, lesson_plan):
        """Test every lesson plan section appears."""
        summary = lesson_plan_summary(lesson_plan)

        assert summary.startswith('Lesson plan "Fraction Foundations" for class "Algebra I". Duration: 45 minutes.')
        assert "Learning objectives: Compare fractions; Add unlike fractions." in summary
        assert "Activities include: Fraction strips, Exit ticket." in summary
        assert "For struggling students: Use visual models." in summary
        assert "For advanced students: Introduce mixed numbers." in summary
        assert summary.endswith("Assessment: Five-question quiz.")

    def test_class_document_id_stable(self):
        """Test the class document id depends only on tenant and class."""
        assert class_document_id("t1", "c1") == class_document_id("t1", "c1")
        assert class_document_id("t1", "c1") != class_document_id("t2", "c1")


@pytest.mark.asyncio
class TestSemanticIndexer:
    """Test indexing into the store."""

    async def test_index_grade(self, document_store, embeddings, sample_grade):
        """Test a student document is embedded and stored."""
        doc = await SemanticIndexer(document_store, embeddings).index_grade(sample_grade)

        stored = await document_store.query_documents_by_tenant("teacher_42")
        assert [d.id for d in stored] == [doc.id]
        assert stored[0].type == DocumentType.STUDENT
        assert stored[0].embedding == [1.0, 0.0, 0.0]
        assert stored[0].metadata["class_name"] == "Algebra I"

    async def test_class_document_upserted(self, document_store, embeddings, class_analytics):
        """Test re-indexing a class replaces its single document."""
        indexer = SemanticIndexer(document_store, embeddings)
        await indexer.index_class("teacher_42", class_analytics, "Algebra I")
        updated = class_analytics.model_copy(update={"average_grade": 80.0})
        await indexer.index_class("teacher_42", updated, "Algebra I")

        stored = await document_store.query_documents_by_tenant("teacher_42")
        assert len(stored) == 1
        assert "80.0%" in stored[0].content

    async def test_index_lesson_plan(self, document_store, embeddings, lesson_plan):
        """Test a lesson plan document references its plan."""
        doc = await SemanticIndexer(document_store, embeddings).index_lesson_plan(lesson_plan)

        assert doc.type == DocumentType.LESSON_PLAN
        assert doc.lesson_plan_id == lesson_plan.id

    async def test_embedding_failure_is_not_raised(self, document_store, sample_grade):
        """Test an embedding outage is logged and swallowed."""
        failing = FakeEmbeddingService(error=TransientIntegrationError("embedding", "quota"))

        assert await SemanticIndexer(document_store, failing).index_grade(sample_grade) is None
        assert await document_store.query_documents_by_tenant("teacher_42") == []

    async def test_schedule_runs_in_background(self, document_store, embeddings, sample_grade):
        """Test scheduled indexing completes and drain waits for it."""
        indexer = SemanticIndexer(document_store, embeddings)
        indexer.schedule(indexer.index_grade(sample_grade))

        await indexer.drain()

        assert len(await document_store.query_documents_by_tenant("teacher_42")) == 1

    async def test_schedule_logs_unexpected_failure(self, document_store, embeddings, caplog):
        """Test a crashing background task is logged by the done-callback."""
        indexer = SemanticIndexer(document_store, embeddings)

        async def boom():
            raise RuntimeError("unexpected")

        indexer.schedule(boom())
        await indexer.drain()
        await asyncio.sleep(0)

        assert "Background indexing task failed" in caplog.text
