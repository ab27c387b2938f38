"""Unit tests for the grading and lesson plan services."""
import json
from unittest.mock import AsyncMock

import pytest

from gradewise.core.errors import (
    AccessDeniedError,
    ConfigurationError,
    DataInconsistencyError,
    NotFoundError,
    TransactionConflictError,
)
from gradewise.domain.conversation import ToolCall
from gradewise.domain.documents import DocumentType
from gradewise.services.analytics import AnalyticsAggregator
from gradewise.services.grading import GradeService
from gradewise.services.indexer import SemanticIndexer
from gradewise.services.lesson_plans import LessonPlanService, build_prompt, extract_json

from conftest import FakeGenerationService

pytestmark = pytest.mark.asyncio

PLAN = {
    "title": "Fraction Foundations",
    "duration": "45 minutes",
    "overview": "Rebuild intuition for fractions.",
    "objectives": ["Compare fractions"],
    "activities": [{"name": "Fraction strips", "duration": "15 minutes", "description": "Hands-on."}],
    "differentiation": {"struggling": "Visual models.", "advanced": "Mixed numbers."},
    "assessment": "Exit ticket.",
}


@pytest.fixture
def indexer(document_store, embeddings):
    return SemanticIndexer(document_store, embeddings)


@pytest.fixture
def aggregator(document_store):
    return AnalyticsAggregator(document_store)


@pytest.fixture
def grade_service(document_store, aggregator, indexer):
    return GradeService(document_store, aggregator, indexer)


def plan_service(document_store, aggregator, indexer, *answers):
    generation = FakeGenerationService(completions=list(answers))
    return LessonPlanService(document_store, generation, aggregator, indexer), generation


class TestGradeService:
    """Test saving and deleting grades."""

    async def test_save_updates_aggregates_and_index(self, grade_service, indexer, document_store, sample_grade):
        """Test a saved grade reaches the store, both aggregates and the index."""
        class_analytics, student_analytics = await grade_service.save_grade(sample_grade)
        await indexer.drain()

        assert await document_store.get_grade(sample_grade.id) == sample_grade
        assert class_analytics.average_grade == pytest.approx(80.0)
        assert class_analytics.common_struggling_topics == {"fractions": 1, "decimals": 1}
        assert student_analytics.total_assignments == 1
        types = sorted(d.type.value for d in await document_store.query_documents_by_tenant("teacher_42"))
        assert types == ["class", "student"]

    async def test_class_document_stays_single(self, grade_service, indexer, document_store, make_grade):
        """Test repeated saves keep one class document with the latest figures."""
        await grade_service.save_grade(make_grade(60))
        await indexer.drain()
        await grade_service.save_grade(make_grade(100, student_id="s2", student_name="Ben"))
        await indexer.drain()

        docs = await document_store.query_documents_by_tenant("teacher_42")
        class_docs = [d for d in docs if d.type == DocumentType.CLASS]
        assert len(class_docs) == 1
        assert "80.0%" in class_docs[0].content

    async def test_save_requires_ids(self, grade_service, make_grade):
        """Test a grade without a student id is rejected."""
        with pytest.raises(ConfigurationError):
            await grade_service.save_grade(make_grade(5, student_id=""))

    async def test_other_tenant_cannot_grade_class(self, grade_service, document_store, make_grade):
        """Test a class graded by one tenant rejects grades from another."""
        await grade_service.save_grade(make_grade(70))

        with pytest.raises(AccessDeniedError):
            await grade_service.save_grade(make_grade(90, tenant_id="teacher_7"))

        assert len(await document_store.list_grades("c1")) == 1

    async def test_failed_aggregate_update_repaired_by_recalculate(
        self, grade_service, aggregator, document_store, make_grade
    ):
        """Test a grade stored before a failed aggregate update is picked up by recalculate."""
        grade = make_grade(80, struggling_topics=["Fractions"])
        aggregator.insert_grade = AsyncMock(side_effect=TransactionConflictError("class:c1", 3))

        with pytest.raises(TransactionConflictError):
            await grade_service.save_grade(grade)

        assert await document_store.get_grade(grade.id) == grade
        assert await aggregator.get_class_analytics("c1") is None

        class_analytics = await aggregator.recalculate("c1")
        student_analytics = await aggregator.recalculate("c1", "s1")

        assert class_analytics.total_assignments == 1
        assert class_analytics.average_grade == pytest.approx(80.0)
        assert class_analytics.common_struggling_topics == {"fractions": 1}
        assert student_analytics.total_assignments == 1
        assert student_analytics.assignment_history[0].assignment_id == grade.assignment_id

    async def test_delete_rebuilds(self, grade_service, indexer, make_grade):
        """Test deleting a grade removes it from the averages."""
        first, second = make_grade(50), make_grade(90)
        await grade_service.save_grade(first)
        await grade_service.save_grade(second)

        grade, class_analytics, student_analytics = await grade_service.delete_grade(first.id, tenant_id="teacher_42")
        await indexer.drain()

        assert grade.deleted
        assert class_analytics.average_grade == pytest.approx(90.0)
        assert student_analytics.total_assignments == 1

    async def test_delete_other_tenant_is_not_found(self, grade_service, sample_grade):
        """Test a tenant cannot delete another tenant's grade."""
        await grade_service.save_grade(sample_grade)

        with pytest.raises(NotFoundError):
            await grade_service.delete_grade(sample_grade.id, tenant_id="teacher_7")

    async def test_delete_unknown(self, grade_service):
        """Test deleting a missing grade."""
        with pytest.raises(NotFoundError):
            await grade_service.delete_grade("nope", tenant_id="teacher_42")


class TestExtractJson:
    """Test JSON extraction from model output."""

    def test_code_block(self):
        assert extract_json('Here you go:\n```json\n{"a": 1}\n```\nEnjoy!') == '{"a": 1}'

    def test_bare_object(self):
        assert extract_json('Sure! {"a": {"b": 2}} hope it helps') == '{"a": {"b": 2}}'

    def test_plain_text(self):
        assert extract_json("  no json here ") == "no json here"


class TestBuildPrompt:
    """Test lesson plan prompts."""

    def test_without_analytics(self):
        prompt = build_prompt("Algebra I", None, [])

        assert 'class "Algebra I"' in prompt
        assert "No grades have been recorded" in prompt
        assert "struggle with most" in prompt

    def test_focus_topics(self):
        assert "Focus on these topics: ratios, rates." in build_prompt("Algebra I", None, ["ratios", "rates"])


class TestLessonPlanService:
    """Test lesson plan generation."""

    async def test_generate_from_code_block(self, document_store, aggregator, indexer, grade_service, sample_grade):
        """Test a fenced JSON answer becomes a saved and indexed plan."""
        await grade_service.save_grade(sample_grade)
        service, generation = plan_service(
            document_store, aggregator, indexer, f"```json\n{json.dumps(PLAN)}\n```"
        )

        plan = await service.generate("teacher_42", "c1", "Algebra I", ["fractions", " "])
        await indexer.drain()

        assert plan.title == "Fraction Foundations"
        assert plan.tenant_id == "teacher_42"
        assert plan.focus_topics == ["fractions"]
        assert await service.get("teacher_42", plan.id) == plan
        assert "Class data:" in generation.complete_calls[0]["prompt"]
        docs = await document_store.query_documents_by_tenant("teacher_42")
        assert any(d.type == DocumentType.LESSON_PLAN and d.lesson_plan_id == plan.id for d in docs)

    async def test_model_cannot_override_ownership(self, document_store, aggregator, indexer):
        """Test ids in the model's answer are replaced by the caller's."""
        answer = json.dumps({**PLAN, "id": "evil", "tenant_id": "teacher_7", "class_id": "cX"})
        service, _ = plan_service(document_store, aggregator, indexer, answer)

        plan = await service.generate("teacher_42", "c1", "Algebra I")

        assert plan.id != "evil"
        assert (plan.tenant_id, plan.class_id) == ("teacher_42", "c1")

    async def test_unparseable_answer(self, document_store, aggregator, indexer):
        """Test a non-JSON answer raises DataInconsistencyError and saves nothing."""
        service, _ = plan_service(document_store, aggregator, indexer, "I cannot do that.")

        with pytest.raises(DataInconsistencyError):
            await service.generate("teacher_42", "c1", "Algebra I")

    async def test_answer_missing_title(self, document_store, aggregator, indexer):
        """Test a JSON answer without required fields is rejected."""
        service, _ = plan_service(document_store, aggregator, indexer, '{"overview": "x"}')

        with pytest.raises(DataInconsistencyError):
            await service.generate("teacher_42", "c1", "Algebra I")

    async def test_missing_class(self, document_store, aggregator, indexer):
        service, _ = plan_service(document_store, aggregator, indexer)

        with pytest.raises(ConfigurationError):
            await service.generate("teacher_42", "", "Algebra I")

    async def test_get_other_tenant(self, document_store, aggregator, indexer):
        """Test plans are only visible to their tenant."""
        service, _ = plan_service(document_store, aggregator, indexer, json.dumps(PLAN))
        plan = await service.generate("teacher_42", "c1", "Algebra I")

        with pytest.raises(NotFoundError):
            await service.get("teacher_7", plan.id)

    async def test_handle_tool_call(self, document_store, aggregator, indexer):
        """Test the assistant tool arguments map onto generate."""
        service, generation = plan_service(document_store, aggregator, indexer, json.dumps(PLAN))
        call = ToolCall(
            name="generate_lesson_plan",
            args={"class_id": "c1", "class_name": "Algebra I", "focus_topics": "ratios"},
        )

        plan = await service.handle_tool_call("teacher_42", call)

        assert plan.class_name == "Algebra I"
        assert plan.focus_topics == ["ratios"]
        assert "Focus on these topics: ratios." in generation.complete_calls[0]["prompt"]

    async def test_tool_call_for_other_tenants_class(self, document_store, aggregator, indexer, make_grade):
        """Test the tool path checks class ownership before generating."""
        await document_store.put_grade(make_grade(70, tenant_id="teacher_7"))
        service, generation = plan_service(document_store, aggregator, indexer, json.dumps(PLAN))
        call = ToolCall(name="generate_lesson_plan", args={"class_id": "c1", "class_name": "Algebra I"})

        with pytest.raises(AccessDeniedError):
            await service.handle_tool_call("teacher_42", call)

        assert generation.complete_calls == []
