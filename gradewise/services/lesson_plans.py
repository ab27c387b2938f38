"""Lesson plan generation grounded in a class's analytics."""
import json
import re
from typing import List, Optional, Sequence

from pydantic import ValidationError

from gradewise.core.errors import ConfigurationError, DataInconsistencyError, NotFoundError
from gradewise.core.logging import get_logger, LogTimer
from gradewise.domain.conversation import ToolCall
from gradewise.domain.documents import LessonPlan
from gradewise.domain.grades import ClassAnalytics
from gradewise.infrastructure.base import DocumentStore, GenerationService
from gradewise.services.analytics import AnalyticsAggregator
from gradewise.services.grading import ensure_class_access
from gradewise.services.indexer import SemanticIndexer, class_summary

logger = get_logger(__name__)

LESSON_PLAN_INSTRUCTION = """You design practical lesson plans for classroom teachers.
Respond with a single JSON object and nothing else, using exactly these keys:
{
  "title": string,
  "duration": string,
  "overview": string,
  "objectives": [string],
  "activities": [{"name": string, "duration": string, "description": string}],
  "differentiation": {"struggling": string, "advanced": string},
  "assessment": string
}"""


def extract_json(content: str) -> str:
    """Pull a JSON object out of a model response, handling markdown code blocks."""
    matches = re.findall(r"```(?:json)?\s*([\s\S]*?)```", content)
    if matches:
        return matches[0].strip()

    matches = re.findall(r"\{[\s\S]*\}", content)
    if matches:
        return max(matches, key=len)

    return content.strip()


def build_prompt(class_name: str, analytics: Optional[ClassAnalytics], focus_topics: Sequence[str]) -> str:
    lines = [f'Create a lesson plan for the class "{class_name}".']
    if analytics is not None and analytics.total_assignments > 0:
        lines.append(f"Class data: {class_summary(analytics, class_name)}")
    else:
        lines.append("No grades have been recorded for this class yet.")
    if focus_topics:
        lines.append(f"Focus on these topics: {', '.join(focus_topics)}.")
    else:
        lines.append("Focus on the topics students struggle with most.")
    return "\n".join(lines)


class LessonPlanService:
    """Generates, stores and indexes lesson plans."""

    def __init__(
        self,
        store: DocumentStore,
        generation: GenerationService,
        aggregator: AnalyticsAggregator,
        indexer: SemanticIndexer,
    ):
        self.store = store
        self.generation = generation
        self.aggregator = aggregator
        self.indexer = indexer

    async def generate(
        self,
        tenant_id: str,
        class_id: str,
        class_name: str,
        focus_topics: Optional[Sequence[str]] = None,
    ) -> LessonPlan:
        """Generate a plan from the class aggregate, save it and index it.

        Raises:
            ConfigurationError: If tenant, class id or class name is missing
            AccessDeniedError: If the class belongs to another tenant
            DataInconsistencyError: If the model's answer is not a usable plan
        """
        if not tenant_id or not class_id or not class_name:
            raise ConfigurationError("tenant_id, class_id and class_name are required for a lesson plan")

        await ensure_class_access(self.store, class_id, tenant_id)

        focus: List[str] = [t for t in (focus_topics or []) if t and t.strip()]
        analytics = await self.aggregator.get_class_analytics(class_id)
        prompt = build_prompt(class_name, analytics, focus)

        with LogTimer(logger, "generate_lesson_plan", tenant_id=tenant_id, class_id=class_id):
            content = await self.generation.complete(
                prompt, system_instruction=LESSON_PLAN_INSTRUCTION, max_output_tokens=2048
            )
            plan = self._parse(content, tenant_id, class_id, class_name, focus)

        return await self.save(plan)

    def _parse(
        self, content: str, tenant_id: str, class_id: str, class_name: str, focus: List[str]
    ) -> LessonPlan:
        try:
            data = json.loads(extract_json(content))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            data.update(tenant_id=tenant_id, class_id=class_id, class_name=class_name, focus_topics=focus)
            data.pop("id", None)
            return LessonPlan.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Lesson plan response was not valid JSON: {e}", extra={"class_id": class_id})
            raise DataInconsistencyError(f"Lesson plan response could not be parsed: {e}") from e

    async def save(self, plan: LessonPlan) -> LessonPlan:
        """Persist a plan and schedule its summary for indexing."""
        await self.store.put_lesson_plan(plan)
        logger.info(f"Saved lesson plan {plan.id}", extra={"tenant_id": plan.tenant_id, "class_id": plan.class_id})
        self.indexer.schedule(self.indexer.index_lesson_plan(plan))
        return plan

    async def get(self, tenant_id: str, plan_id: str) -> LessonPlan:
        plan = await self.store.get_lesson_plan(tenant_id, plan_id)
        if plan is None:
            raise NotFoundError(f"Lesson plan '{plan_id}' not found")
        return plan

    async def handle_tool_call(self, tenant_id: str, call: ToolCall) -> LessonPlan:
        """Handler for the assistant's ``generate_lesson_plan`` tool."""
        args = call.args or {}
        topics = args.get("focus_topics") or []
        if isinstance(topics, str):
            topics = [topics]
        return await self.generate(
            tenant_id,
            str(args.get("class_id") or ""),
            str(args.get("class_name") or ""),
            [str(t) for t in topics],
        )
