"""FastAPI routes for the Gradewise teaching assistant.

Every route is scoped to the authenticated teacher (the tenant). The chat
route streams newline-delimited JSON events:

    {"type": "retrieval_start"}
    {"type": "retrieval_complete", "documents": 3}
    {"type": "chunk", "text": "..."}
    {"type": "tool_call", "name": "generate_lesson_plan", "args": {...}, "result": {...}}
    {"type": "done", "state": "completed", ...}
"""
import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from gradewise.api.dependencies import ServiceContainer, get_services
from gradewise.core.auth import Teacher, get_current_teacher
from gradewise.core.logging import get_logger, LogTimer
from gradewise.domain.conversation import ClassInfo, Conversation, TurnOutcome, TurnState
from gradewise.domain.documents import Activity, Differentiation, LessonPlan
from gradewise.domain.grades import ClassAnalytics, GradedQuestion, GradeRecord, StudentAnalytics, as_utc, utcnow
from gradewise.infrastructure.base import CancellationToken
from gradewise.services.assistant import RETRY_MESSAGE
from gradewise.services.grading import ensure_class_access

logger = get_logger(__name__)
router = APIRouter()


# -----------------
# REQUEST MODELS
# -----------------

class GradeRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    class_id: str
    class_name: Optional[str] = None
    student_id: str
    student_name: str
    assignment_id: Optional[str] = None
    assignment_name: Optional[str] = None
    overall_score: float
    total_points: float
    strong_topics: List[str] = Field(default_factory=list)
    struggling_topics: List[str] = Field(default_factory=list)
    questions: List[GradedQuestion] = Field(default_factory=list)
    graded_at: datetime = Field(default_factory=utcnow)

    @field_validator("graded_at")
    @classmethod
    def graded_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class GradeSavedResponse(BaseModel):
    grade_id: str
    class_analytics: ClassAnalytics
    student_analytics: StudentAnalytics


class LessonPlanRequest(BaseModel):
    class_id: str
    class_name: str
    title: str
    duration: Optional[str] = None
    overview: Optional[str] = None
    objectives: List[str] = Field(default_factory=list)
    activities: List[Activity] = Field(default_factory=list)
    differentiation: Optional[Differentiation] = None
    assessment: Optional[str] = None
    focus_topics: List[str] = Field(default_factory=list)


class GenerateLessonPlanRequest(BaseModel):
    class_id: str
    class_name: str
    focus_topics: List[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)


class MessageRequest(BaseModel):
    content: str = Field(min_length=1)
    classes: List[ClassInfo] = Field(default_factory=list)


# -----------------
# HELPERS
# -----------------

async def verify_class_access(services: ServiceContainer, class_id: str, teacher: Teacher) -> None:
    await ensure_class_access(services.store, class_id, teacher.id)


def _ndjson(event: Dict[str, Any]) -> str:
    return json.dumps(event, default=str) + "\n"


# -----------------
# GRADES & ANALYTICS
# -----------------

@router.post("/grades", response_model=GradeSavedResponse, status_code=status.HTTP_201_CREATED)
async def save_grade(
    req: GradeRequest,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    """Record a grade, update class and student analytics and index it."""
    grade = GradeRecord(tenant_id=teacher.id, **req.model_dump())
    class_analytics, student_analytics = await services.grades.save_grade(grade)
    return GradeSavedResponse(
        grade_id=grade.id, class_analytics=class_analytics, student_analytics=student_analytics
    )


@router.delete("/grades/{grade_id}")
async def delete_grade(
    grade_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    grade, class_analytics, student_analytics = await services.grades.delete_grade(grade_id, tenant_id=teacher.id)
    return {
        "grade_id": grade.id,
        "deleted": True,
        "class_analytics": class_analytics,
        "student_analytics": student_analytics,
    }


@router.post("/classes/{class_id}/recalculate")
async def recalculate_class(
    class_id: str,
    student_id: Optional[str] = None,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    """Rebuild a class (or one student's) analytics from the active grades."""
    await verify_class_access(services, class_id, teacher)
    return await services.aggregator.recalculate(class_id, student_id)


@router.get("/classes/{class_id}/analytics", response_model=ClassAnalytics)
async def class_analytics(
    class_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    await verify_class_access(services, class_id, teacher)
    analytics = await services.aggregator.get_class_analytics(class_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail=f"No analytics for class '{class_id}'")
    return analytics


@router.get("/classes/{class_id}/students/{student_id}/analytics", response_model=StudentAnalytics)
async def student_analytics(
    class_id: str,
    student_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    await verify_class_access(services, class_id, teacher)
    analytics = await services.aggregator.get_student_analytics(class_id, student_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail=f"No analytics for student '{student_id}' in class '{class_id}'")
    return analytics


# -----------------
# LESSON PLANS
# -----------------

@router.post("/lesson-plans", response_model=LessonPlan, status_code=status.HTTP_201_CREATED)
async def save_lesson_plan(
    req: LessonPlanRequest,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    """Store a lesson plan written elsewhere so the assistant can find it."""
    return await services.lesson_plans.save(LessonPlan(tenant_id=teacher.id, **req.model_dump()))


@router.post("/lesson-plans/generate", response_model=LessonPlan, status_code=status.HTTP_201_CREATED)
async def generate_lesson_plan(
    req: GenerateLessonPlanRequest,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    return await services.lesson_plans.generate(teacher.id, req.class_id, req.class_name, req.focus_topics)


@router.get("/lesson-plans/{plan_id}", response_model=LessonPlan)
async def get_lesson_plan(
    plan_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    return await services.lesson_plans.get(teacher.id, plan_id)


# -----------------
# SEARCH
# -----------------

@router.post("/search")
async def search(
    req: SearchRequest,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    """Return the prompt context and ranked documents the assistant would see."""
    result = await services.retrieval.retrieve(req.query, teacher.id)
    return {
        "context": result.context_text,
        "documents": [
            {
                "id": scored.document.id,
                "type": scored.document.type,
                "class_id": scored.document.class_id,
                "content": scored.document.content,
                "metadata": scored.document.metadata,
                "score": scored.score,
            }
            for scored in result.ranked_documents
        ],
    }


# -----------------
# CONVERSATIONS
# -----------------

@router.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    return await services.conversations.create(teacher.id)


@router.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    return await services.conversations.list(teacher.id)


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    return await services.conversations.get(teacher.id, conversation_id)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    await services.conversations.delete(teacher.id, conversation_id)


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    req: MessageRequest,
    teacher: Teacher = Depends(get_current_teacher),
    services: ServiceContainer = Depends(get_services),
):
    """Send a message and stream the assistant's answer as NDJSON.

    Closing the connection cancels the turn; nothing is stored for an
    aborted or failed answer.
    """
    conversation = await services.conversations.add_user_message(teacher.id, conversation_id, req.content)
    events: asyncio.Queue = asyncio.Queue()
    token = CancellationToken()
    log = get_logger(__name__, {"tenant_id": teacher.id, "conversation_id": conversation_id})

    async def run_turn() -> None:
        outcome = TurnOutcome(state=TurnState.FAILED)
        title = conversation.title
        try:
            with LogTimer(log, "chat_turn"):
                turn = await services.orchestrator.send_message(
                    conversation.messages,
                    teacher.id,
                    classes=req.classes,
                    on_chunk=lambda text: events.put_nowait({"type": "chunk", "text": text}),
                    on_retrieval_start=lambda: events.put_nowait({"type": "retrieval_start"}),
                    on_retrieval_complete=lambda docs: events.put_nowait(
                        {"type": "retrieval_complete", "documents": len(docs)}
                    ),
                    cancel_token=token,
                )
            outcome = TurnOutcome(
                state=turn.state, response=turn.response, tool_calls=turn.tool_calls, error=turn.error
            )
            if turn.state == TurnState.COMPLETED:
                for call, result in zip(turn.tool_calls, turn.tool_results):
                    events.put_nowait({
                        "type": "tool_call",
                        "name": call.name,
                        "args": call.args,
                        "result": result.model_dump(mode="json") if isinstance(result, BaseModel) else result,
                    })
                updated = await services.conversations.add_assistant_message(
                    teacher.id, conversation_id, turn.response, turn.tool_calls
                )
                title = updated.title
        except Exception as e:
            log.error(f"Chat turn failed: {e}", exc_info=True)
            outcome = TurnOutcome(state=TurnState.FAILED, error=RETRY_MESSAGE)
        finally:
            events.put_nowait({"type": "done", "title": title, **outcome.model_dump(mode="json")})

    async def stream():
        task = asyncio.ensure_future(run_turn())
        try:
            while True:
                event = await events.get()
                yield _ndjson(event)
                if event["type"] == "done":
                    break
        finally:
            # Client went away (or the turn ended); abort generation if still running
            token.cancel()
            if not task.done():
                await asyncio.wait({task})

    return StreamingResponse(stream(), media_type="application/x-ndjson")
