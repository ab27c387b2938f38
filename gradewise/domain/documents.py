"""Domain models for semantic documents and lesson plans."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid
from pydantic import BaseModel, Field


class DocumentType(str, Enum):
    STUDENT = "student"
    CLASS = "class"
    LESSON_PLAN = "lessonPlan"


class SemanticDocument(BaseModel):
    """A text summary plus its embedding, scoped to one tenant.

    Class documents are singletons per (tenant, class) and replaced in place;
    student and lesson-plan documents are appended once per event.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: DocumentType
    tenant_id: str
    class_id: Optional[str] = None
    student_id: Optional[str] = None
    lesson_plan_id: Optional[str] = None
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[List[float]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ScoredDocument(BaseModel):
    """A semantic document paired with its similarity to a query."""
    document: SemanticDocument
    score: float


class Activity(BaseModel):
    name: str
    duration: Optional[str] = None
    description: Optional[str] = None


class Differentiation(BaseModel):
    struggling: Optional[str] = None
    advanced: Optional[str] = None


class LessonPlan(BaseModel):
    """A generated lesson plan for one class."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
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
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
