"""Domain models for grade records and the analytics aggregates built from them."""
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Timestamps without a timezone are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GradedQuestion(BaseModel):
    """One graded question of a worksheet, as produced by the grading workflow."""
    question_number: Optional[int] = None
    topic: Optional[str] = None
    points_awarded: float = 0
    points_possible: float = 0
    is_correct: Optional[bool] = None


class GradeRecord(BaseModel):
    """A saved grade. Owned by the grading workflow; read-only to analytics.

    A grade is active while ``deleted`` is false.
    """
    id: str
    tenant_id: str
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
    deleted: bool = False

    @field_validator("graded_at")
    @classmethod
    def graded_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "grade_001",
                "tenant_id": "teacher_42",
                "class_id": "course_7",
                "class_name": "Algebra I",
                "student_id": "student_3",
                "student_name": "Aisha",
                "assignment_id": "hw_5",
                "assignment_name": "Fractions Worksheet",
                "overall_score": 8,
                "total_points": 10,
                "struggling_topics": ["Fractions"],
            }
        }


class StudentPerformance(BaseModel):
    """Per-student roll-up stored inside a class aggregate."""
    name: str
    average_score: float = 0.0
    total_assignments: int = 0


class ClassAnalytics(BaseModel):
    """Aggregate statistics for one class.

    ``average_grade`` is the mean percentage over every active grade of the
    class; each entry of ``student_performances`` is the mean over that
    student's active grades.
    """
    class_id: str
    average_grade: float = 0.0
    total_assignments: int = 0
    common_struggling_topics: Dict[str, int] = Field(default_factory=dict)
    student_performances: Dict[str, StudentPerformance] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)


class TopicOccurrence(BaseModel):
    """How often a student struggled with a topic, and on which assignments."""
    count: int = 0
    assignment_ids: List[str] = Field(default_factory=list)


class AssignmentHistoryEntry(BaseModel):
    """One graded assignment in a student's chronological history.

    ``valid`` is false when the grade had zero total points.
    """
    assignment_id: Optional[str] = None
    score: float
    total_points: float
    percentage: float
    graded_at: datetime
    struggling_topics: List[str] = Field(default_factory=list)
    valid: bool = True

    @field_validator("graded_at")
    @classmethod
    def graded_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class StudentAnalytics(BaseModel):
    """Aggregate statistics for one student within one class."""
    class_id: str
    student_id: str
    student_name: str
    average_score: float = 0.0
    total_assignments: int = 0
    struggling_topics: Dict[str, TopicOccurrence] = Field(default_factory=dict)
    assignment_history: List[AssignmentHistoryEntry] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)
