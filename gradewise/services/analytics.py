"""Incremental class and student analytics.

New grades are folded into the stored aggregates with a running average.
Deletions never decrement: the aggregate is rebuilt from the active grade
records (pandas groupby over the rescan) and replaced wholesale.
"""
from __future__ import annotations

import asyncio
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from pydantic import ValidationError

from gradewise.core.errors import ConfigurationError
from gradewise.core.logging import get_logger, LogTimer
from gradewise.domain.grades import (
    AssignmentHistoryEntry,
    ClassAnalytics,
    GradeRecord,
    StudentAnalytics,
    StudentPerformance,
    TopicOccurrence,
)
from gradewise.infrastructure.base import DocumentStore
from gradewise.utils.text import normalize_topic

logger = get_logger(__name__)


# ----------------
# HELPER FUNCTIONS
# ----------------

def class_key(class_id: str) -> str:
    return f"class:{class_id}"


def student_key(class_id: str, student_id: str) -> str:
    return f"student:{class_id}:{student_id}"


def safe_float(value: Any, field: str = "value", default: float = 0.0) -> float:
    """Coerce to a finite float, logging and defaulting on anything else."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Non-numeric {field} {value!r}, treating as {default}", extra={"error_type": "data_inconsistency"})
        return default
    if not math.isfinite(result):
        logger.warning(f"Non-finite {field} {value!r}, treating as {default}", extra={"error_type": "data_inconsistency"})
        return default
    return result


def safe_int(value: Any, field: str = "value") -> int:
    return max(0, int(safe_float(value, field)))


def compute_percentage(score: Any, total_points: Any) -> Tuple[float, bool]:
    """Return (percentage, valid). Zero or negative total points yields (0.0, False)."""
    score = safe_float(score, "score")
    total_points = safe_float(total_points, "total_points")
    if total_points <= 0:
        logger.warning(
            f"Grade has total_points={total_points}; recording 0% and marking invalid",
            extra={"error_type": "data_inconsistency"}
        )
        return 0.0, False
    return score / total_points * 100, True


def running_average(old_average: float, old_count: int, value: float) -> float:
    return (old_average * old_count + value) / (old_count + 1)


def unique_topics(topics: Optional[Iterable[str]]) -> List[str]:
    """Normalized, non-empty topics of one grade, first occurrence order."""
    seen: Dict[str, None] = {}
    for topic in topics or []:
        key = normalize_topic(topic)
        if key:
            seen.setdefault(key, None)
    return list(seen)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------
# AGGREGATE LOADING
# ----------------

def load_class_analytics(raw: Optional[Dict[str, Any]], class_id: str) -> Optional[ClassAnalytics]:
    """Parse a stored class aggregate, salvaging what we can from malformed data."""
    if raw is None:
        return None
    try:
        return ClassAnalytics.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            f"Malformed class aggregate for {class_id}, salvaging with defaults: {e.error_count()} errors",
            extra={"class_id": class_id, "error_type": "data_inconsistency"}
        )

    performances = {}
    for sid, perf in (raw.get("student_performances") or {}).items():
        perf = perf if isinstance(perf, dict) else {}
        performances[str(sid)] = StudentPerformance(
            name=str(perf.get("name") or sid),
            average_score=safe_float(perf.get("average_score"), "average_score"),
            total_assignments=safe_int(perf.get("total_assignments"), "total_assignments"),
        )

    topics = raw.get("common_struggling_topics")
    return ClassAnalytics(
        class_id=class_id,
        average_grade=safe_float(raw.get("average_grade"), "average_grade"),
        total_assignments=safe_int(raw.get("total_assignments"), "total_assignments"),
        common_struggling_topics={
            str(k): safe_int(v, "topic count") for k, v in (topics.items() if isinstance(topics, dict) else [])
        },
        student_performances=performances,
    )


def load_student_analytics(
    raw: Optional[Dict[str, Any]], class_id: str, student_id: str, student_name: str
) -> Optional[StudentAnalytics]:
    """Parse a stored student aggregate, salvaging what we can from malformed data."""
    if raw is None:
        return None
    try:
        return StudentAnalytics.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            f"Malformed student aggregate for {class_id}/{student_id}, salvaging with defaults: {e.error_count()} errors",
            extra={"class_id": class_id, "student_id": student_id, "error_type": "data_inconsistency"}
        )

    history = []
    for entry in raw.get("assignment_history") or []:
        try:
            history.append(AssignmentHistoryEntry.model_validate(entry))
        except ValidationError:
            logger.warning("Dropping malformed assignment history entry", extra={"student_id": student_id})

    topics = {}
    raw_topics = raw.get("struggling_topics")
    for topic, occ in (raw_topics.items() if isinstance(raw_topics, dict) else []):
        occ = occ if isinstance(occ, dict) else {}
        topics[str(topic)] = TopicOccurrence(
            count=safe_int(occ.get("count"), "topic count"),
            assignment_ids=[str(a) for a in occ.get("assignment_ids") or []],
        )

    return StudentAnalytics(
        class_id=class_id,
        student_id=student_id,
        student_name=str(raw.get("student_name") or student_name),
        average_score=safe_float(raw.get("average_score"), "average_score"),
        total_assignments=safe_int(raw.get("total_assignments"), "total_assignments"),
        struggling_topics=topics,
        assignment_history=history,
    )


# ----------------
# FOLDS
# ----------------

def fold_into_class(
    analytics: Optional[ClassAnalytics],
    class_id: str,
    student_id: str,
    student_name: str,
    percentage: float,
    topics: Sequence[str],
) -> ClassAnalytics:
    """Apply one grade to a class aggregate (None means no aggregate yet)."""
    if analytics is None or analytics.total_assignments == 0:
        analytics = ClassAnalytics(class_id=class_id)
        analytics.average_grade = percentage
        analytics.total_assignments = 1
    else:
        analytics.average_grade = running_average(analytics.average_grade, analytics.total_assignments, percentage)
        analytics.total_assignments += 1

    for topic in topics:
        analytics.common_struggling_topics[topic] = analytics.common_struggling_topics.get(topic, 0) + 1

    perf = analytics.student_performances.get(student_id)
    if perf is None or perf.total_assignments == 0:
        perf = StudentPerformance(name=student_name, average_score=percentage, total_assignments=1)
    else:
        perf = StudentPerformance(
            name=student_name or perf.name,
            average_score=running_average(perf.average_score, perf.total_assignments, percentage),
            total_assignments=perf.total_assignments + 1,
        )
    analytics.student_performances[student_id] = perf
    analytics.last_updated = _now()
    return analytics


def fold_into_student(
    analytics: Optional[StudentAnalytics],
    class_id: str,
    student_id: str,
    student_name: str,
    entry: AssignmentHistoryEntry,
) -> StudentAnalytics:
    """Apply one grade to a student's per-class aggregate."""
    if analytics is None or analytics.total_assignments == 0:
        analytics = StudentAnalytics(class_id=class_id, student_id=student_id, student_name=student_name)
        analytics.average_score = entry.percentage
        analytics.total_assignments = 1
    else:
        analytics.average_score = running_average(analytics.average_score, analytics.total_assignments, entry.percentage)
        analytics.total_assignments += 1
        analytics.student_name = student_name or analytics.student_name

    for topic in entry.struggling_topics:
        occurrence = analytics.struggling_topics.setdefault(topic, TopicOccurrence())
        occurrence.count += 1
        if entry.assignment_id and entry.assignment_id not in occurrence.assignment_ids:
            occurrence.assignment_ids.append(entry.assignment_id)

    analytics.assignment_history.append(entry)
    analytics.assignment_history.sort(key=lambda h: h.graded_at)
    analytics.last_updated = _now()
    return analytics


# ----------------
# REBUILDS
# ----------------

def _grades_frame(grades: Sequence[GradeRecord]) -> pd.DataFrame:
    rows = []
    for g in grades:
        percentage, _ = compute_percentage(g.overall_score, g.total_points)
        rows.append({
            "student_id": g.student_id,
            "student_name": g.student_name,
            "percentage": percentage,
            "topics": unique_topics(g.struggling_topics),
            "graded_at": g.graded_at,
        })
    return pd.DataFrame(rows).sort_values("graded_at", kind="stable")


def _topic_counts(df: pd.DataFrame) -> Dict[str, int]:
    exploded = df["topics"].explode().dropna()
    return {str(topic): int(count) for topic, count in exploded.value_counts(sort=False).items()}


def rebuild_class_analytics(class_id: str, grades: Sequence[GradeRecord]) -> ClassAnalytics:
    """Recompute a class aggregate from its active grade records."""
    active = [g for g in grades if not g.deleted]
    if not active:
        return ClassAnalytics(class_id=class_id)

    df = _grades_frame(active)
    per_student = (
        df.groupby("student_id", sort=False)
        .agg(
            name=("student_name", "last"),
            average_score=("percentage", "mean"),
            total_assignments=("percentage", "size"),
        )
    )

    return ClassAnalytics(
        class_id=class_id,
        average_grade=float(df["percentage"].mean()),
        total_assignments=int(len(df)),
        common_struggling_topics=_topic_counts(df),
        student_performances={
            str(sid): StudentPerformance(
                name=str(row["name"]),
                average_score=float(row["average_score"]),
                total_assignments=int(row["total_assignments"]),
            )
            for sid, row in per_student.iterrows()
        },
    )


def history_entry(grade: GradeRecord) -> AssignmentHistoryEntry:
    percentage, valid = compute_percentage(grade.overall_score, grade.total_points)
    return AssignmentHistoryEntry(
        assignment_id=grade.assignment_id,
        score=safe_float(grade.overall_score, "score"),
        total_points=safe_float(grade.total_points, "total_points"),
        percentage=percentage,
        graded_at=grade.graded_at,
        struggling_topics=unique_topics(grade.struggling_topics),
        valid=valid,
    )


def rebuild_student_analytics(
    class_id: str, student_id: str, student_name: str, grades: Sequence[GradeRecord]
) -> StudentAnalytics:
    """Recompute one student's per-class aggregate from active grade records."""
    active = sorted(
        (g for g in grades if not g.deleted and g.student_id == student_id),
        key=lambda g: g.graded_at,
    )
    if not active:
        return StudentAnalytics(class_id=class_id, student_id=student_id, student_name=student_name)

    history = [history_entry(g) for g in active]

    topics: Dict[str, TopicOccurrence] = defaultdict(TopicOccurrence)
    for entry in history:
        for topic in entry.struggling_topics:
            occurrence = topics[topic]
            occurrence.count += 1
            if entry.assignment_id and entry.assignment_id not in occurrence.assignment_ids:
                occurrence.assignment_ids.append(entry.assignment_id)

    return StudentAnalytics(
        class_id=class_id,
        student_id=student_id,
        student_name=active[-1].student_name,
        average_score=float(pd.Series([h.percentage for h in history]).mean()),
        total_assignments=len(history),
        struggling_topics=dict(topics),
        assignment_history=history,
    )


# ----------------
# AGGREGATOR
# ----------------

class AnalyticsAggregator:
    """Keeps ClassAnalytics and StudentAnalytics consistent with grade records.

    Every write goes through ``DocumentStore.transact_aggregate``. Within this
    process, inserts and recalculations for the same class also take a
    per-class lock so a rebuild cannot interleave with an increment.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._class_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def insert_grade(
        self,
        class_id: str,
        student_id: str,
        student_name: str,
        score: Any,
        total_points: Any,
        struggling_topics: Optional[Iterable[str]] = None,
        assignment_id: Optional[str] = None,
        graded_at: Optional[datetime] = None,
    ) -> Tuple[ClassAnalytics, StudentAnalytics]:
        """Fold one newly saved grade into both aggregates.

        Raises:
            ConfigurationError: If class_id or student_id is missing
        """
        if not class_id or not student_id:
            raise ConfigurationError("class_id and student_id are required to record a grade")

        percentage, valid = compute_percentage(score, total_points)
        topics = unique_topics(struggling_topics)
        entry = AssignmentHistoryEntry(
            assignment_id=assignment_id,
            score=safe_float(score, "score"),
            total_points=safe_float(total_points, "total_points"),
            percentage=percentage,
            graded_at=graded_at or _now(),
            struggling_topics=topics,
            valid=valid,
        )

        def update_class(raw):
            current = load_class_analytics(raw, class_id)
            updated = fold_into_class(current, class_id, student_id, student_name, percentage, topics)
            return updated.model_dump(mode="json")

        def update_student(raw):
            current = load_student_analytics(raw, class_id, student_id, student_name)
            updated = fold_into_student(current, class_id, student_id, student_name, entry)
            return updated.model_dump(mode="json")

        async with self._class_locks[class_id]:
            with LogTimer(logger, "insert_grade", class_id=class_id, student_id=student_id):
                class_doc = await self.store.transact_aggregate(class_key(class_id), update_class)
                student_doc = await self.store.transact_aggregate(student_key(class_id, student_id), update_student)

        return ClassAnalytics.model_validate(class_doc), StudentAnalytics.model_validate(student_doc)

    async def recalculate(self, class_id: str, student_id: Optional[str] = None):
        """Rebuild an aggregate from the active grade records.

        With only ``class_id`` the class aggregate is rebuilt; with
        ``student_id`` that student's per-class aggregate is. Idempotent.

        Returns:
            The rebuilt ClassAnalytics or StudentAnalytics
        """
        if not class_id:
            raise ConfigurationError("class_id is required to recalculate analytics")

        async with self._class_locks[class_id]:
            if student_id is None:
                return await self._recalculate_class(class_id)
            return await self._recalculate_student(class_id, student_id)

    async def _recalculate_class(self, class_id: str) -> ClassAnalytics:
        async def rebuild(_current):
            grades = await self.store.list_grades(class_id)
            return rebuild_class_analytics(class_id, grades).model_dump(mode="json")

        with LogTimer(logger, "recalculate_class", class_id=class_id):
            doc = await self.store.transact_aggregate(class_key(class_id), rebuild)
        return ClassAnalytics.model_validate(doc)

    async def _recalculate_student(self, class_id: str, student_id: str) -> StudentAnalytics:
        async def rebuild(current):
            grades = await self.store.list_grades(class_id, student_id=student_id)
            fallback_name = (current or {}).get("student_name") or student_id
            return rebuild_student_analytics(class_id, student_id, fallback_name, grades).model_dump(mode="json")

        with LogTimer(logger, "recalculate_student", class_id=class_id, student_id=student_id):
            doc = await self.store.transact_aggregate(student_key(class_id, student_id), rebuild)
        return StudentAnalytics.model_validate(doc)

    async def delete_grade(self, grade_id: str) -> Tuple[GradeRecord, ClassAnalytics, StudentAnalytics]:
        """Soft-delete a grade and rebuild the class and student aggregates."""
        grade = await self.store.mark_grade_deleted(grade_id)
        logger.info(f"Grade {grade_id} soft-deleted, recalculating", extra={"class_id": grade.class_id})
        class_analytics = await self.recalculate(grade.class_id)
        student_analytics = await self.recalculate(grade.class_id, grade.student_id)
        return grade, class_analytics, student_analytics

    async def get_class_analytics(self, class_id: str) -> Optional[ClassAnalytics]:
        return load_class_analytics(await self.store.get_aggregate(class_key(class_id)), class_id)

    async def get_student_analytics(self, class_id: str, student_id: str) -> Optional[StudentAnalytics]:
        raw = await self.store.get_aggregate(student_key(class_id, student_id))
        return load_student_analytics(raw, class_id, student_id, student_id)
