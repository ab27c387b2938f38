"""Pytest configuration and shared fixtures."""
import asyncio
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("PROJECT_ID", "test-project")

import pytest
from fastapi.testclient import TestClient

from gradewise.domain.grades import GradedQuestion, GradeRecord
from gradewise.infrastructure.base import EmbeddingService, GenerationService
from gradewise.infrastructure.memory import InMemoryConversationStore, InMemoryDocumentStore


class FakeEmbeddingService(EmbeddingService):
    """Returns the vector of the first keyword found in the text, else ``default``."""

    def __init__(self, vectors=None, default=(1.0, 0.0, 0.0), error=None):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.error = error
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        for keyword, vector in self.vectors.items():
            if keyword in text:
                return list(vector)
        return list(self.default)


class FakeGenerationService(GenerationService):
    """Streams scripted events; ``complete`` pops scripted answers (or raises them)."""

    def __init__(self, events=None, completions=None, delay=0.0, error=None):
        self.events = list(events or [])
        self.completions = list(completions or [])
        self.delay = delay
        self.error = error
        self.calls = []
        self.complete_calls = []

    async def generate(self, messages, system_instruction, tools=None, cancel_token=None):
        self.calls.append({"messages": list(messages), "system_instruction": system_instruction, "tools": tools})
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error is not None:
            raise self.error

    async def complete(self, prompt, system_instruction=None, max_output_tokens=512, lightweight=False):
        self.complete_calls.append({"prompt": prompt, "lightweight": lightweight})
        if not self.completions:
            return ""
        answer = self.completions.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def generation():
    return FakeGenerationService()


@pytest.fixture
def make_grade():
    """Factory for grade records with sensible defaults."""
    base_time = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(score, total=100, student_id="s1", student_name="Aisha", class_id="c1", **overrides):
        counter["n"] += 1
        fields = dict(
            id=f"g{counter['n']}",
            tenant_id="teacher_42",
            class_id=class_id,
            class_name="Algebra I",
            student_id=student_id,
            student_name=student_name,
            assignment_id=f"a{counter['n']}",
            assignment_name=f"Worksheet {counter['n']}",
            overall_score=score,
            total_points=total,
            graded_at=base_time + timedelta(days=counter["n"]),
        )
        fields.update(overrides)
        return GradeRecord(**fields)

    return _make


@pytest.fixture
def sample_grade(make_grade):
    """Grade with topics and missed questions, as the grading workflow produces it."""
    return make_grade(
        8,
        10,
        strong_topics=["Equations"],
        struggling_topics=["Fractions", "Decimals"],
        questions=[
            GradedQuestion(question_number=1, topic="Equations", points_awarded=2, points_possible=2),
            GradedQuestion(question_number=2, topic="Fractions", points_awarded=1, points_possible=3),
            GradedQuestion(question_number=3, topic=None, points_awarded=0, points_possible=1),
        ],
    )


@pytest.fixture
def services(document_store, conversation_store, embeddings, generation):
    from gradewise.api.dependencies import ServiceContainer
    return ServiceContainer(document_store, conversation_store, embeddings, generation)


@pytest.fixture
def auth_token():
    from gradewise.core.auth import Teacher, create_access_token
    return create_access_token(Teacher(id="teacher_42", email="teacher@school.test", name="Ms. Rivera"))


@pytest.fixture
def test_client(services):
    """FastAPI test client wired to in-memory stores and fake model services."""
    from main import app
    from gradewise.api.dependencies import get_services

    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def authenticated_client(test_client, auth_token):
    """Test client sending a bearer token for teacher_42."""
    test_client.headers.update({"Authorization": f"Bearer {auth_token}"})
    return test_client
