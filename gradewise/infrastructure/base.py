"""Interfaces of the external collaborators: storage, embeddings, generation.

Services depend only on these abstractions; concrete backends live in
``memory.py``, ``redis.py`` and ``vertex.py``.
"""
import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from gradewise.core.errors import NotFoundError
from gradewise.domain.conversation import DEFAULT_TITLE, ChatMessage, Conversation, ToolCall
from gradewise.domain.documents import LessonPlan, SemanticDocument
from gradewise.domain.grades import GradeRecord

AggregateDoc = Dict[str, Any]
AggregateUpdate = Callable[[Optional[AggregateDoc]], Union[AggregateDoc, Awaitable[AggregateDoc]]]


async def apply_update(fn: AggregateUpdate, current: Optional[AggregateDoc]) -> AggregateDoc:
    """Run a transaction body that may be a plain function or a coroutine."""
    result = fn(current)
    if inspect.isawaitable(result):
        result = await result
    return result


class DocumentStore(ABC):
    """Durable owner of aggregates, semantic documents, grades and lesson plans."""

    @abstractmethod
    async def get_aggregate(self, key: str) -> Optional[AggregateDoc]:
        """Return the aggregate stored under ``key`` or None."""

    @abstractmethod
    async def transact_aggregate(self, key: str, fn: AggregateUpdate) -> AggregateDoc:
        """Optimistic read-modify-write of one aggregate.

        ``fn`` receives the current document (or None) and returns the
        replacement. On a concurrent write the document is re-read and ``fn``
        re-applied, so ``fn`` must not have side effects.

        Raises:
            TransactionConflictError: If retries are exhausted
        """

    @abstractmethod
    async def put_semantic_document(self, doc: SemanticDocument) -> None:
        """Insert or replace a semantic document by id."""

    @abstractmethod
    async def query_documents_by_tenant(self, tenant_id: str) -> List[SemanticDocument]:
        """All semantic documents of a tenant, in insertion order."""

    @abstractmethod
    async def put_grade(self, grade: GradeRecord) -> None:
        """Insert or replace a grade record."""

    @abstractmethod
    async def get_grade(self, grade_id: str) -> Optional[GradeRecord]:
        """Return a grade record by id or None."""

    @abstractmethod
    async def list_grades(
        self,
        class_id: str,
        student_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[GradeRecord]:
        """Grade records of a class (optionally one student), oldest first."""

    @abstractmethod
    async def put_lesson_plan(self, plan: LessonPlan) -> None:
        """Insert or replace a lesson plan."""

    @abstractmethod
    async def get_lesson_plan(self, tenant_id: str, plan_id: str) -> Optional[LessonPlan]:
        """Return a tenant's lesson plan by id or None."""

    async def mark_grade_deleted(self, grade_id: str) -> GradeRecord:
        """Soft-delete a grade and return the updated record.

        Raises:
            NotFoundError: If no grade has this id
        """
        grade = await self.get_grade(grade_id)
        if grade is None:
            raise NotFoundError(f"Grade '{grade_id}' not found")
        if not grade.deleted:
            grade = grade.model_copy(update={"deleted": True})
            await self.put_grade(grade)
        return grade

    async def ping(self) -> bool:
        return True


class ConversationStore(ABC):
    """Persistence for conversations, scoped by tenant."""

    @abstractmethod
    async def get(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        """Return a non-deleted conversation or None."""

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[Conversation]:
        """Non-deleted conversations, most recently updated first."""

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        """Write a conversation wholesale."""

    async def create(self, tenant_id: str) -> Conversation:
        conversation = Conversation(tenant_id=tenant_id)
        await self.save(conversation)
        return conversation

    async def require(self, tenant_id: str, conversation_id: str) -> Conversation:
        conversation = await self.get(tenant_id, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")
        return conversation

    async def append_message(
        self,
        tenant_id: str,
        conversation_id: str,
        message: ChatMessage,
        title: Optional[str] = None,
    ) -> Conversation:
        """Append a message; ``title`` is applied only while the default title is in place."""
        conversation = await self.require(tenant_id, conversation_id)
        update: Dict[str, Any] = {
            "messages": [*conversation.messages, message],
            "updated_at": datetime.now(timezone.utc),
        }
        if title and conversation.title == DEFAULT_TITLE:
            update["title"] = title
        conversation = conversation.model_copy(update=update)
        await self.save(conversation)
        return conversation

    async def set_title(self, tenant_id: str, conversation_id: str, title: str) -> Conversation:
        conversation = await self.require(tenant_id, conversation_id)
        conversation = conversation.model_copy(
            update={"title": title, "updated_at": datetime.now(timezone.utc)}
        )
        await self.save(conversation)
        return conversation

    async def delete(self, tenant_id: str, conversation_id: str) -> None:
        """Soft delete; the conversation disappears from get/list."""
        conversation = await self.require(tenant_id, conversation_id)
        await self.save(conversation.model_copy(
            update={"deleted": True, "updated_at": datetime.now(timezone.utc)}
        ))


class EmbeddingService(ABC):
    """Text to fixed-length vector. Errors propagate; no internal retry."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed ``text`` (implementations truncate very long input)."""


class CancellationToken:
    """Caller-held handle used to abort a generation stream.

    ``cancel()`` is idempotent and safe to call after the stream finished.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class TextChunk:
    """A partial piece of generated text."""
    text: str


GenerationEvent = Union[TextChunk, ToolCall]


@dataclass(frozen=True)
class ToolDeclaration:
    """Function the model may call. ``parameters`` is an OpenAPI-style schema."""
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)


class GenerationService(ABC):
    """Streaming text and tool-call generation."""

    @abstractmethod
    def generate(
        self,
        messages: Sequence[ChatMessage],
        system_instruction: str,
        tools: Optional[Sequence[ToolDeclaration]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[GenerationEvent]:
        """Stream text chunks and tool calls for a message history.

        Implementations stop yielding once ``cancel_token`` is cancelled.
        """

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        max_output_tokens: int = 512,
        lightweight: bool = False,
    ) -> str:
        """One-shot generation. ``lightweight`` selects the small, fast model."""
