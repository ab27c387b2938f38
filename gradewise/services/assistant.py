"""Retrieval-augmented assistant turns with streaming and tool calls."""
import asyncio
import contextlib
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from gradewise.core.errors import ConfigurationError
from gradewise.core.logging import get_logger, LogTimer
from gradewise.domain.conversation import ChatMessage, ClassInfo, ToolCall, TurnState
from gradewise.domain.documents import ScoredDocument
from gradewise.infrastructure.base import (
    CancellationToken,
    GenerationService,
    TextChunk,
    ToolDeclaration,
)
from gradewise.services.retrieval import NO_DATA_CONTEXT, RetrievalAssembler
from gradewise.services.streaming import ChunkBatcher

logger = get_logger(__name__)

RETRY_MESSAGE = "The assistant is unavailable right now. Please try again in a minute."

SYSTEM_INSTRUCTION = """You are the teaching assistant built into Gradewise, an AI grading tool for classroom teachers.

CONTEXT DATA:
{context}

CLASSES:
{classes}

WHAT THE CONTEXT CAN CONTAIN:
- Student grades: individual scores, strong topics and struggling topics
- Class summaries: averages and the topics many students struggle with
- Lesson plans: plans generated earlier for specific topics
If something is not in the context, the teacher does not have it yet.

RESPONSE RULES:
1. If the context says no student data is available and the teacher asks about grades or performance, explain that nothing has been graded yet and suggest grading an assignment first
2. When data exists, cite specific student names, scores and topics
3. Be concise; teachers are busy
4. Use markdown formatting and LaTeX for math

TOOL: generate_lesson_plan
- Only call it when the teacher explicitly asks to create a NEW lesson plan
- class_id and class_name must come from the CLASSES list
- If the class is unclear, ask which one instead of calling the tool"""

LESSON_PLAN_TOOL = ToolDeclaration(
    name="generate_lesson_plan",
    description=(
        "Generate a new lesson plan for a specific class. Use this only when the teacher "
        "explicitly asks to create or generate a NEW lesson plan."
    ),
    parameters={
        "type": "object",
        "properties": {
            "class_id": {"type": "string", "description": "ID of the class the plan is for"},
            "class_name": {"type": "string", "description": "Name of the class"},
            "focus_topics": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Optional topics the lesson should focus on",
            },
        },
        "required": ["class_id", "class_name"],
    },
)

ToolHandler = Callable[[str, ToolCall], Awaitable[Any]]


@dataclass
class AssistantTurn:
    """Outcome of one user message: response text, tool calls and final state."""
    state: TurnState = TurnState.IDLE
    response: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[Any] = field(default_factory=list)
    retrieved_documents: List[ScoredDocument] = field(default_factory=list)
    error: Optional[str] = None


def format_classes(classes: Sequence[ClassInfo]) -> str:
    if not classes:
        return "No classes available."
    return "\n".join(f"- {c.name} (class_id: {c.id})" for c in classes)


def build_system_instruction(context: str, classes: Sequence[ClassInfo]) -> str:
    return SYSTEM_INSTRUCTION.format(context=context, classes=format_classes(classes))


async def _notify(callback: Optional[Callable], *args) -> None:
    """Invoke an optional observer callback, sync or async; its errors are logged."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Turn observer callback raised")


class ConversationOrchestrator:
    """Runs one assistant turn: retrieve, then stream a grounded response.

    Example:
        >>> orchestrator = ConversationOrchestrator(retrieval, generation)
        >>> turn = await orchestrator.send_message(messages, "teacher_42", on_chunk=print)
        >>> turn.state
        <TurnState.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        retrieval: RetrievalAssembler,
        generation: GenerationService,
        lesson_plan_handler: Optional[ToolHandler] = None,
        batch_delay_ms: Optional[int] = None,
    ):
        self.retrieval = retrieval
        self.generation = generation
        self.tool_handlers = {}
        if lesson_plan_handler is not None:
            self.tool_handlers[LESSON_PLAN_TOOL.name] = lesson_plan_handler
        self.batch_delay_ms = batch_delay_ms

    async def send_message(
        self,
        messages: Sequence[ChatMessage],
        tenant_id: str,
        classes: Sequence[ClassInfo] = (),
        on_chunk: Optional[Callable[[str], None]] = None,
        on_retrieval_start: Optional[Callable[[], Any]] = None,
        on_retrieval_complete: Optional[Callable[[List[ScoredDocument]], Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AssistantTurn:
        """Answer the latest user message in ``messages``.

        Only a missing tenant or user message raises. Retrieval problems fall
        back to the no-data context, generation problems end the turn in
        FAILED with ``turn.error`` set, and cancellation ends it in ABORTED.

        Raises:
            ConfigurationError: If tenant_id is missing or there is no user message
        """
        if not tenant_id:
            raise ConfigurationError("tenant_id is required to send a message")
        latest = next((m for m in reversed(messages) if m.role == "user"), None)
        if latest is None or not latest.content.strip():
            raise ConfigurationError("No user message found")

        token = cancel_token or CancellationToken()
        turn = AssistantTurn()
        log = get_logger(__name__, {"tenant_id": tenant_id})

        turn.state = TurnState.RETRIEVING
        await _notify(on_retrieval_start)
        context = await self._retrieve(latest.content, tenant_id, turn, log)
        await _notify(on_retrieval_complete, turn.retrieved_documents)

        if token.cancelled:
            turn.state = TurnState.ABORTED
            log.info("Turn aborted before generation")
            return turn

        turn.state = TurnState.GENERATING
        await self._generate(messages, build_system_instruction(context, classes), turn, token, on_chunk, log)

        if turn.state == TurnState.COMPLETED:
            await self._run_tools(tenant_id, turn, log)
        return turn

    async def _retrieve(self, query: str, tenant_id: str, turn: AssistantTurn, log) -> str:
        try:
            result = await self.retrieval.retrieve(query, tenant_id)
        except Exception as e:
            log.warning(f"Retrieval failed, answering without context: {e}", extra={"error_type": type(e).__name__})
            return NO_DATA_CONTEXT
        turn.retrieved_documents = result.ranked_documents
        return result.context_text

    async def _generate(
        self,
        messages: Sequence[ChatMessage],
        system_instruction: str,
        turn: AssistantTurn,
        token: CancellationToken,
        on_chunk: Optional[Callable[[str], None]],
        log,
    ) -> None:
        batcher = ChunkBatcher(on_chunk, delay_ms=self.batch_delay_ms) if on_chunk else None
        parts: List[str] = []

        async def consume() -> None:
            stream = self.generation.generate(
                messages, system_instruction, tools=[LESSON_PLAN_TOOL], cancel_token=token
            )
            async for event in stream:
                if isinstance(event, TextChunk):
                    parts.append(event.text)
                    if batcher:
                        batcher.add(event.text)
                elif isinstance(event, ToolCall):
                    turn.tool_calls.append(event)

        consume_task = asyncio.ensure_future(consume())
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            with LogTimer(log, "generation"):
                await asyncio.wait({consume_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not consume_task.done():
                consume_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consume_task

        turn.response = "".join(parts)

        if consume_task.cancelled():
            if batcher:
                batcher.discard()
            turn.state = TurnState.ABORTED
            log.info("Turn aborted during generation")
            return

        exc = consume_task.exception()
        if exc is not None:
            if batcher:
                batcher.discard()
            turn.state = TurnState.FAILED
            turn.error = RETRY_MESSAGE
            log.error("Generation failed", exc_info=exc, extra={"error_type": type(exc).__name__})
            return

        if batcher:
            batcher.flush()
        turn.state = TurnState.COMPLETED

    async def _run_tools(self, tenant_id: str, turn: AssistantTurn, log) -> None:
        for call in turn.tool_calls:
            handler = self.tool_handlers.get(call.name)
            if handler is None:
                log.warning(f"No handler for tool call {call.name}")
                turn.tool_results.append(None)
                continue
            try:
                turn.tool_results.append(await handler(tenant_id, call))
            except Exception as e:
                # The text answer already streamed; a failed tool is reported, not fatal
                log.error(f"Tool {call.name} failed: {e}", exc_info=True)
                turn.tool_results.append({"tool": call.name, "error": str(e)})
