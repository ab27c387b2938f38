"""Conversation persistence and automatic titling."""
import asyncio
from typing import List, Optional

from gradewise.core.errors import ConfigurationError
from gradewise.core.logging import get_logger
from gradewise.domain.conversation import DEFAULT_TITLE, ChatMessage, Conversation, ToolCall
from gradewise.infrastructure.base import ConversationStore, GenerationService
from gradewise.utils.text import fallback_title, sanitize_title

logger = get_logger(__name__)

TITLE_ATTEMPTS = 2
TITLE_RETRY_DELAY = 0.5
RESPONSE_PREVIEW_CHARS = 200

TITLE_INSTRUCTION = """Generate a 2-3 word title for this conversation based on the exchange below. Rules:
- Exactly 2-3 words
- Specific to the main topic being discussed
- No generic words like "Help", "Question", "Chat", "Conversation", "Assistance"
- No punctuation or special characters
- Capitalize each word

Examples: "Quadratic Equations", "Essay Structure", "Cell Division"

Return ONLY the title."""


class ConversationService:
    """CRUD over a tenant's conversations plus title generation."""

    def __init__(self, store: ConversationStore, generation: GenerationService, retry_delay: float = TITLE_RETRY_DELAY):
        self.store = store
        self.generation = generation
        self.retry_delay = retry_delay

    async def create(self, tenant_id: str) -> Conversation:
        if not tenant_id:
            raise ConfigurationError("tenant_id is required")
        conversation = await self.store.create(tenant_id)
        logger.info("Conversation created", extra={"tenant_id": tenant_id, "conversation_id": conversation.id})
        return conversation

    async def list(self, tenant_id: str) -> List[Conversation]:
        return await self.store.list_for_tenant(tenant_id)

    async def get(self, tenant_id: str, conversation_id: str) -> Conversation:
        return await self.store.require(tenant_id, conversation_id)

    async def delete(self, tenant_id: str, conversation_id: str) -> None:
        await self.store.delete(tenant_id, conversation_id)
        logger.info("Conversation deleted", extra={"tenant_id": tenant_id, "conversation_id": conversation_id})

    async def add_user_message(self, tenant_id: str, conversation_id: str, content: str) -> Conversation:
        return await self.store.append_message(
            tenant_id, conversation_id, ChatMessage(role="user", content=content)
        )

    async def add_assistant_message(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        tool_calls: Optional[List[ToolCall]] = None,
    ) -> Conversation:
        """Store the assistant reply; the first exchange also names the conversation."""
        conversation = await self.store.get(tenant_id, conversation_id)
        title = None
        first_exchange = conversation is not None and not any(m.role == "assistant" for m in conversation.messages)
        if first_exchange and conversation.title == DEFAULT_TITLE:
            first_user = next((m.content for m in conversation.messages if m.role == "user"), "")
            title = await self.generate_title(first_user, content)

        return await self.store.append_message(
            tenant_id,
            conversation_id,
            ChatMessage(role="assistant", content=content, tool_calls=tool_calls or []),
            title=title,
        )

    async def generate_title(self, user_message: str, assistant_response: str = "") -> str:
        """Short title for a conversation from its first exchange.

        Tries the lightweight model twice, then falls back to the first
        meaningful words of the user message, then to the default title.
        """
        context = f"User: {user_message}"
        if assistant_response:
            context += f"\n\nAssistant response preview: {assistant_response[:RESPONSE_PREVIEW_CHARS].strip()}"

        for attempt in range(1, TITLE_ATTEMPTS + 1):
            try:
                raw = await self.generation.complete(
                    context, system_instruction=TITLE_INSTRUCTION, max_output_tokens=30, lightweight=True
                )
                title = sanitize_title(raw)
                if title:
                    return title
                logger.debug(f"Empty title on attempt {attempt}")
            except Exception as e:
                logger.warning(f"Title generation attempt {attempt} failed: {e}")
            if attempt < TITLE_ATTEMPTS:
                await asyncio.sleep(self.retry_delay)

        return fallback_title(user_message) or DEFAULT_TITLE
