"""Vertex AI Gemini clients for embeddings and streamed generation."""
from functools import lru_cache
from typing import AsyncIterator, List, Optional, Sequence

from vertexai import init
from vertexai.generative_models import (
    Content,
    FunctionDeclaration,
    GenerationConfig,
    GenerativeModel,
    Part,
    Tool,
)
from vertexai.language_models import TextEmbeddingModel

from gradewise.core.config import settings, get_vertex_credentials
from gradewise.core.errors import TransientIntegrationError
from gradewise.core.logging import get_logger
from gradewise.domain.conversation import ChatMessage, ToolCall
from gradewise.infrastructure.base import (
    CancellationToken,
    EmbeddingService,
    GenerationEvent,
    GenerationService,
    TextChunk,
    ToolDeclaration,
)
from gradewise.utils.text import sanitize_text

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def init_vertex() -> None:
    """Initialize the Vertex AI SDK once per process."""
    creds = get_vertex_credentials()
    init(project=settings.project_id, location=settings.region, credentials=creds)
    logger.info(f"[Vertex] Initialized for project {settings.project_id} in {settings.region}")


@lru_cache(maxsize=2)
def get_embedding_model(model_name: str) -> TextEmbeddingModel:
    init_vertex()
    logger.info(f"[Model Cache] Initializing {model_name}")
    return TextEmbeddingModel.from_pretrained(model_name)


def _to_contents(messages: Sequence[ChatMessage]) -> List[Content]:
    return [
        Content(
            role="model" if msg.role == "assistant" else "user",
            parts=[Part.from_text(msg.content)],
        )
        for msg in messages
    ]


def _to_tools(tools: Optional[Sequence[ToolDeclaration]]) -> Optional[List[Tool]]:
    if not tools:
        return None
    declarations = [
        FunctionDeclaration(name=t.name, description=t.description, parameters=t.parameters)
        for t in tools
    ]
    return [Tool(function_declarations=declarations)]


class VertexEmbeddingService(EmbeddingService):
    """text-embedding-004 (768 dimensions) via the Vertex SDK."""

    def __init__(self, model_name: Optional[str] = None, max_chars: Optional[int] = None):
        self.model_name = model_name or settings.embedding_model
        self.max_chars = max_chars or settings.embedding_max_chars

    async def embed(self, text: str) -> List[float]:
        if not text or not isinstance(text, str):
            raise ValueError("Text is required for embedding generation")

        try:
            model = get_embedding_model(self.model_name)
            embeddings = await model.get_embeddings_async([text[:self.max_chars]])
        except Exception as e:
            logger.error(f"Embedding request failed: {e}", exc_info=True)
            raise TransientIntegrationError("embedding", str(e)) from e

        if not embeddings or not embeddings[0].values:
            raise TransientIntegrationError("embedding", "response missing values")
        return list(embeddings[0].values)


class VertexGenerationService(GenerationService):
    """Gemini chat generation with streaming and function calling."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        title_model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ):
        self.model_name = model_name or settings.generation_model
        self.title_model_name = title_model_name or settings.title_model
        self.temperature = temperature if temperature is not None else settings.generation_temperature
        self.max_output_tokens = max_output_tokens or settings.max_output_tokens

    def _model(self, model_name: str, system_instruction: Optional[str]) -> GenerativeModel:
        init_vertex()
        return GenerativeModel(
            model_name,
            system_instruction=[system_instruction] if system_instruction else None,
        )

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        system_instruction: str,
        tools: Optional[Sequence[ToolDeclaration]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[GenerationEvent]:
        model = self._model(self.model_name, system_instruction)
        generation_config = GenerationConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

        try:
            stream = await model.generate_content_async(
                _to_contents(messages),
                generation_config=generation_config,
                tools=_to_tools(tools),
                stream=True,
            )
            async for response in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Generation stream cancelled by caller")
                    return
                if not response.candidates:
                    continue
                for part in response.candidates[0].content.parts:
                    raw = part.to_dict()
                    if raw.get("text"):
                        yield TextChunk(raw["text"])
                    call = raw.get("function_call")
                    if call:
                        yield ToolCall(name=call.get("name", ""), args=call.get("args") or {})
        except TransientIntegrationError:
            raise
        except Exception as e:
            logger.error(f"Gemini streaming failed: {e}", exc_info=True)
            raise TransientIntegrationError("generation", str(e)) from e

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        max_output_tokens: int = 512,
        lightweight: bool = False,
    ) -> str:
        model_name = self.title_model_name if lightweight else self.model_name
        model = self._model(model_name, system_instruction)
        generation_config = GenerationConfig(
            temperature=0.3 if lightweight else self.temperature,
            max_output_tokens=max_output_tokens,
        )

        try:
            response = await model.generate_content_async(prompt, generation_config=generation_config)
            text = response.text
        except Exception as e:
            logger.error(f"Gemini generation failed: {e}", exc_info=True)
            raise TransientIntegrationError("generation", str(e)) from e

        return sanitize_text(text)
