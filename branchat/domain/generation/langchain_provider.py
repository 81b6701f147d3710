from typing import Any, AsyncIterator, List, Optional

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import convert_to_messages

from domain.errors import UpstreamUnavailable
from domain.generation.provider import GenerationOptions, GenerationProvider, LLMMessage
from infrastructure.observability.logging import UsageTracker

logger = structlog.get_logger(__name__)


def content_text(content: Any) -> str:
    """Flatten a message content payload to plain text"""

    if isinstance(content, str):
        return content

    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LangChainGenerationProvider(GenerationProvider):
    """Generation provider backed by any LangChain chat model and embeddings"""

    def __init__(
        self,
        chat_model: BaseChatModel,
        embeddings: Optional[Embeddings] = None,
        model_name: str = "gemini-1.5-pro",
        usage_tracker: Optional[UsageTracker] = None
    ):
        super().__init__(model_name, usage_tracker)
        self.chat_model = chat_model
        self.embeddings = embeddings

    def _bound(self, options: GenerationOptions):
        return self.chat_model.bind(
            temperature=options.temperature,
            max_tokens=options.max_tokens
        )

    async def _complete(self, messages: List[LLMMessage], options: GenerationOptions) -> str:
        response = await self._bound(options).ainvoke(convert_to_messages(messages))
        return content_text(response.content)

    async def _stream(self, messages: List[LLMMessage], options: GenerationOptions) -> AsyncIterator[str]:
        async for chunk in self._bound(options).astream(convert_to_messages(messages)):
            text = content_text(chunk.content)
            if text:
                yield text

    async def _embed(self, text: str) -> List[float]:
        if self.embeddings is None:
            raise UpstreamUnavailable("No embedding model configured", code="EMBEDDINGS_UNAVAILABLE")

        return await self.embeddings.aembed_query(text)
