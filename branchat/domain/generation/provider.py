from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional
import inspect
import math
import time

import structlog
from pydantic import BaseModel

from domain.errors import FatalError
from domain.generation.summary import (
    SUMMARY_PROMPT, SUMMARY_SYSTEM_PROMPT, SummaryOutcome, parse_summary
)
from infrastructure.observability.logging import UsageTracker, UsageOperation

logger = structlog.get_logger(__name__)

LLMMessage = Dict[str, str]


class GenerationOptions(BaseModel):
    """Per-call completion settings"""
    temperature: float = 0.7
    max_tokens: int = 2000


class StreamCallbacks:
    """Optional hooks fired while a completion streams"""

    def __init__(
        self,
        on_token: Optional[Callable[[str], Optional[Awaitable[None]]]] = None,
        on_complete: Optional[Callable[[str], Optional[Awaitable[None]]]] = None,
        on_error: Optional[Callable[[Exception], Optional[Awaitable[None]]]] = None
    ):
        self.on_token = on_token
        self.on_complete = on_complete
        self.on_error = on_error


async def _fire(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _estimate(*texts: str) -> int:
    return math.ceil(sum(len(t) for t in texts) / 4)


class GenerationProvider(ABC):
    """Text completion, streaming, embedding and structured summarization"""

    def __init__(self, model_name: str, usage_tracker: Optional[UsageTracker] = None):
        self.model_name = model_name
        self.usage_tracker = usage_tracker

    @abstractmethod
    async def _complete(self, messages: List[LLMMessage], options: GenerationOptions) -> str:
        pass

    @abstractmethod
    def _stream(self, messages: List[LLMMessage], options: GenerationOptions) -> AsyncIterator[str]:
        pass

    @abstractmethod
    async def _embed(self, text: str) -> List[float]:
        pass

    def _record(self, operation: UsageOperation, tokens: int):
        if self.usage_tracker is not None:
            self.usage_tracker.record(operation, self.model_name, tokens)

    async def complete(
        self,
        messages: List[LLMMessage],
        options: Optional[GenerationOptions] = None
    ) -> str:
        """Blocking completion of a message list"""

        options = options or GenerationOptions()
        content = await self._complete(messages, options)
        if not content:
            raise FatalError("No content received from generation provider", code="EMPTY_COMPLETION")

        tokens = _estimate(*(m["content"] for m in messages), content)
        self._record(UsageOperation.CHAT, tokens)
        logger.info("Chat completion successful", model=self.model_name, estimated_tokens=tokens)

        return content

    async def complete_streaming(
        self,
        messages: List[LLMMessage],
        options: Optional[GenerationOptions] = None,
        callbacks: Optional[StreamCallbacks] = None
    ) -> AsyncIterator[str]:
        """Incremental completion; yields non-empty text chunks"""

        options = options or GenerationOptions()
        callbacks = callbacks or StreamCallbacks()
        full_response = ""

        try:
            async for chunk in self._stream(messages, options):
                if not chunk:
                    continue
                full_response += chunk
                await _fire(callbacks.on_token, chunk)
                yield chunk
        except Exception as e:
            logger.error("Streaming completion failed", model=self.model_name, error=str(e))
            await _fire(callbacks.on_error, e)
            raise

        await _fire(callbacks.on_complete, full_response)

        tokens = _estimate(*(m["content"] for m in messages), full_response)
        self._record(UsageOperation.CHAT, tokens)
        logger.info(
            "Streaming completion successful",
            model=self.model_name,
            response_length=len(full_response),
            estimated_tokens=tokens
        )

    async def embed(self, text: str) -> List[float]:
        """Embedding vector for a text"""

        embedding = await self._embed(text)
        if not embedding:
            raise ValueError("No embedding received from generation provider")

        self._record(UsageOperation.EMBEDDING, _estimate(text))
        return list(embedding)

    async def summarize_structured(self, text: str) -> SummaryOutcome:
        """Structured summary of a transcript.

        A response that fails validation is returned as a parse failure; only
        a call that yields no response at all raises.
        """

        started = time.monotonic()
        try:
            response = await self._complete(
                [
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": SUMMARY_PROMPT.format(transcript=text)},
                ],
                GenerationOptions(temperature=0.3, max_tokens=1000)
            )
        except Exception as e:
            logger.error("Text summarization failed", error=str(e))
            raise FatalError(
                f"Text summarization failed: {e}", code="SUMMARY_GENERATION_FAILED"
            ) from e

        if not response:
            raise FatalError("Summarization returned no response", code="SUMMARY_GENERATION_FAILED")

        self._record(UsageOperation.SUMMARIZE, _estimate(text, response))

        outcome = parse_summary(response)
        logger.info(
            "Text summarization finished",
            outcome=outcome.kind,
            duration_ms=round((time.monotonic() - started) * 1000, 1)
        )
        return outcome
