from typing import Dict, List, Optional
import time

import structlog
from pydantic import BaseModel, Field

from domain.models.chat import Message, MessageRole, SubchatSummaryMarker
from domain.context.context_retriever import ContextRetriever, PreviousConversation
from domain.context.token_budget import ContextBudget
from infrastructure.config.settings import ContextLimits

logger = structlog.get_logger(__name__)

EXCHANGE_LINE_CHARS = 200


class ContextOptions(BaseModel):
    """Which tiers to attempt and the token budget to pack them into"""
    recent_message_count: int = 10
    enable_semantic: bool = True
    enable_subchat_summaries: bool = True
    enable_previous_knowledge: bool = False
    enable_documents: bool = False
    max_tokens: int = 8000


class ContextMetadata(BaseModel):
    """What went into an assembled context"""
    recent_message_count: int = 0
    semantic_message_count: int = 0
    subchat_count: int = 0
    previous_conversation_count: int = 0
    estimated_tokens: int = 0
    truncated: bool = False
    documents_enabled: bool = False
    tiers_skipped: List[str] = Field(default_factory=list)


class AssembledContext(BaseModel):
    """Ordered message list ready for the generation provider"""
    messages: List[Dict[str, str]] = Field(default_factory=list)
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)


def render_subchat_context(markers: List[SubchatSummaryMarker]) -> Optional[str]:
    """System block describing merged sub-conversations"""

    if not markers:
        return None

    sections = []
    for index, marker in enumerate(markers, start=1):
        details = [marker.summary]
        if marker.actions:
            details.append("Actions: " + "; ".join(marker.actions))
        if marker.artifacts:
            details.append("Artifacts: " + "; ".join(marker.artifacts))
        if marker.keywords:
            details.append("Topics: " + ", ".join(marker.keywords))

        sections.append(
            f'SubChat {index}: "{marker.title}"\n'
            f"Summary: {marker.summary}\n"
            f"Details: {' '.join(details)}"
        )

    return (
        f"SUBCHAT CONTEXT: You have {len(markers)} detailed SubChat discussion(s):\n\n"
        + "\n\n".join(sections)
        + "\n\nUse this context to provide informed responses about these topics."
    )


def _exchange_line(message: Message) -> str:
    prefix = "Q" if message.role == MessageRole.USER else "A"
    content = message.content[:EXCHANGE_LINE_CHARS]
    if len(message.content) > EXCHANGE_LINE_CHARS:
        content += "..."
    return f"{prefix}: {content}"


def render_previous_knowledge(conversations: List[PreviousConversation]) -> Optional[str]:
    """System block with recent exchanges of the user's other conversations"""

    if not conversations:
        return None

    sections = []
    for conversation in conversations:
        exchanges = "\n".join(_exchange_line(m) for m in conversation.exchanges)
        sections.append(
            f'Previous Conversation: "{conversation.title}"\n'
            f"Date: {conversation.updated_at.date().isoformat()}\n"
            f"{exchanges}"
        )

    return (
        f"PREVIOUS KNOWLEDGE: You have access to {len(conversations)} previous conversation(s):\n\n"
        + "\n\n---\n\n".join(sections)
        + "\n\nUse this information to provide contextually aware responses."
    )


class ContextAssembler:
    """Packs prioritized context tiers into one token budget.

    Tiers are tried in a fixed order against a single running estimate:

    1. recent messages (always, markers excluded)
    2. semantically similar messages
    3. merged subchat summaries
    4. previous conversations of the same user

    Tiers 2-4 are optional: a failing data source is logged and skipped.
    """

    def __init__(self, retriever: ContextRetriever, limits: Optional[ContextLimits] = None):
        self.retriever = retriever
        self.limits = limits or ContextLimits()

    def default_options(self) -> ContextOptions:
        return ContextOptions(
            recent_message_count=self.limits.recent_messages,
            max_tokens=self.limits.max_total_tokens
        )

    async def assemble(
        self,
        conversation_id: str,
        query_text: str,
        options: Optional[ContextOptions] = None
    ) -> AssembledContext:
        """Build the message list for one generation call"""

        options = options or self.default_options()
        started = time.monotonic()

        logger.info(
            "Building optimized context",
            conversation_id=conversation_id,
            message_length=len(query_text),
            max_tokens=options.max_tokens
        )

        budget = ContextBudget(options.max_tokens)
        messages: List[Dict[str, str]] = []
        metadata = ContextMetadata(documents_enabled=options.enable_documents)

        # Priority 1: recent messages
        recent = await self.retriever.recent_messages(conversation_id, options.recent_message_count)
        for message in recent:
            if message.is_marker:
                continue
            messages.append(message.to_llm())
            budget.add(message.content)
            metadata.recent_message_count += 1

        logger.debug("Added recent messages", count=metadata.recent_message_count, tokens=budget.estimated)

        # Priority 2: semantically similar messages
        if options.enable_semantic and budget.below(ContextBudget.SEMANTIC_ATTEMPT):
            try:
                similar = await self.retriever.similar_messages(
                    conversation_id,
                    query_text,
                    self.limits.semantic_search_results,
                    self.limits.semantic_threshold
                )
                recent_ids = {m.id for m in recent}

                for message in similar:
                    if not budget.below(ContextBudget.SEMANTIC_STOP):
                        break
                    if message.id in recent_ids or message.is_marker:
                        continue
                    messages.append(message.to_llm())
                    budget.add(message.content)
                    metadata.semantic_message_count += 1

                logger.debug("Added semantically similar messages", count=metadata.semantic_message_count, tokens=budget.estimated)
            except Exception as e:
                metadata.tiers_skipped.append("semantic")
                logger.warning("Failed to get semantically similar messages", conversation_id=conversation_id, error=str(e))

        # Priority 3: merged subchat summaries
        if options.enable_subchat_summaries and budget.below(ContextBudget.SUBCHAT_ATTEMPT):
            try:
                markers = await self.retriever.subchat_markers(conversation_id, self.limits.subchat_histories)
                block = render_subchat_context(markers)
                if block and budget.fits(block, ContextBudget.SUBCHAT_KEEP):
                    messages.append({"role": MessageRole.SYSTEM.value, "content": block})
                    budget.add(block)
                    metadata.subchat_count = len(markers)

                logger.debug("Added SubChat context", count=metadata.subchat_count, tokens=budget.estimated)
            except Exception as e:
                metadata.tiers_skipped.append("subchat_summaries")
                logger.warning("Failed to get SubChat context", conversation_id=conversation_id, error=str(e))

        # Priority 4: previous knowledge
        if options.enable_previous_knowledge and budget.below(ContextBudget.PREVIOUS_ATTEMPT):
            try:
                previous = await self.retriever.previous_conversations(conversation_id, self.limits.previous_conversations)
                block = render_previous_knowledge(previous)
                if block and budget.fits(block, ContextBudget.PREVIOUS_KEEP):
                    messages.append({"role": MessageRole.SYSTEM.value, "content": block})
                    budget.add(block)
                    metadata.previous_conversation_count = len(previous)

                logger.debug("Added previous knowledge context", count=metadata.previous_conversation_count, tokens=budget.estimated)
            except Exception as e:
                metadata.tiers_skipped.append("previous_knowledge")
                logger.warning("Failed to get previous knowledge context", conversation_id=conversation_id, error=str(e))

        metadata.estimated_tokens = budget.estimated
        metadata.truncated = budget.truncated

        logger.info(
            "Context building complete",
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            **metadata.model_dump()
        )

        return AssembledContext(messages=messages, metadata=metadata)
