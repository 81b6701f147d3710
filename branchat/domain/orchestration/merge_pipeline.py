from typing import Any, Dict, TypedDict, List, Optional, Literal
from langgraph.graph import StateGraph, END
import structlog
from pydantic import BaseModel

from domain.context.memory.memory_index import MemoryIndex
from domain.context.token_budget import estimate_tokens
from domain.errors import FatalError, MergeRejected, NotFoundError, PartialFailure
from domain.generation.provider import GenerationProvider
from domain.generation.summary import StructuredSummary
from domain.models.chat import (
    Message, MessageMetadata, MessageRole, Subchat, SubchatStatus,
    SubchatSummaryMarker, User
)
from domain.models.memory import MemoryEntry
from domain.store.interfaces import ConversationStore, MessageStore

logger = structlog.get_logger(__name__)

SUBCHAT_SUMMARY_TAG = "[SUBCHAT_SUMMARY]"


class MergeState(TypedDict):
    """State carried through the merge graph"""
    subchat: Subchat
    user: Optional[User]
    transcript: List[Message]
    transcript_text: str
    summary: Optional[StructuredSummary]
    summary_parsed: bool
    injected_message: Optional[Message]
    marker_message: Optional[Message]
    memory_stored: bool
    warnings: List[Dict[str, Any]]


class MergeResult(BaseModel):
    """Outcome of folding a subchat back into its parent"""
    subchat: Subchat
    summary: StructuredSummary
    injected_message: Message
    marker_message: Message
    memory_stored: bool = False
    warnings: List[Dict[str, Any]] = []


def render_transcript(messages: List[Message]) -> str:
    """``[<iso timestamp>] <Role>: <content>`` lines separated by blank lines"""
    return "\n\n".join(
        f"[{m.created_at.isoformat()}] {m.role.value.capitalize()}: {m.content}"
        for m in messages
    )


def format_injection(summary: StructuredSummary) -> str:
    """Markdown body of the message injected into the parent conversation"""

    content = f"## Sub-chat Summary\n\n{summary.summary}"

    if summary.actions:
        content += "\n\n### Actions Taken\n" + "\n".join(
            f"{i}. {action}" for i, action in enumerate(summary.actions, start=1)
        )

    if summary.artifacts:
        content += "\n\n### Artifacts Created\n" + "\n".join(
            f"{i}. {artifact}" for i, artifact in enumerate(summary.artifacts, start=1)
        )

    if summary.keywords:
        content += "\n\n### Key Topics\n" + ", ".join(summary.keywords)

    return content


class MergePipeline:
    """Summarizes a finished subchat and folds it into its parent.

    Steps run in order and are not transactional: once the subchat is
    resolved it stays resolved even if a later step fails. Storing the
    summary in long-term memory is best-effort.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        message_store: MessageStore,
        conversation_store: ConversationStore,
        memory_index: Optional[MemoryIndex] = None
    ):
        self.provider = provider
        self.message_store = message_store
        self.conversation_store = conversation_store
        self.memory_index = memory_index
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the merge graph"""

        workflow = StateGraph(MergeState)

        workflow.add_node("render_transcript", self.render_transcript_node)
        workflow.add_node("summarize", self.summarize_node)
        workflow.add_node("resolve", self.resolve_node)
        workflow.add_node("inject", self.inject_node)
        workflow.add_node("store_memory", self.store_memory_node)

        workflow.set_entry_point("render_transcript")
        workflow.add_edge("render_transcript", "summarize")
        workflow.add_edge("summarize", "resolve")
        workflow.add_edge("resolve", "inject")

        workflow.add_conditional_edges(
            "inject",
            self.route_memory_storage,
            {
                "store": "store_memory",
                "skip": END
            }
        )
        workflow.add_edge("store_memory", END)

        return workflow.compile()

    async def merge(self, subchat_id: str, user_id: str) -> MergeResult:
        """Merge a subchat back into its parent conversation"""

        logger.info("Starting subchat merge process", subchat_id=subchat_id, user_id=user_id)

        subchat = await self.conversation_store.get_subchat(subchat_id)
        if subchat is None or subchat.user_id != user_id:
            raise NotFoundError("Sub-chat not found or access denied", code="SUBCHAT_NOT_FOUND")

        if subchat.status == SubchatStatus.RESOLVED:
            raise MergeRejected("Sub-chat has already been resolved", code="SUBCHAT_ALREADY_RESOLVED")

        if subchat.status == SubchatStatus.CANCELLED:
            raise MergeRejected("Cannot merge a cancelled sub-chat", code="SUBCHAT_CANCELLED")

        transcript = await self.message_store.list_messages(subchat.id)
        if not transcript:
            raise MergeRejected("Cannot merge sub-chat with no messages", code="EMPTY_TRANSCRIPT")

        initial_state: MergeState = {
            "subchat": subchat,
            "user": await self.conversation_store.get_user(user_id),
            "transcript": transcript,
            "transcript_text": "",
            "summary": None,
            "summary_parsed": False,
            "injected_message": None,
            "marker_message": None,
            "memory_stored": False,
            "warnings": [],
        }

        final_state = await self.workflow.ainvoke(initial_state)

        logger.info(
            "Subchat merge completed successfully",
            subchat_id=subchat_id,
            user_id=user_id,
            summary_parsed=final_state["summary_parsed"],
            memory_stored=final_state["memory_stored"]
        )

        return MergeResult(
            subchat=final_state["subchat"],
            summary=final_state["summary"],
            injected_message=final_state["injected_message"],
            marker_message=final_state["marker_message"],
            memory_stored=final_state["memory_stored"],
            warnings=final_state["warnings"]
        )

    async def render_transcript_node(self, state: MergeState) -> dict:
        transcript_text = render_transcript(state["transcript"])

        logger.info(
            "Generated transcript for subchat",
            subchat_id=state["subchat"].id,
            transcript_length=len(transcript_text)
        )
        return {"transcript_text": transcript_text}

    async def summarize_node(self, state: MergeState) -> dict:
        """Structured summary; a malformed response degrades instead of failing"""

        outcome = await self.provider.summarize_structured(state["transcript_text"])
        summary = outcome.resolve()

        logger.info(
            "Generated summary for subchat",
            subchat_id=state["subchat"].id,
            outcome=outcome.kind,
            summary_length=len(summary.summary),
            actions_count=len(summary.actions),
            artifacts_count=len(summary.artifacts),
            keywords_count=len(summary.keywords)
        )
        return {"summary": summary, "summary_parsed": outcome.kind == "parsed"}

    async def resolve_node(self, state: MergeState) -> dict:
        subchat = state["subchat"]
        subchat.resolve(state["summary"].summary)

        try:
            subchat = await self.conversation_store.save_subchat(subchat)
        except Exception as e:
            logger.error("Failed to resolve subchat", subchat_id=subchat.id, error=str(e))
            raise FatalError(f"Failed to resolve sub-chat: {e}", code="MERGE_FAILED") from e

        logger.info("Updated subchat status to resolved", subchat_id=subchat.id, resolved_at=subchat.resolved_at)
        return {"subchat": subchat}

    async def inject_node(self, state: MergeState) -> dict:
        """Append the summary to the parent, followed by its system marker"""

        subchat = state["subchat"]
        summary = state["summary"]
        content = format_injection(summary)

        marker = SubchatSummaryMarker(
            subchat_id=subchat.id,
            title=subchat.title,
            summary=summary.summary,
            actions=summary.actions,
            artifacts=summary.artifacts,
            keywords=summary.keywords,
            question_count=sum(1 for m in state["transcript"] if m.role == MessageRole.USER),
            merged_at=subchat.resolved_at
        )

        # The summary reads as an ordinary reply; the marker feeds the subchat tier only
        message = Message(
            conversation_id=subchat.conversation_id,
            role=MessageRole.ASSISTANT,
            content=content,
            metadata=MessageMetadata(
                tokens=estimate_tokens(content),
                from_subchat=True,
                subchat_id=subchat.id
            )
        )
        marker_content = f"{SUBCHAT_SUMMARY_TAG} {subchat.title}: {summary.summary}"
        marker_message = Message(
            conversation_id=subchat.conversation_id,
            role=MessageRole.SYSTEM,
            content=marker_content,
            metadata=MessageMetadata(
                tokens=estimate_tokens(marker_content),
                from_subchat=True,
                subchat_id=subchat.id,
                subchat_marker=marker
            )
        )

        try:
            injected = await self.message_store.append(message)
            marker_message = await self.message_store.append(marker_message)
        except Exception as e:
            logger.error("Failed to inject summary message", subchat_id=subchat.id, error=str(e))
            raise FatalError(f"Failed to inject sub-chat summary: {e}", code="MERGE_FAILED") from e

        try:
            await self.conversation_store.touch_conversation(subchat.conversation_id)
        except Exception as e:
            logger.warning("Failed to update conversation timestamp", conversation_id=subchat.conversation_id, error=str(e))

        logger.info(
            "Created injected message in parent conversation",
            subchat_id=subchat.id,
            conversation_id=subchat.conversation_id,
            message_id=injected.id,
            marker_message_id=marker_message.id
        )
        return {"injected_message": injected, "marker_message": marker_message}

    def route_memory_storage(self, state: MergeState) -> Literal["store", "skip"]:
        """Store only for opted-in users, memory-enabled subchats and a live index"""

        subchat = state["subchat"]
        user = state["user"]

        if (
            subchat.include_in_memory
            and user is not None
            and user.memory_opt_in
            and self.memory_index is not None
            and self.memory_index.is_available
        ):
            return "store"

        logger.info(
            "Memory storage skipped",
            subchat_id=subchat.id,
            include_in_memory=subchat.include_in_memory,
            user_memory_opt_in=user.memory_opt_in if user else None,
            memory_index_available=self.memory_index.is_available if self.memory_index else False
        )
        return "skip"

    async def store_memory_node(self, state: MergeState) -> dict:
        subchat = state["subchat"]
        summary = state["summary"]

        entry = MemoryEntry(
            subchat_id=subchat.id,
            conversation_id=subchat.conversation_id,
            user_id=subchat.user_id,
            summary=summary.summary,
            keywords=summary.keywords,
            actions=summary.actions,
            artifacts=summary.artifacts,
            created_at=subchat.created_at,
            merged_at=subchat.resolved_at
        )

        try:
            stored = await self.memory_index.store_memory(entry)
        except Exception as e:
            logger.warning("Failed to store in memory, continuing with merge", subchat_id=subchat.id, error=str(e))
            stored = False

        if not stored:
            warning = PartialFailure("Sub-chat summary was not stored in memory", code="MEMORY_WRITE_FAILED")
            return {"memory_stored": False, "warnings": state["warnings"] + [warning.to_payload()]}

        return {"memory_stored": True}

    async def delete_memory(self, subchat_id: str, user_id: str) -> bool:
        """Remove a subchat's long-term memory entry"""

        subchat = await self.conversation_store.get_subchat(subchat_id)
        if subchat is None or subchat.user_id != user_id:
            raise NotFoundError("Sub-chat not found or access denied", code="SUBCHAT_NOT_FOUND")

        if self.memory_index is None:
            return False
        return await self.memory_index.delete(subchat_id)
