from datetime import datetime

import pytest

from domain.context.context_assembler import ContextAssembler, ContextOptions
from domain.context.context_retriever import ContextRetriever
from domain.context.memory.memory_index import MemoryIndex
from domain.context.memory.vector_memory_store import InMemoryMemoryBackend
from domain.errors import FatalError, MergeRejected, NotFoundError
from domain.generation.summary import StructuredSummary
from domain.models.chat import Message, MessageRole, Subchat, SubchatStatus, User
from domain.orchestration.merge_pipeline import MergePipeline, format_injection, render_transcript
from infrastructure.config.settings import ContextLimits

STUB_SUMMARY = '{"summary":"Discussed X","actions":[],"artifacts":[],"keywords":["X","Y"]}'


async def make_subchat(conversation_store, message_store, conversation, contents=("what is X", "X is Y"), **kwargs):
    subchat = await conversation_store.save_subchat(Subchat(
        conversation_id=conversation.id,
        user_id=conversation.user_id,
        title="what is X",
        **kwargs
    ))
    for i, content in enumerate(contents):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        await message_store.append(Message(conversation_id=subchat.id, role=role, content=content))
    return subchat


@pytest.fixture
def pipeline_factory(message_store, conversation_store, make_provider):
    def build(memory_index=None, summary_response=STUB_SUMMARY):
        return MergePipeline(
            make_provider(summary_response=summary_response),
            message_store,
            conversation_store,
            memory_index=memory_index
        )
    return build


def test_render_transcript_format():
    messages = [
        Message(conversation_id="s", role=MessageRole.USER, content="what is X", created_at=datetime(2024, 1, 1, 10, 0)),
        Message(conversation_id="s", role=MessageRole.ASSISTANT, content="X is Y", created_at=datetime(2024, 1, 1, 10, 1)),
    ]

    assert render_transcript(messages) == (
        "[2024-01-01T10:00:00] User: what is X\n\n[2024-01-01T10:01:00] Assistant: X is Y"
    )


def test_format_injection_includes_only_non_empty_sections():
    content = format_injection(StructuredSummary(
        summary="Did things", actions=["a", "b"], artifacts=[], keywords=["k1", "k2"]
    ))

    assert content == (
        "## Sub-chat Summary\n\nDid things"
        "\n\n### Actions Taken\n1. a\n2. b"
        "\n\n### Key Topics\nk1, k2"
    )


async def test_merge_injects_summary_into_parent(pipeline_factory, conversation_store, message_store, conversation, text_memory_index):
    subchat = await make_subchat(conversation_store, message_store, conversation)

    result = await pipeline_factory(memory_index=text_memory_index).merge(subchat.id, conversation.user_id)

    assert "## Sub-chat Summary\n\nDiscussed X" in result.injected_message.content
    assert "Actions Taken" not in result.injected_message.content
    assert "### Key Topics\nX, Y" in result.injected_message.content

    parent = await message_store.list_messages(conversation.id)
    assert [m.id for m in parent] == [result.injected_message.id, result.marker_message.id]
    injected, marker = parent
    assert injected.role == MessageRole.ASSISTANT
    assert injected.metadata.from_subchat is True
    assert injected.is_marker is False

    assert marker.role == MessageRole.SYSTEM
    assert marker.content == "[SUBCHAT_SUMMARY] what is X: Discussed X"
    assert marker.metadata.subchat_marker.subchat_id == subchat.id
    assert marker.metadata.subchat_marker.keywords == ["X", "Y"]
    assert marker.metadata.subchat_marker.question_count == 1

    saved = await conversation_store.get_subchat(subchat.id)
    assert saved.status == SubchatStatus.RESOLVED
    assert saved.summary == "Discussed X"
    assert saved.resolved_at is not None

    assert result.memory_stored is True
    hits = await text_memory_index.search("discussed", conversation.user_id)
    assert [h.subchat_id for h in hits] == [subchat.id]


async def test_malformed_summary_degrades_instead_of_failing(pipeline_factory, conversation_store, message_store, conversation):
    subchat = await make_subchat(conversation_store, message_store, conversation)

    result = await pipeline_factory(summary_response="Plain prose about caching strategies").merge(
        subchat.id, conversation.user_id
    )

    assert result.summary.summary == "Plain prose about caching strategies"
    assert result.summary.keywords == ["strategies", "caching", "plain", "prose", "about"]
    assert result.subchat.status == SubchatStatus.RESOLVED


async def test_memory_write_failure_keeps_merge(pipeline_factory, conversation_store, message_store, conversation, text_memory_index):
    async def broken_put(entry):
        raise ConnectionError("memory store went away")

    text_memory_index.backend.put = broken_put
    subchat = await make_subchat(conversation_store, message_store, conversation)

    result = await pipeline_factory(memory_index=text_memory_index).merge(subchat.id, conversation.user_id)

    assert result.memory_stored is False
    assert [w["code"] for w in result.warnings] == ["MEMORY_WRITE_FAILED"]
    assert (await conversation_store.get_subchat(subchat.id)).status == SubchatStatus.RESOLVED
    assert len(await message_store.list_messages(conversation.id)) == 2


async def test_unreachable_memory_index_skips_storage(pipeline_factory, conversation_store, message_store, conversation, unreachable_memory_index):
    subchat = await make_subchat(conversation_store, message_store, conversation)

    result = await pipeline_factory(memory_index=unreachable_memory_index).merge(subchat.id, conversation.user_id)

    assert result.memory_stored is False
    assert result.subchat.status == SubchatStatus.RESOLVED


async def test_memory_requires_user_opt_in(pipeline_factory, conversation_store, message_store, conversation, text_memory_index):
    await conversation_store.add_user(User(id=conversation.user_id, memory_opt_in=False))
    subchat = await make_subchat(conversation_store, message_store, conversation)

    result = await pipeline_factory(memory_index=text_memory_index).merge(subchat.id, conversation.user_id)

    assert result.memory_stored is False
    assert (await text_memory_index.stats(conversation.user_id)).total_memories == 0


async def test_memory_respects_subchat_exclusion(pipeline_factory, conversation_store, message_store, conversation, text_memory_index):
    subchat = await make_subchat(conversation_store, message_store, conversation, include_in_memory=False)

    result = await pipeline_factory(memory_index=text_memory_index).merge(subchat.id, conversation.user_id)

    assert result.memory_stored is False


async def test_missing_or_foreign_subchat_is_not_found(pipeline_factory, conversation_store, message_store, conversation):
    subchat = await make_subchat(conversation_store, message_store, conversation)
    pipeline = pipeline_factory()

    with pytest.raises(NotFoundError) as missing:
        await pipeline.merge("does-not-exist", conversation.user_id)
    with pytest.raises(NotFoundError):
        await pipeline.merge(subchat.id, "another-user")

    assert missing.value.code == "SUBCHAT_NOT_FOUND"


@pytest.mark.parametrize("status, code", [
    (SubchatStatus.RESOLVED, "SUBCHAT_ALREADY_RESOLVED"),
    (SubchatStatus.CANCELLED, "SUBCHAT_CANCELLED"),
])
async def test_closed_subchat_is_rejected(pipeline_factory, conversation_store, message_store, conversation, status, code):
    subchat = await make_subchat(conversation_store, message_store, conversation, status=status)

    with pytest.raises(MergeRejected) as excinfo:
        await pipeline_factory().merge(subchat.id, conversation.user_id)

    assert excinfo.value.code == code
    assert await message_store.list_messages(conversation.id) == []


async def test_empty_transcript_is_rejected(pipeline_factory, conversation_store, message_store, conversation):
    subchat = await make_subchat(conversation_store, message_store, conversation, contents=())

    with pytest.raises(MergeRejected) as excinfo:
        await pipeline_factory().merge(subchat.id, conversation.user_id)

    assert excinfo.value.code == "EMPTY_TRANSCRIPT"


async def test_summarizer_without_response_fails_before_resolving(pipeline_factory, conversation_store, message_store, conversation):
    subchat = await make_subchat(conversation_store, message_store, conversation)

    with pytest.raises(FatalError) as excinfo:
        await pipeline_factory(summary_response="").merge(subchat.id, conversation.user_id)

    assert excinfo.value.code == "SUMMARY_GENERATION_FAILED"
    assert (await conversation_store.get_subchat(subchat.id)).status == SubchatStatus.ACTIVE


async def test_second_merge_is_rejected_and_injects_once(pipeline_factory, conversation_store, message_store, conversation):
    subchat = await make_subchat(conversation_store, message_store, conversation)
    pipeline = pipeline_factory()

    await pipeline.merge(subchat.id, conversation.user_id)
    with pytest.raises(MergeRejected):
        await pipeline.merge(subchat.id, conversation.user_id)

    assert len(await message_store.list_messages(conversation.id)) == 2


@pytest.mark.parametrize("with_summaries", [False, True])
async def test_merged_summary_stays_in_recent_history(pipeline_factory, conversation_store, message_store, provider, conversation, with_summaries):
    subchat = await make_subchat(conversation_store, message_store, conversation)
    await pipeline_factory().merge(subchat.id, conversation.user_id)
    await message_store.append(Message(conversation_id=conversation.id, role=MessageRole.USER, content="what next?"))
    assembler = ContextAssembler(ContextRetriever(message_store, conversation_store, provider), ContextLimits())

    context = await assembler.assemble(conversation.id, "what next?", ContextOptions(
        enable_semantic=False,
        enable_subchat_summaries=with_summaries,
        enable_previous_knowledge=False
    ))

    recent = context.messages[:2]
    assert [m["role"] for m in recent] == ["assistant", "user"]
    assert recent[0]["content"].startswith("## Sub-chat Summary\n\nDiscussed X")
    assert context.metadata.recent_message_count == 2
    assert not any("[SUBCHAT_SUMMARY]" in m["content"] for m in context.messages)
    assert context.metadata.subchat_count == (1 if with_summaries else 0)
    assert len(context.messages) == (3 if with_summaries else 2)


async def test_delete_memory(pipeline_factory, conversation_store, message_store, conversation):
    index = MemoryIndex(InMemoryMemoryBackend(supports_vectors=False))
    await index.initialize()
    subchat = await make_subchat(conversation_store, message_store, conversation)
    pipeline = pipeline_factory(memory_index=index)
    await pipeline.merge(subchat.id, conversation.user_id)

    assert await pipeline.delete_memory(subchat.id, conversation.user_id) is True
    assert (await index.stats(conversation.user_id)).total_memories == 0
