"""
Gap Advisor Backend — Conversation Store Unit Tests

Tests for conversations.py: get-or-create idempotency, append-only ordered
messages, validation, variant links, deletion.
"""

import asyncio

import pytest

from advisor import conversations
from advisor.conversations import InvalidInput, NotFound
from advisor.config import settings
from advisor.models import AssistantMessageMetadata, TokenUsage


def assistant_meta() -> AssistantMessageMetadata:
    return AssistantMessageMetadata(
        processing_time_ms=120,
        tokens_used=TokenUsage(input=60, output=40, total=100),
        provider="gemini/gemini-2.5-flash",
    )


# -----------------------------------------------------------------------------
# get_or_create
# -----------------------------------------------------------------------------


class TestGetOrCreate:
    """Tests for conversation identity."""

    @pytest.mark.asyncio
    async def test_creates_on_first_access(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")

        assert conversation.analysis_id == "analysis-1"
        assert conversation.user_id == "user-1"
        assert conversation.variant_ids == []
        assert len(mock_db["conversations"]) == 1

    @pytest.mark.asyncio
    async def test_returns_same_conversation_on_repeat(self, mock_db):
        first = await conversations.get_or_create("analysis-1", "user-1")
        second = await conversations.get_or_create("analysis-1", "user-1")

        assert first.id == second.id
        assert len(mock_db["conversations"]) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one_conversation(self, mock_db):
        results = await asyncio.gather(*[
            conversations.get_or_create("analysis-1", "user-1") for _ in range(10)
        ])

        assert len({c.id for c in results}) == 1
        assert len(mock_db["conversations"]) == 1

    @pytest.mark.asyncio
    async def test_different_users_get_different_conversations(self, mock_db):
        a = await conversations.get_or_create("analysis-1", "user-1")
        b = await conversations.get_or_create("analysis-1", "user-2")

        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_get_unknown_conversation_raises(self, mock_db):
        with pytest.raises(NotFound):
            await conversations.get_conversation("conv-missing")


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


class TestMessages:
    """Tests for message append and retrieval."""

    @pytest.mark.asyncio
    async def test_user_message_is_stripped_and_tagged(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        message = await conversations.add_user_message(conversation.id, "  How big is the market?  ")

        assert message.content == "How big is the market?"
        assert message.role == "user"
        assert message.position == 0
        assert message.metadata.kind == "user"
        assert message.metadata.char_count == len("How big is the market?")

    @pytest.mark.asyncio
    async def test_assistant_metadata_round_trips(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        await conversations.add_user_message(conversation.id, "Question?")
        message = await conversations.add_assistant_message(conversation.id, "Answer.", assistant_meta())

        assert message.position == 1
        assert message.metadata.kind == "assistant"
        assert message.metadata.tokens_used.total == 100
        assert message.metadata.provider == "gemini/gemini-2.5-flash"

    @pytest.mark.asyncio
    async def test_empty_message_rejected_without_write(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")

        with pytest.raises(InvalidInput):
            await conversations.add_user_message(conversation.id, "   ")

        assert mock_db["messages"] == {}

    @pytest.mark.asyncio
    async def test_oversized_message_rejected(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")

        with pytest.raises(InvalidInput, match="500"):
            await conversations.add_user_message(conversation.id, "a" * 501, max_length=500)

        assert mock_db["messages"] == {}

    @pytest.mark.asyncio
    async def test_append_to_unknown_conversation_raises(self, mock_db):
        with pytest.raises(NotFound):
            await conversations.add_user_message("conv-missing", "hello")

    @pytest.mark.asyncio
    async def test_history_is_chronological(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        for i in range(3):
            await conversations.add_user_message(conversation.id, f"Q{i}")
            await conversations.add_assistant_message(conversation.id, f"A{i}", assistant_meta())

        messages = await conversations.get_messages(conversation.id)

        assert [m.content for m in messages] == ["Q0", "A0", "Q1", "A1", "Q2", "A2"]
        assert [m.position for m in messages] == list(range(6))

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        for i in range(5):
            await conversations.add_user_message(conversation.id, f"Q{i}")

        messages = await conversations.get_messages(conversation.id, limit=2)

        assert [m.content for m in messages] == ["Q3", "Q4"]

    @pytest.mark.asyncio
    async def test_zero_limit_returns_nothing(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        await conversations.add_user_message(conversation.id, "Q")

        assert await conversations.get_messages(conversation.id, limit=0) == []

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_positions(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")

        await asyncio.gather(*[
            conversations.add_user_message(conversation.id, f"Q{i}") for i in range(8)
        ])
        messages = await conversations.get_messages(conversation.id)

        assert [m.position for m in messages] == list(range(8))

    @pytest.mark.asyncio
    async def test_lock_registries_empty_after_use(self, mock_db):
        await asyncio.gather(*[conversations.get_or_create("analysis-1", "user-1") for _ in range(3)])
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        await asyncio.gather(*[conversations.add_user_message(conversation.id, f"Q{i}") for i in range(3)])

        assert conversations._create_locks == {}
        assert conversations._append_locks == {}

    @pytest.mark.asyncio
    async def test_append_never_rewrites_earlier_messages(self, mock_db):
        conversation = await conversations.get_or_create("analysis-1", "user-1")
        await conversations.add_user_message(conversation.id, "first")
        before = await conversations.get_messages(conversation.id)

        await conversations.add_assistant_message(conversation.id, "second", assistant_meta())
        after = await conversations.get_messages(conversation.id)

        assert after[: len(before)] == before


# -----------------------------------------------------------------------------
# Variant links & deletion
# -----------------------------------------------------------------------------


class TestVariantLinks:
    """Tests for link_variant, list_variants, delete."""

    @pytest.mark.asyncio
    async def test_link_is_recorded_and_listed(self, mock_db):
        mock_db["analyses"]["analysis-9"] = {**mock_db["analyses"]["analysis-1"], "id": "analysis-9"}
        original = await conversations.get_or_create("analysis-1", "user-1")
        variant = await conversations.get_or_create("analysis-9", "user-1")

        link = await conversations.link_variant(original.id, variant.id, {"market": "Europe"})

        assert link.variant_conversation_id == variant.id
        assert link.modified_parameters == {"market": "Europe"}
        reloaded = await conversations.get_conversation(original.id)
        assert reloaded.variant_ids == [variant.id]

    @pytest.mark.asyncio
    async def test_link_is_idempotent(self, mock_db):
        original = await conversations.get_or_create("analysis-1", "user-1")
        variant = await conversations.get_or_create("analysis-1", "user-2")

        await conversations.link_variant(original.id, variant.id, {"market": "Europe"})
        await conversations.link_variant(original.id, variant.id, {"market": "Europe"})

        assert len(await conversations.list_variants(original.id)) == 1

    @pytest.mark.asyncio
    async def test_self_link_rejected(self, mock_db):
        original = await conversations.get_or_create("analysis-1", "user-1")

        with pytest.raises(InvalidInput):
            await conversations.link_variant(original.id, original.id, {"market": "Europe"})

    @pytest.mark.asyncio
    async def test_link_to_missing_conversation_raises(self, mock_db):
        original = await conversations.get_or_create("analysis-1", "user-1")

        with pytest.raises(NotFound):
            await conversations.link_variant(original.id, "conv-missing", {"market": "Europe"})

    @pytest.mark.asyncio
    async def test_delete_prunes_links_on_both_sides(self, mock_db):
        original = await conversations.get_or_create("analysis-1", "user-1")
        variant = await conversations.get_or_create("analysis-1", "user-2")
        await conversations.link_variant(original.id, variant.id, {"market": "Europe"})
        await conversations.add_user_message(variant.id, "hello")

        await conversations.delete(variant.id)

        assert (await conversations.get_conversation(original.id)).variant_ids == []
        assert mock_db["messages"] == {}
        with pytest.raises(NotFound):
            await conversations.get_conversation(variant.id)

    @pytest.mark.asyncio
    async def test_delete_unknown_raises(self, mock_db):
        with pytest.raises(NotFound):
            await conversations.delete("conv-missing")


# -----------------------------------------------------------------------------
# Message feedback
# -----------------------------------------------------------------------------


async def exchange(user_id: str = "user-1"):
    """One question and reply; returns (user message, assistant message)."""
    conversation = await conversations.get_or_create("analysis-1", user_id)
    question = await conversations.add_user_message(conversation.id, "How should I price this?")
    reply = await conversations.add_assistant_message(conversation.id, "Start at $0.18 per mailer.", assistant_meta())
    return question, reply


class TestMessageFeedback:
    """Tests for rating and reporting messages."""

    @pytest.mark.asyncio
    async def test_rating_is_stored(self, mock_db):
        _, reply = await exchange()

        feedback = await conversations.rate_message(reply.id, "user-1", 5, "  Spot on  ")

        assert (feedback.kind, feedback.rating, feedback.details) == ("rating", 5, "Spot on")
        assert len(mock_db["feedback"]) == 1

    @pytest.mark.asyncio
    async def test_rating_again_replaces(self, mock_db):
        _, reply = await exchange()

        first = await conversations.rate_message(reply.id, "user-1", 2)
        second = await conversations.rate_message(reply.id, "user-1", 4)

        assert first.id == second.id
        assert [row["rating"] for row in mock_db["feedback"].values()] == [4]

    @pytest.mark.asyncio
    async def test_rating_out_of_range(self, mock_db):
        _, reply = await exchange()

        with pytest.raises(InvalidInput):
            await conversations.rate_message(reply.id, "user-1", 0)
        assert mock_db["feedback"] == {}

    @pytest.mark.asyncio
    async def test_user_messages_cannot_be_rated(self, mock_db):
        question, _ = await exchange()

        with pytest.raises(InvalidInput):
            await conversations.rate_message(question.id, "user-1", 3)

    @pytest.mark.asyncio
    async def test_other_users_message_is_not_found(self, mock_db):
        _, reply = await exchange()

        with pytest.raises(NotFound):
            await conversations.rate_message(reply.id, "user-2", 1)
        with pytest.raises(NotFound):
            await conversations.report_message(reply.id, "user-2", "spam", "nope")

    @pytest.mark.asyncio
    async def test_unknown_message(self, mock_db):
        with pytest.raises(NotFound):
            await conversations.rate_message("msg-missing", "user-1", 3)

    @pytest.mark.asyncio
    async def test_report_is_stored(self, mock_db):
        _, reply = await exchange()

        feedback = await conversations.report_message(reply.id, "user-1", "inaccurate", "Prices are invented")

        assert (feedback.kind, feedback.category, feedback.reason) == ("report", "inaccurate", "Prices are invented")

    @pytest.mark.asyncio
    async def test_report_needs_a_reason(self, mock_db):
        _, reply = await exchange()

        with pytest.raises(InvalidInput):
            await conversations.report_message(reply.id, "user-1", "other", "   ")
        assert mock_db["feedback"] == {}

    @pytest.mark.asyncio
    async def test_daily_report_limit(self, mock_db, monkeypatch):
        monkeypatch.setattr(settings, "max_reports_per_day", 2)
        question, reply = await exchange()
        await conversations.report_message(question.id, "user-1", "other", "Duplicate question")
        await conversations.report_message(reply.id, "user-1", "harmful", "Bad advice")

        with pytest.raises(InvalidInput, match="maximum number of reports"):
            await conversations.report_message(reply.id, "user-1", "harmful", "Still bad")

        assert len(mock_db["feedback"]) == 2
