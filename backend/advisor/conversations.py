"""
Gap Advisor Backend — Conversation Store

Identity and lifecycle of conversations, their append-only messages, variant
links and message feedback. Persistence goes through db.py; this module owns the
rules: get-or-create idempotency, input validation, ordered appends, link pruning.
"""

from datetime import datetime, timedelta, timezone

from advisor import db, locks
from advisor.config import log, settings
from advisor.models import (
    AssistantMessageMetadata,
    Conversation,
    Message,
    MessageFeedback,
    UserMessageMetadata,
    VariantLink,
)


class NotFound(Exception):
    """Referenced conversation or analysis does not exist."""

    pass


class Forbidden(Exception):
    """The analysis belongs to another user."""

    pass


class InvalidInput(Exception):
    """Empty or oversized message, self-link, malformed export format."""

    pass


# Per-key locks. Storage constraints make writes safe across processes; these
# keep a single process from racing itself (duplicate inserts, position clashes).
_create_locks: dict = {}
_append_locks: dict = {}


async def _to_conversation(row: dict) -> Conversation:
    links = await db.get_variant_links(str(row["id"]))
    return Conversation(
        id=str(row["id"]),
        analysis_id=str(row["analysis_id"]),
        user_id=str(row["user_id"]),
        variant_ids=[str(link["variant_conversation_id"]) for link in links],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# -----------------------------------------------------------------------------
# Conversations
# -----------------------------------------------------------------------------


async def get_or_create(analysis_id: str, user_id: str) -> Conversation:
    """
    Return the conversation for (analysis_id, user_id), creating it on first access.

    Concurrent first calls for the same pair yield one row: callers in this
    process serialize on a per-pair lock, and the storage upsert ignores
    duplicates from other processes. Both paths re-read the winning row.
    """
    row = await db.get_conversation_by_analysis(analysis_id, user_id)
    if row is None:
        async with locks.hold(_create_locks, (analysis_id, user_id)):
            row = await db.get_conversation_by_analysis(analysis_id, user_id)
            if row is None:
                await db.insert_conversation(analysis_id, user_id)
                row = await db.get_conversation_by_analysis(analysis_id, user_id)
                if row is not None:
                    log("INFO", "conversation created", conversation_id=row["id"],
                        analysis_id=analysis_id, user_id=user_id)
    if row is None:
        raise NotFound(f"Conversation for analysis {analysis_id} could not be created")
    return await _to_conversation(row)


async def get_conversation(conversation_id: str) -> Conversation:
    """Load a conversation by id. Raises NotFound."""
    row = await db.get_conversation(conversation_id)
    if row is None:
        raise NotFound(f"Conversation {conversation_id} not found")
    return await _to_conversation(row)


async def delete(conversation_id: str) -> None:
    """Delete a conversation with its messages; variant links on either side are pruned."""
    await get_conversation(conversation_id)
    async with locks.hold(_append_locks, conversation_id):
        await db.delete_conversation(conversation_id)
    log("INFO", "conversation deleted", conversation_id=conversation_id)


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


def validate_message_text(text: str | None, max_length: int | None = None) -> str:
    """
    Normalize a user message. Returns the stripped text.
    Raises InvalidInput when empty or longer than max_length.
    """
    limit = max_length or settings.max_message_length
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidInput("Message content is required")
    if len(cleaned) > limit:
        raise InvalidInput(f"Message exceeds maximum length of {limit} characters")
    return cleaned


async def _append(conversation_id: str, role: str, content: str, metadata: dict) -> Message:
    async with locks.hold(_append_locks, conversation_id):
        position = await db.get_next_message_position(conversation_id)
        row = await db.insert_message(conversation_id, position, role, content, metadata)
    await db.touch_conversation(conversation_id)
    return Message.model_validate(row)


async def add_user_message(conversation_id: str, text: str, max_length: int | None = None) -> Message:
    """
    Append a user message.

    Raises:
        InvalidInput: Empty text or text over the length cap (nothing is written).
        NotFound: The conversation does not exist.
    """
    content = validate_message_text(text, max_length)
    if await db.get_conversation(conversation_id) is None:
        raise NotFound(f"Conversation {conversation_id} not found")
    metadata = UserMessageMetadata(char_count=len(content))
    message = await _append(conversation_id, "user", content, metadata.model_dump())
    log("INFO", "user message saved", conversation_id=conversation_id,
        message_id=message.id, position=message.position)
    return message


async def add_assistant_message(
    conversation_id: str,
    text: str,
    metadata: AssistantMessageMetadata,
) -> Message:
    """Append an assistant reply. Only called after a successful backend completion."""
    if await db.get_conversation(conversation_id) is None:
        raise NotFound(f"Conversation {conversation_id} not found")
    message = await _append(conversation_id, "assistant", text, metadata.model_dump())
    log("INFO", "assistant message saved", conversation_id=conversation_id,
        message_id=message.id, position=message.position,
        tokens_used=metadata.tokens_used.total)
    return message


async def get_messages(conversation_id: str, limit: int | None = None) -> list[Message]:
    """Full history, or the last `limit` messages, oldest first."""
    if limit is not None and limit <= 0:
        return []
    rows = await db.get_messages(conversation_id, limit=limit)
    return [Message.model_validate(r) for r in rows]


# -----------------------------------------------------------------------------
# Message Feedback
# -----------------------------------------------------------------------------


async def _owned_message(message_id: str, user_id: str) -> Message:
    """A message in one of the user's conversations. Raises NotFound otherwise."""
    row = await db.get_message(message_id)
    if row is None:
        raise NotFound(f"Message {message_id} not found")
    message = Message.model_validate(row)
    conversation = await db.get_conversation(message.conversation_id)
    if conversation is None or str(conversation["user_id"]) != user_id:
        raise NotFound(f"Message {message_id} not found")
    return message


async def rate_message(message_id: str, user_id: str, rating: int, feedback: str | None = None) -> MessageFeedback:
    """
    Rate an assistant reply from 1 to 5. Rating the same reply again replaces
    the earlier rating.

    Raises:
        NotFound: Unknown message, or not in one of the user's conversations.
        InvalidInput: Rating out of range, or the message is not an assistant reply.
    """
    if not 1 <= rating <= 5:
        raise InvalidInput("Rating must be between 1 and 5")
    message = await _owned_message(message_id, user_id)
    if message.role != "assistant":
        raise InvalidInput("Only assistant replies can be rated")
    row = await db.upsert_message_rating(message.id, user_id, rating, (feedback or "").strip() or None)
    log("INFO", "message rated", conversation_id=message.conversation_id, message_id=message.id,
        rating=rating, has_feedback=bool(feedback))
    return MessageFeedback.model_validate(row)


async def report_message(
    message_id: str,
    user_id: str,
    category: str,
    reason: str,
    details: str | None = None,
) -> MessageFeedback:
    """
    Flag a message for review.

    Raises:
        NotFound: Unknown message, or not in one of the user's conversations.
        InvalidInput: Empty reason, or the user filed max_reports_per_day
            reports in the last 24 hours.
    """
    reason = (reason or "").strip()
    if not reason:
        raise InvalidInput("A reason is required")
    message = await _owned_message(message_id, user_id)

    since = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    recent = await db.count_reports_since(user_id, since)
    if recent >= settings.max_reports_per_day:
        log("WARN", "report limit reached", user_id=user_id, reports=recent)
        raise InvalidInput(
            "You have exceeded the maximum number of reports. Please contact support "
            "if you believe this is an error."
        )

    row = await db.upsert_message_report(message.id, user_id, category, reason, (details or "").strip() or None)
    log("WARN", "message reported", conversation_id=message.conversation_id, message_id=message.id,
        category=category, role=message.role, preview=message.content[:200])
    return MessageFeedback.model_validate(row)


# -----------------------------------------------------------------------------
# Variant Links
# -----------------------------------------------------------------------------


async def link_variant(
    original_id: str,
    variant_id: str,
    modified_parameters: dict[str, str],
    variant_analysis_id: str | None = None,
) -> VariantLink:
    """
    Record original → variant. Linking the same pair again is a no-op and
    returns the existing link.
    """
    if original_id == variant_id:
        raise InvalidInput("A conversation cannot be its own variant")
    await get_conversation(original_id)
    await get_conversation(variant_id)

    existing = await _find_link(original_id, variant_id)
    if existing is not None:
        return existing

    await db.insert_variant_link(original_id, variant_id, modified_parameters, variant_analysis_id)
    await db.touch_conversation(original_id)
    log("INFO", "variant linked", conversation_id=original_id, variant_conversation_id=variant_id,
        parameters=",".join(sorted(modified_parameters)))
    link = await _find_link(original_id, variant_id)
    return link or VariantLink(
        original_conversation_id=original_id,
        variant_conversation_id=variant_id,
        variant_analysis_id=variant_analysis_id,
        modified_parameters=modified_parameters,
    )


async def list_variants(conversation_id: str) -> list[VariantLink]:
    """Outgoing links from a conversation, oldest first."""
    await get_conversation(conversation_id)
    return [_to_link(r) for r in await db.get_variant_links(conversation_id)]


async def _find_link(original_id: str, variant_id: str) -> VariantLink | None:
    for row in await db.get_variant_links(original_id):
        if str(row["variant_conversation_id"]) == variant_id:
            return _to_link(row)
    return None


def _to_link(row: dict) -> VariantLink:
    return VariantLink(
        original_conversation_id=str(row["original_conversation_id"]),
        variant_conversation_id=str(row["variant_conversation_id"]),
        variant_analysis_id=str(row["variant_analysis_id"]) if row.get("variant_analysis_id") else None,
        modified_parameters=row.get("modified_parameters") or {},
        created_at=row.get("created_at"),
    )
