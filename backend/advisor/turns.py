"""
Gap Advisor Backend — Turn Orchestrator

One advisory turn, end to end:
    owned analysis → tier → validate → safety screen → conversation → admit quota
    → save user message → build context → generate (timeout, one retry)
    → detect intent → save assistant message → suggestions

A turn is split in two phases so the HTTP layer can map admission failures to
status codes before it opens an SSE stream:
    begin_turn()   everything up to and including the saved user message
    answer_turn()  everything after it

If a turn ends (error, timeout, cancellation) without a saved assistant reply,
the quota slot taken at admission is released. The user message stays.
"""

import asyncio
import time
from dataclasses import dataclass, field

from advisor import analyses, context, conversations, db, llm, prompts, quota, safety, suggestions, variants
from advisor.config import TIER_LIMITS, log, normalize_tier, settings
from advisor.conversations import InvalidInput, NotFound
from advisor.models import (
    Analysis,
    AssistantMessageEvent,
    AssistantMessageMetadata,
    Conversation,
    Message,
    QuotaStatus,
    RemainingQuestions,
    SuggestedQuestion,
    SuggestionsEvent,
    TurnCompleteEvent,
    TurnResult,
    TurnStartedEvent,
    VariantProposal,
    VariantProposedEvent,
)


class TurnInProgress(Exception):
    """Another turn is already running on this conversation."""

    pass


@dataclass
class TurnClaim:
    """Marks a conversation as busy. Holds the admitted turn once there is one."""
    claimed_at: float = field(default_factory=time.monotonic)
    pending: "PendingTurn | None" = None


# In-memory dedup tracker (single-instance assumption), keyed by conversation id
_active_turns: dict[str, TurnClaim] = {}


@dataclass
class PendingTurn:
    """State carried from begin_turn() to answer_turn()."""
    analysis: Analysis
    conversation: Conversation
    user_id: str
    tier: str
    quota: QuotaStatus
    user_message: Message
    history: list[Message]                        # stored messages before user_message
    assistant_message: Message | None = None
    variant_proposal: VariantProposal | None = None
    suggestions: list[SuggestedQuestion] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)
    finished: bool = False

    def result(self) -> TurnResult:
        return TurnResult(
            conversation=self.conversation,
            user_message=self.user_message,
            assistant_message=self.assistant_message,
            quota=self.quota,
            variant_proposal=self.variant_proposal,
            suggestions=self.suggestions,
        )


async def _claim(conversation_id: str) -> TurnClaim:
    """
    Mark the conversation busy. A claim older than turn_claim_timeout_seconds
    belongs to a turn whose stream never ran; it is finished and taken over.
    """
    stale = _active_turns.get(conversation_id)
    if stale is not None:
        age = time.monotonic() - stale.claimed_at
        if age < settings.turn_claim_timeout_seconds:
            raise TurnInProgress(f"A reply is already being generated for conversation {conversation_id}")
        log("WARN", "abandoned turn claim taken over", conversation_id=conversation_id, age_seconds=int(age))
    claim = _active_turns[conversation_id] = TurnClaim()
    if stale is not None and stale.pending is not None:
        try:
            await finish_turn(stale.pending)
        except BaseException:
            _drop_claim(conversation_id, claim)
            raise
    return claim


def _drop_claim(conversation_id: str, claim: TurnClaim) -> None:
    if _active_turns.get(conversation_id) is claim:
        del _active_turns[conversation_id]


def max_message_length(tier: str) -> int:
    """Tier cap, never above the global hard cap."""
    return min(TIER_LIMITS[normalize_tier(tier)]["max_message_length"], settings.max_message_length)


async def _load_tier(user_id: str) -> str:
    return normalize_tier(await db.get_user_tier(user_id))


# -----------------------------------------------------------------------------
# Phase 1: admission
# -----------------------------------------------------------------------------


async def begin_turn(analysis_id: str, user_id: str, text: str) -> PendingTurn:
    """
    Admit a new user question and persist it.

    Raises:
        NotFound: Unknown analysis.
        Forbidden: The analysis belongs to another user.
        InvalidInput: Empty, over the tier's length cap, or refused by the
            safety checks (RejectedInput). Nothing is written.
        TurnInProgress: A turn is already running on this conversation.
        QuotaExceeded: No questions left.
    """
    analysis = await analyses.get_owned_analysis(analysis_id, user_id)
    tier = await _load_tier(user_id)
    limit = max_message_length(tier)
    content = conversations.validate_message_text(text, limit)
    content = safety.screen_user_message(content, user_id=user_id, analysis_id=analysis.id)

    conversation = await conversations.get_or_create(analysis.id, user_id)
    claim = await _claim(conversation.id)
    admitted = False
    try:
        history = await conversations.get_messages(conversation.id)
        status = await quota.admit(user_id, tier, analysis.id)
        admitted = True
        user_message = await conversations.add_user_message(conversation.id, content, limit)
    except BaseException:
        _drop_claim(conversation.id, claim)
        if admitted:
            await quota.release(user_id, analysis.id)
        raise

    log("INFO", "turn started", conversation_id=conversation.id, analysis_id=analysis.id,
        tier=tier, remaining=status.remaining)
    claim.pending = PendingTurn(
        analysis=analysis,
        conversation=conversation,
        user_id=user_id,
        tier=tier,
        quota=status,
        user_message=user_message,
        history=history,
    )
    return claim.pending


async def begin_retry(conversation_id: str, user_id: str) -> PendingTurn:
    """
    Re-admit the last, unanswered user message of a conversation.
    The user message is not stored again; quota is admitted again.

    Raises:
        NotFound: Unknown conversation, or it belongs to another user.
        InvalidInput: The last message already has a reply.
    """
    conversation = await conversations.get_conversation(conversation_id)
    if conversation.user_id != user_id:
        raise NotFound(f"Conversation {conversation_id} not found")
    analysis = await analyses.get_analysis(conversation.analysis_id)
    tier = await _load_tier(user_id)

    claim = await _claim(conversation.id)
    try:
        messages = await conversations.get_messages(conversation.id)
        if not messages or messages[-1].role != "user":
            raise InvalidInput("There is no unanswered message to retry")
        status = await quota.admit(user_id, tier, analysis.id)
    except BaseException:
        _drop_claim(conversation.id, claim)
        raise

    log("INFO", "turn retry started", conversation_id=conversation.id, analysis_id=analysis.id,
        message_id=messages[-1].id)
    claim.pending = PendingTurn(
        analysis=analysis,
        conversation=conversation,
        user_id=user_id,
        tier=tier,
        quota=status,
        user_message=messages[-1],
        history=messages[:-1],
    )
    return claim.pending


# -----------------------------------------------------------------------------
# Phase 2: answer
# -----------------------------------------------------------------------------


async def _generate_with_retry(
    messages: list[dict],
    timeout_seconds: float,
    conversation_id: str,
) -> llm.Completion:
    """One automatic retry with backoff for transient backend errors."""
    try:
        return await llm.generate(messages, timeout_seconds=timeout_seconds, conversation_id=conversation_id)
    except llm.LLMError as e:
        log("WARN", "generation failed, retrying once", conversation_id=conversation_id,
            error=str(e), backoff_seconds=settings.llm_retry_backoff_seconds)
        await asyncio.sleep(settings.llm_retry_backoff_seconds)
        return await llm.generate(messages, timeout_seconds=timeout_seconds, conversation_id=conversation_id)


async def answer_turn(pending: PendingTurn, timeout_seconds: float | None = None) -> TurnResult:
    """
    Generate and persist the assistant reply for an admitted turn.
    Fills pending.assistant_message / variant_proposal / suggestions.

    Raises:
        BackendUnavailable, BackendTimeout: Both attempts failed.
    """
    timeout = settings.llm_turn_timeout_seconds if timeout_seconds is None else timeout_seconds
    conversation_id = pending.conversation.id
    question = pending.user_message.content

    window = await context.build_context(pending.analysis, pending.history, question)
    completion = await _generate_with_retry(prompts.build_advisor_messages(window), timeout, conversation_id)

    detection = await variants.detect_reanalysis_intent(question, pending.analysis, conversation_id=conversation_id)
    pending.variant_proposal = variants.to_proposal(detection, pending.analysis)

    metadata = AssistantMessageMetadata(
        processing_time_ms=completion.processing_time_ms,
        tokens_used=completion.tokens_used,
        provider=completion.provider,
        context_tokens=window.total_tokens,
        reanalysis_confidence=detection.confidence,
    )
    pending.assistant_message = await conversations.add_assistant_message(
        conversation_id, completion.content, metadata,
    )
    pending.suggestions = suggestions.generate_suggestions(
        pending.analysis,
        pending.history + [pending.user_message, pending.assistant_message],
    )

    log("INFO", "turn completed", conversation_id=conversation_id, analysis_id=pending.analysis.id,
        duration_ms=int((time.perf_counter() - pending.started_at) * 1000),
        tokens_used=completion.tokens_used.total, variant_proposed=pending.variant_proposal is not None)
    return pending.result()


async def finish_turn(pending: PendingTurn) -> None:
    """Called once per admitted turn; later calls are no-ops. Releases quota if no reply was saved."""
    if pending.finished:
        return
    pending.finished = True
    claim = _active_turns.get(pending.conversation.id)
    if claim is not None and claim.pending is pending:
        del _active_turns[pending.conversation.id]
    if pending.assistant_message is None:
        log("WARN", "turn ended without a reply", conversation_id=pending.conversation.id)
        await quota.release(pending.user_id, pending.analysis.id)


async def stream_answer(pending: PendingTurn, timeout_seconds: float | None = None):
    """Async generator yielding the SSE event models of an admitted turn."""
    try:
        yield TurnStartedEvent(
            conversation_id=pending.conversation.id,
            message=pending.user_message,
            quota=pending.quota,
        )
        await answer_turn(pending, timeout_seconds)
        yield AssistantMessageEvent(message=pending.assistant_message)
        if pending.variant_proposal is not None:
            yield VariantProposedEvent(proposal=pending.variant_proposal)
        yield SuggestionsEvent(suggestions=pending.suggestions)
        yield TurnCompleteEvent(
            conversation_id=pending.conversation.id,
            quota=RemainingQuestions(
                remaining=pending.quota.remaining,
                limit=pending.quota.limit,
                unlimited=pending.quota.unlimited,
            ),
        )
    finally:
        await finish_turn(pending)


# -----------------------------------------------------------------------------
# Public entry points
# -----------------------------------------------------------------------------


async def submit_turn(
    analysis_id: str,
    user_id: str,
    text: str,
    timeout_seconds: float | None = None,
) -> TurnResult:
    """Run a full turn and return its result."""
    pending = await begin_turn(analysis_id, user_id, text)
    try:
        return await answer_turn(pending, timeout_seconds)
    finally:
        await finish_turn(pending)


async def retry_turn(
    conversation_id: str,
    user_id: str,
    timeout_seconds: float | None = None,
) -> TurnResult:
    """Answer the last unanswered user message again."""
    pending = await begin_retry(conversation_id, user_id)
    try:
        return await answer_turn(pending, timeout_seconds)
    finally:
        await finish_turn(pending)
