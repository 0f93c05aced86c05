"""
Gap Advisor Backend — Conversation API (/api/conversations)

Advisory turns stream over SSE; everything else is plain JSON.
The caller's identity comes from the X-User-Id header (see auth.py).
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from advisor import analyses, conversations, db, export, quota, suggestions, turns, variants
from advisor.auth import require_user_id
from advisor.config import generate_error_code, log
from advisor.conversations import Forbidden, InvalidInput, NotFound
from advisor.db import DatabaseError
from advisor.llm import BackendTimeout, LLMError
from advisor.models import (
    ComparisonResponse,
    Conversation,
    ConversationDetailResponse,
    DetectionResponse,
    DetectRequest,
    ErrorEvent,
    ExportRequest,
    Message,
    MessageFeedback,
    MessageRequest,
    RateRequest,
    RemainingQuestions,
    ReportRequest,
    SuggestedQuestion,
    TurnResult,
    VariantBranch,
    VariantLink,
    VariantRequest,
)
from advisor.quota import QuotaExceeded
from advisor.safety import RejectedInput
from advisor.turns import TurnInProgress

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

# Per-IP rate limiter, applied to the turn endpoint
limiter = Limiter(key_func=get_remote_address)

ENGINE_ERRORS = (NotFound, Forbidden, InvalidInput, QuotaExceeded, TurnInProgress, LLMError, DatabaseError)


def _format_sse_event(event) -> str:
    """Serialize a Pydantic event model as an SSE string. Format: 'data: {json}\\n\\n'"""
    return f"data: {event.model_dump_json()}\n\n"


def _http_error(e: Exception, **context) -> HTTPException:
    """Map an engine error onto an HTTPException with a logged reference code."""
    code = getattr(e, "error_code", None) or generate_error_code()
    detail: dict = {"message": str(e), "error_code": code}

    if isinstance(e, NotFound):
        status = 404
    elif isinstance(e, Forbidden):
        status = 403
        detail["message"] = "You do not have access to this analysis."
    elif isinstance(e, InvalidInput):
        status = 400
        if isinstance(e, RejectedInput):
            detail["reason_code"] = e.code
    elif isinstance(e, QuotaExceeded):
        status = 429
        detail.update({
            "message": "You've reached your question limit for this analysis. Upgrade to keep the conversation going.",
            "remaining": 0,
            "limit": e.status.limit,
            "tier": e.status.tier,
            "upgrade_required": True,
        })
    elif isinstance(e, TurnInProgress):
        status = 409
    elif isinstance(e, BackendTimeout):
        status = 504
        detail["message"] = "The advisor took too long to respond. Please try again."
    elif isinstance(e, LLMError):
        status = 503
        detail["message"] = "The advisor is temporarily unavailable. Please try again."
    else:
        status = 503
        detail["message"] = "Something went wrong loading your conversation. Please try again."

    level = "ERROR" if status >= 500 else "INFO"
    log(level, "request failed", status=status, error_type=type(e).__name__, error=str(e),
        error_code=code, **context)
    return HTTPException(status_code=status, detail=detail)


def _error_event(e: Exception, conversation_id: str) -> ErrorEvent:
    code = generate_error_code()
    if isinstance(e, BackendTimeout):
        message = "The advisor took too long to respond. Your question was saved; please retry."
    elif isinstance(e, LLMError):
        message = "The advisor is temporarily unavailable. Your question was saved; please retry."
    else:
        message = "Something went wrong generating a reply. Please try again."
    log("ERROR", "turn failed", conversation_id=conversation_id, error_type=type(e).__name__,
        error=str(e), error_code=code)
    return ErrorEvent(message=message, recoverable=True, error_code=code)


async def _owned_conversation(conversation_id: str, user_id: str) -> Conversation:
    conversation = await conversations.get_conversation(conversation_id)
    if conversation.user_id != user_id:
        raise NotFound(f"Conversation {conversation_id} not found")
    return conversation


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.get("/quota/{analysis_id}", response_model=RemainingQuestions)
async def get_quota(analysis_id: str, user_id: str = Depends(require_user_id)) -> RemainingQuestions:
    """
    GET /api/conversations/quota/{analysis_id}

    Remaining questions for this user on this analysis (-1 = unlimited).
    """
    try:
        await analyses.get_owned_analysis(analysis_id, user_id)
        tier = await db.get_user_tier(user_id)
        return await quota.get_remaining_questions(user_id, analysis_id, tier)
    except ENGINE_ERRORS as e:
        raise _http_error(e, analysis_id=analysis_id) from e


@router.get("/{analysis_id}", response_model=ConversationDetailResponse)
async def get_conversation(analysis_id: str, user_id: str = Depends(require_user_id)) -> ConversationDetailResponse:
    """
    GET /api/conversations/{analysis_id}

    Get (or start) the user's conversation about an analysis, with its history,
    suggested questions and remaining quota.
    """
    try:
        analysis = await analyses.get_owned_analysis(analysis_id, user_id)
        conversation = await conversations.get_or_create(analysis.id, user_id)
        messages = await conversations.get_messages(conversation.id)
        tier = await db.get_user_tier(user_id)
        remaining = await quota.get_remaining_questions(user_id, analysis.id, tier)
    except ENGINE_ERRORS as e:
        raise _http_error(e, analysis_id=analysis_id) from e
    return ConversationDetailResponse(
        conversation=conversation,
        messages=messages,
        suggestions=suggestions.generate_suggestions(analysis, messages),
        quota=remaining,
    )


@router.post("/{analysis_id}/messages")
@limiter.limit("20/minute")
async def post_message(
    analysis_id: str,
    body: MessageRequest,
    request: Request,
    user_id: str = Depends(require_user_id),
) -> StreamingResponse:
    """
    POST /api/conversations/{analysis_id}/messages

    Ask a question. Admission errors are plain HTTP errors (404, 403, 400, 409, 429);
    once admitted, the reply streams as SSE:
    turn_started → assistant_message → [variant_proposed] → suggestions → turn_complete,
    or an error event when generation fails.
    """
    try:
        pending = await turns.begin_turn(analysis_id, user_id, body.content)
    except ENGINE_ERRORS as e:
        raise _http_error(e, analysis_id=analysis_id) from e

    conversation_id = pending.conversation.id

    async def stream():
        try:
            async for event in turns.stream_answer(pending):
                yield _format_sse_event(event)
                log("INFO", "sse event sent", conversation_id=conversation_id, event_type=event.type)
        except ENGINE_ERRORS as e:
            yield _format_sse_event(_error_event(e, conversation_id))

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/by-id/{conversation_id}/retry", response_model=TurnResult)
async def retry_message(conversation_id: str, user_id: str = Depends(require_user_id)) -> TurnResult:
    """
    POST /api/conversations/by-id/{conversation_id}/retry

    Answer the last unanswered question again (after a timeout or backend outage).
    """
    try:
        return await turns.retry_turn(conversation_id, user_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e


@router.get("/by-id/{conversation_id}/messages", response_model=list[Message])
async def get_messages(
    conversation_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    user_id: str = Depends(require_user_id),
) -> list[Message]:
    """
    GET /api/conversations/by-id/{conversation_id}/messages?limit=N

    Full history, or the last N messages, oldest first.
    """
    try:
        await _owned_conversation(conversation_id, user_id)
        return await conversations.get_messages(conversation_id, limit=limit)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e


@router.get("/by-id/{conversation_id}/suggestions", response_model=list[SuggestedQuestion])
async def get_suggestions(conversation_id: str, user_id: str = Depends(require_user_id)) -> list[SuggestedQuestion]:
    """GET /api/conversations/by-id/{conversation_id}/suggestions"""
    try:
        conversation = await _owned_conversation(conversation_id, user_id)
        analysis = await analyses.get_analysis(conversation.analysis_id)
        messages = await conversations.get_messages(conversation_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e
    return suggestions.generate_suggestions(analysis, messages)


@router.post("/by-id/{conversation_id}/variants/detect", response_model=DetectionResponse)
async def detect_variant(
    conversation_id: str,
    body: DetectRequest,
    user_id: str = Depends(require_user_id),
) -> DetectionResponse:
    """
    POST /api/conversations/by-id/{conversation_id}/variants/detect

    Classify a message as a re-analysis request. Never creates anything.
    """
    try:
        conversation = await _owned_conversation(conversation_id, user_id)
        analysis = await analyses.get_analysis(conversation.analysis_id)
        detection = await variants.detect_reanalysis_intent(body.content, analysis, conversation_id=conversation_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e
    return DetectionResponse(detection=detection, proposal=variants.to_proposal(detection, analysis))


@router.post("/by-id/{conversation_id}/variants", response_model=VariantBranch, status_code=201)
async def create_variant(
    conversation_id: str,
    body: VariantRequest,
    user_id: str = Depends(require_user_id),
) -> VariantBranch:
    """
    POST /api/conversations/by-id/{conversation_id}/variants

    The user confirmed a proposal: create the variant analysis and its conversation.
    """
    try:
        return await variants.confirm_and_branch(conversation_id, user_id, body.modified_parameters)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e


@router.get("/by-id/{conversation_id}/variants", response_model=list[VariantLink])
async def list_variants(conversation_id: str, user_id: str = Depends(require_user_id)) -> list[VariantLink]:
    """GET /api/conversations/by-id/{conversation_id}/variants"""
    try:
        await _owned_conversation(conversation_id, user_id)
        return await conversations.list_variants(conversation_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e


@router.get(
    "/by-id/{conversation_id}/variants/{variant_conversation_id}/compare",
    response_model=ComparisonResponse,
)
async def compare_variant(
    conversation_id: str,
    variant_conversation_id: str,
    user_id: str = Depends(require_user_id),
) -> ComparisonResponse:
    """
    GET /api/conversations/by-id/{conversation_id}/variants/{variant_conversation_id}/compare

    Side-by-side comparison of the original analysis and one of its variants.
    """
    try:
        return await variants.compare_branch(conversation_id, variant_conversation_id, user_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e


@router.post("/by-id/{conversation_id}/export")
async def export_conversation(
    conversation_id: str,
    body: ExportRequest,
    user_id: str = Depends(require_user_id),
) -> Response:
    """
    POST /api/conversations/by-id/{conversation_id}/export

    Download the conversation as Markdown, JSON or PDF. For PDF the stored
    copy's URL is returned in the X-Export-Url header.
    """
    try:
        result = await export.export_conversation(
            conversation_id, body.format, include_analysis=body.include_analysis, user_id=user_id,
        )
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e

    headers = {"Content-Disposition": f'attachment; filename="{result.filename}"'}
    if result.url:
        headers["X-Export-Url"] = result.url
    return Response(content=result.content, media_type=result.mime_type, headers=headers)


@router.delete("/by-id/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, user_id: str = Depends(require_user_id)) -> Response:
    """DELETE /api/conversations/by-id/{conversation_id}"""
    try:
        await _owned_conversation(conversation_id, user_id)
        await conversations.delete(conversation_id)
    except ENGINE_ERRORS as e:
        raise _http_error(e, conversation_id=conversation_id) from e
    return Response(status_code=204)


@router.post("/messages/{message_id}/rate", response_model=MessageFeedback)
async def rate_message(
    message_id: str,
    body: RateRequest,
    user_id: str = Depends(require_user_id),
) -> MessageFeedback:
    """
    POST /api/conversations/messages/{message_id}/rate

    Rate an assistant reply 1-5. Rating again replaces the earlier rating.
    """
    try:
        return await conversations.rate_message(message_id, user_id, body.rating, body.feedback)
    except ENGINE_ERRORS as e:
        raise _http_error(e, message_id=message_id) from e


@router.post("/messages/{message_id}/report", response_model=MessageFeedback, status_code=201)
async def report_message(
    message_id: str,
    body: ReportRequest,
    user_id: str = Depends(require_user_id),
) -> MessageFeedback:
    """POST /api/conversations/messages/{message_id}/report"""
    try:
        return await conversations.report_message(message_id, user_id, body.category, body.reason, body.details)
    except ENGINE_ERRORS as e:
        raise _http_error(e, message_id=message_id) from e
