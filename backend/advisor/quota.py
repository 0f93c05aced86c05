"""
Gap Advisor Backend — Conversation Quota Enforcer

Tiered question limits per user. Two buckets are tracked per question:
  - analysis:<analysis_id>  per-analysis cap, never resets
  - month:<YYYY-MM>         monthly cap, rolls over with the UTC calendar month

Counters live in Supabase (conditional increment RPC, atomic across processes).
Admission additionally serializes on a per-bucket asyncio.Lock so two turns in
this process never both take the last slot.

Policy: a slot is reserved at admission and released if the turn ends without
an assistant reply, so each assistant reply costs exactly one question.
"""

from datetime import datetime, timezone

from advisor import db, locks
from advisor.config import TIER_LIMITS, log, normalize_tier
from advisor.models import QuotaStatus, RemainingQuestions

UNLIMITED = -1


class QuotaExceeded(Exception):
    """Admission denied. Not fatal: the UI renders an upgrade prompt from `status`."""

    def __init__(self, status: QuotaStatus):
        self.status = status
        super().__init__(f"Question limit reached ({status.limit}) for tier {status.tier}")


_bucket_locks: dict = {}


def _lock(user_id: str, bucket: str):
    return locks.hold(_bucket_locks, (user_id, bucket))


def analysis_bucket(analysis_id: str) -> str:
    return f"analysis:{analysis_id}"


def month_bucket(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"month:{now.strftime('%Y-%m')}"


def _buckets(tier: str, analysis_id: str) -> list[tuple[str, int]]:
    """(bucket, limit) pairs in lock order: analysis first, then month."""
    limits = TIER_LIMITS[normalize_tier(tier)]
    return [
        (analysis_bucket(analysis_id), limits["per_analysis_limit"]),
        (month_bucket(), limits["monthly_limit"]),
    ]


def _status(tier: str, usage: list[tuple[int, int]]) -> QuotaStatus:
    """
    Fold (used, limit) pairs into one status. The binding bucket is the
    limited one with the least room left; all-unlimited reports -1/-1.
    """
    tier = normalize_tier(tier)
    limited = [(limit - used, limit) for used, limit in usage if limit >= 0]
    if not limited:
        return QuotaStatus(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, unlimited=True, tier=tier)
    remaining, limit = min(limited)
    return QuotaStatus(
        allowed=remaining > 0,
        remaining=max(0, remaining),
        limit=limit,
        unlimited=False,
        tier=tier,
    )


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


async def check_limit(user_id: str, tier: str, analysis_id: str) -> QuotaStatus:
    """
    Pure decision: may this user ask another question on this analysis?
    allowed = (limit < 0) or (used < limit) for every bucket. Does not consume.
    """
    usage = []
    for bucket, limit in _buckets(tier, analysis_id):
        used = 0 if limit < 0 else await db.get_quota_usage(user_id, bucket)
        usage.append((used, limit))
    return _status(tier, usage)


async def consume(user_id: str, analysis_id: str) -> None:
    """
    Count one question against both buckets, unconditionally.
    Callers gate on check_limit first; admit() does both atomically.
    """
    for bucket in (analysis_bucket(analysis_id), month_bucket()):
        async with _lock(user_id, bucket):
            await db.increment_quota(user_id, bucket, UNLIMITED)


async def admit(user_id: str, tier: str, analysis_id: str) -> QuotaStatus:
    """
    Atomic check-and-consume for one user turn.

    Returns the status *after* the question is counted (a fresh free-tier
    analysis yields remaining 4, 3, 2, 1, 0). Raises QuotaExceeded with
    remaining=0 when any capped bucket is full; a partially taken slot is
    given back before raising, whatever the error.
    """
    buckets = _buckets(tier, analysis_id)
    taken: list[str] = []
    usage: list[tuple[int, int]] = []
    try:
        for bucket, limit in buckets:
            async with _lock(user_id, bucket):
                used = await db.increment_quota(user_id, bucket, limit)
            if used is None:
                status = QuotaStatus(
                    allowed=False, remaining=0, limit=limit, unlimited=False, tier=normalize_tier(tier),
                )
                log("INFO", "quota exceeded", user_id=user_id, analysis_id=analysis_id,
                    bucket=bucket, limit=limit, tier=status.tier)
                raise QuotaExceeded(status)
            taken.append(bucket)
            usage.append((used, limit))
    except BaseException as e:
        if taken and not isinstance(e, QuotaExceeded):
            log("WARN", "quota admission failed, giving back taken slots", user_id=user_id,
                analysis_id=analysis_id, buckets=taken, error_type=type(e).__name__)
        for done in taken:
            await db.decrement_quota(user_id, done)
        raise

    status = _status(tier, usage)
    # The request itself was admitted even when it used the last slot.
    status = status.model_copy(update={"allowed": True})
    log("INFO", "quota admitted", user_id=user_id, analysis_id=analysis_id,
        remaining=status.remaining, limit=status.limit, tier=status.tier)
    return status


async def release(user_id: str, analysis_id: str) -> None:
    """Give back the slot taken by admit() for a turn that produced no reply."""
    for bucket in (analysis_bucket(analysis_id), month_bucket()):
        async with _lock(user_id, bucket):
            await db.decrement_quota(user_id, bucket)
    log("INFO", "quota released", user_id=user_id, analysis_id=analysis_id)


async def get_remaining_questions(user_id: str, analysis_id: str, tier: str) -> RemainingQuestions:
    """Read-only projection for display. unlimited iff limit < 0."""
    status = await check_limit(user_id, tier, analysis_id)
    return RemainingQuestions(remaining=status.remaining, limit=status.limit, unlimited=status.unlimited)
