"""
Gap Advisor Backend — Database Operations

All Supabase/PostgreSQL operations: analyses (read + variant creation), user tiers,
conversations, messages, variant links, quota counters, export artifacts, LLM state.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client, create_client

from advisor.config import LLM_CONFIG, generate_error_code, log, settings

# ─────────────────────────────────────────────────────────────────────────────
# Supabase Client (singleton)
# ─────────────────────────────────────────────────────────────────────────────

_supabase: Client | None = None


def get_supabase() -> Client:
    """Return the Supabase client singleton. Creates it on first call."""
    global _supabase
    if _supabase is None:
        _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    return _supabase


class DatabaseError(Exception):
    """A conversation-engine read or write failed. Carries the logged error code."""

    def __init__(self, operation: str, error: str, error_code: str):
        self.operation = operation
        self.error_code = error_code
        super().__init__(f"{operation} failed: {error}")


def _fail(operation: str, e: Exception, **context) -> DatabaseError:
    code = generate_error_code()
    log("ERROR", "db operation failed", operation=operation, error=str(e), error_code=code, **context)
    return DatabaseError(operation, str(e), code)


def _first_row(response) -> Optional[dict]:
    # maybe_single().execute() returns None when no rows match in supabase-py v2
    if response is None or not response.data:
        return None
    row = response.data[0] if isinstance(response.data, list) else response.data
    return dict(row)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─────────────────────────────────────────────────────────────────────────────
# Analyses (analysis provider)
# ─────────────────────────────────────────────────────────────────────────────


async def get_analysis(analysis_id: str) -> Optional[dict]:
    """
    Get an analysis row (report + parameters) by id.
    Returns None if not found.
    """
    try:
        sb = get_supabase()
        response = (
            sb.table("analyses")
            .select("*")
            .eq("id", analysis_id)
            .maybe_single()
            .execute()
        )
        return _first_row(response)
    except Exception as e:
        raise _fail("get_analysis", e, analysis_id=analysis_id) from e


async def create_variant_analysis(base: dict, modified_parameters: dict, query: str) -> dict:
    """
    Insert a new analysis derived from `base` with merged parameters.
    The generation pipeline picks up rows with status=pending.
    Returns the new analysis row.
    """
    try:
        sb = get_supabase()
        data = {
            "user_id": base.get("user_id"),
            "query": query,
            "parameters": {**(base.get("parameters") or {}), **modified_parameters},
            "parent_analysis_id": base["id"],
            "status": "pending",
        }
        response = sb.table("analyses").insert(data).execute()
        row = _first_row(response)
        if row is None:
            raise ValueError("insert returned no row")
        return row
    except Exception as e:
        raise _fail("create_variant_analysis", e, analysis_id=base.get("id")) from e


# ─────────────────────────────────────────────────────────────────────────────
# User Tier (tier provider)
# ─────────────────────────────────────────────────────────────────────────────


async def get_user_tier(user_id: str) -> str:
    """
    Read the raw subscription tier for a user from profiles.
    Falls back to 'free' when the profile is missing or unreadable.
    """
    try:
        sb = get_supabase()
        response = (
            sb.table("profiles")
            .select("subscription_tier, plan")
            .eq("id", user_id)
            .maybe_single()
            .execute()
        )
        row = _first_row(response)
        if row:
            return row.get("subscription_tier") or row.get("plan") or "free"
        return "free"
    except Exception as e:
        log("WARN", "tier lookup failed, defaulting to free", user_id=user_id, error=str(e))
        return "free"


# ─────────────────────────────────────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────────────────────────────────────


async def get_conversation(conversation_id: str) -> Optional[dict]:
    """Get a conversation row by id. None if not found."""
    try:
        sb = get_supabase()
        response = (
            sb.table("conversations")
            .select("*")
            .eq("id", conversation_id)
            .maybe_single()
            .execute()
        )
        return _first_row(response)
    except Exception as e:
        raise _fail("get_conversation", e, conversation_id=conversation_id) from e


async def get_conversation_by_analysis(analysis_id: str, user_id: str) -> Optional[dict]:
    """Get the conversation for an (analysis, user) pair. None if not created yet."""
    try:
        sb = get_supabase()
        response = (
            sb.table("conversations")
            .select("*")
            .eq("analysis_id", analysis_id)
            .eq("user_id", user_id)
            .maybe_single()
            .execute()
        )
        return _first_row(response)
    except Exception as e:
        raise _fail("get_conversation_by_analysis", e, analysis_id=analysis_id) from e


async def insert_conversation(analysis_id: str, user_id: str) -> None:
    """
    Insert a conversation for the pair unless one exists.
    Relies on the unique (analysis_id, user_id) constraint; duplicates are ignored.
    """
    try:
        sb = get_supabase()
        now = _now()
        data = {
            "analysis_id": analysis_id,
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        }
        (
            sb.table("conversations")
            .upsert(data, on_conflict="analysis_id,user_id", ignore_duplicates=True)
            .execute()
        )
    except Exception as e:
        raise _fail("insert_conversation", e, analysis_id=analysis_id) from e


async def touch_conversation(conversation_id: str) -> None:
    """Bump updated_at after an append or a new variant link."""
    try:
        sb = get_supabase()
        sb.table("conversations").update({"updated_at": _now()}).eq("id", conversation_id).execute()
    except Exception as e:
        log("WARN", "conversation touch failed", conversation_id=conversation_id, error=str(e))


async def delete_conversation(conversation_id: str) -> None:
    """
    Delete a conversation, its messages, and every variant link touching it.
    """
    try:
        sb = get_supabase()
        sb.table("conversation_messages").delete().eq("conversation_id", conversation_id).execute()
        sb.table("conversation_variants").delete().eq("original_conversation_id", conversation_id).execute()
        sb.table("conversation_variants").delete().eq("variant_conversation_id", conversation_id).execute()
        sb.table("conversations").delete().eq("id", conversation_id).execute()
    except Exception as e:
        raise _fail("delete_conversation", e, conversation_id=conversation_id) from e


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────


async def insert_message(
    conversation_id: str,
    position: int,
    role: str,
    content: str,
    metadata: dict,
) -> dict:
    """
    Append a message row. (conversation_id, position) is unique, so a lost race
    surfaces as an error instead of a reordered history.
    Returns the inserted row.
    """
    try:
        sb = get_supabase()
        data = {
            "conversation_id": conversation_id,
            "position": position,
            "role": role,
            "content": content,
            "metadata": metadata,
            "created_at": _now(),
        }
        response = sb.table("conversation_messages").insert(data).execute()
        row = _first_row(response)
        if row is None:
            raise ValueError("insert returned no row")
        return row
    except Exception as e:
        raise _fail("insert_message", e, conversation_id=conversation_id, role=role) from e


async def get_messages(conversation_id: str, limit: int | None = None) -> list[dict]:
    """
    Get messages ordered by position, oldest first.
    With a limit, returns the most recent `limit` messages (still oldest first).
    """
    try:
        sb = get_supabase()
        query = (
            sb.table("conversation_messages")
            .select("*")
            .eq("conversation_id", conversation_id)
        )
        if limit is not None:
            response = query.order("position", desc=True).limit(limit).execute()
            return [dict(m) for m in reversed(response.data or [])]
        response = query.order("position").execute()
        return [dict(m) for m in (response.data or [])]
    except Exception as e:
        raise _fail("get_messages", e, conversation_id=conversation_id) from e


async def get_next_message_position(conversation_id: str) -> int:
    """
    Get the next position for a conversation.
    Returns max(position) + 1, or 0 if no messages exist.
    """
    try:
        sb = get_supabase()
        response = (
            sb.table("conversation_messages")
            .select("position")
            .eq("conversation_id", conversation_id)
            .order("position", desc=True)
            .limit(1)
            .maybe_single()
            .execute()
        )
        row = _first_row(response)
        if row is not None:
            return int(row["position"]) + 1
        return 0
    except Exception as e:
        raise _fail("get_next_message_position", e, conversation_id=conversation_id) from e


async def get_message(message_id: str) -> Optional[dict]:
    """Get a message row by id. None if not found."""
    try:
        sb = get_supabase()
        response = (
            sb.table("conversation_messages")
            .select("*")
            .eq("id", message_id)
            .maybe_single()
            .execute()
        )
        return _first_row(response)
    except Exception as e:
        raise _fail("get_message", e, message_id=message_id) from e


# ─────────────────────────────────────────────────────────────────────────────
# Message Feedback (ratings and reports)
# ─────────────────────────────────────────────────────────────────────────────


async def upsert_message_rating(message_id: str, user_id: str, rating: int, feedback: Optional[str]) -> dict:
    """
    Store a user's rating of a message. One rating per (message, user);
    rating again replaces it. Returns the stored row.
    """
    try:
        sb = get_supabase()
        data = {
            "message_id": message_id,
            "user_id": user_id,
            "kind": "rating",
            "rating": rating,
            "details": feedback,
            "created_at": _now(),
        }
        response = (
            sb.table("message_feedback")
            .upsert(data, on_conflict="message_id,user_id,kind")
            .execute()
        )
        row = _first_row(response)
        if row is None:
            raise ValueError("upsert returned no row")
        return row
    except Exception as e:
        raise _fail("upsert_message_rating", e, message_id=message_id) from e


async def upsert_message_report(
    message_id: str,
    user_id: str,
    category: str,
    reason: str,
    details: Optional[str],
) -> dict:
    """Store a report against a message for review. A repeat report by the same user replaces the earlier one."""
    try:
        sb = get_supabase()
        data = {
            "message_id": message_id,
            "user_id": user_id,
            "kind": "report",
            "category": category,
            "reason": reason,
            "details": details,
            "created_at": _now(),
        }
        response = (
            sb.table("message_feedback")
            .upsert(data, on_conflict="message_id,user_id,kind")
            .execute()
        )
        row = _first_row(response)
        if row is None:
            raise ValueError("upsert returned no row")
        return row
    except Exception as e:
        raise _fail("upsert_message_report", e, message_id=message_id) from e


async def count_reports_since(user_id: str, since: str) -> int:
    """Number of reports filed by a user at or after the ISO timestamp `since`."""
    try:
        sb = get_supabase()
        response = (
            sb.table("message_feedback")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .eq("kind", "report")
            .gte("created_at", since)
            .execute()
        )
        return response.count or 0
    except Exception as e:
        raise _fail("count_reports_since", e, user_id=user_id) from e


# ─────────────────────────────────────────────────────────────────────────────
# Variant Links
# ─────────────────────────────────────────────────────────────────────────────


async def insert_variant_link(
    original_conversation_id: str,
    variant_conversation_id: str,
    modified_parameters: dict,
    variant_analysis_id: str | None = None,
) -> None:
    """Insert a variant link; an existing link for the same pair is left untouched."""
    try:
        sb = get_supabase()
        data = {
            "original_conversation_id": original_conversation_id,
            "variant_conversation_id": variant_conversation_id,
            "variant_analysis_id": variant_analysis_id,
            "modified_parameters": modified_parameters,
            "created_at": _now(),
        }
        (
            sb.table("conversation_variants")
            .upsert(
                data,
                on_conflict="original_conversation_id,variant_conversation_id",
                ignore_duplicates=True,
            )
            .execute()
        )
    except Exception as e:
        raise _fail("insert_variant_link", e, conversation_id=original_conversation_id) from e


async def get_variant_links(conversation_id: str) -> list[dict]:
    """Get outgoing variant links for a conversation, oldest first."""
    try:
        sb = get_supabase()
        response = (
            sb.table("conversation_variants")
            .select("*")
            .eq("original_conversation_id", conversation_id)
            .order("created_at")
            .execute()
        )
        return [dict(r) for r in (response.data or [])]
    except Exception as e:
        raise _fail("get_variant_links", e, conversation_id=conversation_id) from e


# ─────────────────────────────────────────────────────────────────────────────
# Quota Counters
# ─────────────────────────────────────────────────────────────────────────────


async def get_quota_usage(user_id: str, bucket: str) -> int:
    """Current `used` count for a (user, bucket) counter. 0 if the row does not exist."""
    try:
        sb = get_supabase()
        response = (
            sb.table("conversation_quotas")
            .select("used")
            .eq("user_id", user_id)
            .eq("bucket", bucket)
            .maybe_single()
            .execute()
        )
        row = _first_row(response)
        return int(row["used"]) if row else 0
    except Exception as e:
        raise _fail("get_quota_usage", e, user_id=user_id, bucket=bucket) from e


async def increment_quota(user_id: str, bucket: str, limit: int) -> Optional[int]:
    """
    Atomically increment a counter unless it already reached `limit` (-1 = no cap).

    Runs the `increment_conversation_quota` Postgres function, a single
    INSERT ... ON CONFLICT DO UPDATE ... WHERE used < limit RETURNING used.
    Returns the new `used` value, or None when the increment was refused.
    """
    try:
        sb = get_supabase()
        response = sb.rpc(
            "increment_conversation_quota",
            {"p_user_id": user_id, "p_bucket": bucket, "p_limit": limit},
        ).execute()
        if response.data is None:
            return None
        value = response.data[0] if isinstance(response.data, list) else response.data
        if isinstance(value, dict):
            value = value.get("used")
        return None if value is None else int(value)
    except Exception as e:
        raise _fail("increment_quota", e, user_id=user_id, bucket=bucket) from e


async def decrement_quota(user_id: str, bucket: str) -> int:
    """Give one unit back to a counter, floored at 0. Returns the new `used` value."""
    try:
        sb = get_supabase()
        response = sb.rpc(
            "release_conversation_quota",
            {"p_user_id": user_id, "p_bucket": bucket},
        ).execute()
        value = response.data[0] if isinstance(response.data, list) and response.data else response.data
        if isinstance(value, dict):
            value = value.get("used")
        return int(value or 0)
    except Exception as e:
        raise _fail("decrement_quota", e, user_id=user_id, bucket=bucket) from e


# ─────────────────────────────────────────────────────────────────────────────
# Export Artifacts (Supabase Storage)
# ─────────────────────────────────────────────────────────────────────────────


async def store_export_artifact(path: str, content: bytes, content_type: str) -> str:
    """
    Upload rendered export bytes to the export bucket.
    Returns a retrievable public URL.
    """
    try:
        bucket = get_supabase().storage.from_(settings.export_bucket)
        bucket.upload(
            path=path,
            file=content,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        return bucket.get_public_url(path)
    except Exception as e:
        raise _fail("store_export_artifact", e, path=path) from e


# ─────────────────────────────────────────────────────────────────────────────
# LLM State
# ─────────────────────────────────────────────────────────────────────────────


async def get_llm_state() -> str:
    """
    Get the active LLM provider from llm_state table.
    If no row exists, returns first provider in LLM_CONFIG fallback_chain.
    """
    try:
        sb = get_supabase()
        response = (
            sb.table("llm_state")
            .select("active_provider")
            .eq("id", 1)
            .maybe_single()
            .execute()
        )
        if response is not None and response.data and response.data.get("active_provider"):
            return response.data["active_provider"]
        return LLM_CONFIG["fallback_chain"][0]
    except Exception as e:
        code = generate_error_code()
        log("ERROR", "db read failed", operation="get_llm_state", error=str(e), error_code=code)
        return LLM_CONFIG["fallback_chain"][0]


async def update_llm_state(provider: str, reason: str) -> None:
    """
    Upsert on id=1 in llm_state table.
    Sets active_provider, switched_at, switch_reason, updated_at.
    """
    try:
        sb = get_supabase()
        now = _now()
        data: dict[str, Any] = {
            "id": 1,
            "active_provider": provider,
            "switched_at": now,
            "switch_reason": reason,
            "updated_at": now,
        }
        sb.table("llm_state").upsert(data, on_conflict="id").execute()
    except Exception as e:
        code = generate_error_code()
        log("ERROR", "db write failed", operation="update_llm_state", error=str(e), error_code=code)
