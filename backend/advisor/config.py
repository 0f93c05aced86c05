"""
Gap Advisor Backend — Central Configuration

All environment variables, LLM settings and conversation tunables live here.
Import `settings`, `LLM_CONFIG`, `TIER_LIMITS`, `log`, and `generate_error_code` from this module.
Do not read `os.environ` anywhere else.
"""

import uuid
from datetime import datetime, timezone

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All environment variables. Loaded from .env or deployment env vars."""

    # LLM Providers
    gemini_api_key: str
    openai_api_key: str = ""          # Optional fallback
    anthropic_api_key: str = ""       # Optional fallback

    # Database
    supabase_url: str
    supabase_service_key: str
    export_bucket: str = "conversation-exports"  # Supabase Storage bucket for PDF exports

    # App
    environment: str = "development"  # "development" | "production"
    cors_origins: str = "http://localhost:3000"  # Comma-separated for multiple origins

    # Conversation engine
    context_max_tokens: int = 8000           # Total prompt budget per turn
    summary_threshold: int = 10              # Above this many messages, older turns are summarized
    recent_message_count: int = 5            # Messages kept verbatim once summarizing
    summarizer: str = "heuristic"            # "heuristic" | "llm"
    max_message_length: int = 2000           # Hard cap, tier caps are tighter
    variant_confidence_threshold: int = 90   # Detector confidence needed to offer a variant
    llm_turn_timeout_seconds: float = 60.0   # Caller-side bound on one generate() call
    llm_retry_backoff_seconds: float = 1.5   # Sleep before the single automatic retry
    turn_claim_timeout_seconds: float = 180.0  # A turn claim older than this is treated as abandoned
    max_reports_per_day: int = 10            # Message reports one user may file in 24 hours

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton: import this everywhere
settings = Settings()


# ──────────────────────────────────────────────────────
# Logging Utilities (structured print)
# ──────────────────────────────────────────────────────

def generate_error_code() -> str:
    """Generate a short, user-friendly error reference code.

    Format: 'GA-' followed by 6 uppercase hex characters.
    Example: 'GA-3F8A2C'

    Used whenever an error is surfaced to the user (HTTP error body or ErrorEvent SSE).
    The same code is logged on the backend AND sent to the user, so the user can
    quote it and the team can grep logs for it.
    """
    return f"GA-{uuid.uuid4().hex[:6].upper()}"


def log(level: str, message: str, **context) -> None:
    """Structured print-based logger.

    Every log line follows the format:
        [ISO_TIMESTAMP] [LEVEL] message | key1=value1 key2=value2

    Args:
        level: One of "INFO", "WARN", "ERROR".
        message: Human-readable description of what happened.
        **context: Arbitrary key-value pairs. Always include conversation_id when available.

    Usage:
        log("INFO", "turn started", conversation_id="abc-123", analysis_id="42")
        log("ERROR", "llm call failed", conversation_id="abc-123", provider="gemini",
            error_code="GA-3F8A2C", error=str(e))
    """
    ts = datetime.now(timezone.utc).isoformat()
    ctx = " ".join(f"{k}={v}" for k, v in context.items())
    print(f"[{ts}] [{level}] {message} | {ctx}", flush=True)


# ──────────────────────────────────────────────────────
# LLM Configuration
# ──────────────────────────────────────────────────────

LLM_CONFIG = {
    "persona": {
        "name": "Gap Advisor",
        "system_prompt": (
            "You are Gap Advisor, an AI advisor that helps entrepreneurs discuss a market-gap analysis "
            "they have already run. You are having a conversation with a user about their gap analysis.\n\n"
            "Guidelines:\n"
            "- Be conversational and helpful, not robotic.\n"
            "- Reference specific data from the analysis when relevant. If you make assumptions, state them.\n"
            "- For financial projections, include appropriate disclaimers.\n"
            "- Acknowledge uncertainty rather than making up information. Never fabricate data.\n"
            "- Stay focused on the analysis topic; politely redirect off-topic questions.\n"
            "- Do not provide legal, medical, or financial advice and never guarantee business success.\n"
            "- Be encouraging but realistic about opportunities and challenges.\n"
            "- Use clear paragraphs, bullet points for lists, **bold** for key insights. "
            "Keep responses concise (200-400 words typically)."
        ),
    },
    "temperature": 0.4,
    "max_tokens": 1200,
    "fallback_chain": [
        "gemini/gemini-2.5-flash",       # Primary, fast + cheap
        "gemini/gemini-2.0-flash",       # Fallback 1, free tier
        "openai/gpt-4o-mini",            # Fallback 2, non-Google
        "anthropic/claude-3-haiku",      # Fallback 3, last resort
    ],
}


# ──────────────────────────────────────────────────────
# Tier Limits
# ──────────────────────────────────────────────────────

# -1 means unlimited. Per-analysis buckets never reset; monthly buckets roll over
# on the first day of each UTC calendar month.
TIER_LIMITS = {
    "free": {
        "per_analysis_limit": 5,
        "monthly_limit": 100,
        "max_message_length": 500,
    },
    "pro": {
        "per_analysis_limit": -1,
        "monthly_limit": -1,
        "max_message_length": 1000,
    },
    "enterprise": {
        "per_analysis_limit": -1,
        "monthly_limit": -1,
        "max_message_length": 2000,
    },
}

TIER_ALIASES = {
    "premium": "pro",
    "business": "enterprise",
}


def normalize_tier(tier: str | None) -> str:
    """Map a raw subscription tier name onto a TIER_LIMITS key. Unknown → free."""
    name = (tier or "free").strip().lower()
    name = TIER_ALIASES.get(name, name)
    return name if name in TIER_LIMITS else "free"
