"""
Gap Advisor Backend — LLM Interactions (completion backend)

All LLM calls via litellm: advisory completions with token usage, structured
output validation, fallback chain, provider state caching, caller timeouts.
"""

import asyncio
import json
import re
import time
import warnings
from dataclasses import dataclass, field

import litellm
from pydantic import BaseModel, ValidationError

from advisor import db
from advisor.config import LLM_CONFIG, generate_error_code, log
from advisor.models import TokenUsage

# ── Suppress noisy litellm warnings ──────────────────────────────────────────
# litellm internally creates VertexLLM coroutines that sometimes go un-awaited
# when the gemini/ prefix routes through a code path that raises before awaiting.
warnings.filterwarnings(
    "ignore",
    message="coroutine 'VertexLLM.async_completion' was never awaited",
)
litellm.suppress_debug_info = True
litellm.drop_params = True  # Prevent unsupported-param errors across providers

# Module-level state
_active_provider: str | None = None
_initialized: bool = False

# ── Rate-limit cooldown cache ────────────────────────────────────────────────
# Maps provider name → timestamp (time.monotonic) when the cooldown ends.
# Providers in this dict are skipped until RATE_LIMIT_COOLDOWN_SECONDS elapse.
_rate_limited_until: dict[str, float] = {}
RATE_LIMIT_COOLDOWN_SECONDS = 600  # Skip rate-limited provider for 10 minutes (daily quota)
LLM_CALL_TIMEOUT_SECONDS = 45      # Per-provider timeout


def _is_rate_limit_error(error: Exception) -> bool:
    """Check if an error is a rate-limit / quota error (transient)."""
    error_str = str(error).lower()
    return any(kw in error_str for kw in (
        "rate_limit", "ratelimit", "429", "quota", "resource_exhausted",
        "timeout", "timed out",
    ))


def _mark_rate_limited(provider: str) -> None:
    """Record that a provider just hit a rate limit."""
    _rate_limited_until[provider] = time.monotonic() + RATE_LIMIT_COOLDOWN_SECONDS
    log("WARN", "provider rate-limited, will skip for cooldown",
        provider=provider, cooldown_seconds=RATE_LIMIT_COOLDOWN_SECONDS)


def _is_in_cooldown(provider: str) -> bool:
    """Return True if the provider is still in rate-limit cooldown."""
    deadline = _rate_limited_until.get(provider)
    if deadline is None:
        return False
    if time.monotonic() >= deadline:
        # Cooldown expired, allow retry
        del _rate_limited_until[provider]
        return False
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """Base class for completion backend failures. Always transient for callers."""

    pass


class BackendUnavailable(LLMError):
    """All providers in the fallback chain failed."""

    pass


class BackendTimeout(LLMError):
    """The caller-supplied timeout expired before any provider answered."""

    pass


class LLMValidationError(Exception):
    """LLM output failed Pydantic validation even after retry."""

    def __init__(self, raw_output: str, expected_schema: str, error: str):
        self.raw_output = raw_output
        self.expected_schema = expected_schema
        super().__init__(f"LLM validation failed: {error}")


@dataclass
class Completion:
    content: str
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    processing_time_ms: int = 0
    provider: str | None = None


def _walk_order(chain: list[str]) -> list[str]:
    """The fallback chain rotated to start at the active provider."""
    if _active_provider in chain:
        start = chain.index(_active_provider)
        return chain[start:] + chain[:start]
    return list(chain)


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


async def generate(
    messages: list[dict],
    timeout_seconds: float | None = None,
    conversation_id: str | None = None,
) -> Completion:
    """
    Produce an advisory reply for a fully built prompt.

    The caller supplies the system prompt (the context window carries its own),
    so no persona is injected here. The whole fallback walk is bounded by
    `timeout_seconds` when given.

    Raises:
        BackendTimeout: The timeout expired.
        BackendUnavailable: Every provider failed.
    """
    call = _complete(messages, conversation_id=conversation_id, json_mode=False)
    if timeout_seconds is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        log("ERROR", "llm generate timed out", conversation_id=conversation_id, timeout_seconds=timeout_seconds)
        raise BackendTimeout(f"No completion within {timeout_seconds}s") from e


async def call_llm(messages: list[dict], conversation_id: str | None = None) -> str:
    """
    Call the LLM in JSON mode with the persona system prompt injected.

    Used for the auxiliary structured calls (intent detection, summaries,
    follow-up questions). Returns the raw response content string.

    Raises:
        BackendUnavailable: If all providers in the fallback chain fail.
    """
    completion = await _complete(
        _inject_system_prompt(messages),
        conversation_id=conversation_id,
        json_mode=True,
    )
    return completion.content


async def _complete(
    messages: list[dict],
    conversation_id: str | None = None,
    json_mode: bool = False,
) -> Completion:
    """
    Call the LLM with automatic per-request fallback through the entire chain.

    Every request walks the whole fallback chain, starting from the active
    provider and wrapping around to the ones before it. Rate-limit errors are
    transient: we skip the model for this request but don't persist the switch.
    Non-transient failures (auth errors, model not found, etc.) persist the
    switch via DB so subsequent requests start from the new provider.
    """
    await _ensure_initialized()
    chain = _walk_order(LLM_CONFIG["fallback_chain"])
    last_error: Exception | None = None
    tried_any = False

    for idx, provider in enumerate(chain):
        # ── Skip providers that are still in rate-limit cooldown ──
        if _is_in_cooldown(provider):
            log(
                "INFO",
                "skipping rate-limited provider",
                conversation_id=conversation_id,
                provider=provider,
            )
            continue

        tried_any = True
        log(
            "INFO",
            "llm call started",
            conversation_id=conversation_id,
            provider=provider,
            json_mode=json_mode,
        )
        start = time.perf_counter()

        try:
            completion_kwargs = {
                "model": provider,
                "messages": messages,
                "temperature": LLM_CONFIG["temperature"],
                "max_tokens": LLM_CONFIG["max_tokens"],
                "timeout": LLM_CALL_TIMEOUT_SECONDS,
            }
            # Gemini 2.5 models may need explicit JSON mode to avoid empty content
            # when the model uses "thinking" internally
            if json_mode and "gemini-2.5" in provider:
                completion_kwargs["response_format"] = {"type": "json_object"}

            response = await litellm.acompletion(**completion_kwargs)
            duration_ms = int((time.perf_counter() - start) * 1000)

            content = ""
            if response.choices:
                msg = response.choices[0].message
                if msg.content:
                    content = msg.content
                # Gemini 2.5 "thinking" models may return reasoning separately
                elif hasattr(msg, "reasoning_content") and msg.reasoning_content:
                    content = msg.reasoning_content

            usage = TokenUsage()
            if hasattr(response, "usage") and response.usage:
                usage = TokenUsage(
                    input=getattr(response.usage, "prompt_tokens", 0) or 0,
                    output=getattr(response.usage, "completion_tokens", 0) or 0,
                    total=getattr(response.usage, "total_tokens", 0) or 0,
                )

            if not content:
                log(
                    "WARN",
                    "llm returned empty content, will try next provider",
                    conversation_id=conversation_id,
                    provider=provider,
                    duration_ms=duration_ms,
                    tokens_used=usage.total,
                )
                raise ValueError(f"Provider {provider} returned empty content")

            log(
                "INFO",
                "llm call succeeded",
                conversation_id=conversation_id,
                provider=provider,
                duration_ms=duration_ms,
                tokens_used=usage.total,
            )

            # If we fell back to a different provider due to a non-transient error,
            # persist the switch so future requests start here.
            if provider != chain[0] and last_error and not _is_rate_limit_error(last_error):
                global _active_provider
                _active_provider = provider
                await db.update_llm_state(provider, reason=f"Fallback after: {last_error!s}")

            return Completion(
                content=content,
                tokens_used=usage,
                processing_time_ms=duration_ms,
                provider=provider,
            )

        except Exception as e:
            code = generate_error_code()
            log(
                "ERROR",
                "llm call failed",
                conversation_id=conversation_id,
                provider=provider,
                error=str(e),
                error_code=code,
            )
            last_error = e

            # Mark as rate-limited so future requests skip it immediately
            if _is_rate_limit_error(e):
                _mark_rate_limited(provider)

            next_provider = None
            for nxt in chain[idx + 1:]:
                if not _is_in_cooldown(nxt):
                    next_provider = nxt
                    break
            if next_provider:
                log(
                    "WARN",
                    "llm provider fallback",
                    conversation_id=conversation_id,
                    from_provider=provider,
                    to_provider=next_provider,
                    reason=str(e),
                )
            continue

    # If every provider was in cooldown and we never tried any, clear the
    # cooldowns and retry the first provider as a last-ditch attempt.
    if not tried_any:
        log("WARN", "all providers in cooldown, clearing cooldowns for retry",
            conversation_id=conversation_id)
        _rate_limited_until.clear()
        return await _complete(messages, conversation_id=conversation_id, json_mode=json_mode)

    raise BackendUnavailable(f"All LLM providers failed. Last error: {last_error}") from last_error


async def call_llm_structured(
    messages: list[dict],
    response_model: type[BaseModel],
    conversation_id: str | None = None,
) -> BaseModel:
    """
    Call LLM and validate the response against a Pydantic model.

    Steps:
        1. Call call_llm(messages) to get raw response
        2. Strip markdown code fences if present (```json ... ```)
        3. json.loads() the response
        4. Validate with response_model
        5. On JSONDecodeError or ValidationError:
           a. Append the broken output, the error and the expected schema
           b. Retry call_llm() once
           c. If retry also fails: raise LLMValidationError
        6. Return the validated Pydantic model instance

    Raises:
        BackendUnavailable: If all providers fail.
        LLMValidationError: If validation fails after retry.
    """
    raw = await call_llm(messages, conversation_id=conversation_id)
    stripped = _strip_code_fences(raw)

    try:
        parsed = json.loads(stripped)
        return response_model.model_validate(parsed)
    except (json.JSONDecodeError, ValidationError) as e:
        error_code = generate_error_code()
        log(
            "ERROR",
            "llm output validation failed",
            conversation_id=conversation_id,
            raw_output=raw[:500] + "..." if len(raw) > 500 else raw,
            schema=response_model.__name__,
            validation_error=str(e)[:300],
            error_code=error_code,
        )

        fix_instruction = (
            f"\n\n---\n\n"
            f"Your previous response had a JSON error. Here is what you returned:\n\n"
            f"```\n{raw}\n```\n\n"
            f"The error was: {str(e)}\n\n"
            f"Please output ONLY valid JSON matching this schema (no markdown, no explanation):\n"
            f"{json.dumps(response_model.model_json_schema(), indent=2)}"
        )
        retry_messages = [dict(m) for m in messages]
        if retry_messages and retry_messages[-1].get("role") == "user":
            retry_messages[-1]["content"] += fix_instruction
        else:
            retry_messages.append({"role": "user", "content": fix_instruction})

        retry_raw = await call_llm(retry_messages, conversation_id=conversation_id)
        retry_stripped = _strip_code_fences(retry_raw)

        try:
            retry_parsed = json.loads(retry_stripped)
            return response_model.model_validate(retry_parsed)
        except (json.JSONDecodeError, ValidationError) as retry_e:
            raise LLMValidationError(
                raw_output=retry_raw,
                expected_schema=json.dumps(response_model.model_json_schema(), indent=2),
                error=str(retry_e),
            )


# ─────────────────────────────────────────────────────────────────────────────
# Initialization & Fallback
# ─────────────────────────────────────────────────────────────────────────────


async def _ensure_initialized() -> None:
    """
    Load the active provider from the DB on first call.
    Sets _active_provider and _initialized.
    """
    global _active_provider, _initialized
    if not _initialized:
        _active_provider = await db.get_llm_state()
        _initialized = True


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions
# ─────────────────────────────────────────────────────────────────────────────


def _inject_system_prompt(messages: list[dict]) -> list[dict]:
    """
    Prepend the persona system prompt to the message list.
    Returns a new list (does not mutate the input).
    """
    system_msg = {
        "role": "system",
        "content": LLM_CONFIG["persona"]["system_prompt"],
    }
    return [system_msg] + list(messages)


def _strip_code_fences(text: str) -> str:
    """
    Remove markdown code fences from LLM output.
    Handles: ```json\n...\n```, ```\n...\n```, and plain text.
    """
    if not text or not isinstance(text, str):
        return text
    stripped = text.strip()
    match = re.match(r"^```(?:json)?\s*\n?(.*?)\n?```\s*$", stripped, re.DOTALL)
    if match:
        return match.group(1).strip()
    return stripped
