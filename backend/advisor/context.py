"""
Gap Advisor Backend — Context Window Manager

Builds the token-bounded prompt for one advisory turn: a fixed-size analysis
block, recent messages verbatim, and a digest of everything older.
Stored messages are only read here, never rewritten.
"""

import math
import re
from typing import Protocol

from advisor import llm, prompts
from advisor.config import LLM_CONFIG, log, settings
from advisor.models import Analysis, ContextWindow, HistorySummary, Message, TokenBudget

CHARS_PER_TOKEN = 4
ELLIPSIS = "..."

# Default split of an 8000-token window; scaled linearly for other sizes.
DEFAULT_BUDGET = {
    "system_prompt": 200,
    "analysis_context": 2000,
    "conversation_history": 1500,
    "current_query": 500,
    "response_buffer": 3000,
}
DEFAULT_MAX_TOKENS = 8000

MAX_GAPS = 5
MAX_COMPETITORS = 5
MAX_KEY_POINTS = 8

# Analyses are immutable, so their rendered block can be reused across turns.
_analysis_context_cache: dict[tuple[str, int], str] = {}


# -----------------------------------------------------------------------------
# Token helpers
# -----------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """Advisory estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut text to fit max_tokens, marking the cut with a trailing ellipsis."""
    max_chars = max(max_tokens, 1) * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - len(ELLIPSIS), 0)] + ELLIPSIS


def _keep_tail(text: str, max_tokens: int) -> str:
    """Like truncate_text but keeps the end, which holds the most recent turns."""
    max_chars = max(max_tokens, 1) * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return ELLIPSIS + text[-max(max_chars - len(ELLIPSIS), 0):]


def calculate_budget(max_tokens: int = DEFAULT_MAX_TOKENS) -> TokenBudget:
    ratio = max_tokens / DEFAULT_MAX_TOKENS
    return TokenBudget(**{k: int(v * ratio) for k, v in DEFAULT_BUDGET.items()})


# -----------------------------------------------------------------------------
# Analysis block
# -----------------------------------------------------------------------------


def build_analysis_context(analysis: Analysis, max_tokens: int) -> str:
    """
    Serialize the analysis into a compact block: query, scores, top gaps,
    key competitors, action plan phases. Size does not depend on the conversation.
    """
    cache_key = (analysis.id, max_tokens)
    cached = _analysis_context_cache.get(cache_key)
    if cached is not None:
        return cached

    lines = ["# Analysis Context", "", f"Original Search: {analysis.query}"]
    if analysis.parameters:
        params = ", ".join(f"{k}={v}" for k, v in sorted(analysis.parameters.items()))
        lines.append(f"Parameters: {params}")
    if analysis.innovation_score is not None:
        lines.append(f"Innovation Score: {analysis.innovation_score:g}/100")
    if analysis.feasibility_rating:
        lines.append(f"Feasibility: {analysis.feasibility_rating}")

    if analysis.gaps:
        lines += ["", "Top Gaps:"]
        for i, gap in enumerate(analysis.gaps[:MAX_GAPS], start=1):
            title = f"{i}. {gap.title}"
            if gap.score is not None:
                title += f" (Score: {gap.score:g})"
            lines.append(title)
            if gap.description:
                lines.append(f"   {truncate_text(gap.description, 25)}")

    if analysis.competitors:
        lines += ["", "Key Competitors:"]
        for i, competitor in enumerate(analysis.competitors[:MAX_COMPETITORS], start=1):
            entry = f"{i}. {competitor.name}"
            if competitor.description:
                entry += f": {truncate_text(competitor.description, 20)}"
            lines.append(entry)

    if analysis.action_plan and analysis.action_plan.phases:
        lines += ["", "Action Plan Phases:"]
        for i, phase in enumerate(analysis.action_plan.phases, start=1):
            entry = f"{i}. {phase.name}"
            if phase.description:
                entry += f": {truncate_text(phase.description, 20)}"
            lines.append(entry)

    block = truncate_text("\n".join(lines), max_tokens)
    _analysis_context_cache[cache_key] = block
    return block


# -----------------------------------------------------------------------------
# History formatting & summarization
# -----------------------------------------------------------------------------


def _role_label(role: str) -> str:
    return "User" if role == "user" else "Assistant"


def format_messages(messages: list[Message], max_message_tokens: int) -> str:
    """One `Role: content` line per message, chronological; oversized messages truncated."""
    return "\n".join(
        f"{_role_label(m.role)}: {truncate_text(m.content, max_message_tokens)}"
        for m in messages
    )


class Summarizer(Protocol):
    async def summarize(self, messages: list[Message], max_tokens: int) -> str:
        ...


def _first_sentence(text: str, max_chars: int) -> str:
    sentence = re.split(r"(?<=[.!?])\s", text.strip(), maxsplit=1)[0].rstrip(".!?")
    if len(sentence) <= max_chars:
        return sentence.strip()
    return sentence[:max_chars].strip() + ELLIPSIS


_INSIGHT_PATTERNS = [
    re.compile(r"key insights?:?\s*(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"importantly?:?\s*(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"note that\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"recommend(?:ed|ation)?:?\s*(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
]


def _extract_insight(text: str, max_chars: int = 150) -> str:
    for pattern in _INSIGHT_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return truncate_text(match.group(1).strip().strip("*"), max_chars // CHARS_PER_TOKEN)
    return _first_sentence(text.replace("*", ""), max_chars)


class HeuristicSummarizer:
    """
    Local compressor. Pairs each user message with the assistant reply that
    follows it (consecutive same-role messages are tolerated) and keeps the
    most recent MAX_KEY_POINTS topic/insight pairs, so the digest has a fixed ceiling.
    """

    def __init__(self, max_points: int = MAX_KEY_POINTS):
        self.max_points = max_points

    def key_points(self, messages: list[Message]) -> list[str]:
        points = []
        for i, message in enumerate(messages):
            if message.role != "user":
                continue
            topic = _first_sentence(message.content, 100)
            reply = messages[i + 1] if i + 1 < len(messages) else None
            if reply is not None and reply.role == "assistant":
                points.append(f"{topic}: {_extract_insight(reply.content)}")
            else:
                points.append(topic)
        return points[-self.max_points:]

    async def summarize(self, messages: list[Message], max_tokens: int) -> str:
        points = self.key_points(messages)
        lines = [f"[Earlier conversation - {len(messages)} messages] Key topics discussed:"]
        lines += [f"{i}. {p}" for i, p in enumerate(points, start=1)]
        return truncate_text("\n".join(lines), max_tokens)


class LLMSummarizer:
    """Delegates the digest to the completion backend; falls back to the heuristic."""

    MAX_TRANSCRIPT_TOKENS = 6000

    def __init__(self, fallback: Summarizer | None = None):
        self.fallback = fallback or HeuristicSummarizer()

    async def summarize(self, messages: list[Message], max_tokens: int) -> str:
        transcript = truncate_text(format_messages(messages, 300), self.MAX_TRANSCRIPT_TOKENS)
        conversation_id = messages[0].conversation_id if messages else None
        try:
            result: HistorySummary = await llm.call_llm_structured(
                prompts.build_summary_prompt(transcript),
                HistorySummary,
                conversation_id=conversation_id,
            )
        except (llm.LLMError, llm.LLMValidationError) as e:
            log("WARN", "llm summarization failed, using heuristic", conversation_id=conversation_id, error=str(e))
            return await self.fallback.summarize(messages, max_tokens)
        text = result.summary.strip()
        if result.key_points:
            text += "\n" + "\n".join(f"- {p}" for p in result.key_points[:MAX_KEY_POINTS])
        return truncate_text(text, max_tokens)


def get_summarizer() -> Summarizer:
    """Summarizer selected by settings.summarizer."""
    if settings.summarizer == "llm":
        return LLMSummarizer()
    return HeuristicSummarizer()


async def build_conversation_history(
    messages: list[Message],
    budget: TokenBudget,
    summarizer: Summarizer | None = None,
    threshold: int | None = None,
    recent_count: int | None = None,
) -> str:
    """
    Render prior messages for the prompt.

    Up to `threshold` messages: all verbatim. Beyond it: "Summary: <digest>"
    for everything but the last `recent_count`, then "Recent messages:" and those verbatim.
    """
    if not messages:
        return ""
    threshold = settings.summary_threshold if threshold is None else threshold
    recent_count = settings.recent_message_count if recent_count is None else recent_count
    per_message = budget.conversation_history

    if len(messages) <= threshold:
        return _keep_tail(format_messages(messages, per_message), budget.conversation_history)

    split = max(len(messages) - recent_count, 0)
    older, recent = messages[:split], messages[split:]
    summary_budget = max(budget.conversation_history // 3, 1)
    digest = await (summarizer or get_summarizer()).summarize(older, summary_budget)
    summary = truncate_text(f"Summary: {digest}", summary_budget)

    label = "\n\nRecent messages:\n"
    tail_budget = max(budget.conversation_history - estimate_tokens(summary) - estimate_tokens(label), 1)
    tail = _keep_tail(format_messages(recent, tail_budget), tail_budget)
    return f"{summary}{label}{tail}"


# -----------------------------------------------------------------------------
# Public entry point
# -----------------------------------------------------------------------------


async def build_context(
    analysis: Analysis,
    messages: list[Message],
    current_query: str,
    max_tokens: int | None = None,
    summarizer: Summarizer | None = None,
) -> ContextWindow:
    """
    Produce the bounded prompt package for one turn.

    `messages` is the stored history before the current query. total_tokens is
    an estimate for cost reporting; the backend enforces the real limit.
    """
    budget = calculate_budget(max_tokens or settings.context_max_tokens)
    system_prompt = LLM_CONFIG["persona"]["system_prompt"]
    analysis_context = build_analysis_context(analysis, budget.analysis_context)
    history = await build_conversation_history(messages, budget, summarizer=summarizer)
    query = truncate_text(current_query, budget.current_query)

    total = sum(estimate_tokens(s) for s in (system_prompt, analysis_context, history, query))
    log("INFO", "context built", analysis_id=analysis.id, message_count=len(messages),
        summarized=len(messages) > settings.summary_threshold, total_tokens=total)
    return ContextWindow(
        system_prompt=system_prompt,
        analysis_context=analysis_context,
        conversation_history=history,
        current_query=query,
        total_tokens=total,
    )
