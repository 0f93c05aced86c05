"""
Gap Advisor Backend — LLM Prompt Templates

All prompts are defined here. The persona system prompt is injected in llm.py
for structured calls and carried by the context window for advisory turns.
"""

import json

from advisor.models import Analysis, ContextWindow


# -----------------------------------------------------------------------------
# 1. build_advisor_messages
# -----------------------------------------------------------------------------

ADVISOR_TURN_PROMPT = """{analysis_context}
{conversation_history}
# Current Question
{current_query}

Answer the current question using the analysis above and the conversation so far.
If the question cannot be answered from the analysis, say what extra information would be needed."""


def build_advisor_messages(window: ContextWindow) -> list[dict]:
    """
    Turn a bounded context window into chat messages for the completion backend.

    The system prompt goes first; analysis, history and the question are packed
    into a single user message so providers without multi-turn memory behave the same.
    """
    history = f"\n{window.conversation_history}\n" if window.conversation_history else ""
    user_content = ADVISOR_TURN_PROMPT.format(
        analysis_context=window.analysis_context,
        conversation_history=history,
        current_query=window.current_query,
    )
    return [
        {"role": "system", "content": window.system_prompt},
        {"role": "user", "content": user_content},
    ]


# -----------------------------------------------------------------------------
# 2. build_detection_prompt
# -----------------------------------------------------------------------------

DETECTION_PROMPT = """
# Role
You detect when a user wants to refine or re-run their market-gap analysis with different
parameters, as opposed to asking a question about the existing analysis.

# Original Analysis
- Query: "{query}"
- Current parameters: {parameters}
- Innovation score: {innovation_score}
- Feasibility: {feasibility}
- Top gaps: {gaps}

# User Message
"{message}"

# Task
Decide whether the user is asking for a modified analysis. Typical phrasings:
- "What if I target [different market]?"
- "How would this change if [different parameter]?"
- "Can you analyze this for [different audience]?"
- "What about [different geography/timeframe/budget]?"
- "Re-analyze with [different business model]"

Questions about the existing analysis ("What makes this unique?", "Who are the competitors?")
are NOT re-analysis requests.

# Output
Return ONLY a JSON object, no markdown, no text before or after:
{{
  "is_reanalysis_request": boolean,
  "confidence": integer 0-100,
  "modified_parameters": {{
    "market": "only if mentioned",
    "target_audience": "only if mentioned",
    "business_model": "only if mentioned",
    "geography": "only if mentioned",
    "timeframe": "only if mentioned",
    "budget": "only if mentioned"
  }},
  "reasoning": "one sentence"
}}

Rules:
- Omit parameters that are not mentioned or strongly implied.
- Confidence: >80 very certain, 50-80 somewhat certain, <50 uncertain.
"""


def build_detection_prompt(message: str, analysis: Analysis) -> list[dict]:
    """Build the structured re-analysis detection request."""
    gaps = ", ".join(g.title for g in analysis.gaps[:5]) or "N/A"
    content = DETECTION_PROMPT.format(
        query=analysis.query,
        parameters=json.dumps(analysis.parameters) if analysis.parameters else "none recorded",
        innovation_score=analysis.innovation_score if analysis.innovation_score is not None else "N/A",
        feasibility=analysis.feasibility_rating or "N/A",
        gaps=gaps,
        message=message,
    )
    return [{"role": "user", "content": content}]


# -----------------------------------------------------------------------------
# 3. build_summary_prompt
# -----------------------------------------------------------------------------

SUMMARY_PROMPT = """
# Role
You compress the earlier part of an advisory conversation about a market-gap analysis
so it can be carried into later turns cheaply.

# Conversation Excerpt
{transcript}

# Output
Return ONLY a JSON object:
{{
  "summary": "2-3 sentences covering topics discussed and conclusions reached",
  "key_points": ["at most {max_points} short bullet strings"]
}}

Keep the summary under {max_words} words. Do not invent facts that are not in the excerpt.
"""


def build_summary_prompt(transcript: str, max_points: int = 5, max_words: int = 120) -> list[dict]:
    """Build the history-summarization request."""
    content = SUMMARY_PROMPT.format(
        transcript=transcript,
        max_points=max_points,
        max_words=max_words,
    )
    return [{"role": "user", "content": content}]


# -----------------------------------------------------------------------------
# 4. build_comparison_prompt
# -----------------------------------------------------------------------------

COMPARISON_PROMPT = """
# Role
You compare two versions of a market-gap analysis so a founder can decide which
direction to pursue. The variant re-ran the original with changed parameters.

# Original Analysis
{original}

# Variant Analysis
{variant}

# Task
Explain what changed between the two analyses, how those changes affect the
opportunity, and which one looks more promising.

# Output
Return ONLY a JSON object, no markdown, no text before or after:
{{
  "summary": "2-3 sentence overview of the key differences",
  "key_differences": [
    {{
      "aspect": "Innovation Score | Market Size | Target Audience | Competition | Feasibility | ...",
      "original": "value or description from the original",
      "variant": "value or description from the variant",
      "impact": "positive | negative | neutral"
    }}
  ],
  "recommendations": ["actionable recommendation based on the comparison"],
  "preferred_variant": "original | variant | both",
  "reasoning": "why one is preferred, or when to use each"
}}

Rules:
- Only list differences that matter for the decision.
- Use only facts present in the two analyses above.
"""


def _comparison_block(analysis: Analysis) -> str:
    gaps = ", ".join(g.title for g in analysis.gaps[:5]) or "N/A"
    return "\n".join([
        f'- Query: "{analysis.query}"',
        f"- Innovation Score: {analysis.innovation_score if analysis.innovation_score is not None else 'N/A'}",
        f"- Feasibility: {analysis.feasibility_rating or 'N/A'}",
        f"- Top Gaps: {gaps}",
        f"- Parameters: {json.dumps(analysis.parameters)}",
    ])


def build_comparison_prompt(original: Analysis, variant: Analysis) -> list[dict]:
    """Build the variant comparison request."""
    content = COMPARISON_PROMPT.format(
        original=_comparison_block(original),
        variant=_comparison_block(variant),
    )
    return [{"role": "user", "content": content}]
