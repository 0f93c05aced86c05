"""
Gap Advisor Backend — Variant Intent Detection & Branching

Three separate steps:
  1. detect / propose: classify a user message as a request to re-run the
     analysis with different parameters. Pure: reads only, writes nothing.
  2. confirm_and_branch: after the user confirms, create the variant analysis,
     its conversation, and the original → variant link.
  3. compare_variants / compare_branch: read-only side-by-side of an analysis
     and one of its variants, written by the backend with a rule-based fallback.

Detection runs a local pattern classifier first. Messages with no re-analysis
cue never reach the completion backend; strong cues with extracted parameters
are answered locally; everything in between is asked of the backend.
"""

import re

from advisor import analyses, conversations, llm, prompts
from advisor.config import log, settings
from advisor.conversations import InvalidInput, NotFound
from advisor.models import (
    Analysis,
    ComparisonResponse,
    KeyDifference,
    ReanalysisDetection,
    VariantBranch,
    VariantComparison,
    VariantProposal,
)


# -----------------------------------------------------------------------------
# Local pattern classifier
# -----------------------------------------------------------------------------

STRONG_CUES = (
    "instead of", "instead", "rather than", "re-analy", "reanaly", "re-run", "rerun",
    "redo the analysis", "run this again", "run it again",
)
SOFT_CUES = (
    "what if", "how would this change", "how would it change", "how does this change",
    "what about", "switch to", "analyze this for", "analyse this for", "could we target",
    "should i target", "change the",
)

# Value runs up to a clause boundary: "instead", "rather than", "market", punctuation.
_VALUE = r"(?P<value>[^?.!,;]+?)"
_STOP = r"(?=\s+instead\b|\s+rather\s+than\b|\s+market\b|\s+as\s+well\b|[?.!,;]|$)"

PARAMETER_PATTERNS: dict[str, list[re.Pattern]] = {
    "market": [
        re.compile(
            r"\b(?:target(?:ed|ing)?|go(?:ing)?\s+after|launch(?:ed|ing)?\s+in|"
            r"expand(?:ed|ing)?\s+(?:in)?to|enter(?:ed|ing)?)\s+(?:the\s+)?"
            r"(?!(?:market|price|pricing|margins?|dates?|revenue)\b)" + _VALUE + _STOP,
            re.IGNORECASE,
        ),
        # "focus on" names a market only when a proper noun follows
        re.compile(r"(?i:\bfocus(?:ed|ing)?\s+on\s+(?:the\s+)?)(?P<value>[A-Z][^?.!,;]*?)(?i:" + _STOP + ")"),
    ],
    "target_audience": [
        re.compile(r"\b(?:aimed\s+at|sell(?:ing)?\s+to|built\s+for|designed\s+for)\s+" + _VALUE + _STOP, re.IGNORECASE),
        re.compile(r"\bfor\s+" + _VALUE + r"(?=\s+instead\b|\s+rather\s+than\b)", re.IGNORECASE),
        re.compile(r"\baudience\s+(?:of|to|to\s+be)\s+" + _VALUE + _STOP, re.IGNORECASE),
    ],
    "geography": [
        re.compile(r"\b(?:in|across|within)\s+(?:the\s+)?" + _VALUE + r"(?=\s+instead\b|\s+rather\s+than\b)", re.IGNORECASE),
    ],
    "business_model": [
        re.compile(
            r"\b(?P<value>subscription|freemium|marketplace|saas|b2b|b2c|d2c|dtc|ad[- ]supported|"
            r"licensing|franchise|usage[- ]based|pay[- ]per[- ]use|one[- ]time\s+purchase)"
            r"(?:\s+business)?\s+model\b",
            re.IGNORECASE,
        ),
        re.compile(r"\b(?:make\s+it|go|switch\s+to)\s+(?P<value>b2b|b2c|d2c|saas)\b", re.IGNORECASE),
    ],
    "budget": [
        re.compile(
            r"\b(?:budget\s+of|with\s+only|with\s+just|only\s+have|limited\s+to)\s+"
            r"(?P<value>\$?\s?\d[\d,.]*\s*(?:k|m|million|thousand)?)",
            re.IGNORECASE,
        ),
        re.compile(r"(?P<value>\$\s?\d[\d,.]*\s*(?:k|m|million|thousand)?)\s+budget", re.IGNORECASE),
    ],
    "timeframe": [
        re.compile(r"\b(?:within|in|over|by)\s+(?P<value>\d+\s+(?:weeks?|months?|years?))", re.IGNORECASE),
    ],
}

BASE_CONFIDENCE = 80
STRONG_CUE_BONUS = 15
SOFT_CUE_BONUS = 5
UNCERTAIN_CONFIDENCE = 30


def _find_cues(text: str) -> tuple[bool, bool]:
    lowered = text.lower()
    strong = any(c in lowered for c in STRONG_CUES)
    soft = any(c in lowered for c in SOFT_CUES)
    return strong, soft


def _clean_value(value: str) -> str:
    value = re.sub(r"^(?:the|a|an)\s+", "", value.strip(), flags=re.IGNORECASE)
    return value.strip(" \"'")


def extract_parameters(text: str) -> dict[str, str]:
    """Pull parameter changes out of a message. First match per parameter wins."""
    found: dict[str, str] = {}
    for name, patterns in PARAMETER_PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                value = _clean_value(match.group("value"))
                if value and len(value) <= 60:
                    found[name] = value
                    break
    # "target Europe instead" already names the market; don't double count it as geography
    if "geography" in found and found.get("market", "").lower() == found["geography"].lower():
        del found["geography"]
    return found


def _drop_unchanged(params: dict[str, str], analysis: Analysis) -> dict[str, str]:
    current = {k: v.strip().lower() for k, v in analysis.parameters.items()}
    return {k: v for k, v in params.items() if current.get(k) != v.strip().lower()}


def classify_locally(message: str, analysis: Analysis) -> tuple[ReanalysisDetection, bool]:
    """
    Pattern-based classification. Returns (detection, has_cue); has_cue=False
    means the message reads as a plain question and needs no further checking.
    """
    strong, soft = _find_cues(message)
    if not (strong or soft):
        return ReanalysisDetection(reasoning="No re-analysis phrasing found"), False

    params = _drop_unchanged(extract_parameters(message), analysis)
    if not params:
        return ReanalysisDetection(
            confidence=UNCERTAIN_CONFIDENCE,
            reasoning="Re-analysis phrasing without a recognizable parameter change",
        ), True

    confidence = BASE_CONFIDENCE
    if strong:
        confidence += STRONG_CUE_BONUS
    if soft:
        confidence += SOFT_CUE_BONUS
    return ReanalysisDetection(
        is_reanalysis_request=True,
        confidence=min(confidence, 100),
        modified_parameters=params,
        reasoning="Matched re-analysis phrasing: " + ", ".join(sorted(params)),
    ), True


# -----------------------------------------------------------------------------
# Detection (pure)
# -----------------------------------------------------------------------------


async def detect_reanalysis_intent(
    message: str,
    analysis: Analysis,
    threshold: int | None = None,
    conversation_id: str | None = None,
) -> ReanalysisDetection:
    """
    Classify `message` against `analysis`. Never writes anything.

    The returned detection carries a confirmation prompt whenever it is a
    re-analysis request with parameters, regardless of confidence; callers
    compare confidence against the threshold (see propose()).
    """
    threshold = settings.variant_confidence_threshold if threshold is None else threshold
    detection, has_cue = classify_locally(message, analysis)

    if has_cue and detection.confidence < threshold:
        try:
            remote: ReanalysisDetection = await llm.call_llm_structured(
                prompts.build_detection_prompt(message, analysis),
                ReanalysisDetection,
                conversation_id=conversation_id,
            )
            remote_params = _drop_unchanged(remote.modified_parameters, analysis)
            detection = remote.model_copy(update={
                "modified_parameters": remote_params,
                "is_reanalysis_request": remote.is_reanalysis_request and bool(remote_params),
            })
        except (llm.LLMError, llm.LLMValidationError) as e:
            log("WARN", "remote intent detection failed, using local result",
                conversation_id=conversation_id, error=str(e))

    if detection.is_reanalysis_request and detection.modified_parameters:
        detection = detection.model_copy(update={
            "confirmation_prompt": build_confirmation_prompt(analysis, detection.modified_parameters),
        })

    log("INFO", "reanalysis intent detected" if detection.is_reanalysis_request else "no reanalysis intent",
        conversation_id=conversation_id, confidence=detection.confidence,
        parameters=",".join(sorted(detection.modified_parameters)))
    return detection


async def propose(
    message: str,
    analysis: Analysis,
    threshold: int | None = None,
    conversation_id: str | None = None,
) -> VariantProposal | None:
    """
    A VariantProposal when the detector is confident enough, else None.
    Below the threshold the message is just a normal question.
    """
    threshold = settings.variant_confidence_threshold if threshold is None else threshold
    detection = await detect_reanalysis_intent(message, analysis, threshold, conversation_id)
    return to_proposal(detection, analysis, threshold)


def to_proposal(
    detection: ReanalysisDetection,
    analysis: Analysis,
    threshold: int | None = None,
) -> VariantProposal | None:
    threshold = settings.variant_confidence_threshold if threshold is None else threshold
    if not detection.is_reanalysis_request or detection.confidence < threshold:
        return None
    return VariantProposal(
        confidence=detection.confidence,
        modified_parameters=detection.modified_parameters,
        modified_query=build_modified_query(analysis.query, detection.modified_parameters),
        confirmation_prompt=detection.confirmation_prompt or "",
    )


def _label(key: str) -> str:
    return key.replace("_", " ")


def build_confirmation_prompt(analysis: Analysis, modified_parameters: dict[str, str]) -> str:
    changes = "\n".join(f"- **{_label(k)}**: {v}" for k, v in modified_parameters.items())
    return (
        "It sounds like you want a variant of this analysis with these changes:\n\n"
        f"{changes}\n\n"
        f'This creates a new analysis based on your original query "{analysis.query}" '
        "with the updated parameters. The original analysis and this conversation stay as they are.\n\n"
        "Would you like me to run the variant analysis?"
    )


QUERY_MODIFIERS = {
    "market": "targeting {} market",
    "target_audience": "for {}",
    "business_model": "using {} business model",
    "geography": "in {}",
    "timeframe": "with {} timeframe",
    "budget": "with {} budget",
}


def build_modified_query(original_query: str, modified_parameters: dict[str, str]) -> str:
    """Append parameter changes to the original query, e.g. 'X (targeting Europe market)'."""
    parts = []
    for key, value in modified_parameters.items():
        template = QUERY_MODIFIERS.get(key, _label(key) + ": {}")
        parts.append(template.format(value))
    if not parts:
        return original_query
    return f"{original_query} ({', '.join(parts)})"


# -----------------------------------------------------------------------------
# Branching (side-effecting, explicit confirmation only)
# -----------------------------------------------------------------------------


async def confirm_and_branch(
    conversation_id: str,
    user_id: str,
    modified_parameters: dict[str, str],
) -> VariantBranch:
    """
    Create the variant the user confirmed.

    Steps:
        1. Load the original conversation (must belong to user_id) and its analysis
        2. Create a new analysis with merged parameters and a modified query
        3. get_or_create the conversation for the new analysis
        4. link_variant(original, variant, modified_parameters)

    Messages are never copied between the two conversations.
    """
    params = {k.strip(): v.strip() for k, v in modified_parameters.items() if k.strip() and v and v.strip()}
    if not params:
        raise InvalidInput("At least one modified parameter is required")

    original = await conversations.get_conversation(conversation_id)
    if original.user_id != user_id:
        raise NotFound(f"Conversation {conversation_id} not found")

    base = await analyses.get_analysis(original.analysis_id)
    query = build_modified_query(base.query, params)
    variant_analysis = await analyses.create_variant(base, params, query)
    variant_conversation = await conversations.get_or_create(variant_analysis.id, user_id)
    link = await conversations.link_variant(
        original.id, variant_conversation.id, params, variant_analysis_id=variant_analysis.id,
    )
    log("INFO", "variant branch created", conversation_id=original.id,
        variant_conversation_id=variant_conversation.id, variant_analysis_id=variant_analysis.id)
    return VariantBranch(
        variant_analysis=variant_analysis,
        variant_conversation=variant_conversation,
        link=link,
    )


# -----------------------------------------------------------------------------
# Comparison (read-only)
# -----------------------------------------------------------------------------

FALLBACK_SUMMARY = (
    "The variant analysis explores the opportunity with modified parameters. Review the key "
    "differences below to understand how these changes impact the analysis."
)
FALLBACK_RECOMMENDATIONS = [
    "Review the innovation scores and feasibility ratings to assess which variant aligns better with your goals",
    "Consider the market size and competitive landscape differences",
    "Evaluate which parameter set matches your resources and capabilities",
]
FALLBACK_REASONING = (
    "Both analyses provide valuable insights. The choice depends on your specific goals, "
    "resources, and market positioning."
)


def fallback_comparison(original: Analysis, variant: Analysis) -> VariantComparison:
    """Rule-based comparison: score, feasibility, then every changed parameter."""
    differences: list[KeyDifference] = []
    if original.innovation_score is not None and variant.innovation_score is not None:
        delta = variant.innovation_score - original.innovation_score
        differences.append(KeyDifference(
            aspect="Innovation Score",
            original=f"{original.innovation_score:g}/100",
            variant=f"{variant.innovation_score:g}/100",
            impact="positive" if delta > 0 else "negative" if delta < 0 else "neutral",
        ))
    if original.feasibility_rating and variant.feasibility_rating:
        differences.append(KeyDifference(
            aspect="Feasibility",
            original=original.feasibility_rating,
            variant=variant.feasibility_rating,
        ))
    for key, value in variant.parameters.items():
        if original.parameters.get(key) != value:
            differences.append(KeyDifference(
                aspect=_label(key).title(),
                original=original.parameters.get(key) or "Not specified",
                variant=value,
            ))
    return VariantComparison(
        summary=FALLBACK_SUMMARY,
        key_differences=differences,
        recommendations=list(FALLBACK_RECOMMENDATIONS),
        reasoning=FALLBACK_REASONING,
    )


async def compare_variants(
    original: Analysis,
    variant: Analysis,
    conversation_id: str | None = None,
) -> VariantComparison:
    """
    Compare an analysis with one of its variants. The backend writes the
    comparison; on any backend failure the rule-based comparison is returned.
    """
    if variant.status != "complete":
        log("INFO", "variant not complete, using rule-based comparison",
            conversation_id=conversation_id, variant_analysis_id=variant.id, status=variant.status)
        return fallback_comparison(original, variant)
    try:
        return await llm.call_llm_structured(
            prompts.build_comparison_prompt(original, variant),
            VariantComparison,
            conversation_id=conversation_id,
        )
    except (llm.LLMError, llm.LLMValidationError) as e:
        log("WARN", "variant comparison failed, using rule-based comparison",
            conversation_id=conversation_id, error=str(e))
        return fallback_comparison(original, variant)


IMPACT_LABELS = {"positive": "better", "negative": "worse", "neutral": "changed"}
PREFERRED_LABELS = {"original": "Original Analysis", "variant": "Variant Analysis", "both": "Both Analyses"}


def format_comparison(comparison: VariantComparison) -> str:
    """Markdown rendering for chat display."""
    out = f"## Comparison Summary\n\n{comparison.summary}\n\n"
    if comparison.key_differences:
        out += "### Key Differences\n\n"
        for diff in comparison.key_differences:
            out += f"**{diff.aspect}** ({IMPACT_LABELS[diff.impact]})\n"
            out += f"- Original: {diff.original}\n"
            out += f"- Variant: {diff.variant}\n\n"
    if comparison.recommendations:
        out += "### Recommendations\n\n"
        out += "".join(f"- {r}\n" for r in comparison.recommendations)
        out += "\n"
    if comparison.preferred_variant:
        out += f"### Recommendation: {PREFERRED_LABELS[comparison.preferred_variant]}\n\n{comparison.reasoning}\n"
    return out


async def compare_branch(conversation_id: str, variant_conversation_id: str, user_id: str) -> ComparisonResponse:
    """
    Compare a conversation's analysis with a linked variant's.

    Raises:
        NotFound: Unknown conversation, another user's, or the variant is not linked to it.
    """
    original = await conversations.get_conversation(conversation_id)
    if original.user_id != user_id:
        raise NotFound(f"Conversation {conversation_id} not found")
    if variant_conversation_id not in original.variant_ids:
        raise NotFound(f"Conversation {variant_conversation_id} is not a variant of {conversation_id}")

    variant = await conversations.get_conversation(variant_conversation_id)
    base = await analyses.get_analysis(original.analysis_id)
    variant_analysis = await analyses.get_analysis(variant.analysis_id)
    comparison = await compare_variants(base, variant_analysis, conversation_id=conversation_id)
    return ComparisonResponse(
        original_analysis_id=base.id,
        variant_analysis_id=variant_analysis.id,
        comparison=comparison,
        formatted=format_comparison(comparison),
    )
