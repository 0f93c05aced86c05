"""
Gap Advisor Backend — Message Input Safety

Screens a user question before it is stored or sent to the completion backend:
    sanitize (markup, malicious payloads) → prompt-injection check → moderation

Every check is pattern based and runs in-process. A rejected message raises
RejectedInput (an InvalidInput, so the HTTP layer answers 400) and nothing is
written. Rejections are logged with a preview, never the full text.
"""

import re

from advisor.config import log
from advisor.conversations import InvalidInput
from advisor.models import InjectionCheck, ModerationResult, Severity

SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class RejectedInput(InvalidInput):
    """A message refused by the safety checks. `code` names the check."""

    def __init__(self, message: str, code: str, severity: Severity = "medium"):
        self.code = code
        self.severity = severity
        super().__init__(message)


# -----------------------------------------------------------------------------
# 1. Sanitization
# -----------------------------------------------------------------------------

EVENT_HANDLER_PATTERN = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
SCRIPT_PATTERN = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")

MALICIOUS_PATTERNS = [
    re.compile(r";\s*(DROP|DELETE|INSERT|UPDATE|ALTER|TRUNCATE|EXEC)\b", re.IGNORECASE),
    re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b|\b(DROP|ALTER|TRUNCATE)\s+TABLE\b", re.IGNORECASE),
    re.compile(r"'\s*OR\s+'?1'?\s*=\s*'?1", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\.\.[/\\]"),
    re.compile(r"\x00"),
    re.compile(r"`[^`]*\b(?:rm|curl|wget|bash|sh|chmod|sudo)\b[^`]*`"),
]

MIN_CONTENT_AROUND_SCRIPT = 10


def _normalize_whitespace(text: str) -> str:
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def sanitize(text: str) -> str:
    """
    Strip markup and normalize whitespace. Raises RejectedInput for event
    handlers, script-only payloads and known malicious patterns.
    """
    if EVENT_HANDLER_PATTERN.search(text) and "<" in text:
        raise RejectedInput("Message contains potentially malicious content", "MALICIOUS_CONTENT", "high")

    if SCRIPT_PATTERN.search(text):
        outside = SCRIPT_PATTERN.sub("", text).strip()
        if len(HTML_TAG_PATTERN.sub("", outside).strip()) < MIN_CONTENT_AROUND_SCRIPT:
            raise RejectedInput("Message contains potentially malicious content", "MALICIOUS_CONTENT", "high")
        text = SCRIPT_PATTERN.sub("", text)

    cleaned = HTML_TAG_PATTERN.sub("", text)
    for pattern in MALICIOUS_PATTERNS:
        if pattern.search(cleaned):
            raise RejectedInput("Message contains potentially malicious content", "MALICIOUS_CONTENT", "high")

    cleaned = _normalize_whitespace(cleaned)
    if not cleaned:
        raise RejectedInput("Message contains no valid content after sanitization", "EMPTY_AFTER_SANITIZE", "low")
    return cleaned


# -----------------------------------------------------------------------------
# 2. Prompt injection
# -----------------------------------------------------------------------------

# category → (patterns, score, severity)
INJECTION_RULES: dict[str, tuple[list[re.Pattern], float, Severity]] = {
    "system_override": ([
        re.compile(r"ignore\s+(all\s+)?(previous|prior|above|earlier)\s+(instructions?|prompts?|commands?|directives?)", re.I),
        re.compile(r"disregard\s+(all\s+)?(previous|prior|above|earlier)\s+(instructions?|prompts?|commands?)", re.I),
        re.compile(r"forget\s+(all\s+)?(previous|prior|above|earlier)\s+(instructions?|prompts?|commands?)", re.I),
        re.compile(r"override\s+(previous|system)\s+(instructions?|prompts?|settings?)", re.I),
        re.compile(r"new\s+(instructions?|system\s+prompt)", re.I),
        re.compile(r"reveal\s+(your\s+)?(system\s+prompt|instructions)", re.I),
    ], 0.9, "critical"),
    "role_switching": ([
        re.compile(r"you\s+are\s+now\s+(a|an)\s+\w+", re.I),
        re.compile(r"pretend\s+(to\s+be|you\s+are)\s+", re.I),
        re.compile(r"roleplay\s+as\s+", re.I),
        re.compile(r"from\s+now\s+on,?\s+you\s+(are|will\s+be)\s+", re.I),
    ], 0.8, "high"),
    "jailbreak": ([
        re.compile(r"jailbreak", re.I),
        re.compile(r"\bDAN\s+mode", re.I),
        re.compile(r"(developer|god|admin|unrestricted)\s+mode", re.I),
        re.compile(r"(bypass|disable|remove)\s+(your\s+)?(safety|filters?|restrictions?|limitations?)", re.I),
    ], 1.0, "critical"),
    "instruction_injection": ([
        re.compile(r"\[/?(system|assistant|user)\]", re.I),
        re.compile(r"<\|(system|assistant|user)\|>", re.I),
        re.compile(r"###\s*(system|assistant|instruction)", re.I),
    ], 0.85, "high"),
    "delimiter_manipulation": ([
        re.compile(r"```(system|instruction|prompt)", re.I),
        re.compile(r"(---|===)\s*(system|instruction)", re.I),
    ], 0.6, "medium"),
    "context_manipulation": ([
        re.compile(r"the\s+(above|previous)\s+(text|content|message)\s+(is|was)\s+(fake|false|incorrect|wrong)", re.I),
        re.compile(r"ignore\s+everything\s+(above|before|prior)", re.I),
        re.compile(r"disregard\s+the\s+(context|conversation|history)", re.I),
    ], 0.7, "medium"),
    "obfuscation": ([
        re.compile(r"\\x[0-9a-f]{2}", re.I),
        re.compile(r"\\u[0-9a-f]{4}", re.I),
        re.compile(r"&#\d+;"),
        re.compile(r"\b(base64|rot13)\b", re.I),
    ], 0.5, "medium"),
}


def detect_injection(text: str) -> InjectionCheck:
    """Score `text` against the injection rules. Any matched category is an injection."""
    detected: list[str] = []
    score = 0.0
    severity: Severity = "low"
    for category, (patterns, weight, level) in INJECTION_RULES.items():
        if any(p.search(text) for p in patterns):
            detected.append(category)
            score += weight
            if SEVERITY_ORDER[level] > SEVERITY_ORDER[severity]:
                severity = level
    return InjectionCheck(
        is_injection=bool(detected),
        confidence=min(score, 1.0),
        detected_patterns=detected,
        severity=severity,
    )


# -----------------------------------------------------------------------------
# 3. Moderation
# -----------------------------------------------------------------------------

# category → (patterns, severity, requires_review)
MODERATION_RULES: dict[str, tuple[list[re.Pattern], Severity, bool]] = {
    "self_harm": ([
        re.compile(r"\b(want\s+to\s+die|suicide|end\s+my\s+life|kill\s+myself)\b", re.I),
        re.compile(r"\b(self[\s-]harm|cut\s+myself|hurt\s+myself)\b", re.I),
        re.compile(r"\b(no\s+reason\s+to\s+live|life\s+is\s+not\s+worth)\b", re.I),
    ], "critical", True),
    "hate_speech": ([
        re.compile(r"\b(hate|despise|loathe)\s+(all\s+)?(blacks|whites|jews|muslims|christians|asians|latinos|gays|women|men)\b", re.I),
        re.compile(r"\b(terrorist|extremist)\s+(muslim|islam|arab)", re.I),
    ], "critical", True),
    "harassment": ([
        re.compile(r"\b(kill\s+yourself|kys|die\s+in\s+a\s+fire)\b", re.I),
        re.compile(r"\b(worthless|pathetic|loser|idiot|moron|stupid)\s+(person|human|user)\b", re.I),
        re.compile(r"\b(threaten|harm|hurt|attack)\s+(you|your\s+family)\b", re.I),
    ], "high", True),
    "violence": ([
        re.compile(r"\b(terrorist\s+attack|mass\s+shooting|build\s+a\s+bomb)\b", re.I),
        re.compile(r"\b(murder|assassinate)\s+(someone|people|person)\b", re.I),
        re.compile(r"\b(plan(ning)?\s+to\s+(kill|harm|attack))\b", re.I),
    ], "high", True),
    "sexual_content": ([
        re.compile(r"\b(porn|pornography|xxx|nsfw)\b", re.I),
        re.compile(r"\b(nude|naked)\s+(photos?|images?|videos?)\b", re.I),
    ], "medium", True),
    "scam": ([
        re.compile(r"\b(send\s+money|wire\s+transfer)\s+to\b", re.I),
        re.compile(r"\b(nigerian\s+prince|lottery\s+winner)\b", re.I),
    ], "high", True),
    "spam": ([
        re.compile(r"(?:https?://\S+[\s\S]*?){2}https?://", re.I),
        re.compile(r"[!?]{5,}"),
        re.compile(r"\b(bitcoin|crypto|nft|token)\s+(giveaway|airdrop)\b", re.I),
    ], "medium", False),
}


def moderate(text: str) -> ModerationResult:
    """
    Classify `text` into moderation categories. Approved when the worst
    category is low, or medium without needing review.
    """
    categories: list[str] = []
    severity: Severity = "low"
    requires_review = False
    for category, (patterns, level, review) in MODERATION_RULES.items():
        if any(p.search(text) for p in patterns):
            categories.append(category)
            requires_review = requires_review or review
            if SEVERITY_ORDER[level] > SEVERITY_ORDER[severity]:
                severity = level
    approved = severity == "low" or (severity == "medium" and not requires_review)
    return ModerationResult(
        approved=approved,
        severity=severity,
        categories=categories,
        requires_review=requires_review,
    )


# -----------------------------------------------------------------------------
# Public entry point
# -----------------------------------------------------------------------------


def screen_user_message(text: str, **context) -> str:
    """
    Run all three checks on an already length-validated message.
    Returns the sanitized text to store. Raises RejectedInput.
    """
    preview = text[:100]
    try:
        cleaned = sanitize(text)
    except RejectedInput as e:
        log("WARN", "message rejected", check="sanitize", code=e.code, severity=e.severity,
            preview=preview, **context)
        raise

    injection = detect_injection(cleaned)
    if injection.is_injection:
        log("WARN", "message rejected", check="prompt_injection", severity=injection.severity,
            patterns=",".join(injection.detected_patterns), confidence=injection.confidence,
            preview=preview, **context)
        raise RejectedInput(
            "Your message contains content that violates our usage policy. Please rephrase your question.",
            "PROMPT_INJECTION_DETECTED",
            injection.severity,
        )

    moderation = moderate(cleaned)
    if not moderation.approved:
        log("WARN", "message rejected", check="moderation", severity=moderation.severity,
            categories=",".join(moderation.categories), preview=preview, **context)
        raise RejectedInput(
            "Your message contains inappropriate content. Please keep conversations professional and respectful.",
            "CONTENT_MODERATION_FAILED",
            moderation.severity,
        )
    if moderation.categories:
        log("INFO", "message flagged", categories=",".join(moderation.categories), **context)
    return cleaned
