"""
Gap Advisor Backend — Suggested Questions

Template-based follow-up questions for the conversation panel.
Deterministic: same analysis + history always yields the same list.
"""

import re

from advisor.models import Analysis, Message, SuggestedQuestion

DEFAULT_LIMIT = 5
HEAVILY_DISCUSSED = 3       # keyword hits above which a category is skipped for follow-ups
SIMILARITY_THRESHOLD = 0.5

CATEGORIES = ("market_validation", "competitive_analysis", "execution_strategy", "risk_assessment")

QUESTION_TEMPLATES = {
    "market_validation": [
        "What evidence supports the market demand for {gap}?",
        "Who are the early adopters most likely to try {gap}?",
        "What market trends make {gap} timely right now?",
        "How large is the addressable market for {gap}?",
        "What customer pain points does {gap} solve?",
        "How would you validate demand for {gap} before building?",
        "What pricing model would work best for {gap}?",
        "Which geographic markets should be targeted first for {gap}?",
    ],
    "competitive_analysis": [
        "Why haven't existing competitors addressed {gap}?",
        "What would be my unique competitive advantage with {gap}?",
        "Which competitor poses the biggest threat to {gap}?",
        "How defensible is the position for {gap}?",
        "What barriers to entry exist for {gap}?",
        "How would incumbents likely respond to {gap}?",
        "What partnerships could strengthen {gap}?",
    ],
    "execution_strategy": [
        "What should be my first step to validate {gap}?",
        "What resources would I need to get started with {gap}?",
        "What's the minimum viable product for {gap}?",
        "How long would it take to launch {gap}?",
        "What team composition is needed for {gap}?",
        "How should I prioritize features for {gap}?",
        "What metrics should I track for {gap}?",
    ],
    "risk_assessment": [
        "What are the biggest risks I should prepare for with {gap}?",
        "What regulatory challenges might {gap} face?",
        "What could cause {gap} to fail?",
        "How capital-intensive is {gap}?",
        "What market conditions could negatively impact {gap}?",
        "What's the worst-case scenario for {gap}?",
    ],
}

INITIAL_QUESTIONS = {
    "market_validation": [
        "What evidence supports the market demand for {gap}?",
        "Who are the early adopters most likely to try {gap}?",
    ],
    "competitive_analysis": [
        "Why haven't existing competitors addressed {gap}?",
    ],
    "execution_strategy": [
        "What should be my first step to validate {gap}?",
    ],
    "risk_assessment": [
        "What could cause {gap} to fail?",
        "What regulatory challenges might {gap} face?",
    ],
}

TOPIC_KEYWORDS = {
    "market_validation": ["market", "demand", "customer", "audience", "pricing", "revenue"],
    "competitive_analysis": ["competitor", "competition", "advantage", "differentiation", "threat"],
    "execution_strategy": ["build", "launch", "mvp", "team", "resource", "timeline", "feature"],
    "risk_assessment": ["risk", "challenge", "fail", "regulatory", "capital", "worst"],
}

BASE_PRIORITY = {
    "market_validation": 80,
    "competitive_analysis": 70,
    "execution_strategy": 75,
    "risk_assessment": 65,
}


def _gap_title(analysis: Analysis) -> str:
    return analysis.gaps[0].title if analysis.gaps else "this opportunity"


def _feasibility(analysis: Analysis) -> str:
    return (analysis.feasibility_rating or "").strip().lower()


def category_priority(category: str, analysis: Analysis) -> int:
    """Base priority for a category, adjusted by the analysis scores."""
    priority = BASE_PRIORITY[category]
    if category == "market_validation" and (analysis.innovation_score or 0) > 80:
        priority += 10
    elif category == "competitive_analysis" and len(analysis.competitors) > 3:
        priority += 10
    elif category == "execution_strategy" and _feasibility(analysis) == "high":
        priority += 10
    elif category == "risk_assessment" and _feasibility(analysis) == "low":
        priority += 15
    return priority


def discussed_topics(history: list[Message]) -> dict[str, int]:
    """Keyword hits per category across the history."""
    counts = {c: 0 for c in CATEGORIES}
    for message in history:
        content = message.content.lower()
        for category, words in TOPIC_KEYWORDS.items():
            counts[category] += sum(1 for w in words if w in content)
    return counts


def _words(text: str) -> set[str]:
    return {w for w in re.sub(r"[^\w\s]", "", text.lower()).split() if len(w) > 3}


def is_similar(q1: str, q2: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """Jaccard overlap of significant words."""
    a, b = _words(q1), _words(q2)
    union = a | b
    if not union:
        return False
    return len(a & b) / len(union) >= threshold


def _already_asked(question: str, history: list[Message]) -> bool:
    return any(m.role == "user" and is_similar(question, m.content) for m in history)


def _sort_and_dedupe(questions: list[SuggestedQuestion], limit: int) -> list[SuggestedQuestion]:
    unique: dict[str, SuggestedQuestion] = {}
    for q in sorted(questions, key=lambda q: (-q.priority, q.text)):
        unique.setdefault(q.text, q)
    return list(unique.values())[:limit]


def initial_suggestions(analysis: Analysis, limit: int = DEFAULT_LIMIT) -> list[SuggestedQuestion]:
    """Starter questions for an empty conversation."""
    gap = _gap_title(analysis)
    questions = []
    for category in CATEGORIES:
        templates = INITIAL_QUESTIONS[category]
        if category == "risk_assessment" and _feasibility(analysis) != "low":
            templates = templates[:1]
        for i, template in enumerate(templates):
            position_bonus = (len(templates) - i) * 5
            questions.append(SuggestedQuestion(
                text=template.format(gap=gap),
                category=category,
                priority=category_priority(category, analysis) + position_bonus,
            ))
    return _sort_and_dedupe(questions, limit)


def follow_up_suggestions(
    analysis: Analysis,
    history: list[Message],
    limit: int = DEFAULT_LIMIT,
) -> list[SuggestedQuestion]:
    """Questions steering toward categories the conversation has not covered yet."""
    gap = _gap_title(analysis)
    topics = discussed_topics(history)
    total = sum(topics.values())
    questions = []
    for category in CATEGORIES:
        if topics[category] > HEAVILY_DISCUSSED:
            continue
        priority = category_priority(category, analysis) - topics[category] * 10
        if total > 0 and topics[category] == 0:
            priority += 15
        priority = max(0, min(100, priority))

        fresh = [
            t.format(gap=gap) for t in QUESTION_TEMPLATES[category]
            if not _already_asked(t.format(gap=gap), history)
        ]
        for text in fresh[:2]:
            questions.append(SuggestedQuestion(text=text, category=category, priority=priority))
    return _sort_and_dedupe(questions, limit)


def generate_suggestions(
    analysis: Analysis,
    history: list[Message] | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[SuggestedQuestion]:
    """Initial questions for a fresh conversation, follow-ups once the user has asked something."""
    history = history or []
    if not any(m.role == "user" for m in history):
        return initial_suggestions(analysis, limit)
    return follow_up_suggestions(analysis, history, limit)
