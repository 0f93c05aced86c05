"""
Gap Advisor Backend — Shared Test Fixtures

Provides mocked versions of external services (LLM, DB/storage)
for deterministic, fast unit tests.
"""

import asyncio
import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport

# Ensure advisor package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


# -----------------------------------------------------------------------------
# Environment Setup (before importing advisor modules)
# -----------------------------------------------------------------------------

# Set test environment variables before importing advisor modules
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-supabase-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")


# -----------------------------------------------------------------------------
# Mock Response Classes
# -----------------------------------------------------------------------------


@dataclass
class MockLLMMessage:
    """Mock message from LLM response."""
    content: str
    reasoning_content: Optional[str] = None


@dataclass
class MockLLMChoice:
    """Mock choice from LLM response."""
    message: MockLLMMessage


@dataclass
class MockLLMUsage:
    """Mock usage stats from LLM response."""
    total_tokens: int = 100
    prompt_tokens: int = 60
    completion_tokens: int = 40


@dataclass
class MockLLMResponse:
    """Mock LLM completion response."""
    choices: list[MockLLMChoice]
    usage: MockLLMUsage = None

    def __post_init__(self):
        if self.usage is None:
            self.usage = MockLLMUsage()


def create_mock_llm_response(content: str) -> MockLLMResponse:
    """Create a mock LLM response with given content."""
    return MockLLMResponse(
        choices=[MockLLMChoice(message=MockLLMMessage(content=content))]
    )


DEFAULT_ADVICE = (
    "Based on your analysis, the strongest opportunity is the first gap. "
    "**Key insight:** start with a narrow customer segment and validate demand with pre-orders."
)


# -----------------------------------------------------------------------------
# Mock Data Fixtures
# -----------------------------------------------------------------------------


def make_analysis_row(analysis_id: str = "analysis-1", user_id: str = "user-1", **overrides) -> dict:
    row = {
        "id": analysis_id,
        "user_id": user_id,
        "query": "sustainable packaging for small e-commerce brands",
        "parameters": {"market": "US", "target_audience": "small e-commerce brands"},
        "innovation_score": 78,
        "feasibility_rating": "medium",
        "gaps": [
            {
                "title": "Compostable mailers under $0.20",
                "description": "No supplier offers certified compostable mailers at small-batch prices.",
                "category": "product",
                "score": 86,
            },
            {
                "title": "Packaging carbon labels",
                "description": "Brands cannot show per-package footprint to customers.",
                "category": "service",
                "score": 72,
            },
        ],
        "competitors": [
            {"name": "noissue", "description": "Custom compostable mailers with high minimums."},
            {"name": "EcoEnclose", "description": "Recycled shipping supplies for DTC brands."},
        ],
        "action_plan": {
            "phases": [
                {"name": "Validate", "description": "Interview 20 Shopify merchants."},
                {"name": "Pilot", "description": "Ship 500 mailers to 5 brands."},
            ]
        },
        "parent_analysis_id": None,
        "status": "complete",
        "created_at": "2026-01-05T10:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def sample_analysis():
    """The seeded analysis as a model."""
    from advisor.models import Analysis
    return Analysis.model_validate(make_analysis_row())


def make_message(position: int, role: str, content: str, conversation_id: str = "conv-1"):
    from advisor.models import Message
    return Message.model_validate({
        "id": f"msg-{position}",
        "conversation_id": conversation_id,
        "position": position,
        "role": role,
        "content": content,
        "metadata": {},
        "created_at": "2026-01-05T10:00:00+00:00",
    })


def make_history(count: int, conversation_id: str = "conv-1") -> list:
    """Alternating user/assistant messages numbered 1..count."""
    return [
        make_message(
            i,
            "user" if i % 2 == 0 else "assistant",
            f"Question {i + 1} about pricing?" if i % 2 == 0 else f"Answer {i + 1}. Recommendation: test pricing.",
            conversation_id,
        )
        for i in range(count)
    ]


# -----------------------------------------------------------------------------
# LLM Mocking Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_llm(monkeypatch):
    """
    Mock litellm.acompletion to return predictable responses.

    Returns the mock function so tests can customize responses.
    """
    async def mock_acompletion(*args, **kwargs) -> MockLLMResponse:
        return create_mock_llm_response(DEFAULT_ADVICE)

    mock = AsyncMock(side_effect=mock_acompletion)
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


@pytest.fixture
def mock_llm_with_response(monkeypatch):
    """
    Factory fixture to mock LLM with a specific JSON response.

    Usage:
        def test_example(mock_llm_with_response):
            mock = mock_llm_with_response({"key": "value"})
            # ... test code
    """
    def _create_mock(response_data: dict):
        async def mock_acompletion(*args, **kwargs) -> MockLLMResponse:
            return create_mock_llm_response(json.dumps(response_data))

        mock = AsyncMock(side_effect=mock_acompletion)
        monkeypatch.setattr("litellm.acompletion", mock)
        return mock

    return _create_mock


@pytest.fixture
def mock_llm_failure(monkeypatch):
    """Mock LLM to simulate all providers failing."""
    async def mock_acompletion(*args, **kwargs):
        raise Exception("Service unavailable")

    mock = AsyncMock(side_effect=mock_acompletion)
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


@pytest.fixture
def mock_llm_rate_limit_then_success(monkeypatch):
    """Mock LLM to fail with rate limit once, then succeed."""
    call_count = 0

    async def mock_acompletion(*args, **kwargs) -> MockLLMResponse:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise Exception("429 rate_limit_exceeded")
        return create_mock_llm_response(DEFAULT_ADVICE)

    mock = AsyncMock(side_effect=mock_acompletion)
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


# -----------------------------------------------------------------------------
# Database Mocking Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_db(monkeypatch):
    """
    Mock all database operations with in-memory storage.

    Seeded with analysis-1 owned by user-1. Tiers are read from
    storage["tiers"] (default free). Returns the storage dict for inspection.
    """
    storage = {
        "analyses": {"analysis-1": make_analysis_row()},
        "tiers": {},
        "conversations": {},
        "messages": {},
        "variant_links": [],
        "quotas": {},
        "exports": {},
        "feedback": {},
        "llm_state": {"active_provider": "gemini/gemini-2.5-flash"},
    }
    counters = {"analysis": 1, "conversation": 0, "message": 0, "feedback": 0}

    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ── Analyses & tiers ──

    async def mock_get_analysis(analysis_id: str) -> Optional[dict]:
        row = storage["analyses"].get(analysis_id)
        return dict(row) if row else None

    async def mock_create_variant_analysis(base: dict, modified_parameters: dict, query: str) -> dict:
        counters["analysis"] += 1
        analysis_id = f"analysis-{counters['analysis']}"
        row = {
            **make_analysis_row(analysis_id, base.get("user_id")),
            "query": query,
            "parameters": {**(base.get("parameters") or {}), **modified_parameters},
            "parent_analysis_id": base["id"],
            "status": "pending",
            "gaps": [],
            "competitors": [],
            "action_plan": None,
            "innovation_score": None,
            "feasibility_rating": None,
        }
        storage["analyses"][analysis_id] = row
        return dict(row)

    async def mock_get_user_tier(user_id: str) -> str:
        return storage["tiers"].get(user_id, "free")

    # ── Conversations ──

    async def mock_get_conversation(conversation_id: str) -> Optional[dict]:
        row = storage["conversations"].get(conversation_id)
        return dict(row) if row else None

    async def mock_get_conversation_by_analysis(analysis_id: str, user_id: str) -> Optional[dict]:
        await asyncio.sleep(0)
        for row in storage["conversations"].values():
            if row["analysis_id"] == analysis_id and row["user_id"] == user_id:
                return dict(row)
        return None

    async def mock_insert_conversation(analysis_id: str, user_id: str) -> None:
        await asyncio.sleep(0)
        for row in storage["conversations"].values():
            if row["analysis_id"] == analysis_id and row["user_id"] == user_id:
                return  # unique (analysis_id, user_id): duplicate ignored
        counters["conversation"] += 1
        conversation_id = f"conv-{counters['conversation']}"
        now = _now()
        storage["conversations"][conversation_id] = {
            "id": conversation_id,
            "analysis_id": analysis_id,
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        }

    async def mock_touch_conversation(conversation_id: str) -> None:
        if conversation_id in storage["conversations"]:
            storage["conversations"][conversation_id]["updated_at"] = _now()

    async def mock_delete_conversation(conversation_id: str) -> None:
        storage["conversations"].pop(conversation_id, None)
        storage["messages"] = {
            k: m for k, m in storage["messages"].items() if m["conversation_id"] != conversation_id
        }
        storage["variant_links"] = [
            link for link in storage["variant_links"]
            if conversation_id not in (link["original_conversation_id"], link["variant_conversation_id"])
        ]

    # ── Messages ──

    async def mock_insert_message(
        conversation_id: str, position: int, role: str, content: str, metadata: dict,
    ) -> dict:
        for m in storage["messages"].values():
            if m["conversation_id"] == conversation_id and m["position"] == position:
                raise Exception("duplicate key value violates unique constraint")
        counters["message"] += 1
        message_id = f"msg-{counters['message']}"
        row = {
            "id": message_id,
            "conversation_id": conversation_id,
            "position": position,
            "role": role,
            "content": content,
            "metadata": metadata,
            "created_at": _now(),
        }
        storage["messages"][message_id] = row
        return dict(row)

    def _conversation_messages(conversation_id: str) -> list[dict]:
        return sorted(
            (m for m in storage["messages"].values() if m["conversation_id"] == conversation_id),
            key=lambda m: m["position"],
        )

    async def mock_get_messages(conversation_id: str, limit: int | None = None) -> list[dict]:
        rows = _conversation_messages(conversation_id)
        if limit is not None:
            rows = rows[-limit:]
        return [dict(m) for m in rows]

    async def mock_get_next_message_position(conversation_id: str) -> int:
        await asyncio.sleep(0)
        rows = _conversation_messages(conversation_id)
        return rows[-1]["position"] + 1 if rows else 0

    async def mock_get_message(message_id: str) -> Optional[dict]:
        row = storage["messages"].get(message_id)
        return dict(row) if row else None

    # ── Message feedback ──

    def _upsert_feedback(message_id: str, user_id: str, kind: str, fields: dict) -> dict:
        key = (message_id, user_id, kind)
        existing = storage["feedback"].get(key)
        if existing is None:
            counters["feedback"] += 1
            feedback_id = f"feedback-{counters['feedback']}"
        else:
            feedback_id = existing["id"]
        row = {"id": feedback_id, "message_id": message_id, "user_id": user_id, "kind": kind,
               **fields, "created_at": _now()}
        storage["feedback"][key] = row
        return dict(row)

    async def mock_upsert_message_rating(message_id: str, user_id: str, rating: int, feedback) -> dict:
        return _upsert_feedback(message_id, user_id, "rating", {"rating": rating, "details": feedback})

    async def mock_upsert_message_report(message_id, user_id, category, reason, details) -> dict:
        return _upsert_feedback(
            message_id, user_id, "report", {"category": category, "reason": reason, "details": details},
        )

    async def mock_count_reports_since(user_id: str, since: str) -> int:
        return sum(
            1 for row in storage["feedback"].values()
            if row["user_id"] == user_id and row["kind"] == "report" and row["created_at"] >= since
        )

    # ── Variant links ──

    async def mock_insert_variant_link(
        original_conversation_id: str,
        variant_conversation_id: str,
        modified_parameters: dict,
        variant_analysis_id: str | None = None,
    ) -> None:
        for link in storage["variant_links"]:
            if (link["original_conversation_id"], link["variant_conversation_id"]) == (
                original_conversation_id, variant_conversation_id,
            ):
                return
        storage["variant_links"].append({
            "original_conversation_id": original_conversation_id,
            "variant_conversation_id": variant_conversation_id,
            "variant_analysis_id": variant_analysis_id,
            "modified_parameters": modified_parameters,
            "created_at": _now(),
        })

    async def mock_get_variant_links(conversation_id: str) -> list[dict]:
        return [
            dict(link) for link in storage["variant_links"]
            if link["original_conversation_id"] == conversation_id
        ]

    # ── Quota counters ──

    async def mock_get_quota_usage(user_id: str, bucket: str) -> int:
        return storage["quotas"].get((user_id, bucket), 0)

    async def mock_increment_quota(user_id: str, bucket: str, limit: int) -> Optional[int]:
        used = storage["quotas"].get((user_id, bucket), 0)
        await asyncio.sleep(0)  # widen the read/write window
        if limit >= 0 and used >= limit:
            return None
        storage["quotas"][(user_id, bucket)] = used + 1
        return used + 1

    async def mock_decrement_quota(user_id: str, bucket: str) -> int:
        used = max(0, storage["quotas"].get((user_id, bucket), 0) - 1)
        storage["quotas"][(user_id, bucket)] = used
        return used

    # ── Export artifacts & LLM state ──

    async def mock_store_export_artifact(path: str, content: bytes, content_type: str) -> str:
        storage["exports"][path] = {"content": content, "content_type": content_type}
        return f"https://test.supabase.co/storage/v1/object/public/conversation-exports/{path}"

    async def mock_get_llm_state() -> str:
        return storage["llm_state"]["active_provider"]

    async def mock_update_llm_state(provider: str, reason: str) -> None:
        storage["llm_state"]["active_provider"] = provider

    # Apply mocks
    mocks = {
        "get_analysis": mock_get_analysis,
        "create_variant_analysis": mock_create_variant_analysis,
        "get_user_tier": mock_get_user_tier,
        "get_conversation": mock_get_conversation,
        "get_conversation_by_analysis": mock_get_conversation_by_analysis,
        "insert_conversation": mock_insert_conversation,
        "touch_conversation": mock_touch_conversation,
        "delete_conversation": mock_delete_conversation,
        "insert_message": mock_insert_message,
        "get_messages": mock_get_messages,
        "get_next_message_position": mock_get_next_message_position,
        "get_message": mock_get_message,
        "upsert_message_rating": mock_upsert_message_rating,
        "upsert_message_report": mock_upsert_message_report,
        "count_reports_since": mock_count_reports_since,
        "insert_variant_link": mock_insert_variant_link,
        "get_variant_links": mock_get_variant_links,
        "get_quota_usage": mock_get_quota_usage,
        "increment_quota": mock_increment_quota,
        "decrement_quota": mock_decrement_quota,
        "store_export_artifact": mock_store_export_artifact,
        "get_llm_state": mock_get_llm_state,
        "update_llm_state": mock_update_llm_state,
    }
    for name, fn in mocks.items():
        monkeypatch.setattr(f"advisor.db.{name}", AsyncMock(side_effect=fn))

    return storage


# -----------------------------------------------------------------------------
# HTTP Client Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
async def client():
    """Async HTTP client for testing FastAPI endpoints."""
    from advisor.main import app
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def parse_sse_events(text: str) -> list[dict]:
    """Parse an SSE body into event dicts."""
    events = []
    for line in text.split("\n"):
        if line.startswith("data: "):
            events.append(json.loads(line[6:]))
    return events


# -----------------------------------------------------------------------------
# Module State Reset Fixture
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_module_state(monkeypatch):
    """Reset in-process state (LLM provider cache, locks, caches, dedup) before each test."""
    import advisor.context as context_module
    import advisor.conversations as conversations_module
    import advisor.llm as llm_module
    import advisor.quota as quota_module
    import advisor.turns as turns_module
    from advisor.api.conversations import limiter
    from advisor.config import settings

    def _reset():
        llm_module._active_provider = None
        llm_module._initialized = False
        llm_module._rate_limited_until.clear()
        conversations_module._create_locks.clear()
        conversations_module._append_locks.clear()
        quota_module._bucket_locks.clear()
        context_module._analysis_context_cache.clear()
        turns_module._active_turns.clear()
        limiter.reset()

    monkeypatch.setattr(settings, "llm_retry_backoff_seconds", 0)
    _reset()
    yield
    _reset()
