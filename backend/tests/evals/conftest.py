"""
Gap Advisor Backend — LLM Evaluation Test Fixtures

These fixtures are for prompt evaluation tests that make REAL LLM calls.
Used to validate prompt quality, not for regression testing.
"""

import os
import sys
from typing import Any

import pytest

# Ensure advisor package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))


# -----------------------------------------------------------------------------
# Environment Setup
# -----------------------------------------------------------------------------


def is_real_api_key(key: str | None) -> bool:
    """Check if API key looks like a real key (not a test placeholder)."""
    if not key:
        return False
    if key.startswith("test-"):
        return False
    return len(key) >= 20


@pytest.fixture(scope="session")
def check_api_keys():
    """Skip eval tests if real API keys are not available."""
    if not is_real_api_key(os.environ.get("GEMINI_API_KEY", "")):
        pytest.skip("Real GEMINI_API_KEY required for evaluation tests")


# -----------------------------------------------------------------------------
# Test Cases
# -----------------------------------------------------------------------------

# Messages the local classifier cannot settle on its own: either a soft cue
# with no recognizable parameter, or phrasing that only a model can read.
DETECTION_CASES = [
    {
        "id": "audience_what_about",
        "input": "What about enterprise retailers with their own warehouses?",
        "expected_request": True,
        "expected_parameter": "target_audience",
    },
    {
        "id": "geography_how_would_change",
        "input": "How would this change if I only sold in Japan?",
        "expected_request": True,
        "expected_parameter": "geography",
    },
    {
        "id": "model_switch",
        "input": "Switch to a subscription box approach and tell me what changes.",
        "expected_request": True,
        "expected_parameter": "business_model",
    },
    {
        "id": "question_what_about_risks",
        "input": "What about the regulatory risks you mentioned?",
        "expected_request": False,
        "expected_parameter": None,
    },
    {
        "id": "question_what_if_fail",
        "input": "What if the first pilot fails?",
        "expected_request": False,
        "expected_parameter": None,
    },
]


# -----------------------------------------------------------------------------
# Evaluation Metrics (DeepEval)
# -----------------------------------------------------------------------------


@pytest.fixture
def detection_reasoning_metric():
    """
    LLM-as-a-judge metric for the detector's reasoning.
    Uses DeepEval's GEval.
    """
    try:
        from deepeval.metrics import GEval
        from deepeval.test_case import LLMTestCaseParams

        return GEval(
            name="Detection Reasoning",
            criteria=(
                "The reasoning correctly explains whether the user asked to re-run the "
                "market-gap analysis with a different parameter, or asked a question "
                "about the existing analysis. Any parameter named must come from the input."
            ),
            evaluation_params=[
                LLMTestCaseParams.INPUT,
                LLMTestCaseParams.ACTUAL_OUTPUT,
                LLMTestCaseParams.EXPECTED_OUTPUT,
            ],
            threshold=0.7,
        )
    except ImportError:
        pytest.skip("DeepEval not installed")


@pytest.fixture(scope="session", autouse=True)
def setup_deepeval():
    """Use Gemini as the DeepEval judge model."""
    os.environ.setdefault("DEEPEVAL_LLM_MODEL", "gemini/gemini-2.0-flash")


# -----------------------------------------------------------------------------
# Result Caching (to avoid repeated LLM calls)
# -----------------------------------------------------------------------------


_eval_cache: dict[str, Any] = {}


def get_cached_result(cache_key: str) -> Any | None:
    """Get cached evaluation result."""
    return _eval_cache.get(cache_key)


def set_cached_result(cache_key: str, result: Any) -> None:
    """Cache evaluation result."""
    _eval_cache[cache_key] = result
