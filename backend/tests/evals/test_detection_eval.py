"""
Gap Advisor Backend — Variant Detection Prompt Evaluation Tests

These tests evaluate the re-analysis detection prompt using real LLM calls.
They check the request/question decision and which parameter is extracted.

Run with: pytest tests/evals -v -m eval
Requires: Real GEMINI_API_KEY in environment
"""

import os

import pytest

from tests.evals.conftest import DETECTION_CASES, get_cached_result, set_cached_result

pytestmark = [
    pytest.mark.eval,
    pytest.mark.skipif(
        not os.environ.get("GEMINI_API_KEY") or os.environ.get("GEMINI_API_KEY", "").startswith("test-"),
        reason="Real GEMINI_API_KEY required for evaluation tests"
    ),
]


async def detect(test_case: dict, sample_analysis):
    """Real detection call, cached per input."""
    from advisor.llm import call_llm_structured
    from advisor.models import ReanalysisDetection
    from advisor.prompts import build_detection_prompt

    cache_key = f"detect:{test_case['input']}"
    cached = get_cached_result(cache_key)
    if cached:
        return cached

    messages = build_detection_prompt(test_case["input"], sample_analysis)
    result = await call_llm_structured(messages, ReanalysisDetection, conversation_id="eval-test")
    set_cached_result(cache_key, result)
    return result


@pytest.mark.asyncio
@pytest.mark.parametrize("test_case", DETECTION_CASES, ids=lambda tc: tc["id"])
async def test_detection_decision(test_case, sample_analysis, mock_db, check_api_keys):
    """The model separates re-analysis requests from questions about the analysis."""
    result = await detect(test_case, sample_analysis)

    assert result.is_reanalysis_request == test_case["expected_request"], (
        f"Expected is_reanalysis_request={test_case['expected_request']} for "
        f"'{test_case['input']}', got {result.is_reanalysis_request} ({result.reasoning})"
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "test_case",
    [tc for tc in DETECTION_CASES if tc["expected_parameter"]],
    ids=lambda tc: tc["id"],
)
async def test_detection_parameter(test_case, sample_analysis, mock_db, check_api_keys):
    """Requests name the parameter that changed."""
    result = await detect(test_case, sample_analysis)

    assert test_case["expected_parameter"] in result.modified_parameters, (
        f"Expected '{test_case['expected_parameter']}' in {result.modified_parameters}"
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("test_case", DETECTION_CASES, ids=lambda tc: tc["id"])
async def test_detection_reasoning_quality(
    test_case, sample_analysis, mock_db, check_api_keys, detection_reasoning_metric,
):
    """LLM-as-a-judge check of the detector's reasoning."""
    from deepeval.test_case import LLMTestCase

    result = await detect(test_case, sample_analysis)
    expected = "re-analysis request" if test_case["expected_request"] else "question about the existing analysis"

    case = LLMTestCase(
        input=test_case["input"],
        actual_output=result.model_dump_json(),
        expected_output=expected,
    )
    detection_reasoning_metric.measure(case)

    assert detection_reasoning_metric.score >= detection_reasoning_metric.threshold, (
        f"Reasoning scored {detection_reasoning_metric.score}: {detection_reasoning_metric.reason}"
    )
