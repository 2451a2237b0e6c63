"""Unit tests for LLMGateway: retry classification and usage metrics.

Tests cover:
- Pass-through of completions and metadata
- Per-purpose call counters and error accounting
- Retry on retryable errors, immediate give-up otherwise
- Retry switched off for callers that retry themselves
- current_model_name fallbacks
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from llama_index.core.base.llms.types import CompletionResponse, LLMMetadata

from workloom.core.errors import TransientExternalError
from workloom.core.gateway import LLMGateway, current_model_name, is_retryable


# ── Fixtures ──────────────────────────────────────────────────────────────


class RateLimitError(Exception):
    """Named like the provider SDK exception."""


def _raw_llm(*side_effect):
    llm = MagicMock()
    llm.model = "gpt-4o-mini"
    llm.metadata = LLMMetadata(model_name="gpt-4o-mini")
    if side_effect:
        llm.complete.side_effect = list(side_effect)
    else:
        llm.complete.return_value = CompletionResponse(text="{\"ok\": true}")
    return llm


# ── Tests: Classification ────────────────────────────────────────────────


class TestRetryClassification:

    def test_retryable_errors(self):
        assert is_retryable(TransientExternalError("slow"))
        assert is_retryable(TimeoutError())
        assert is_retryable(ConnectionError())
        assert is_retryable(RateLimitError())

    def test_non_retryable_errors(self):
        assert not is_retryable(ValueError("bad prompt"))
        assert not is_retryable(KeyError("x"))


# ── Tests: Gateway ───────────────────────────────────────────────────────


class TestGateway:

    def test_passes_through_and_counts_by_purpose(self):
        raw = _raw_llm()
        gateway = LLMGateway(raw)

        response = gateway.complete("review this", gateway_purpose="stage1")

        assert response.text == "{\"ok\": true}"
        raw.complete.assert_called_once_with("review this", formatted=False)
        metrics = gateway.get_metrics()
        assert metrics["total_calls"] == 1
        assert metrics["calls_by_purpose"] == {"stage1": 1}
        assert metrics["model"] == "gpt-4o-mini"
        assert metrics["estimated_cost_usd"] >= 0

    def test_metadata_and_model_delegate(self):
        gateway = LLMGateway(_raw_llm())
        assert gateway.metadata.model_name == "gpt-4o-mini"
        assert gateway.model == "gpt-4o-mini"

    def test_retries_transient_errors(self):
        raw = _raw_llm(TransientExternalError("503"), CompletionResponse(text="{}"))
        gateway = LLMGateway(raw, backoff_factor=0)

        response = gateway.complete("p", gateway_purpose="stage2")

        assert response.text == "{}"
        assert raw.complete.call_count == 2
        assert gateway.get_metrics()["retries"] == 1

    def test_gives_up_on_non_retryable(self):
        raw = _raw_llm(ValueError("bad request"))
        gateway = LLMGateway(raw, backoff_factor=0)

        with pytest.raises(ValueError):
            gateway.complete("p", gateway_purpose="stage3")

        assert raw.complete.call_count == 1
        metrics = gateway.get_metrics()
        assert metrics["errors"] == 1
        assert metrics["calls_by_purpose"] == {"stage3_error": 1}

    def test_exhausted_retries_raise(self):
        raw = _raw_llm(*[TimeoutError("t")] * 3)
        gateway = LLMGateway(raw, max_tries=3, backoff_factor=0)

        with pytest.raises(TimeoutError):
            gateway.complete("p")

        assert raw.complete.call_count == 3

    def test_retry_disabled_per_call(self):
        raw = _raw_llm(TimeoutError("t"))
        gateway = LLMGateway(raw, max_tries=3, backoff_factor=0)

        with pytest.raises(TimeoutError):
            gateway.complete("p", gateway_purpose="stage1", gateway_retry=False)

        raw.complete.assert_called_once_with("p", formatted=False)
        assert gateway.get_metrics()["retries"] == 0
        assert gateway.get_metrics()["calls_by_purpose"] == {"stage1_error": 1}

    def test_reset_metrics(self):
        gateway = LLMGateway(_raw_llm())
        gateway.complete("p")
        gateway.reset_metrics()
        assert gateway.get_metrics()["total_calls"] == 0


# ── Tests: Model Name ────────────────────────────────────────────────────


class TestModelName:

    def test_prefers_model_attribute(self):
        assert current_model_name(SimpleNamespace(model="llama3.1:8b")) == "llama3.1:8b"

    def test_falls_back_to_metadata(self):
        llm = SimpleNamespace(metadata=SimpleNamespace(model_name="demo-review"))
        assert current_model_name(llm) == "demo-review"

    def test_none(self):
        assert current_model_name(None) is None
