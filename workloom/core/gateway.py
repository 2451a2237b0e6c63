"""LLM Gateway: retry, token accounting and per-stage metrics for reviews.

Wraps any LlamaIndex LLM as a CustomLLM subclass so it can be assigned to
Settings.llm. The review engine tags each call with its stage
(``gateway_purpose="stage1"``), which drives the per-stage counters and
cost estimate surfaced in run stats.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

import backoff
from llama_index.core.base.llms.types import CompletionResponse, LLMMetadata
from llama_index.core.llms import CustomLLM
from pydantic import PrivateAttr

from .errors import TransientExternalError

logger = logging.getLogger(__name__)

# USD per 1M tokens
_COST_PER_1M_TOKENS = {
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "_default": {"input": 0.0, "output": 0.0},
}

# Provider SDK exception names that signal a retryable condition
_RETRYABLE_NAMES = frozenset({
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    "OverloadedError",
})


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, connection drops and provider rate limits are retryable."""
    if isinstance(exc, (TransientExternalError, TimeoutError, ConnectionError)):
        return True
    return type(exc).__name__ in _RETRYABLE_NAMES


@dataclass
class LLMMetrics:
    """In-memory LLM usage counters (guarded by the gateway lock)."""

    total_calls: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_latency_ms: float = 0.0
    errors: int = 0
    retries: int = 0
    calls_by_purpose: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    cost_by_purpose: Dict[str, float] = field(default_factory=lambda: defaultdict(float))
    estimated_cost_usd: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_tokens_in": self.total_tokens_in,
            "total_tokens_out": self.total_tokens_out,
            "avg_latency_ms": round(self.total_latency_ms / max(self.total_calls, 1), 1),
            "errors": self.errors,
            "retries": self.retries,
            "calls_by_purpose": dict(self.calls_by_purpose),
            "cost_by_purpose": {k: round(v, 4) for k, v in self.cost_by_purpose.items()},
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
        }


class LLMGateway(CustomLLM):
    """Transparent LLM proxy with retry and metrics.

    Usage:
        from workloom.core.gateway import LLMGateway
        Settings.llm = LLMGateway(raw_llm)
        Settings.llm.complete(prompt, gateway_purpose="stage2")
        Settings.llm.complete(prompt, gateway_retry=False)  # caller retries
    """

    max_tries: int = 3
    max_time: float = 120.0
    backoff_factor: float = 1.0

    _llm: Any = PrivateAttr(default=None)
    _metrics: LLMMetrics = PrivateAttr(default_factory=LLMMetrics)
    _lock: Any = PrivateAttr(default_factory=threading.Lock)

    def __init__(self, llm: Any, **kwargs: Any):
        super().__init__(**kwargs)
        self._llm = llm
        logger.info(
            f"LLMGateway initialized, wrapping {type(llm).__name__}"
            f" (model={getattr(llm, 'model', 'unknown')})"
        )

    @property
    def metadata(self) -> LLMMetadata:
        return self._llm.metadata

    @property
    def model(self) -> str:
        return getattr(self._llm, "model", "unknown")

    # ── Core methods ──────────────────────────────────────────────────

    def complete(
        self, prompt: str, formatted: bool = False, **kwargs: Any
    ) -> CompletionResponse:
        purpose = kwargs.pop("gateway_purpose", "general")
        # Callers with their own retry policy pass gateway_retry=False
        retry = kwargs.pop("gateway_retry", True)
        t0 = time.time()

        try:
            if retry:
                response = self._retry_call(self._llm.complete, prompt, formatted=formatted, **kwargs)
            else:
                response = self._llm.complete(prompt, formatted=formatted, **kwargs)
        except Exception:
            self._record_error(purpose)
            raise

        self._record_success(prompt, response, (time.time() - t0) * 1000, purpose)
        return response

    def stream_complete(
        self, prompt: str, formatted: bool = False, **kwargs: Any
    ) -> Generator[CompletionResponse, None, None]:
        purpose = kwargs.pop("gateway_purpose", "general")
        t0 = time.time()
        collected = []

        try:
            for token in self._llm.stream_complete(prompt, formatted=formatted, **kwargs):
                if token.delta:
                    collected.append(token.delta)
                yield token
        except Exception:
            self._record_error(purpose)
            raise

        synthetic = CompletionResponse(text="".join(collected))
        self._record_success(prompt, synthetic, (time.time() - t0) * 1000, purpose)

    # ── Retry ─────────────────────────────────────────────────────────

    def _retry_call(self, fn, *args, **kwargs):
        @backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self.max_tries,
            max_time=self.max_time,
            giveup=lambda e: not is_retryable(e),
            on_backoff=self._on_retry,
            factor=self.backoff_factor,
        )
        def _do_call():
            return fn(*args, **kwargs)

        return _do_call()

    def _on_retry(self, details: dict):
        with self._lock:
            self._metrics.retries += 1
        logger.warning(
            f"LLMGateway retry {details['tries']}/{self.max_tries} "
            f"after {details['wait']:.1f}s ({type(details.get('exception')).__name__})"
        )

    # ── Metrics recording ─────────────────────────────────────────────

    def _record_success(self, prompt: str, response: CompletionResponse, latency_ms: float, purpose: str):
        tokens_in = len(prompt.split()) * 1.3  # rough estimate
        tokens_out = len(response.text.split()) * 1.3 if response.text else 0

        raw = getattr(response, "raw", None) or {}
        usage = raw.get("usage") if isinstance(raw, dict) else getattr(raw, "usage", None)
        if usage:
            tokens_in = getattr(usage, "prompt_tokens", None) or tokens_in
            tokens_out = getattr(usage, "completion_tokens", None) or tokens_out

        cost = self._estimate_cost(int(tokens_in), int(tokens_out))

        with self._lock:
            m = self._metrics
            m.total_calls += 1
            m.total_tokens_in += int(tokens_in)
            m.total_tokens_out += int(tokens_out)
            m.total_latency_ms += latency_ms
            m.estimated_cost_usd += cost
            m.calls_by_purpose[purpose] += 1
            m.cost_by_purpose[purpose] += cost

        logger.debug(
            f"LLM call: purpose={purpose} tokens_in={int(tokens_in)} "
            f"tokens_out={int(tokens_out)} latency={latency_ms:.0f}ms model={self.model}"
        )

    def _record_error(self, purpose: str):
        with self._lock:
            self._metrics.errors += 1
            self._metrics.calls_by_purpose[f"{purpose}_error"] += 1
        logger.error(f"LLM call failed: purpose={purpose} model={self.model}")

    def _estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        costs = _COST_PER_1M_TOKENS.get(self.model, _COST_PER_1M_TOKENS["_default"])
        return (tokens_in * costs["input"] + tokens_out * costs["output"]) / 1_000_000

    # ── Public metrics API ────────────────────────────────────────────

    def get_metrics(self) -> dict:
        with self._lock:
            result = self._metrics.to_dict()
        result["model"] = self.model
        return result

    def reset_metrics(self):
        with self._lock:
            self._metrics = LLMMetrics()
        logger.info("LLMGateway metrics reset")

    @classmethod
    def class_name(cls) -> str:
        return "LLMGateway"


def current_model_name(llm: Optional[Any]) -> Optional[str]:
    """Best-effort model name for review provenance."""
    if llm is None:
        return None
    model = getattr(llm, "model", None)
    if isinstance(model, str):
        return model
    metadata = getattr(llm, "metadata", None)
    return getattr(metadata, "model_name", None)
