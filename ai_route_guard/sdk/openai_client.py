"""
Routed OpenAI client wrapper.

Picks the model for every chat call through the routing engine and feeds
the call's outcome back into it.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI

from ..core.engine import RoutingEngine
from ..core.pricing import PRICING_TABLE, calculate_cost, cost_per_1k
from ..core.statistics import CallOutcome
from ..core.token_counter import TokenUsage
from ..storage.models import ArmKey

_log = logging.getLogger(__name__)

PROVIDER = "openai"


class RoutedOpenAI:
    """OpenAI client wrapper that routes between models.

    Every call records an outcome, failures included, so the router
    learns from errors as well. Failures are re-raised unchanged.
    """

    def __init__(
        self,
        engine: RoutingEngine,
        scope: str,
        candidates: List[str],
        client: Optional[OpenAI] = None,
        quality_scorer: Optional[Callable[[Any], float]] = None,
    ):
        """Initialize routed OpenAI client.

        Args:
            engine: Routing engine that selects models and records outcomes
            scope: Routing scope (tenant or feature)
            candidates: Model names or ``openai::model`` arm ids
            client: OpenAI client (a default one is created if omitted)
            quality_scorer: Maps a response to a quality score in [0, 1];
                successful calls score 1.0 without one

        Raises:
            ValueError: If scope is empty, no candidates are given or a
                candidate model has no pricing
        """
        if not scope or not scope.strip():
            raise ValueError("scope is required and cannot be empty")
        if not candidates:
            raise ValueError("at least one candidate model is required")

        self.arm_ids = []
        for candidate in candidates:
            key = ArmKey.parse(candidate if "::" in candidate else f"{PROVIDER}::{candidate}", scope)
            if key.provider != PROVIDER:
                raise ValueError(f"Unsupported provider: {key.provider}")
            if not PRICING_TABLE.supports(key.model):
                raise ValueError(f"Unsupported model: {key.model}")
            self.arm_ids.append(key.arm_id)

        self.engine = engine
        self.scope = scope
        self.client = client or OpenAI()
        self.quality_scorer = quality_scorer

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion on the routed model.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
            NoAvailableProvider: If every candidate is deactivated
            OpenAI API errors: Propagated after the failure is recorded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        arm_id = self.engine.select_provider(self.arm_ids, self.scope)
        model = ArmKey.parse(arm_id, self.scope).model

        started = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception:
            latency_ms = (time.perf_counter() - started) * 1000
            self.engine.record_outcome(
                arm_id, CallOutcome(False, latency_ms, 0.0, None), self.scope
            )
            _log.warning("Call to %s failed after %.0f ms", arm_id, latency_ms)
            raise
        latency_ms = (time.perf_counter() - started) * 1000

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )
        quality = self.quality_scorer(response) if self.quality_scorer else 1.0
        self.engine.record_outcome(arm_id, CallOutcome(
            success=True,
            latency_ms=latency_ms,
            quality_score=quality,
            cost_per_1k=cost_per_1k(model, token_usage),
            cost=calculate_cost(model, token_usage),
        ), self.scope)

        return response
