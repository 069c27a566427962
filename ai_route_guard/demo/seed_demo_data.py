# ai_route_guard/demo/seed_demo_data.py

import random
from datetime import date, timedelta

from ai_route_guard.core.engine import RoutingEngine
from ai_route_guard.core.statistics import CallOutcome
from ai_route_guard.storage.models import DailyPerformance, ScopeConfig
from ai_route_guard.storage.repository import get_repository, initialize_schema

SCOPE = "document_summary"
ARMS = {
    # arm id: (mean latency ms, success rate, quality, cost per 1k)
    "openai::gpt-4o": (1400.0, 0.99, 0.92, 0.0060),
    "openai::gpt-4o-mini": (650.0, 0.97, 0.81, 0.0004),
    "anthropic::claude-3-5-haiku": (700.0, 0.96, 0.84, 0.0024),
}
PROVIDERS = {
    # provider: (mean latency ms, error rate, latency growth in the current week)
    "openai": (900.0, 0.02, 1.05),
    "anthropic": (700.0, 0.03, 1.45),
}

initialize_schema()
repository = get_repository()
engine = RoutingEngine(repository, rng=random.Random(7))
rng = random.Random(42)

repository.save_scope_config(ScopeConfig(scope=SCOPE, monthly_budget=60.0))

today = date.today()
for offset in range(13, -1, -1):
    day = today - timedelta(days=offset)
    # Spend ramps up and latency degrades over the second week.
    repository.upsert_daily_cost(SCOPE, day, 1.2 + 0.08 * (13 - offset))
    for provider, (latency, error_rate, growth) in PROVIDERS.items():
        drift = 1.0 if offset >= 7 else growth
        repository.upsert_daily_performance(SCOPE, DailyPerformance(
            day=day,
            provider=provider,
            avg_latency=latency * drift * rng.uniform(0.98, 1.02),
            error_rate=error_rate,
            total_calls=200,
        ))

for _ in range(60):
    for arm_id, (latency, success, quality, cost_per_1k) in ARMS.items():
        engine.record_outcome(arm_id, CallOutcome(
            success=rng.random() < success,
            latency_ms=max(1.0, rng.gauss(latency, latency * 0.15)),
            quality_score=quality,
            cost_per_1k=cost_per_1k,
            cost=cost_per_1k * 1.5,
        ), SCOPE)

report = engine.recompute_forecast(SCOPE)
print(f"Demo routing data inserted for scope '{SCOPE}'")
print(f"Budget risk: {report.forecast.budget_risk.value}, SLA risk: {report.sla.sla_risk_level.value}")
