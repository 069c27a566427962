"""
Core modules for AI Route Guard.

This package contains the routing logic: online statistics, bandit
posteriors, composite scoring, cost and SLA forecasting, forecast
adjustments, engine orchestration and governance.
"""
