"""
AI Route Guard.

Adaptive provider routing with Thompson sampling, cost forecasting and
SLA drift adjustments.
"""

__version__ = "0.1.0"
