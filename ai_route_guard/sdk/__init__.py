"""
SDK for AI Route Guard.

Provides routed provider clients that report their outcomes to the engine.
"""

from .openai_client import RoutedOpenAI

__all__ = ["RoutedOpenAI"]
