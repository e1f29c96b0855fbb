"""
SDK for AI Coach Guard.

Provides the adapter to the generative-AI provider.
"""

from .openai_client import CoachModelClient

__all__ = ["CoachModelClient"]
