"""
AI Coach Guard.

Credit and rate-limit engine for AI fitness coaching.
"""

__version__ = "0.1.0"
