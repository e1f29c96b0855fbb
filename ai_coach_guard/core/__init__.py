"""
Core modules for AI Coach Guard.

This package contains the quota engine (rate limiter, credit ledger,
admission controller), the error taxonomy and logger, and the coaching
service that ties them to the AI model.
"""
